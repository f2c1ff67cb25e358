import threading
from unittest.mock import MagicMock, patch

import pytest

from orchestrator.lock_service import LockUnavailableError, exclusive


def test_local_lock_used_when_redis_disabled():
    """
    Verify the lock still works when Redis is unavailable.
    Why: Activation must stay serialized even without Redis configured.
    """
    entered = []
    with patch("orchestrator.lock_service.redis_client", None):
        with exclusive("backend_activation:image"):
            entered.append(True)
    assert entered == [True]


def test_local_lock_times_out_when_held():
    with patch("orchestrator.lock_service.redis_client", None), \
            patch("orchestrator.lock_service.LOCK_WAIT_SECONDS", 0.01):
        with exclusive("busy"):
            errors = []

            def contender():
                try:
                    with exclusive("busy"):
                        pass
                except LockUnavailableError as e:
                    errors.append(e)

            thread = threading.Thread(target=contender)
            thread.start()
            thread.join()

    assert len(errors) == 1


def test_redis_lock_acquired_and_released():
    """
    Verify the Redis lock is named per resource and released afterwards.
    Why: A lock left held would block every later activation until it expires.
    """
    redis_lock = MagicMock()
    redis_lock.acquire.return_value = True
    mock_redis = MagicMock()
    mock_redis.lock.return_value = redis_lock

    with patch("orchestrator.lock_service.redis_client", mock_redis):
        with exclusive("backend_activation:image"):
            pass

    assert mock_redis.lock.call_args[0][0] == "orchestrator_lock:backend_activation:image"
    redis_lock.release.assert_called_once()


def test_redis_lock_not_acquired():
    redis_lock = MagicMock()
    redis_lock.acquire.return_value = False
    mock_redis = MagicMock()
    mock_redis.lock.return_value = redis_lock

    with patch("orchestrator.lock_service.redis_client", mock_redis):
        with pytest.raises(LockUnavailableError):
            with exclusive("backend_activation:image"):
                pass
    redis_lock.release.assert_not_called()
