import logging
import os
import threading
from contextlib import contextmanager

import redis
from redis.exceptions import LockError

from orchestrator.errors import OrchestratorError

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_SECONDS = 10  # lock auto-expires if the holder dies mid-activation
LOCK_WAIT_SECONDS = 5
REDIS_URL = os.getenv("REDIS_URL")

try:
    redis_client = redis.Redis.from_url(REDIS_URL)
    redis_client.ping()
    logger.info("Redis connection successful")
except Exception as e:
    logger.warning("Redis connection failed: %s", e)
    logger.warning("Backend activation will use a process-local lock")
    redis_client = None

_local_locks: dict = {}
_local_locks_guard = threading.Lock()


class LockUnavailableError(OrchestratorError):
    error_kind = "lock_unavailable"
    http_status = 409


def _local_lock_for(name: str) -> threading.Lock:
    with _local_locks_guard:
        if name not in _local_locks:
            _local_locks[name] = threading.Lock()
        return _local_locks[name]


@contextmanager
def exclusive(name: str):
    """
    Holds a named mutex for the duration of the block.

    With Redis configured the lock is shared by every process pointed at the
    same Redis. Without it the lock only covers this process.

    Raises:
        LockUnavailableError: If the lock can't be acquired within LOCK_WAIT_SECONDS
    """
    lock_name = f"orchestrator_lock:{name}"

    if redis_client is None:
        local_lock = _local_lock_for(lock_name)
        if not local_lock.acquire(timeout=LOCK_WAIT_SECONDS):
            raise LockUnavailableError(f"Could not acquire {lock_name}")
        try:
            yield
        finally:
            local_lock.release()
        return

    redis_lock = redis_client.lock(
        lock_name,
        timeout=LOCK_TIMEOUT_SECONDS,
        blocking_timeout=LOCK_WAIT_SECONDS,
    )
    if not redis_lock.acquire():
        raise LockUnavailableError(f"Could not acquire {lock_name}")
    try:
        yield
    finally:
        try:
            redis_lock.release()
        except LockError as e:
            # Expired before release; the next holder already owns it
            logger.warning("Lock %s expired before release: %s", lock_name, e)
