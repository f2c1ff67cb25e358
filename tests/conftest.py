import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.orm import sessionmaker

from orchestrator import models
from orchestrator.database import Base, build_engine
from orchestrator.providers.base import ImageRef

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 200


@pytest.fixture(autouse=True)
def local_locks():
    """Keeps tests off any Redis configured in the environment."""
    with patch("orchestrator.lock_service.redis_client", None):
        yield


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test."""
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def make_user(session_factory):
    """Creates a user, optionally with a subscription pool. Returns the user id."""
    def _make_user(points=0, credits_allocated=None, credits_used=0, end_date=None, email=None):
        with session_factory() as session:
            user = models.User(email=email or f"user{points}-{os.urandom(4).hex()}@example.com", points=points)
            session.add(user)
            session.commit()
            if credits_allocated is not None:
                session.add(models.SubscriptionCreditPool(
                    user_id=user.id,
                    plan_name="Pro",
                    status="active",
                    credits_allocated=credits_allocated,
                    credits_used=credits_used,
                    end_date=end_date or datetime.now(timezone.utc) + timedelta(days=30),
                ))
                session.commit()
            return user.id
    return _make_user


class FakeAdapter:
    """Adapter double: returns queued results in order, raising any that are exceptions."""

    def __init__(self, *results):
        self.results = list(results)
        self.requests = []

    async def generate(self, request):
        self.requests.append(request)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakeAdapterFactory:
    def __init__(self, adapters):
        self.adapters = adapters

    def for_family(self, family):
        return self.adapters[family]


class FakeAssetStore:
    def __init__(self, url="https://cdn.example.com/generated.png", error=None):
        self.url = url
        self.error = error
        self.uploaded = []

    async def upload(self, image):
        self.uploaded.append(image)
        if self.error is not None:
            raise self.error
        return self.url


@pytest.fixture
def fake_image():
    return ImageRef(data=PNG_BYTES, content_type="image/png")


@pytest.fixture
def png_bytes():
    return PNG_BYTES


@pytest.fixture
def adapter_factory():
    return lambda adapters: FakeAdapterFactory(adapters)


@pytest.fixture
def fake_adapter():
    return FakeAdapter


@pytest.fixture
def asset_store():
    return FakeAssetStore


async def no_sleep(seconds):
    return None


@pytest.fixture
def instant_sleep():
    return no_sleep
