import os
import uuid
from datetime import datetime, timezone
from typing import List

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric import ec
from dotenv import load_dotenv

from webpush_service.config import Settings
from webpush_service.push.dispatcher import PushDispatcher
from webpush_service.push.types import DEFAULT_TOPIC, Subscription
from webpush_service.push.vapid import VapidKeyPair, b64url_encode
from webpush_service.tests.factories import (
    VAPID_SUBJECT,
    FakeRedis,
    InMemorySubscriptionStore,
    private_bytes,
    public_bytes,
)

load_dotenv()


@pytest.hookimpl(tryfirst=True)
def pytest_collection_modifyitems(items):
    for item in items:
        if "async_db_session" in getattr(item, "fixturenames", ()):
            item.add_marker(pytest.mark.db)


@pytest.fixture(autouse=True)
def fake_redis(mocker):
    """Route the subscription cache to an in-process dict."""
    fake = FakeRedis()
    mocker.patch("webpush_service.cache.subscription_cache.redis_conn", fake)
    return fake


@pytest.fixture(scope="session")
def vapid_private_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def vapid_key_pair(vapid_private_key):
    return VapidKeyPair(
        subject=VAPID_SUBJECT,
        public_key=public_bytes(vapid_private_key),
        private_key=private_bytes(vapid_private_key),
    )


@pytest.fixture(scope="session")
def vapid_env(vapid_private_key):
    return {
        "WEBPUSH_VAPID_SUBJECT": VAPID_SUBJECT,
        "WEBPUSH_VAPID_PUBLIC_KEY": b64url_encode(public_bytes(vapid_private_key)),
        "WEBPUSH_VAPID_PRIVATE_KEY": b64url_encode(private_bytes(vapid_private_key)),
    }


@pytest.fixture
def settings(vapid_key_pair):
    return Settings(vapid=vapid_key_pair)


@pytest.fixture
def receiver_keys():
    """Receiver private keys by subscription id, for decrypting payloads."""
    return {}


@pytest.fixture
def make_subscription(receiver_keys):
    def _make(**overrides) -> Subscription:
        receiver = ec.generate_private_key(ec.SECP256R1())
        fields = {
            "id": uuid.uuid4(),
            "endpoint": f"https://push.example.com/send/{uuid.uuid4().hex}",
            "p256dh": b64url_encode(public_bytes(receiver)),
            "auth": b64url_encode(os.urandom(16)),
            "user_id": "user-1",
            "topic": DEFAULT_TOPIC,
        }
        fields.update(overrides)
        sub = Subscription(**fields)
        receiver_keys[sub.id] = receiver
        return sub

    return _make


@pytest.fixture
def store():
    return InMemorySubscriptionStore()


@pytest.fixture
def push_service():
    """
    Fake push service. Map an endpoint to a status code, or to a callable
    taking the request, via ``responses``; everything else answers 201.
    """

    class PushService:
        def __init__(self):
            self.responses = {}
            self.requests: List[httpx.Request] = []

        async def handler(self, request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            behaviour = self.responses.get(str(request.url), 201)
            if callable(behaviour):
                result = behaviour(request)
                if hasattr(result, "__await__"):
                    result = await result
                return result
            return httpx.Response(behaviour)

        def endpoints_called(self) -> List[str]:
            return [str(r.url) for r in self.requests]

    return PushService()


@pytest.fixture
async def http_client(push_service):
    async with httpx.AsyncClient(transport=httpx.MockTransport(push_service.handler)) as client:
        yield client


@pytest.fixture
def dispatcher(settings, store, http_client):
    return PushDispatcher.from_settings(settings, store, http_client=http_client)


@pytest.fixture
def fixed_now():
    return datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
async def async_db_session():
    """
    Provides an async transactional session against a real PostgreSQL,
    rolled back after the test. Fails when DATABASE_URL is not set.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        pytest.fail("DATABASE_URL environment variable not set")

    from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

    from webpush_service.db.session import Base, to_async_url
    import webpush_service.models.subscription  # noqa: F401  (registers the table)

    engine = create_async_engine(to_async_url(database_url))
    async with engine.connect() as connection:
        await connection.run_sync(Base.metadata.create_all)
        await connection.commit()

        transaction = await connection.begin()
        session = AsyncSession(
            bind=connection,
            expire_on_commit=False,
            join_transaction_mode="create_savepoint",
        )
        try:
            yield session
        finally:
            await session.close()
            await transaction.rollback()

    await engine.dispose()


@pytest.fixture
def queue(mocker):
    fake_queue = mocker.MagicMock()
    fake_queue.enqueue.return_value = mocker.MagicMock(id="job-123")
    return fake_queue


@pytest.fixture
async def client(settings, store, dispatcher, queue):
    """Provides an async HTTP client for the API with dependencies overridden."""
    from webpush_service.api.dependencies import get_dispatcher, get_settings, get_store
    from webpush_service.api.main import app
    from webpush_service.queue.redis_conn import get_queue

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_queue] = lambda: queue

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides = {}
