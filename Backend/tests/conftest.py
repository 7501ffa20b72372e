import os

os.environ.setdefault("IDENTITY_PROVIDER_URL", "https://identity.example.test")
os.environ.setdefault("IDENTITY_SERVICE_KEY", "test-service-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TEARDOWN_DELAY_SECONDS", "0")

import uuid  # noqa: E402
from collections.abc import AsyncGenerator  # noqa: E402
from datetime import datetime, timezone  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import StaticPool  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from chatrelay.connectors.base import (  # noqa: E402
    ConnectorError,
    MessagingClient,
    RemoteChat,
    RemoteMedia,
    RemoteMessage,
)
from chatrelay.database import get_db  # noqa: E402
from chatrelay.dependencies import get_current_user  # noqa: E402
from chatrelay.main import app, install_services  # noqa: E402
from chatrelay.models import Base  # noqa: E402
from chatrelay.schemas.auth import Principal  # noqa: E402
from chatrelay.services.connection_manager import ConnectionManager  # noqa: E402
from chatrelay.services.session_registry import SessionRegistry  # noqa: E402
from chatrelay.services.shutdown import ShutdownCoordinator  # noqa: E402
from chatrelay.services.webhook_service import WebhookRelay  # noqa: E402

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakePipeline:
    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._ops = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self._ops.append((name, args, kwargs))
            return self
        return queue

    async def execute(self):
        results = []
        for name, args, kwargs in self._ops:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._ops = []
        return results


class FakeRedis:
    """In-memory Redis mock for testing."""

    def __init__(self):
        self._store: dict[str, str] = {}
        self._zsets: dict[str, dict[str, float]] = {}
        self._ttls: dict[str, int] = {}

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self._store[key] = str(value)
        if ex:
            self._ttls[key] = ex

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        zset = self._zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    async def zremrangebyscore(self, key: str, low: float, high: float) -> int:
        zset = self._zsets.get(key, {})
        doomed = [m for m, score in zset.items() if low <= score <= high]
        for member in doomed:
            del zset[member]
        return len(doomed)

    async def zcard(self, key: str) -> int:
        return len(self._zsets.get(key, {}))

    async def expire(self, key: str, seconds: int) -> None:
        self._ttls[key] = seconds

    def pipeline(self) -> FakePipeline:
        return FakePipeline(self)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class FakeMessagingClient(MessagingClient):
    """Scriptable stand-in for a messaging network connection."""

    def __init__(self, user_id, emit):
        super().__init__(user_id, emit)
        self.chats: list[RemoteChat] = []
        self.messages: dict[str, list[RemoteMessage]] = {}
        self.media: dict[str, RemoteMedia] = {}
        self.sent: list[tuple] = []
        self.failing: set[str] = set()
        self.initialized = False
        self.logout_calls = 0
        self.destroy_calls = 0

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.failing:
            raise ConnectorError(f"{operation} failed")

    async def initialize(self) -> None:
        self._maybe_fail("initialize")
        self.initialized = True

    async def get_chats(self) -> list[RemoteChat]:
        self._maybe_fail("get_chats")
        return list(self.chats)

    async def fetch_messages(self, chat_id: str, limit: int) -> list[RemoteMessage]:
        self._maybe_fail("fetch_messages")
        return self.messages.get(chat_id, [])[-limit:]

    async def download_media(self, message: RemoteMessage) -> RemoteMedia | None:
        self._maybe_fail("download_media")
        return self.media.get(message.id)

    async def send_message(self, chat_id: str, text: str) -> None:
        self._maybe_fail("send_message")
        self.sent.append(("text", chat_id, text))

    async def send_media(self, chat_id: str, media: RemoteMedia, caption: str = "") -> None:
        self._maybe_fail("send_media")
        self.sent.append(("media", chat_id, media, caption))

    async def logout(self) -> None:
        self.logout_calls += 1
        self._maybe_fail("logout")

    async def destroy(self) -> None:
        self.destroy_calls += 1
        self._maybe_fail("destroy")


def make_message(chat_id: str, body: str, timestamp: int, **kwargs) -> RemoteMessage:
    return RemoteMessage(
        id=kwargs.pop("id", f"{chat_id}-{timestamp}"),
        chat_id=chat_id,
        body=body,
        timestamp=timestamp,
        from_=kwargs.pop("from_", chat_id),
        **kwargs,
    )


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def test_user() -> Principal:
    return Principal(
        id=uuid.uuid4(),
        email="test@example.com",
        created_at=datetime.now(timezone.utc),
    )


@pytest.fixture
def fake_clients() -> list[FakeMessagingClient]:
    """Every client created by ``client_factory``, in creation order."""
    return []


@pytest.fixture
def client_factory(fake_clients):
    def factory(user_id, emit):
        client = FakeMessagingClient(user_id, emit)
        fake_clients.append(client)
        return client
    return factory


@pytest.fixture
def webhook_http() -> AsyncMock:
    """Outbound HTTP client used for webhook deliveries."""
    mock_client = AsyncMock(spec=httpx.AsyncClient)
    mock_client.post = AsyncMock(return_value=httpx.Response(200, text="OK"))
    return mock_client


@pytest.fixture
def relay(session_factory, webhook_http) -> WebhookRelay:
    return WebhookRelay(session_factory, http_client=webhook_http, timeout=5.0)


@pytest.fixture
async def manager(session_factory, client_factory, relay) -> AsyncGenerator[ConnectionManager, None]:
    mgr = ConnectionManager(
        SessionRegistry(),
        client_factory,
        session_factory,
        relay,
        pairing_renderer=lambda code: f"data:image/png;base64,{code}",
        teardown_delay=0,
    )
    yield mgr
    await ShutdownCoordinator(mgr, timeout=1.0).run()


@pytest.fixture
async def client(session_factory, client_factory, webhook_http, test_user) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def override_get_current_user():
        return test_user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.state.redis = FakeRedis()
    mgr = install_services(app, session_factory, client_factory, http_client=webhook_http)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await ShutdownCoordinator(mgr, timeout=1.0).run()
    app.dependency_overrides.clear()
