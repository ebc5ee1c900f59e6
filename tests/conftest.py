"""Shared fixtures: test database, fake gateway handles, bot managers, HTTP clients."""

import asyncio
import os

os.environ.setdefault("STAYONLINE_DATABASE_URL", "sqlite+aiosqlite:///./test_stayonline.db")
os.environ.setdefault("STAYONLINE_ENV", "test")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from app.adapters.base import GatewayConnection, LifecycleEvent  # noqa: E402
from app.database import async_session, drop_db, engine, init_db  # noqa: E402
from app.main import app  # noqa: E402
from app.services import session_service  # noqa: E402
from app.services.bot_manager import BotManager  # noqa: E402

TOKEN = "MTA" + "x" * 53 + "AbCd"  # 60 chars
TOKEN_60 = "N" * 56 + "Wxyz"


class FakeGatewayConnection(GatewayConnection):
    """In-memory gateway handle; tests drive its lifecycle events by hand."""

    def __init__(self, token: str) -> None:
        super().__init__()
        self.token = token
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.fail_disconnect = False
        self.fail_connect: Exception | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def connect(self) -> asyncio.Task:
        self.connect_calls += 1
        if self.fail_connect is not None:
            raise self.fail_connect
        return asyncio.get_running_loop().create_task(asyncio.sleep(0))

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        if self.fail_disconnect:
            raise RuntimeError("socket already closed")
        self._connected = False
        self.emit_disconnected()

    def emit_connected(self) -> None:
        self._connected = True
        self._emit(LifecycleEvent.CONNECTED)

    def emit_error(self, error: BaseException) -> None:
        self._emit(LifecycleEvent.ERROR, error)

    def emit_disconnected(self, error: BaseException | None = None) -> None:
        self._emit(LifecycleEvent.DISCONNECTED, error)


class FakeConnectionFactory:
    def __init__(self) -> None:
        self.created: list[FakeGatewayConnection] = []
        self.fail_with: Exception | None = None

    def __call__(self, token: str) -> FakeGatewayConnection:
        if self.fail_with is not None:
            raise self.fail_with
        handle = FakeGatewayConnection(token)
        self.created.append(handle)
        return handle

    @property
    def last(self) -> FakeGatewayConnection:
        return self.created[-1]


class RecordingListener:
    """Stands in for a dashboard WebSocket."""

    def __init__(self, fail: bool = False) -> None:
        self.messages: list[dict] = []
        self.fail = fail

    async def send_json(self, data) -> None:
        if self.fail:
            raise ConnectionError("client went away")
        self.messages.append(data)

    def of_type(self, type_: str) -> list[dict]:
        return [m for m in self.messages if m["type"] == type_]


@pytest_asyncio.fixture(autouse=True)
async def database():
    await init_db()
    yield
    await drop_db()
    await engine.dispose()


@pytest.fixture
def connection_factory() -> FakeConnectionFactory:
    return FakeConnectionFactory()


@pytest_asyncio.fixture
async def manager(connection_factory):
    mgr = BotManager(multi_tenant=False, connection_factory=connection_factory)
    yield mgr
    await mgr.shutdown()


@pytest_asyncio.fixture
async def multi_manager(connection_factory):
    mgr = BotManager(multi_tenant=True, connection_factory=connection_factory)
    yield mgr
    await mgr.shutdown()


@pytest.fixture
def make_user():
    """Create a user row (bots need a real owner for the foreign key)."""

    async def _make(session_id: str | None = None) -> int:
        async with async_session() as db:
            user = await session_service.create_or_get_session(db, session_id)
            return user.id

    return _make


@pytest_asyncio.fixture
async def client(manager):
    app.state.bot_manager = manager
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def multi_client(multi_manager):
    app.state.bot_manager = multi_manager
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
