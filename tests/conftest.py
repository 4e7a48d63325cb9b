import os
import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Ensure pytest-asyncio plugin is active for async tests
pytest_plugins = ("pytest_asyncio",)

# Ensure project root on path before importing app modules
project_root = Path(__file__).resolve().parents[1]
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

# Configure the app to use a local SQLite database during tests
_test_db_path = project_root / "test.db"
os.environ["APP_DATABASE_URL"] = f"sqlite+aiosqlite:///{_test_db_path.as_posix()}"
os.environ["APP_DEBUG"] = "false"
os.environ["APP_JWT_SECRET_KEY"] = "test-secret"

# Start each test session from a clean database file
if _test_db_path.exists():
    _test_db_path.unlink()


async def _clear_database(session) -> None:
    """Remove all data from the database between tests."""
    from rendezvous.models import Base

    for table in reversed(Base.metadata.sorted_tables):
        await session.execute(table.delete())
    await session.commit()


@pytest_asyncio.fixture(scope="session", autouse=True)
async def setup_database():
    """Create all tables for the duration of the test session."""
    from rendezvous.database import create_tables, drop_tables

    await create_tables()
    yield
    await drop_tables()
    if _test_db_path.exists():
        _test_db_path.unlink()


@pytest.fixture
def session_factory(setup_database):
    """Open short-lived sessions; SQLite allows a single writer at a time."""
    from rendezvous.database import AsyncSessionLocal

    return AsyncSessionLocal


@pytest_asyncio.fixture(autouse=True)
async def clean_database_after_test(setup_database):
    """Clean up any data created via API calls after each test."""
    yield
    from rendezvous.database import AsyncSessionLocal

    async with AsyncSessionLocal() as session:
        await _clear_database(session)


@pytest_asyncio.fixture(autouse=True)
async def reset_realtime_state():
    """Forget in-memory limits, presence and subscriptions after each test."""
    yield
    from rendezvous.services.presence import presence_hub
    from rendezvous.services.realtime_bus import bus
    from rendezvous.utils import reset_rate_limits

    reset_rate_limits()
    await presence_hub.shutdown()
    await bus.shutdown()


@pytest_asyncio.fixture
async def local_bus():
    """A private bus, so assertions only see this test's events."""
    from rendezvous.services.realtime_bus import RealtimeBus

    local = RealtimeBus()
    local.start()
    yield local
    await local.shutdown()


@pytest_asyncio.fixture
async def client():
    import httpx
    from rendezvous.main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def auth_headers(user_id: str) -> dict:
    from rendezvous.services.jwt_service import JWTService

    return {"Authorization": f"Bearer {JWTService.create_token(user_id)}"}


@pytest.fixture
def headers_for():
    return auth_headers


class EventCollector:
    """Bus callback that records delivered events."""

    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)

    def of_type(self, event_type: str) -> list:
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def collector():
    return EventCollector()


@pytest.fixture
def collector_factory():
    return EventCollector


@pytest.fixture
def make_match(session_factory, local_bus):
    """Create a match through mutual likes and return it."""
    from rendezvous.services.match_resolver import MatchResolver

    async def _make_match(user_id: str, other_user_id: str):
        async with session_factory() as db:
            resolver = MatchResolver(db, bus=local_bus)
            await resolver.record_like(user_id, other_user_id)
            outcome = await resolver.record_like(other_user_id, user_id)
        return outcome.match

    return _make_match
