"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks all external services.
"""
import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

from funnel.channels.registry import reset_adapters
from funnel.config import Settings
from funnel.database import Base
from funnel.models.conversation import Conversation
from funnel.models.lead import Lead
from funnel.models.lead_profile import LeadProfile
import funnel.models  # noqa: F401


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


def _enable_sqlite_savepoints(engine) -> None:
    """pysqlite defers BEGIN; emit it ourselves so SAVEPOINT (begin_nested) works."""

    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    _enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    """In-memory SQLite database for tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("funnel.utils.redis_client.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.ping = AsyncMock(return_value=True)
        redis_mock.lpush = AsyncMock(return_value=1)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture(autouse=True)
def _reset_adapters():
    reset_adapters()
    yield
    reset_adapters()


def make_settings(**overrides) -> Settings:
    """Settings with test-friendly defaults (no AI timing, no template images)."""
    values = {
        "followup_use_ai_timing": False,
        "photo_template_base_url": "",
        "intake_form_url": "",
        "consent_link_url": "https://clinic.example/consent",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


async def create_lead(
    db: AsyncSession,
    channel: str = "telegram",
    channel_user_id: str = "1001",
    status: str = "QUALIFYING",
    language: str = "en",
    profile: dict | None = None,
    **fields,
) -> tuple[Lead, Conversation]:
    """Persist a lead with an active conversation and, optionally, a profile."""
    lead = Lead(
        channel=channel,
        channel_user_id=channel_user_id,
        source=f"{channel}_organic",
        status=status,
        language=language,
        tags=[],
        extra_data={},
        **fields,
    )
    db.add(lead)
    await db.flush()

    conversation = Conversation(lead_id=lead.id, channel=channel, is_active=True)
    db.add(conversation)

    if profile is not None:
        db.add(LeadProfile(lead_id=lead.id, **profile))

    await db.flush()
    return lead, conversation
