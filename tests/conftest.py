"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks all external services.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from stylelab.database import Base
import stylelab.models  # noqa: F401  (registers tables)


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def db():
    """In-memory SQLite database for tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


class FakeSessionCtx:
    """Stands in for async_session_factory() so code under test shares the test session."""

    def __init__(self, session):
        self.session = session

    async def __aenter__(self):
        return self.session

    async def __aexit__(self, *a):
        pass


@pytest.fixture
def session_ctx(db):
    """Factory returning a fresh context manager over the test session on every call."""
    return lambda: FakeSessionCtx(db)


@pytest.fixture
def mock_ai():
    """Mock for async generate_response - prevents real AI API calls in tests."""
    with patch("stylelab.services.message_generation.generate_response", new_callable=AsyncMock) as mock:
        mock.return_value = {
            "content": '{"subject": "A better way to plan your week", "body": "<p>Hi {first_name}, meet the planner.</p>"}',
            "provider": "anthropic",
            "model": "claude-haiku",
            "latency_ms": 500,
            "cost_usd": 0.001,
            "input_tokens": 100,
            "output_tokens": 50,
            "error": None,
        }
        yield mock


@pytest.fixture
def mock_send():
    """Mock for the SendGrid sender used by the send pipeline."""
    with patch("stylelab.services.send_pipeline.send_email", new_callable=AsyncMock) as mock:
        mock.return_value = {"message_id": "msg_test_123", "status": "sent"}
        yield mock


@pytest.fixture
def mock_notifications():
    with (
        patch("stylelab.services.completion.notify_completion", new_callable=AsyncMock) as completion,
        patch("stylelab.services.completion.notify_failure", new_callable=AsyncMock) as failure,
    ):
        completion.return_value = {"message_id": "n1", "status": "sent", "error": None}
        failure.return_value = {"message_id": "n2", "status": "sent", "error": None}
        yield {"completion": completion, "failure": failure}


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("stylelab.utils.redis.get_redis", new_callable=AsyncMock) as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.ping = AsyncMock(return_value=True)
        redis_mock.eval = AsyncMock(return_value=1)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def no_batch_delay():
    """Zero the inter-batch sleep so send tests run instantly."""
    from stylelab.config import get_settings
    settings = get_settings()
    original = settings.send_batch_delay_seconds
    settings.send_batch_delay_seconds = 0.0
    yield settings
    settings.send_batch_delay_seconds = original


@pytest.fixture
def base_config():
    """A valid optimization request."""
    return {
        "user_id": "user_1",
        "user_email": "owner@example.com",
        "subscriber_list_id": "list_1",
        "offer_ids": ["offer_1"],
        "offers": [{"id": "offer_1", "name": "Focus Planner", "description": "A paper planner", "url": "https://example.com/p"}],
        "selection_percentage": 1.0,
        "number_of_rounds": 2,
        "segmentation": {
            "number_of_segments": 2,
            "include_control_group": False,
            "control_group_size": 0,
            "exploration_rate": 0.2,
        },
        "round_interval_minutes": 0,
        "wait_time_for_metrics_minutes": 0,
    }


