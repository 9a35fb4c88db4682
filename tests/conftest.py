"""
Shared pytest fixtures for the KeyGate test suite.

Test dependencies: pytest, pytest-asyncio, httpx
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from api.ratelimit import rate_limiter
from builders import NOW, make_allowed, make_session_factory
from gate.keygate import KeyGate
from gate.results import MonthlyUsage


# ---------------------------------------------------------------------------
# Mock database session
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_session():
    """
    An AsyncMock that mimics an async SQLAlchemy session.

    Usage in tests:
        mock_session.execute.return_value = mock_result
    """
    session = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def clock():
    """A mutable clock; set ``clock.now`` to move time."""

    class _Clock:
        now = NOW

        def __call__(self):
            return self.now

    return _Clock()


@pytest.fixture
def gate(mock_session, clock):
    """A KeyGate over the mock session with caching disabled."""
    return KeyGate(make_session_factory(mock_session), clock=clock)


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    rate_limiter.reset()
    yield
    rate_limiter.reset()


# ---------------------------------------------------------------------------
# FastAPI test client (uses httpx AsyncClient with ASGI transport)
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_gate():
    """A stand-in for the process-wide KeyGate stored on app.state."""
    fake = MagicMock(spec=KeyGate)
    fake.validate = AsyncMock(return_value=make_allowed())
    fake.get_monthly_usage = AsyncMock(
        return_value=MonthlyUsage(total_requests=12, total_tokens=300)
    )
    fake.record_usage = AsyncMock()
    return fake


@pytest.fixture
def session_events():
    """Order of commits (and anything tests append) in the routes' sessions."""
    return []


@pytest.fixture
def mock_app_get_session(mock_session, session_events):
    """
    Patch get_session specifically for the api.routes module so that
    the route handlers receive our mock_session.
    """
    patcher = patch(
        "api.routes.get_session", new=make_session_factory(mock_session, session_events)
    )
    patcher.start()
    yield mock_session
    patcher.stop()


@pytest.fixture
async def async_client(mock_app_get_session, fake_gate):
    """
    An httpx.AsyncClient wired to the API router (no lifespan to avoid
    real DB init and tier seeding).

    The database is mocked via mock_app_get_session and the gate via fake_gate.
    """
    from api.routes import router
    from fastapi import FastAPI

    test_app = FastAPI()
    test_app.include_router(router, prefix="/api/v1")
    test_app.state.key_gate = fake_gate

    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
