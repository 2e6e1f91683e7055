"""Shared test fixtures for Invoice Reminder.

Provides common fixtures used across unit and integration tests.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_reminder.scheduler.runtime import SchedulerRuntime
from invoice_reminder.settings import Settings


# =============================================================================
# SETTINGS
# =============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Provide test settings with safe defaults."""
    return Settings(
        environment="testing",  # Suppresses scheduler bootstrap
        debug=False,
        database_url="sqlite+aiosqlite:///:memory:",
        invoice_check_url="http://localhost:8080",
        invoice_check_api_key=SecretStr("test-api-key"),
        scheduler_reconcile_interval_minutes=0,
    )


@pytest.fixture
def mock_settings(test_settings: Settings, monkeypatch: pytest.MonkeyPatch) -> Settings:
    """Mock get_settings() to return test settings."""
    from invoice_reminder import settings

    monkeypatch.setattr(settings, "get_settings", lambda: test_settings)
    return test_settings


# =============================================================================
# DATABASE
# =============================================================================


@pytest.fixture
def mock_db_session() -> AsyncMock:
    """Mock database session for unit tests."""
    session = AsyncMock(spec=AsyncSession)
    session.add = MagicMock()
    session.connection = AsyncMock()
    session.in_transaction = MagicMock(return_value=False)
    session.execute = AsyncMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.new = set()
    session.dirty = set()
    session.deleted = set()
    return session


# =============================================================================
# SCHEDULER
# =============================================================================


@pytest.fixture
def invoice_check() -> AsyncMock:
    """Invoice check collaborator that always succeeds."""
    return AsyncMock(return_value="Total messages sent: 0")


@pytest.fixture
def runtime() -> SchedulerRuntime:
    """Scheduler runtime that is never started (triggers stay pending)."""
    return SchedulerRuntime(timezone="UTC")
