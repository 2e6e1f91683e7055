"""Integration test fixtures backed by a real SQLite database.

Each test gets a fresh file database driven through aiosqlite, so
commits, rollbacks and constraint violations behave as they do in
production without any external infrastructure.
"""

import functools
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import invoice_reminder.storage.entities  # noqa: F401 - register all models with Base.metadata
from invoice_reminder.dal.unit_of_work import UnitOfWork
from invoice_reminder.scheduler.runtime import SchedulerRuntime
from invoice_reminder.services.job_schedules import JobScheduleAppService
from invoice_reminder.storage.models import Base


@pytest_asyncio.fixture
async def integration_engine(tmp_path: Path) -> AsyncGenerator[Any, None]:
    """Create an engine on a throwaway database file with all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'reminder.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(integration_engine: Any) -> async_sessionmaker[AsyncSession]:
    """Session factory configured like the production one."""
    return async_sessionmaker(
        integration_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
def uow_factory(session_factory: async_sessionmaker[AsyncSession]):
    """Callable returning a fresh UnitOfWork per operation."""
    return functools.partial(UnitOfWork, session_factory)


@pytest.fixture
def service(uow_factory, runtime: SchedulerRuntime, invoice_check) -> JobScheduleAppService:
    """Service wired to the real database and an unstarted scheduler."""
    return JobScheduleAppService(uow_factory, runtime, invoice_check)
