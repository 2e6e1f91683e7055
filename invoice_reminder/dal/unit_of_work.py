"""Unit of work: atomic commit over a group of repository mutations.

A UnitOfWork owns one AsyncSession for one logical operation (a request,
a bootstrap pass). Repositories obtained from it stage their changes in
that session; ``save_changes()`` commits everything in one transaction or
rolls everything back.

Per save_changes() cycle the state moves
``IDLE -> PENDING -> COMMITTING -> COMMITTED | ROLLED_BACK``. Terminal
states are not reused: staging new changes starts a fresh PENDING cycle.
The connection is released after every cycle, whatever the outcome.

Usage:
    async with UnitOfWork(get_session_factory()) as uow:
        uow.repository(JobSchedule).add(schedule)
        await uow.save_changes()
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_reminder.dal.base import BaseRepository
from invoice_reminder.dal.job_schedules import JobScheduleRepository
from invoice_reminder.exceptions import (
    DataLayerError,
    OperationCanceledError,
    UnitOfWorkClosedError,
)
from invoice_reminder.storage.entities.job_schedule import JobSchedule

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionFactory = Callable[[], AsyncSession]

# Explicit entity -> repository wiring. Register new pairs here.
REPOSITORY_REGISTRY: dict[type[Any], type[BaseRepository[Any]]] = {
    JobSchedule: JobScheduleRepository,
}

_METHOD = "UnitOfWork.save_changes"
_CANCELED_INFO = f"Method {_METHOD} execution was interrupted by a cancellation request..."
_ROLLBACK_INFO = f"Exception raised. Rolling back changes >> {_METHOD}(...)"


class UnitOfWorkState(str, enum.Enum):
    """Lifecycle of one save_changes() cycle."""

    IDLE = "idle"
    PENDING = "pending"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


def _raise_if_canceled(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCanceledError(_CANCELED_INFO)


async def _cancellable(aw: Awaitable[T], cancel_event: asyncio.Event | None) -> T:
    """Await ``aw`` unless ``cancel_event`` is set first."""
    if cancel_event is None:
        return await aw

    op = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({op, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        op.cancel()
        waiter.cancel()
        raise

    if op in done:
        waiter.cancel()
        return op.result()

    op.cancel()
    await asyncio.gather(op, return_exceptions=True)
    raise OperationCanceledError(_CANCELED_INFO)


def _describe_pending(session: AsyncSession) -> str:
    """Summarize staged changes for rollback diagnostics."""
    parts = []
    for label, objects in (
        ("new", session.new),
        ("dirty", session.dirty),
        ("deleted", session.deleted),
    ):
        if len(objects):
            parts.append(f"{label}={[repr(o) for o in objects]}")
    return ", ".join(parts) or "no staged changes"


class UnitOfWork:
    """Transactional boundary around one AsyncSession.

    Never share an instance between concurrent operations; create one per
    operation from the session factory instead.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        repositories: dict[type[Any], type[BaseRepository[Any]]] | None = None,
    ):
        self._session_factory = session_factory
        self._registry = dict(REPOSITORY_REGISTRY if repositories is None else repositories)
        self._session: AsyncSession | None = None
        self._repositories: dict[type[Any], BaseRepository[Any]] = {}
        self._state = UnitOfWorkState.IDLE
        self._closed = False

    async def __aenter__(self) -> UnitOfWork:
        self._ensure_open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def session(self) -> AsyncSession:
        """The session backing this unit of work, created on first use."""
        self._ensure_open()
        if self._session is None:
            self._session = self._session_factory()
        return self._session

    @property
    def state(self) -> UnitOfWorkState:
        if (
            self._state is not UnitOfWorkState.COMMITTING
            and self._session is not None
            and not self._closed
            and self._has_pending_changes()
        ):
            return UnitOfWorkState.PENDING
        return self._state

    @property
    def connection_open(self) -> bool:
        """Whether the session currently holds a connection/transaction."""
        return self._session is not None and self._session.in_transaction()

    def repository(self, entity_type: type[T]) -> BaseRepository[T]:
        """Return the repository registered for ``entity_type``.

        Raises:
            KeyError: No repository is registered for the entity type
        """
        self._ensure_open()
        repo = self._repositories.get(entity_type)
        if repo is None:
            try:
                repo_cls = self._registry[entity_type]
            except KeyError:
                raise KeyError(f"No repository registered for {entity_type.__name__}") from None
            repo = repo_cls(self.session)
            self._repositories[entity_type] = repo
        return repo

    async def save_changes(self, cancel_event: asyncio.Event | None = None) -> None:
        """Commit all staged changes in one transaction.

        Args:
            cancel_event: Cancellation signal; once set the commit is
                abandoned and rolled back

        Raises:
            OperationCanceledError: cancel_event was set before commit
            DataLayerError: Any storage failure (original error as __cause__)
            UnitOfWorkClosedError: The unit of work was already closed
        """
        session = self.session
        pending = _describe_pending(session)
        self._state = UnitOfWorkState.COMMITTING

        try:
            _raise_if_canceled(cancel_event)
            await _cancellable(session.connection(), cancel_event)
            await _cancellable(session.flush(), cancel_event)
            _raise_if_canceled(cancel_event)
            await session.commit()
        except (OperationCanceledError, asyncio.CancelledError):
            await self._rollback_session(session)
            logger.warning("%s - Pending: %s", _CANCELED_INFO, pending)
            raise
        except Exception as e:
            await self._rollback_session(session)
            logger.error(
                "%s - Pending: %s - Exception: %s",
                _ROLLBACK_INFO,
                pending,
                e,
                exc_info=True,
            )
            raise DataLayerError(_ROLLBACK_INFO) from e
        else:
            self._state = UnitOfWorkState.COMMITTED
        finally:
            await self._release_connection(session)

    async def close(self) -> None:
        """Release the session. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        session, self._session = self._session, None
        self._repositories.clear()
        if session is not None:
            await session.close()

    def _ensure_open(self) -> None:
        if self._closed:
            raise UnitOfWorkClosedError("UnitOfWork was used after it was closed")

    def _has_pending_changes(self) -> bool:
        session = self._session
        return bool(len(session.new) or len(session.dirty) or len(session.deleted))

    async def _rollback_session(self, session: AsyncSession) -> None:
        self._state = UnitOfWorkState.ROLLED_BACK
        try:
            await session.rollback()
        except SQLAlchemyError:
            # The pending transaction is discarded with the connection below.
            logger.exception("Rollback failed in %s", _METHOD)

    async def _release_connection(self, session: AsyncSession) -> None:
        try:
            await session.close()
        except SQLAlchemyError:
            logger.exception("Failed to release connection in %s", _METHOD)
