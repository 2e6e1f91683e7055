"""Generic application service over an entity and its view model.

Each operation runs in its own UnitOfWork and reports its outcome as a
Result: ReminderError subclasses become failures, anything else
propagates.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Generic, TypeVar

from invoice_reminder.dal.unit_of_work import UnitOfWork
from invoice_reminder.exceptions import (
    EmptyResultError,
    NotFoundError,
    ReminderError,
    ValidationError,
)
from invoice_reminder.services.result import Result

logger = logging.getLogger(__name__)

TEntity = TypeVar("TEntity")
TViewModel = TypeVar("TViewModel")

UnitOfWorkFactory = Callable[[], UnitOfWork]

EMPTY_RESULT = "Empty Result."


def null_argument(parameter: str) -> ValidationError:
    return ValidationError(
        f"Value cannot be null or empty. (Parameter '{parameter}')",
        parameter=parameter,
    )


class BaseAppService(Generic[TEntity, TViewModel]):
    """Shared CRUD over one entity type.

    Subclasses set ``entity_type``. The entity/view-model mapping is passed
    in explicitly so it can be swapped in tests.
    """

    entity_type: type[TEntity]
    entity_name: str = "entity"

    def __init__(
        self,
        unit_of_work_factory: UnitOfWorkFactory,
        *,
        to_entity: Callable[[TViewModel], TEntity],
        to_view_model: Callable[[TEntity], TViewModel],
    ):
        self._unit_of_work = unit_of_work_factory
        self._to_entity = to_entity
        self._to_view_model = to_view_model

    async def add(
        self, view_model: TViewModel | None, cancel_event: asyncio.Event | None = None
    ) -> Result[TViewModel]:
        if view_model is None:
            return Result.failure(null_argument("viewModel"))
        try:
            async with self._unit_of_work() as uow:
                entity = uow.repository(self.entity_type).add(self._to_entity(view_model))
                await uow.save_changes(cancel_event)
        except ReminderError as e:
            return Result.failure(e)
        return Result.success(self._to_view_model(entity))

    async def update(
        self, view_model: TViewModel | None, cancel_event: asyncio.Event | None = None
    ) -> Result[TViewModel]:
        if view_model is None:
            return Result.failure(null_argument("viewModel"))
        entity = self._to_entity(view_model)
        try:
            async with self._unit_of_work() as uow:
                repo = uow.repository(self.entity_type)
                if await repo.get_by_id(entity.id) is None:
                    return Result.failure(self._not_found(entity.id))
                entity = await repo.update(entity)
                await uow.save_changes(cancel_event)
        except ReminderError as e:
            return Result.failure(e)
        return Result.success(self._to_view_model(entity))

    async def remove(
        self, view_model: TViewModel | None, cancel_event: asyncio.Event | None = None
    ) -> Result[None]:
        if view_model is None:
            return Result.failure(null_argument("viewModel"))
        entity_id = getattr(view_model, "id", None)
        try:
            async with self._unit_of_work() as uow:
                repo = uow.repository(self.entity_type)
                entity = await repo.get_by_id(entity_id) if entity_id else None
                if entity is None:
                    return Result.failure(self._not_found(entity_id))
                await repo.remove(entity)
                await uow.save_changes(cancel_event)
        except ReminderError as e:
            return Result.failure(e)
        return Result.success()

    async def get_by_id(self, entity_id: str | None) -> Result[TViewModel]:
        if not entity_id:
            return Result.failure(null_argument("id"))
        try:
            async with self._unit_of_work() as uow:
                entity = await uow.repository(self.entity_type).get_by_id(entity_id)
        except ReminderError as e:
            return Result.failure(e)
        if entity is None:
            return Result.failure(self._not_found(entity_id))
        return Result.success(self._to_view_model(entity))

    async def get_all(self) -> Result[list[TViewModel]]:
        """Every stored entity. An empty store is reported as a failure."""
        try:
            async with self._unit_of_work() as uow:
                entities = await uow.repository(self.entity_type).get_all()
        except ReminderError as e:
            return Result.failure(e)
        if not entities:
            return Result.failure(EmptyResultError(EMPTY_RESULT, entity=self.entity_name))
        return Result.success([self._to_view_model(e) for e in entities])

    def _not_found(self, entity_id: str | None) -> NotFoundError:
        return NotFoundError(
            f"{self.entity_name} {entity_id} not found",
            entity=self.entity_name,
            identifier=entity_id,
        )
