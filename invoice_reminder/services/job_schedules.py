"""Job schedule application service.

Keeps the job_schedule table and the scheduler runtime consistent:
every mutation is committed first and only then applied to the runtime,
under a per-schedule lock so that runtime changes for one schedule happen
in commit order.

When a trigger cannot be registered after its row was committed, the
write is compensated (the new row is deleted, or the previous values
restored) and the failure is returned. Cron syntax is checked before the
first commit, so compensation only covers runtime faults.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from invoice_reminder.dal.unit_of_work import UnitOfWork
from invoice_reminder.exceptions import (
    DataLayerError,
    EmptyResultError,
    InvalidScheduleError,
    ReminderError,
    SchedulerError,
    ValidationError,
)
from invoice_reminder.scheduler.cron import parse_cron_expression
from invoice_reminder.scheduler.jobs import JobBody, build_invoice_check_job
from invoice_reminder.scheduler.runtime import SchedulerRuntime
from invoice_reminder.services.base import EMPTY_RESULT, BaseAppService, null_argument
from invoice_reminder.services.result import Result
from invoice_reminder.services.view_models import (
    JobScheduleViewModel,
    to_entity,
    to_view_model,
)
from invoice_reminder.settings import Settings
from invoice_reminder.storage.entities.job_schedule import JobSchedule

logger = logging.getLogger(__name__)

CRON_EXPRESSION_MAX_LENGTH = 255


@dataclass(frozen=True)
class BootstrapOptions:
    """Whether this process should load persisted schedules at startup."""

    enabled: bool = True
    reason: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> BootstrapOptions:
        if not settings.scheduler_enabled:
            return cls(enabled=False, reason="scheduler disabled via settings")
        if settings.reminder_role == "api":
            return cls(enabled=False, reason=f"REMINDER_ROLE={settings.reminder_role}")
        if settings.environment == "testing":
            return cls(enabled=False, reason="testing environment")
        return cls()


@dataclass
class BootstrapReport:
    """Outcome of a bootstrap or reconcile pass."""

    registered: list[str] = field(default_factory=list)
    replaced: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    suppressed: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.registered or self.replaced or self.removed)


class _ScheduleLocks:
    """asyncio locks keyed by schedule id, dropped when unused."""

    def __init__(self) -> None:
        self._slots: dict[str, list[Any]] = {}  # id -> [lock, holders]

    @asynccontextmanager
    async def hold(self, schedule_id: str) -> AsyncIterator[None]:
        slot = self._slots.setdefault(schedule_id, [asyncio.Lock(), 0])
        slot[1] += 1
        try:
            async with slot[0]:
                yield
        finally:
            slot[1] -= 1
            if slot[1] == 0:
                del self._slots[schedule_id]


def _require_text(value: str | None, parameter: str) -> str:
    if value is None or not str(value).strip():
        raise null_argument(parameter)
    return str(value).strip()


def _require_uuid(value: str | None, parameter: str) -> str:
    text = _require_text(value, parameter)
    try:
        return str(uuid.UUID(text))
    except ValueError:
        raise ValidationError(
            f"{parameter} must be a UUID, got {text!r}", parameter=parameter
        ) from None


class JobScheduleAppService(BaseAppService[JobSchedule, JobScheduleViewModel]):
    """Add, update, remove and bootstrap per-user invoice check schedules."""

    entity_type = JobSchedule
    entity_name = "JobSchedule"

    def __init__(
        self,
        unit_of_work_factory: Callable[[], UnitOfWork],
        runtime: SchedulerRuntime,
        invoice_check: Any,
        *,
        to_entity: Callable[[JobScheduleViewModel], JobSchedule] = to_entity,
        to_view_model: Callable[[JobSchedule], JobScheduleViewModel] = to_view_model,
    ):
        super().__init__(
            unit_of_work_factory,
            to_entity=to_entity,
            to_view_model=to_view_model,
        )
        self._runtime = runtime
        self._invoice_check = invoice_check
        self._locks = _ScheduleLocks()

    @property
    def runtime(self) -> SchedulerRuntime:
        return self._runtime

    def _job_body(self, schedule: JobSchedule) -> JobBody:
        return build_invoice_check_job(schedule.id, schedule.user_id, self._invoice_check)

    def _check_cron(self, cron_expression: str | None) -> str:
        cron_expression = _require_text(cron_expression, "cronExpression")
        if len(cron_expression) > CRON_EXPRESSION_MAX_LENGTH:
            raise ValidationError(
                f"cronExpression is longer than {CRON_EXPRESSION_MAX_LENGTH} characters",
                parameter="cronExpression",
            )
        parse_cron_expression(cron_expression, self._runtime.timezone)
        return cron_expression

    # Generic operations are routed through the schedule-aware ones so the
    # runtime never drifts from the table.

    async def add(
        self,
        view_model: JobScheduleViewModel | None,
        cancel_event: asyncio.Event | None = None,
    ) -> Result[JobScheduleViewModel]:
        if view_model is None:
            return Result.failure(null_argument("viewModel"))
        return await self.add_schedule(
            view_model.user_id,
            view_model.cron_expression,
            enabled=view_model.enabled,
            cancel_event=cancel_event,
        )

    async def update(
        self,
        view_model: JobScheduleViewModel | None,
        cancel_event: asyncio.Event | None = None,
    ) -> Result[JobScheduleViewModel]:
        return await self.update_schedule(view_model, cancel_event=cancel_event)

    async def remove(
        self,
        view_model: JobScheduleViewModel | None,
        cancel_event: asyncio.Event | None = None,
    ) -> Result[None]:
        return await self.remove_schedule(view_model, cancel_event=cancel_event)

    async def add_schedule(
        self,
        user_id: str | None,
        cron_expression: str | None,
        *,
        enabled: bool = True,
        cancel_event: asyncio.Event | None = None,
    ) -> Result[JobScheduleViewModel]:
        """Persist a new schedule and make its trigger live.

        Returns:
            Success with the stored schedule (id and timestamps assigned), or
            a failure carrying ValidationError, InvalidScheduleError,
            DataLayerError, OperationCanceledError or SchedulerError
        """
        try:
            user_id = _require_uuid(user_id, "userId")
            cron_expression = self._check_cron(cron_expression)
        except (ValidationError, InvalidScheduleError) as e:
            logger.debug("Rejected new schedule: %s", e)
            return Result.failure(e)

        schedule = self._to_entity(
            JobScheduleViewModel(
                id=str(uuid.uuid4()),
                user_id=user_id,
                cron_expression=cron_expression,
                enabled=enabled,
            )
        )

        async with self._locks.hold(schedule.id):
            try:
                async with self._unit_of_work() as uow:
                    uow.repository(JobSchedule).add(schedule)
                    await uow.save_changes(cancel_event)
            except ReminderError as e:
                return Result.failure(e)

            try:
                self._runtime.register(
                    schedule.id,
                    schedule.cron_expression,
                    self._job_body(schedule),
                    owner_id=schedule.user_id,
                    paused=not schedule.enabled,
                )
            except ReminderError as e:
                logger.error(
                    "Trigger registration failed for schedule %s, removing the new row: %s",
                    schedule.id,
                    e,
                )
                await self._delete_row(schedule.id)
                return Result.failure(e)

        logger.info(
            "Added schedule %s for user %s (%s)",
            schedule.id,
            schedule.user_id,
            schedule.cron_expression,
        )
        return Result.success(self._to_view_model(schedule))

    async def update_schedule(
        self,
        schedule: JobScheduleViewModel | None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> Result[JobScheduleViewModel]:
        """Persist a new cron expression (and owner) and swap the live trigger.

        The old trigger keeps firing until the new one is in place.
        """
        try:
            if schedule is None:
                raise null_argument("schedule")
            schedule_id = _require_text(schedule.id, "id")
            user_id = _require_uuid(schedule.user_id, "userId")
            cron_expression = self._check_cron(schedule.cron_expression)
        except (ValidationError, InvalidScheduleError) as e:
            logger.debug("Rejected schedule update: %s", e)
            return Result.failure(e)

        async with self._locks.hold(schedule_id):
            try:
                async with self._unit_of_work() as uow:
                    stored = await uow.repository(JobSchedule).get_by_id(schedule_id)
                    if stored is None:
                        return Result.failure(self._not_found(schedule_id))
                    previous = {
                        "cron_expression": stored.cron_expression,
                        "user_id": stored.user_id,
                    }
                    stored.user_id = user_id
                    stored.cron_expression = cron_expression
                    await uow.save_changes(cancel_event)
            except ReminderError as e:
                return Result.failure(e)

            try:
                self._runtime.replace(
                    stored.id,
                    stored.cron_expression,
                    self._job_body(stored),
                    owner_id=stored.user_id,
                )
            except ReminderError as e:
                logger.error(
                    "Trigger replacement failed for schedule %s, restoring %s: %s",
                    schedule_id,
                    previous,
                    e,
                )
                await self._restore(schedule_id, **previous)
                return Result.failure(e)

        logger.info("Updated schedule %s (%s)", stored.id, stored.cron_expression)
        return Result.success(self._to_view_model(stored))

    async def remove_schedule(
        self,
        schedule: JobScheduleViewModel | str | None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> Result[None]:
        """Delete a schedule, then unregister its trigger."""
        schedule_id = schedule if isinstance(schedule, str) or schedule is None else schedule.id
        try:
            schedule_id = _require_text(schedule_id, "schedule")
        except ValidationError as e:
            return Result.failure(e)

        async with self._locks.hold(schedule_id):
            try:
                async with self._unit_of_work() as uow:
                    repo = uow.repository(JobSchedule)
                    stored = await repo.get_by_id(schedule_id)
                    if stored is None:
                        return Result.failure(self._not_found(schedule_id))
                    await repo.remove(stored)
                    await uow.save_changes(cancel_event)
            except ReminderError as e:
                return Result.failure(e)

            self._runtime.unregister(schedule_id)

        logger.info("Removed schedule %s", schedule_id)
        return Result.success()

    async def get_by_user_id(self, user_id: str | None) -> Result[list[JobScheduleViewModel]]:
        """All schedules of a user. No schedules is reported as a failure."""
        try:
            user_id = _require_uuid(user_id, "userId")
            async with self._unit_of_work() as uow:
                schedules = await uow.repository(JobSchedule).get_by_user_id(user_id)
        except ReminderError as e:
            return Result.failure(e)

        if not schedules:
            return Result.failure(
                EmptyResultError(EMPTY_RESULT, entity=self.entity_name, identifier=user_id)
            )
        return Result.success([self._to_view_model(s) for s in schedules])

    async def pause_schedule(
        self, schedule_id: str | None, *, cancel_event: asyncio.Event | None = None
    ) -> Result[JobScheduleViewModel]:
        """Keep a schedule but stop its trigger from firing."""
        return await self._set_enabled(schedule_id, False, cancel_event)

    async def resume_schedule(
        self, schedule_id: str | None, *, cancel_event: asyncio.Event | None = None
    ) -> Result[JobScheduleViewModel]:
        """Re-arm a paused schedule from its next matching time."""
        return await self._set_enabled(schedule_id, True, cancel_event)

    async def bootstrap(self, options: BootstrapOptions) -> BootstrapReport:
        """Register a live trigger for every persisted schedule.

        Called once at process start. Rows whose trigger cannot be built are
        logged and skipped; the rest are still registered.

        Raises:
            DataLayerError: The schedules could not be loaded
        """
        report = BootstrapReport()
        if not options.enabled:
            logger.info("Schedule bootstrap skipped: %s", options.reason)
            report.suppressed = True
            return report

        async with self._unit_of_work() as uow:
            schedules = await uow.repository(JobSchedule).get_all()

        for schedule in schedules:
            async with self._locks.hold(schedule.id):
                try:
                    self._register(schedule)
                except (InvalidScheduleError, SchedulerError) as e:
                    logger.error(
                        "Skipping schedule %s (%r) at bootstrap: %s",
                        schedule.id,
                        schedule.cron_expression,
                        e,
                    )
                    report.skipped[schedule.id] = str(e)
                    continue
            report.registered.append(schedule.id)

        logger.info(
            "Bootstrap registered %d schedule(s), skipped %d",
            len(report.registered),
            len(report.skipped),
        )
        return report

    async def reconcile(self) -> BootstrapReport:
        """Sync live triggers with the job_schedule table.

        Registers triggers for rows that have none, replaces triggers whose
        cron expression or owner drifted, aligns pause state and removes
        triggers whose row is gone. Each schedule is re-read under its lock
        so a concurrent add/update/remove is never undone.
        """
        report = BootstrapReport()
        try:
            async with self._unit_of_work() as uow:
                listed = {s.id for s in await uow.repository(JobSchedule).get_all()}
        except DataLayerError as e:
            logger.warning("Could not load job schedules: %s", e)
            return report

        for schedule_id in sorted(listed | self._runtime.schedule_ids()):
            async with self._locks.hold(schedule_id):
                try:
                    await self._reconcile_one(schedule_id, report)
                except (InvalidScheduleError, SchedulerError, DataLayerError) as e:
                    logger.error("Could not reconcile schedule %s: %s", schedule_id, e)
                    report.skipped[schedule_id] = str(e)

        if report.changed:
            logger.info(
                "Reconcile: %d registered, %d replaced, %d removed",
                len(report.registered),
                len(report.replaced),
                len(report.removed),
            )
        return report

    async def _reconcile_one(self, schedule_id: str, report: BootstrapReport) -> None:
        stored = await self._load(schedule_id)
        live = self._runtime.get_trigger(schedule_id)

        if stored is None:
            if self._runtime.unregister(schedule_id):
                logger.info("Removed stale trigger for schedule %s", schedule_id)
                report.removed.append(schedule_id)
            return

        if live is None:
            self._register(stored)
            report.registered.append(schedule_id)
            return

        if live.cron_expression != stored.cron_expression or live.owner_id != stored.user_id:
            self._runtime.replace(
                schedule_id,
                stored.cron_expression,
                self._job_body(stored),
                owner_id=stored.user_id,
            )
            report.replaced.append(schedule_id)

        if live.paused == stored.enabled:
            if stored.enabled:
                self._runtime.resume(schedule_id)
            else:
                self._runtime.pause(schedule_id)
            if schedule_id not in report.replaced:
                report.replaced.append(schedule_id)

    async def _set_enabled(
        self,
        schedule_id: str | None,
        enabled: bool,
        cancel_event: asyncio.Event | None,
    ) -> Result[JobScheduleViewModel]:
        try:
            schedule_id = _require_text(schedule_id, "id")
        except ValidationError as e:
            return Result.failure(e)

        async with self._locks.hold(schedule_id):
            try:
                async with self._unit_of_work() as uow:
                    stored = await uow.repository(JobSchedule).get_by_id(schedule_id)
                    if stored is None:
                        return Result.failure(self._not_found(schedule_id))
                    stored.enabled = enabled
                    await uow.save_changes(cancel_event)
            except ReminderError as e:
                return Result.failure(e)

            try:
                if self._runtime.get_trigger(schedule_id) is None:
                    self._register(stored)
                elif enabled:
                    self._runtime.resume(schedule_id)
                else:
                    self._runtime.pause(schedule_id)
            except ReminderError as e:
                logger.error(
                    "Could not %s schedule %s: %s",
                    "resume" if enabled else "pause",
                    schedule_id,
                    e,
                )
                await self._restore(schedule_id, enabled=not enabled)
                return Result.failure(e)

        logger.info("%s schedule %s", "Resumed" if enabled else "Paused", schedule_id)
        return Result.success(self._to_view_model(stored))

    def _register(self, schedule: JobSchedule) -> None:
        self._runtime.register(
            schedule.id,
            schedule.cron_expression,
            self._job_body(schedule),
            owner_id=schedule.user_id,
            paused=not schedule.enabled,
        )

    async def _load(self, schedule_id: str) -> JobSchedule | None:
        async with self._unit_of_work() as uow:
            return await uow.repository(JobSchedule).get_by_id(schedule_id)

    async def _delete_row(self, schedule_id: str) -> None:
        try:
            async with self._unit_of_work() as uow:
                repo = uow.repository(JobSchedule)
                stored = await repo.get_by_id(schedule_id)
                if stored is not None:
                    await repo.remove(stored)
                    await uow.save_changes()
        except ReminderError:
            logger.exception(
                "Could not remove schedule %s; it stays dormant until the next reconcile",
                schedule_id,
            )

    async def _restore(self, schedule_id: str, **values: Any) -> None:
        try:
            async with self._unit_of_work() as uow:
                stored = await uow.repository(JobSchedule).get_by_id(schedule_id)
                if stored is None:
                    return
                for key, value in values.items():
                    setattr(stored, key, value)
                await uow.save_changes()
        except ReminderError:
            logger.exception("Could not restore schedule %s to %s", schedule_id, values)
