"""APScheduler-based runtime: one live cron trigger per job schedule.

Uses APScheduler 3.x with AsyncIOScheduler. The runtime holds no state
across restarts; the application service re-registers every persisted
schedule at startup (bootstrap) and keeps triggers in step with the
job_schedule table afterwards.

Triggers fire on the event loop as independent tasks, so a slow invoice
check never delays another schedule, and the administrative calls below
(register/replace/unregister/pause/resume) never wait on a running job.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_MAX_INSTANCES,
    EVENT_JOB_MISSED,
    JobEvent,
)
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from invoice_reminder.exceptions import SchedulerError
from invoice_reminder.scheduler.cron import parse_cron_expression
from invoice_reminder.settings import Settings

logger = logging.getLogger(__name__)

JOB_ID_PREFIX = "job_schedule:"


def schedule_job_id(schedule_id: str) -> str:
    """APScheduler job id for a schedule."""
    return f"{JOB_ID_PREFIX}{schedule_id}"


@dataclass(frozen=True)
class LiveTrigger:
    """Snapshot of a registered trigger."""

    schedule_id: str
    cron_expression: str
    owner_id: str | None
    paused: bool
    next_fire_time: datetime | None


@dataclass
class _Entry:
    cron_expression: str
    owner_id: str | None
    paused: bool


class _KeyedLocks:
    """Per-key locks that are dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._slots: dict[str, list[Any]] = {}  # key -> [lock, holders]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            slot = self._slots.setdefault(key, [threading.Lock(), 0])
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with self._guard:
                slot[1] -= 1
                if slot[1] == 0:
                    del self._slots[key]


class SchedulerRuntime:
    """Registry mapping schedule ids to live APScheduler cron jobs.

    Lifecycle:
        runtime = SchedulerRuntime.from_settings(settings)
        await runtime.start()     # Called at process startup
        ...
        await runtime.stop()      # Called at shutdown

    All mutation methods are safe to call concurrently; check-then-act
    sequences for one schedule id are serialized by a per-id lock.
    """

    def __init__(
        self,
        *,
        timezone: str = "UTC",
        misfire_grace_seconds: int = 300,
        max_instances: int = 1,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self.timezone = timezone
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone)
        self._job_options: dict[str, Any] = {
            "misfire_grace_time": misfire_grace_seconds,
            "coalesce": True,
            "max_instances": max_instances,
        }
        self._entries: dict[str, _Entry] = {}
        self._locks = _KeyedLocks()
        self._running = False
        self._scheduler.add_listener(
            self._on_job_event,
            EVENT_JOB_ERROR | EVENT_JOB_MISSED | EVENT_JOB_MAX_INSTANCES,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> SchedulerRuntime:
        return cls(
            timezone=settings.scheduler_timezone,
            misfire_grace_seconds=settings.scheduler_misfire_grace_seconds,
            max_instances=settings.scheduler_job_max_instances,
        )

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start firing triggers. Must be called from the event loop."""
        if self._running:
            return
        self._scheduler.start()
        self._running = True
        logger.info("Scheduler started")

    async def stop(self) -> None:
        """Gracefully shut down the scheduler without waiting for running jobs.

        All jobs are dropped so a later start() begins empty, matching the
        cleared trigger table.
        """
        if self._running:
            self._scheduler.remove_all_jobs()
            self._scheduler.shutdown(wait=False)
            # AsyncIOScheduler defers shutdown to the loop; let it run
            await asyncio.sleep(0)
            self._running = False
            self._entries.clear()
            logger.info("Scheduler stopped")

    def register(
        self,
        schedule_id: str,
        cron_expression: str,
        job_body: Callable[..., Any],
        *,
        owner_id: str | None = None,
        paused: bool = False,
    ) -> LiveTrigger:
        """Create (or overwrite) the live trigger of a schedule.

        Args:
            schedule_id: Persisted schedule id
            cron_expression: Quartz-style cron expression
            job_body: Callable invoked on every firing
            owner_id: User owning the schedule (for lookups and job names)
            paused: Register the trigger without arming it

        Raises:
            InvalidScheduleError: The cron expression cannot be parsed
            SchedulerError: APScheduler rejected the job
        """
        trigger = parse_cron_expression(cron_expression, self.timezone)

        with self._locks.hold(schedule_id):
            self._add_job(schedule_id, trigger, job_body, owner_id=owner_id, paused=paused)
            self._entries[schedule_id] = _Entry(cron_expression, owner_id, paused)

        logger.info(
            "Registered trigger %s (%s)%s",
            schedule_job_id(schedule_id),
            cron_expression,
            " [paused]" if paused else "",
        )
        return self._snapshot(schedule_id)

    def replace(
        self,
        schedule_id: str,
        cron_expression: str,
        job_body: Callable[..., Any] | None = None,
        *,
        owner_id: str | None = None,
    ) -> LiveTrigger:
        """Swap a schedule's trigger for a new cron expression.

        The new expression is parsed before the live trigger is touched, and
        the swap happens on the existing job, so the schedule always has
        exactly one trigger. A schedule without a live trigger is registered
        when ``job_body`` is given. ``owner_id`` replaces the recorded owner
        when given.

        Raises:
            InvalidScheduleError: The new expression cannot be parsed (the
                old trigger stays live)
            SchedulerError: No live trigger exists and no job_body was given
        """
        trigger = parse_cron_expression(cron_expression, self.timezone)
        job_id = schedule_job_id(schedule_id)

        with self._locks.hold(schedule_id):
            entry = self._entries.get(schedule_id)
            paused = entry.paused if entry else False
            if owner_id is None and entry is not None:
                owner_id = entry.owner_id

            if self._scheduler.get_job(job_id) is None:
                if job_body is None:
                    raise SchedulerError(
                        f"No live trigger for schedule {schedule_id}",
                        schedule_id=schedule_id,
                    )
                self._add_job(schedule_id, trigger, job_body, owner_id=owner_id, paused=paused)
            else:
                changes: dict[str, Any] = {
                    "trigger": trigger,
                    "name": f"invoice_check:{owner_id or schedule_id}",
                }
                if job_body is not None:
                    changes["func"] = job_body
                if not paused:
                    changes["next_run_time"] = trigger.get_next_fire_time(
                        None, datetime.now(trigger.timezone)
                    )
                try:
                    self._scheduler.modify_job(job_id, **changes)
                except (JobLookupError, ValueError, TypeError) as e:
                    raise SchedulerError(
                        f"Failed to replace trigger {job_id}: {e}",
                        schedule_id=schedule_id,
                    ) from e

            self._entries[schedule_id] = _Entry(cron_expression, owner_id, paused)

        logger.info("Replaced trigger %s (%s)", job_id, cron_expression)
        return self._snapshot(schedule_id)

    def unregister(self, schedule_id: str) -> bool:
        """Remove a schedule's trigger. Absent triggers are not an error.

        Returns:
            True if a live trigger was removed
        """
        job_id = schedule_job_id(schedule_id)
        with self._locks.hold(schedule_id):
            self._entries.pop(schedule_id, None)
            try:
                self._scheduler.remove_job(job_id)
            except JobLookupError:
                logger.debug("No live trigger %s to remove", job_id)
                return False

        logger.info("Removed trigger %s", job_id)
        return True

    def pause(self, schedule_id: str) -> LiveTrigger:
        """Keep a trigger registered but stop it from firing."""
        return self._set_paused(schedule_id, True)

    def resume(self, schedule_id: str) -> LiveTrigger:
        """Re-arm a paused trigger from the next matching time."""
        return self._set_paused(schedule_id, False)

    def get_trigger(self, schedule_id: str) -> LiveTrigger | None:
        """Snapshot of a schedule's live trigger, or None when dormant."""
        return self._snapshot(schedule_id)

    def list_triggers(self, owner_id: str | None = None) -> list[LiveTrigger]:
        """Snapshots of live schedule triggers, optionally for one owner."""
        triggers = []
        for job in self._scheduler.get_jobs():
            if not job.id.startswith(JOB_ID_PREFIX):
                continue
            schedule_id = job.id[len(JOB_ID_PREFIX) :]
            entry = self._entries.get(schedule_id)
            if entry is None:
                continue
            if owner_id is not None and entry.owner_id != owner_id:
                continue
            triggers.append(self._to_live_trigger(schedule_id, entry, job))
        return triggers

    def trigger_count(self, owner_id: str | None = None) -> int:
        return len(self.list_triggers(owner_id))

    def schedule_ids(self) -> set[str]:
        """Ids of every schedule with a live trigger."""
        return {t.schedule_id for t in self.list_triggers()}

    def add_interval_job(
        self,
        job_id: str,
        func: Callable[..., Any],
        *,
        minutes: int,
        args: list[Any] | None = None,
    ) -> None:
        """Register an internal housekeeping job (not a schedule trigger)."""
        if job_id.startswith(JOB_ID_PREFIX):
            raise ValueError(f"Job id prefix {JOB_ID_PREFIX!r} is reserved for schedules")

        self._scheduler.add_job(
            func,
            trigger=IntervalTrigger(minutes=minutes, timezone=self.timezone),
            id=job_id,
            args=args or [],
            replace_existing=True,
            name=job_id,
            misfire_grace_time=self._job_options["misfire_grace_time"],
            coalesce=True,
            max_instances=1,
        )
        logger.info("Housekeeping job %s scheduled every %d minutes", job_id, minutes)

    def _add_job(
        self,
        schedule_id: str,
        trigger: Any,
        job_body: Callable[..., Any],
        *,
        owner_id: str | None,
        paused: bool,
    ) -> None:
        job_id = schedule_job_id(schedule_id)
        extra: dict[str, Any] = {}
        if paused:
            # next_run_time=None adds the job already paused
            extra["next_run_time"] = None
        if not self._scheduler.running and self._scheduler.get_job(job_id) is not None:
            # Pending jobs are queued as-is until start(), so replace_existing
            # would leave a duplicate behind.
            self._scheduler.remove_job(job_id)
        try:
            self._scheduler.add_job(
                job_body,
                trigger=trigger,
                id=job_id,
                name=f"invoice_check:{owner_id or schedule_id}",
                replace_existing=True,
                **self._job_options,
                **extra,
            )
        except (ValueError, TypeError) as e:
            raise SchedulerError(
                f"Failed to register trigger {job_id}: {e}",
                schedule_id=schedule_id,
            ) from e

    def _set_paused(self, schedule_id: str, paused: bool) -> LiveTrigger:
        job_id = schedule_job_id(schedule_id)
        with self._locks.hold(schedule_id):
            entry = self._entries.get(schedule_id)
            try:
                if paused:
                    self._scheduler.pause_job(job_id)
                else:
                    self._scheduler.resume_job(job_id)
            except JobLookupError as e:
                raise SchedulerError(
                    f"No live trigger for schedule {schedule_id}",
                    schedule_id=schedule_id,
                ) from e
            if entry is not None:
                entry.paused = paused

        logger.info("%s trigger %s", "Paused" if paused else "Resumed", job_id)
        return self._snapshot(schedule_id)

    def _snapshot(self, schedule_id: str) -> LiveTrigger | None:
        entry = self._entries.get(schedule_id)
        if entry is None:
            return None
        job = self._scheduler.get_job(schedule_job_id(schedule_id))
        if job is None:
            return None
        return self._to_live_trigger(schedule_id, entry, job)

    @staticmethod
    def _to_live_trigger(schedule_id: str, entry: _Entry, job: Any) -> LiveTrigger:
        return LiveTrigger(
            schedule_id=schedule_id,
            cron_expression=entry.cron_expression,
            owner_id=entry.owner_id,
            paused=entry.paused,
            # Jobs added before start() have no next_run_time yet
            next_fire_time=getattr(job, "next_run_time", None),
        )

    def _on_job_event(self, event: JobEvent) -> None:
        if event.code == EVENT_JOB_MISSED:
            logger.warning(
                "Job %s missed its fire time %s",
                event.job_id,
                getattr(event, "scheduled_run_time", None),
            )
        elif event.code == EVENT_JOB_MAX_INSTANCES:
            logger.warning("Job %s skipped: previous run still in progress", event.job_id)
        elif event.code == EVENT_JOB_ERROR:
            logger.error(
                "Job %s raised: %s",
                event.job_id,
                getattr(event, "exception", None),
            )
