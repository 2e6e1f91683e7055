"""Composition root.

Wires settings, storage, the scheduler runtime and the application
service explicitly. Nothing below this module reads global settings.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from invoice_reminder.checks import HttpInvoiceCheck, InvoiceCheck
from invoice_reminder.dal.unit_of_work import UnitOfWork
from invoice_reminder.scheduler.jobs import run_reconcile
from invoice_reminder.scheduler.runtime import SchedulerRuntime
from invoice_reminder.services.job_schedules import (
    BootstrapOptions,
    BootstrapReport,
    JobScheduleAppService,
)
from invoice_reminder.settings import Settings, get_settings

logger = logging.getLogger(__name__)

RECONCILE_JOB_ID = "reconcile:job_schedules"


@dataclass
class ReminderApp:
    """Running pieces of one invoice reminder process.

    Lifecycle:
        app = create_app()
        await app.start()    # start triggers, bootstrap, periodic reconcile
        ...
        await app.stop()
    """

    settings: Settings
    runtime: SchedulerRuntime
    service: JobScheduleAppService
    invoice_check: InvoiceCheck
    owns_invoice_check: bool = False
    owns_database: bool = False
    bootstrap_report: BootstrapReport | None = None

    async def start(self) -> BootstrapReport:
        """Start the scheduler and load persisted schedules.

        Respects REMINDER_ROLE: API-only processes persist schedules but never
        run triggers, so multi-replica deployments fire each job once.
        """
        if self.owns_database:
            from invoice_reminder.storage import init_db

            await init_db(self.settings)

        options = BootstrapOptions.from_settings(self.settings)
        if not options.enabled:
            self.bootstrap_report = await self.service.bootstrap(options)
            return self.bootstrap_report

        await self.runtime.start()
        try:
            self.bootstrap_report = await self.service.bootstrap(options)
        except Exception:
            await self.runtime.stop()
            raise

        interval = self.settings.scheduler_reconcile_interval_minutes
        if interval > 0:
            self.runtime.add_interval_job(
                RECONCILE_JOB_ID,
                run_reconcile,
                minutes=interval,
                args=[self.service],
            )
        return self.bootstrap_report

    async def stop(self) -> None:
        await self.runtime.stop()
        if self.owns_invoice_check:
            close = getattr(self.invoice_check, "close", None)
            if close is not None:
                await close()
        if self.owns_database:
            from invoice_reminder.storage import close_db

            await close_db()


def create_app(
    settings: Settings | None = None,
    invoice_check: InvoiceCheck | None = None,
    session_factory: Callable[[], AsyncSession] | None = None,
) -> ReminderApp:
    """Build a ReminderApp.

    Args:
        settings: Optional settings override (uses get_settings() if not provided)
        invoice_check: Collaborator run on every firing (defaults to the
            message service HTTP client)
        session_factory: Optional session factory (defaults to the
            process-wide factory for settings.database_url)
    """
    if settings is None:
        settings = get_settings()

    owns_database = session_factory is None
    if session_factory is None:
        from invoice_reminder.storage import get_session_factory

        session_factory = get_session_factory(settings)

    owns_invoice_check = invoice_check is None
    if invoice_check is None:
        invoice_check = HttpInvoiceCheck.from_settings(settings)

    runtime = SchedulerRuntime.from_settings(settings)
    service = JobScheduleAppService(
        functools.partial(UnitOfWork, session_factory),
        runtime,
        invoice_check,
    )
    return ReminderApp(
        settings=settings,
        runtime=runtime,
        service=service,
        invoice_check=invoice_check,
        owns_invoice_check=owns_invoice_check,
        owns_database=owns_database,
    )
