"""Job bodies executed when scheduler triggers fire.

Job bodies never raise: a failing collaborator is logged and the trigger
keeps its future firings.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from invoice_reminder.checks import InvoiceCheck
    from invoice_reminder.services.job_schedules import JobScheduleAppService

logger = logging.getLogger(__name__)

JobBody = Callable[[], Awaitable[None]]


def _is_async_callable(func: Any) -> bool:
    while isinstance(func, functools.partial):
        func = func.func
    return inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
        getattr(func, "__call__", None)
    )


async def run_invoice_check(schedule_id: str, user_id: str, check: InvoiceCheck) -> None:
    """Execute one firing of a user's invoice check schedule.

    Called by APScheduler when the schedule's cron trigger fires.
    Synchronous checks run in a worker thread so they never block
    the event loop.
    """
    logger.info(
        "%s - job_schedule:%s [%s] triggered...",
        datetime.now(UTC).strftime("%H:%M:%S"),
        schedule_id,
        user_id,
    )

    try:
        if _is_async_callable(check):
            outcome = await check(user_id)
        else:
            outcome = await asyncio.to_thread(check, user_id)
            if inspect.isawaitable(outcome):
                outcome = await outcome
    except asyncio.CancelledError:
        logger.warning("Invoice check for schedule %s was cancelled", schedule_id)
        raise
    except Exception as e:
        logger.exception(
            "Invoice check failed for schedule %s (user %s): %s",
            schedule_id,
            user_id,
            e,
        )
        return

    logger.info("Invoice check for schedule %s completed: %s", schedule_id, outcome)


def build_invoice_check_job(schedule_id: str, user_id: str, check: InvoiceCheck) -> JobBody:
    """Bind a schedule's identity to the invoice check job body."""
    return functools.partial(run_invoice_check, schedule_id, user_id, check)


async def run_reconcile(service: JobScheduleAppService) -> None:
    """Re-sync live triggers with the job_schedule table.

    Called periodically by APScheduler so that schedules written by other
    processes (API replicas, the CLI) become live.
    """
    try:
        await service.reconcile()
    except Exception as e:
        logger.exception("Periodic schedule reconcile failed: %s", e)
