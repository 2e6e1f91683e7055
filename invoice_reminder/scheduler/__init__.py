"""Scheduler package: live cron triggers for invoice check schedules."""

from invoice_reminder.scheduler.cron import (
    is_valid_cron_expression,
    next_fire_times,
    parse_cron_expression,
)
from invoice_reminder.scheduler.jobs import build_invoice_check_job, run_invoice_check
from invoice_reminder.scheduler.runtime import (
    JOB_ID_PREFIX,
    LiveTrigger,
    SchedulerRuntime,
    schedule_job_id,
)

__all__ = [
    "JOB_ID_PREFIX",
    "LiveTrigger",
    "SchedulerRuntime",
    "build_invoice_check_job",
    "is_valid_cron_expression",
    "next_fire_times",
    "parse_cron_expression",
    "run_invoice_check",
    "schedule_job_id",
]
