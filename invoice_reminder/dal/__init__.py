"""Data Access Layer for Invoice Reminder.

Repositories stage changes; the UnitOfWork commits them atomically.
"""

from invoice_reminder.dal.base import BaseRepository
from invoice_reminder.dal.job_schedules import JobScheduleRepository
from invoice_reminder.dal.unit_of_work import (
    REPOSITORY_REGISTRY,
    UnitOfWork,
    UnitOfWorkState,
)

__all__ = [
    "BaseRepository",
    "JobScheduleRepository",
    "REPOSITORY_REGISTRY",
    "UnitOfWork",
    "UnitOfWorkState",
]
