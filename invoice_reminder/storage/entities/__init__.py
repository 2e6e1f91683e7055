"""Database entity models.

All SQLAlchemy ORM models for Invoice Reminder.
"""

from invoice_reminder.storage.entities.job_schedule import JobSchedule

__all__ = [
    "JobSchedule",
]
