"""Invoice Reminder: per-user cron scheduling of invoice checks.

Each user registers one or more recurring "check my invoices" schedules.
Schedules are persisted in SQL and mirrored as live APScheduler triggers.
"""

__version__ = "0.1.0"
