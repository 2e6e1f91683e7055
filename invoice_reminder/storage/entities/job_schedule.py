"""JobSchedule model: one user's recurring invoice check.

Each row is mirrored by exactly one live cron trigger in the scheduler
runtime once bootstrap has completed.
"""

from __future__ import annotations

from sqlalchemy import Boolean, String, true
from sqlalchemy.orm import Mapped, mapped_column

from invoice_reminder.storage.models import Base, TimestampMixin, UUIDMixin


class JobSchedule(UUIDMixin, TimestampMixin, Base):
    """Recurring "check my invoices" schedule owned by a user."""

    __tablename__ = "job_schedule"

    user_id: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
        index=True,
        doc="Owner of the schedule (many schedules per user are allowed)",
    )
    cron_expression: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        doc="Quartz-style cron, e.g. '0 0/5 * * * ?' (second minute hour dom month dow)",
    )
    enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=true(),
        doc="Paused schedules keep their trigger registered but never fire",
    )

    def __repr__(self) -> str:
        return (
            f"<JobSchedule {str(self.id)[:8]} "
            f"user={str(self.user_id)[:8]} cron={self.cron_expression!r} "
            f"enabled={self.enabled}>"
        )
