"""Transport shapes for job schedules and their entity mappings."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from invoice_reminder.storage.entities.job_schedule import JobSchedule


class JobScheduleViewModel(BaseModel):
    """Schedule as seen by callers of the application service."""

    model_config = ConfigDict(from_attributes=True)

    id: str | None = None
    user_id: str
    cron_expression: str = Field(max_length=255)
    enabled: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


def to_view_model(entity: JobSchedule) -> JobScheduleViewModel:
    return JobScheduleViewModel.model_validate(entity)


def to_entity(view_model: JobScheduleViewModel) -> JobSchedule:
    """Build a detached entity; timestamps stay owned by the persistence layer."""
    entity = JobSchedule(
        user_id=view_model.user_id,
        cron_expression=view_model.cron_expression,
        enabled=view_model.enabled,
    )
    if view_model.id:
        entity.id = view_model.id
    return entity
