"""Application services: the boundary between callers and the core.

Services validate input, persist through a UnitOfWork, keep the scheduler
runtime in step and report outcomes as Result values.
"""

from invoice_reminder.services.base import BaseAppService
from invoice_reminder.services.job_schedules import (
    BootstrapOptions,
    BootstrapReport,
    JobScheduleAppService,
)
from invoice_reminder.services.result import Result
from invoice_reminder.services.view_models import (
    JobScheduleViewModel,
    to_entity,
    to_view_model,
)

__all__ = [
    "BaseAppService",
    "BootstrapOptions",
    "BootstrapReport",
    "JobScheduleAppService",
    "JobScheduleViewModel",
    "Result",
    "to_entity",
    "to_view_model",
]
