"""Invoice Reminder exception hierarchy.

Base exceptions for all application layers with correlation ID support.

Usage:
    from invoice_reminder.exceptions import DataLayerError, InvalidScheduleError

    try:
        await uow.save_changes()
    except DataLayerError as e:
        logger.error("Persist failed", extra={"correlation_id": e.correlation_id})
"""

import uuid


class ReminderError(Exception):
    """Base exception for all Invoice Reminder application errors.

    Carries a correlation_id for tracing errors across layers.
    """

    def __init__(self, message: str, *, correlation_id: str | None = None):
        self.correlation_id = correlation_id or str(uuid.uuid4())
        super().__init__(message)


class ValidationError(ReminderError):
    """Caller passed null, empty or malformed input."""

    def __init__(self, message: str, *, parameter: str | None = None, **kwargs):
        self.parameter = parameter
        super().__init__(message, **kwargs)


class NotFoundError(ReminderError):
    """Referenced record has no match in storage."""

    def __init__(
        self,
        message: str,
        *,
        entity: str | None = None,
        identifier: str | None = None,
        **kwargs,
    ):
        self.entity = entity
        self.identifier = identifier
        super().__init__(message, **kwargs)


class EmptyResultError(NotFoundError):
    """A read returned no rows. Empty reads are reported as failures."""

    pass


class InvalidScheduleError(ReminderError):
    """A cron expression could not be turned into a trigger."""

    def __init__(self, message: str, *, cron_expression: str | None = None, **kwargs):
        self.cron_expression = cron_expression
        super().__init__(message, **kwargs)


class SchedulerError(ReminderError):
    """Scheduler runtime failure unrelated to cron syntax."""

    def __init__(self, message: str, *, schedule_id: str | None = None, **kwargs):
        self.schedule_id = schedule_id
        super().__init__(message, **kwargs)


class DataLayerError(ReminderError):
    """Errors from data access layer operations.

    The storage driver's exception is kept as ``__cause__``.
    """

    pass


class OperationCanceledError(ReminderError):
    """A cancellation request was honoured before the operation completed."""

    pass


class UnitOfWorkClosedError(ReminderError):
    """A unit of work was used after it was closed."""

    pass
