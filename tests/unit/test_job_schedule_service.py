"""Unit tests for JobScheduleAppService.

The unit of work and repository are mocked; the scheduler runtime is a
real, never-started SchedulerRuntime so trigger state can be asserted.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from invoice_reminder.exceptions import (
    DataLayerError,
    EmptyResultError,
    InvalidScheduleError,
    NotFoundError,
    OperationCanceledError,
    SchedulerError,
    ValidationError,
)
from invoice_reminder.services.job_schedules import (
    BootstrapOptions,
    JobScheduleAppService,
)
from invoice_reminder.services.view_models import JobScheduleViewModel
from tests.factories import (
    EVERY_FIVE_MINUTES,
    EVERY_HOUR,
    USER_1,
    USER_2,
    JobScheduleFactory,
)


async def _noop() -> None:
    return None


@pytest.fixture
def repo():
    r = MagicMock()
    r.add = MagicMock(side_effect=lambda entity: entity)
    r.get_by_id = AsyncMock(return_value=None)
    r.get_by_user_id = AsyncMock(return_value=[])
    r.get_all = AsyncMock(return_value=[])
    r.remove = AsyncMock()
    return r


@pytest.fixture
def uow(repo):
    u = MagicMock()
    u.__aenter__ = AsyncMock(return_value=u)
    u.__aexit__ = AsyncMock(return_value=None)
    u.repository = MagicMock(return_value=repo)
    u.save_changes = AsyncMock()
    return u


@pytest.fixture
def service(uow, runtime, invoice_check):
    return JobScheduleAppService(lambda: uow, runtime, invoice_check)


def _store(repo, *schedules):
    """Make repo.get_by_id/get_all answer from a fixed set of rows."""
    rows = {s.id: s for s in schedules}
    repo.get_by_id.side_effect = lambda schedule_id: rows.get(schedule_id)
    repo.get_all.return_value = list(schedules)
    return rows


class TestAddSchedule:
    """Tests for add_schedule."""

    async def test_persists_and_registers_trigger(self, service, uow, runtime):
        result = await service.add_schedule(USER_1, EVERY_FIVE_MINUTES)

        assert result.is_success
        schedule = result.value
        assert schedule.id
        assert schedule.user_id == USER_1
        assert schedule.cron_expression == EVERY_FIVE_MINUTES
        uow.save_changes.assert_awaited_once()

        trigger = runtime.get_trigger(schedule.id)
        assert trigger is not None
        assert trigger.owner_id == USER_1
        assert runtime.trigger_count(USER_1) == 1

    async def test_disabled_schedule_registers_paused(self, service, runtime):
        result = await service.add_schedule(USER_1, EVERY_HOUR, enabled=False)

        assert runtime.get_trigger(result.value.id).paused is True

    @pytest.mark.parametrize(
        ("user_id", "cron", "parameter"),
        [
            (None, EVERY_HOUR, "userId"),
            ("", EVERY_HOUR, "userId"),
            (USER_1, None, "cronExpression"),
            (USER_1, "  ", "cronExpression"),
            ("not-a-uuid", EVERY_HOUR, "userId"),
        ],
    )
    async def test_rejects_missing_input(self, service, uow, user_id, cron, parameter):
        result = await service.add_schedule(user_id, cron)

        assert result.is_failure
        assert isinstance(result.error, ValidationError)
        assert result.error.parameter == parameter
        uow.save_changes.assert_not_awaited()

    async def test_rejects_overlong_cron(self, service, uow):
        result = await service.add_schedule(USER_1, "x" * 300)

        assert isinstance(result.error, ValidationError)
        assert result.error.parameter == "cronExpression"
        uow.save_changes.assert_not_awaited()

    async def test_rejects_invalid_cron_before_commit(self, service, uow, runtime):
        result = await service.add_schedule(USER_1, "0 0 * * * *")

        assert isinstance(result.error, InvalidScheduleError)
        uow.save_changes.assert_not_awaited()
        assert runtime.trigger_count() == 0

    async def test_storage_failure_registers_nothing(self, service, uow, runtime):
        uow.save_changes.side_effect = DataLayerError("rolled back")

        result = await service.add_schedule(USER_1, EVERY_HOUR)

        assert isinstance(result.error, DataLayerError)
        assert runtime.trigger_count() == 0

    async def test_cancellation_is_reported(self, service, uow, runtime):
        uow.save_changes.side_effect = OperationCanceledError("canceled")

        result = await service.add_schedule(USER_1, EVERY_HOUR)

        assert isinstance(result.error, OperationCanceledError)
        assert runtime.trigger_count() == 0

    async def test_registration_failure_removes_new_row(self, service, repo, runtime):
        added = {}
        repo.add.side_effect = lambda entity: added.setdefault("row", entity)
        repo.get_by_id.side_effect = lambda schedule_id: added.get("row")

        with patch.object(runtime, "register", side_effect=SchedulerError("scheduler down")):
            result = await service.add_schedule(USER_1, EVERY_HOUR)

        assert isinstance(result.error, SchedulerError)
        repo.remove.assert_awaited_once_with(added["row"])


class TestUpdateSchedule:
    """Tests for update_schedule."""

    async def test_swaps_trigger(self, service, repo, runtime):
        stored = JobScheduleFactory(cron_expression=EVERY_HOUR)
        _store(repo, stored)
        await service.bootstrap(BootstrapOptions())

        update = JobScheduleViewModel(
            id=stored.id, user_id=USER_1, cron_expression=EVERY_FIVE_MINUTES
        )
        result = await service.update_schedule(update)

        assert result.is_success
        assert result.value.cron_expression == EVERY_FIVE_MINUTES
        assert stored.cron_expression == EVERY_FIVE_MINUTES
        assert runtime.trigger_count() == 1
        assert runtime.get_trigger(stored.id).cron_expression == EVERY_FIVE_MINUTES

    async def test_registers_dormant_schedule(self, service, repo, runtime):
        stored = JobScheduleFactory()
        _store(repo, stored)

        update = JobScheduleViewModel(id=stored.id, user_id=USER_1, cron_expression=EVERY_HOUR)
        result = await service.update_schedule(update)

        assert result.is_success
        assert runtime.get_trigger(stored.id) is not None

    async def test_not_found(self, service, uow):
        update = JobScheduleViewModel(id="missing", user_id=USER_1, cron_expression=EVERY_HOUR)

        result = await service.update_schedule(update)

        assert isinstance(result.error, NotFoundError)
        assert result.error.identifier == "missing"
        uow.save_changes.assert_not_awaited()

    async def test_null_schedule(self, service):
        result = await service.update_schedule(None)

        assert isinstance(result.error, ValidationError)
        assert result.error.parameter == "schedule"

    async def test_invalid_cron_keeps_old_trigger(self, service, repo, runtime, uow):
        stored = JobScheduleFactory(cron_expression=EVERY_HOUR)
        _store(repo, stored)
        await service.bootstrap(BootstrapOptions())

        update = JobScheduleViewModel(id=stored.id, user_id=USER_1, cron_expression="bad")
        result = await service.update_schedule(update)

        assert isinstance(result.error, InvalidScheduleError)
        uow.save_changes.assert_not_awaited()
        assert runtime.get_trigger(stored.id).cron_expression == EVERY_HOUR

    async def test_replace_failure_restores_previous_cron(self, service, repo, runtime):
        stored = JobScheduleFactory(cron_expression=EVERY_HOUR)
        _store(repo, stored)

        update = JobScheduleViewModel(
            id=stored.id, user_id=USER_1, cron_expression=EVERY_FIVE_MINUTES
        )
        with patch.object(runtime, "replace", side_effect=SchedulerError("scheduler down")):
            result = await service.update_schedule(update)

        assert isinstance(result.error, SchedulerError)
        assert stored.cron_expression == EVERY_HOUR

    async def test_replace_failure_restores_previous_owner(self, service, repo, runtime, uow):
        stored = JobScheduleFactory(user_id=USER_1, cron_expression=EVERY_HOUR)
        _store(repo, stored)

        update = JobScheduleViewModel(
            id=stored.id, user_id=USER_2, cron_expression=EVERY_FIVE_MINUTES
        )
        with patch.object(runtime, "replace", side_effect=SchedulerError("scheduler down")):
            result = await service.update_schedule(update)

        assert result.is_failure
        assert stored.user_id == USER_1
        assert stored.cron_expression == EVERY_HOUR
        assert uow.save_changes.await_count == 2


class TestRemoveSchedule:
    """Tests for remove_schedule."""

    async def test_deletes_then_unregisters(self, service, repo, runtime, uow):
        stored = JobScheduleFactory()
        _store(repo, stored)
        await service.bootstrap(BootstrapOptions())

        result = await service.remove_schedule(stored.id)

        assert result.is_success
        repo.remove.assert_awaited_once_with(stored)
        uow.save_changes.assert_awaited_once()
        assert runtime.get_trigger(stored.id) is None

    async def test_accepts_view_model(self, service, repo):
        stored = JobScheduleFactory()
        _store(repo, stored)

        view_model = JobScheduleViewModel.model_validate(stored)
        result = await service.remove_schedule(view_model)

        assert result.is_success

    async def test_without_live_trigger(self, service, repo):
        stored = JobScheduleFactory()
        _store(repo, stored)

        result = await service.remove_schedule(stored.id)

        assert result.is_success

    async def test_not_found(self, service):
        result = await service.remove_schedule("missing")

        assert isinstance(result.error, NotFoundError)

    async def test_storage_failure_keeps_trigger(self, service, repo, runtime, uow):
        stored = JobScheduleFactory()
        _store(repo, stored)
        await service.bootstrap(BootstrapOptions())
        uow.save_changes.side_effect = DataLayerError("rolled back")

        result = await service.remove_schedule(stored.id)

        assert isinstance(result.error, DataLayerError)
        assert runtime.get_trigger(stored.id) is not None

    async def test_null_schedule(self, service):
        result = await service.remove_schedule(None)

        assert isinstance(result.error, ValidationError)


class TestGetByUserId:
    """Tests for get_by_user_id."""

    async def test_returns_schedules(self, service, repo, runtime):
        repo.get_by_user_id.return_value = [JobScheduleFactory(), JobScheduleFactory()]

        result = await service.get_by_user_id(USER_1)

        assert result.is_success
        assert len(result.value) == 2
        assert runtime.trigger_count() == 0

    async def test_empty_is_failure(self, service):
        result = await service.get_by_user_id(USER_2)

        assert isinstance(result.error, EmptyResultError)
        assert result.error_message == "Empty Result."

    async def test_null_user(self, service):
        result = await service.get_by_user_id(None)

        assert isinstance(result.error, ValidationError)


class TestPauseResume:
    """Tests for pause_schedule and resume_schedule."""

    async def test_pause_and_resume(self, service, repo, runtime):
        stored = JobScheduleFactory()
        _store(repo, stored)
        await service.bootstrap(BootstrapOptions())

        paused = await service.pause_schedule(stored.id)
        assert paused.value.enabled is False
        assert runtime.get_trigger(stored.id).paused is True

        resumed = await service.resume_schedule(stored.id)
        assert resumed.value.enabled is True
        assert runtime.get_trigger(stored.id).paused is False

    async def test_pause_dormant_registers_paused(self, service, repo, runtime):
        stored = JobScheduleFactory()
        _store(repo, stored)

        await service.pause_schedule(stored.id)

        assert runtime.get_trigger(stored.id).paused is True

    async def test_pause_not_found(self, service):
        result = await service.pause_schedule("missing")

        assert isinstance(result.error, NotFoundError)


class TestBootstrap:
    """Tests for bootstrap."""

    async def test_registers_every_row(self, service, repo, runtime):
        _store(
            repo,
            JobScheduleFactory(user_id=USER_1),
            JobScheduleFactory(user_id=USER_1, cron_expression=EVERY_FIVE_MINUTES),
            JobScheduleFactory(user_id=USER_2, enabled=False),
        )

        report = await service.bootstrap(BootstrapOptions())

        assert len(report.registered) == 3
        assert runtime.trigger_count(USER_1) == 2
        assert runtime.trigger_count(USER_2) == 1

    async def test_skips_malformed_row(self, service, repo, runtime, caplog):
        good = JobScheduleFactory()
        bad = JobScheduleFactory(cron_expression="0 0 * * *")
        _store(repo, good, bad)

        with caplog.at_level("ERROR"):
            report = await service.bootstrap(BootstrapOptions())

        assert report.registered == [good.id]
        assert bad.id in report.skipped
        assert runtime.get_trigger(bad.id) is None
        assert f"Skipping schedule {bad.id}" in caplog.text

    async def test_suppressed(self, service, repo, runtime):
        _store(repo, JobScheduleFactory())

        report = await service.bootstrap(BootstrapOptions(enabled=False, reason="testing"))

        assert report.suppressed is True
        repo.get_all.assert_not_awaited()
        assert runtime.trigger_count() == 0

    async def test_storage_failure_propagates(self, service, repo):
        repo.get_all.side_effect = DataLayerError("db down")

        with pytest.raises(DataLayerError):
            await service.bootstrap(BootstrapOptions())


class TestBootstrapOptions:
    """Tests for BootstrapOptions.from_settings."""

    def test_testing_environment_suppresses(self, test_settings):
        options = BootstrapOptions.from_settings(test_settings)
        assert options.enabled is False

    def test_production_enables(self, test_settings):
        test_settings.environment = "production"
        assert BootstrapOptions.from_settings(test_settings).enabled is True

    def test_api_role_suppresses(self, test_settings):
        test_settings.environment = "production"
        test_settings.reminder_role = "api"

        options = BootstrapOptions.from_settings(test_settings)

        assert options.enabled is False
        assert "api" in options.reason

    def test_disabled_scheduler_suppresses(self, test_settings):
        test_settings.environment = "production"
        test_settings.scheduler_enabled = False
        assert BootstrapOptions.from_settings(test_settings).enabled is False


class TestReconcile:
    """Tests for reconcile."""

    async def test_registers_missing_and_removes_orphans(self, service, repo, runtime):
        stored = JobScheduleFactory()
        _store(repo, stored)
        runtime.register("orphan", EVERY_HOUR, _noop, owner_id=USER_2)

        report = await service.reconcile()

        assert report.registered == [stored.id]
        assert report.removed == ["orphan"]
        assert runtime.schedule_ids() == {stored.id}

    async def test_replaces_drifted_cron(self, service, repo, runtime):
        stored = JobScheduleFactory(cron_expression=EVERY_HOUR)
        _store(repo, stored)
        await service.bootstrap(BootstrapOptions())
        stored.cron_expression = EVERY_FIVE_MINUTES

        report = await service.reconcile()

        assert report.replaced == [stored.id]
        assert runtime.get_trigger(stored.id).cron_expression == EVERY_FIVE_MINUTES

    async def test_aligns_pause_state(self, service, repo, runtime):
        stored = JobScheduleFactory()
        _store(repo, stored)
        await service.bootstrap(BootstrapOptions())
        stored.enabled = False

        await service.reconcile()

        assert runtime.get_trigger(stored.id).paused is True

    async def test_no_changes(self, service, repo):
        _store(repo, JobScheduleFactory())
        await service.bootstrap(BootstrapOptions())

        report = await service.reconcile()

        assert report.changed is False

    async def test_storage_failure_is_logged(self, service, repo, caplog):
        repo.get_all.side_effect = DataLayerError("db down")

        with caplog.at_level("WARNING"):
            report = await service.reconcile()

        assert report.changed is False
        assert "Could not load job schedules" in caplog.text


class TestGenericOperations:
    """BaseAppService operations routed through the schedule-aware ones."""

    async def test_add_registers_trigger(self, service, runtime):
        view_model = JobScheduleViewModel(user_id=USER_1, cron_expression=EVERY_HOUR)

        result = await service.add(view_model)

        assert result.is_success
        assert runtime.get_trigger(result.value.id) is not None

    async def test_add_null(self, service):
        result = await service.add(None)

        assert isinstance(result.error, ValidationError)

    async def test_get_all_empty_is_failure(self, service):
        result = await service.get_all()

        assert isinstance(result.error, EmptyResultError)

    async def test_get_by_id(self, service, repo):
        stored = JobScheduleFactory()
        _store(repo, stored)

        result = await service.get_by_id(stored.id)

        assert result.value.id == stored.id

    async def test_get_by_id_not_found(self, service):
        result = await service.get_by_id("missing")

        assert isinstance(result.error, NotFoundError)

    async def test_injected_mapping_is_used(self, uow, runtime, invoice_check, repo):
        stored = JobScheduleFactory()
        _store(repo, stored)
        to_view_model = MagicMock(return_value="mapped")
        service = JobScheduleAppService(
            lambda: uow, runtime, invoice_check, to_view_model=to_view_model
        )

        result = await service.get_by_id(stored.id)

        assert result.value == "mapped"
        to_view_model.assert_called_once_with(stored)

    async def test_injected_entity_mapping_builds_new_rows(self, uow, runtime, invoice_check, repo):
        built = JobScheduleFactory(user_id=USER_1, cron_expression=EVERY_HOUR)
        to_entity = MagicMock(return_value=built)
        service = JobScheduleAppService(lambda: uow, runtime, invoice_check, to_entity=to_entity)

        result = await service.add_schedule(USER_1, EVERY_HOUR)

        assert result.value.id == built.id
        repo.add.assert_called_once_with(built)
        (view_model,) = to_entity.call_args.args
        assert view_model.user_id == USER_1
        assert view_model.cron_expression == EVERY_HOUR
        assert runtime.get_trigger(built.id) is not None
