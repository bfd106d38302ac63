from datetime import timedelta

import pytest

from core.config import RecurringJobConfig
from core.models.events import EventTypes
from core.models.tasks import COMPLETED
from plugins.task_handlers.maintenance import MaintenanceHandler
from scheduler.recurring import RecurringEnqueuer

from tests.conftest import NOW


def job(**overrides) -> RecurringJobConfig:
    data = {
        "name": "morning-digest",
        "cron": "15 9 * * mon-fri",
        "task_type": "analytics-digest",
        "owners": ["owner_1", "owner_2"],
        "payload": {"period": "daily"},
    }
    data.update(overrides)
    return RecurringJobConfig(**data)


class TestRecurringEnqueuer:
    @pytest.mark.asyncio
    async def test_enqueues_one_task_per_owner(self, dispatcher, bus, clock, store, events):
        recurring = RecurringEnqueuer([job()], dispatcher, bus, clock=clock)

        tasks = await recurring.check()

        assert sorted(t.owner_id for t in tasks) == ["owner_1", "owner_2"]
        assert all(t.type == "analytics-digest" for t in tasks)
        assert tasks[0].payload == {"period": "daily", "recurring_job": "morning-digest"}
        assert tasks[0].priority == 2
        assert store.count_tasks() == 2
        assert events[0].type == EventTypes.SCHEDULE_FIRED

    @pytest.mark.asyncio
    async def test_fires_once_per_minute(self, dispatcher, bus, clock):
        recurring = RecurringEnqueuer([job()], dispatcher, bus, clock=clock)

        assert len(await recurring.check()) == 2
        assert await recurring.check(NOW + timedelta(seconds=30)) == []

    @pytest.mark.asyncio
    async def test_not_matching(self, dispatcher, bus, clock):
        recurring = RecurringEnqueuer([job()], dispatcher, bus, clock=clock)

        # Saturday
        assert await recurring.check(NOW + timedelta(days=5)) == []

    @pytest.mark.asyncio
    async def test_local_timezone(self, dispatcher, bus, clock):
        recurring = RecurringEnqueuer([job(cron="15 10 * * *")], dispatcher, bus,
                                      clock=clock, timezone_name="Europe/Paris")

        # 09:15 UTC is 10:15 in Paris in March (CET)
        assert len(await recurring.check()) == 2

    @pytest.mark.asyncio
    async def test_disabled_jobs_ignored(self, dispatcher, bus, clock):
        recurring = RecurringEnqueuer([job(enabled=False)], dispatcher, bus, clock=clock)

        assert recurring.job_names == []
        assert await recurring.check() == []

    def test_bad_cron_rejected(self, dispatcher, bus):
        with pytest.raises(ValueError):
            RecurringEnqueuer([job(cron="every morning")], dispatcher, bus)


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_prunes_old_finished_tasks(self, dispatcher, registry, store, clock):
        registry.register("task_handler", MaintenanceHandler(store, clock, retention_days=30))
        old = await dispatcher.enqueue("owner_1", "maintenance", {"retention_days": 30})
        await dispatcher.tick()
        assert store.get_task(old.id).status == COMPLETED

        clock.advance(days=31)
        sweep = await dispatcher.enqueue("owner_1", "maintenance")
        finished = await dispatcher.tick()

        assert finished[0].id == sweep.id
        assert finished[0].result.data["deleted"] == 1
        assert store.get_task(old.id) is None

    @pytest.mark.asyncio
    async def test_invalid_retention(self, store, clock):
        handler = MaintenanceHandler(store, clock)

        result = await handler.run("owner_1", {"retention_days": "a while"})

        assert result.success is False
