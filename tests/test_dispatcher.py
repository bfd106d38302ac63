"""Tests for the task dispatcher: ordering, claiming, isolation, retry, shutdown."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from core.errors import InvalidTransitionError, TaskInProgressError, TaskNotFoundError
from core.models.events import EventTypes
from core.models.tasks import COMPLETED, FAILED, IN_PROGRESS, PENDING, TaskResult

from tests.conftest import NOW, OWNER, RecordingHandler


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_persists_pending_task(self, dispatcher, store, events):
        task = await dispatcher.enqueue(OWNER, "content-generation", {"topic": "crm"}, priority=4)

        stored = store.get_task(task.id)
        assert stored.status == PENDING
        assert stored.priority == 4
        assert stored.payload == {"topic": "crm"}
        assert stored.scheduled_for == NOW
        assert [e.type for e in events] == [EventTypes.TASK_ENQUEUED]
        assert events[0].payload["task_id"] == task.id

    @pytest.mark.asyncio
    async def test_priority_out_of_range_rejected(self, dispatcher):
        with pytest.raises(ValueError):
            await dispatcher.enqueue(OWNER, "content-generation", priority=9)

    @pytest.mark.asyncio
    async def test_unknown_type_accepted_at_enqueue(self, dispatcher):
        task = await dispatcher.enqueue(OWNER, "nobody-handles-this")
        assert task.status == PENDING


class TestTick:
    @pytest.mark.asyncio
    async def test_higher_priority_runs_first(self, dispatcher, registry, clock):
        order: list[str] = []
        registry.register("task_handler", RecordingHandler("low", log=order))
        registry.register("task_handler", RecordingHandler("high", log=order))

        low = await dispatcher.enqueue(OWNER, "low", priority=1, scheduled_for=NOW - timedelta(seconds=60))
        high = await dispatcher.enqueue(OWNER, "high", priority=5, scheduled_for=NOW)

        finished = await dispatcher.tick()

        assert [t.id for t in finished] == [high.id, low.id]
        assert order == ["high", "low"]

    @pytest.mark.asyncio
    async def test_older_first_within_priority(self, dispatcher, registry):
        registry.register("task_handler", RecordingHandler("job"))
        newer = await dispatcher.enqueue(OWNER, "job", scheduled_for=NOW - timedelta(minutes=1))
        older = await dispatcher.enqueue(OWNER, "job", scheduled_for=NOW - timedelta(minutes=5))

        finished = await dispatcher.tick()

        assert [t.id for t in finished] == [older.id, newer.id]

    @pytest.mark.asyncio
    async def test_future_tasks_wait(self, dispatcher, registry, clock, store):
        handler = RecordingHandler("job")
        registry.register("task_handler", handler)
        task = await dispatcher.enqueue(OWNER, "job", scheduled_for=NOW + timedelta(minutes=10))

        assert await dispatcher.tick() == []
        assert store.get_task(task.id).status == PENDING

        clock.advance(minutes=10)
        finished = await dispatcher.tick()
        assert [t.id for t in finished] == [task.id]
        assert handler.calls == [(OWNER, {})]

    @pytest.mark.asyncio
    async def test_batch_size_limits_one_tick(self, store, registry, bus, clock):
        from scheduler.dispatcher import TaskDispatcher

        dispatcher = TaskDispatcher(store, registry, bus, clock=clock, batch_size=2)
        registry.register("task_handler", RecordingHandler("job"))
        for _ in range(3):
            await dispatcher.enqueue(OWNER, "job")

        assert len(await dispatcher.tick()) == 2
        assert len(await dispatcher.tick()) == 1
        assert await dispatcher.tick() == []

    @pytest.mark.asyncio
    async def test_completed_task_records_result(self, dispatcher, registry, store, events):
        registry.register("task_handler", RecordingHandler(
            "job", result=TaskResult(success=True, message="sent", data={"n": 2}),
        ))
        task = await dispatcher.enqueue(OWNER, "job", {"x": 1})

        await dispatcher.tick()

        stored = store.get_task(task.id)
        assert stored.status == COMPLETED
        assert stored.result.data == {"n": 2}
        assert stored.started_at == NOW
        assert stored.completed_at == NOW
        assert events[-1].type == EventTypes.TASK_COMPLETED

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self, dispatcher, registry, store):
        registry.register("task_handler", RecordingHandler(
            "bad", result=TaskResult(success=False, error="upstream said no"),
        ))
        registry.register("task_handler", RecordingHandler("boom", error=RuntimeError("kaput")))
        registry.register("task_handler", RecordingHandler("good"))

        bad = await dispatcher.enqueue(OWNER, "bad")
        boom = await dispatcher.enqueue(OWNER, "boom")
        good = await dispatcher.enqueue(OWNER, "good")

        await dispatcher.tick()

        assert store.get_task(bad.id).status == FAILED
        assert store.get_task(bad.id).result.error == "upstream said no"
        assert store.get_task(boom.id).status == FAILED
        assert store.get_task(boom.id).result.error == "kaput"
        assert store.get_task(good.id).status == COMPLETED

    @pytest.mark.asyncio
    async def test_missing_handler_fails_task(self, dispatcher, store, events):
        task = await dispatcher.enqueue(OWNER, "mystery")

        await dispatcher.tick()

        stored = store.get_task(task.id)
        assert stored.status == FAILED
        assert stored.result.success is False
        assert stored.result.error == "No handler registered for task type 'mystery'"
        assert events[-1].type == EventTypes.TASK_FAILED

    @pytest.mark.asyncio
    async def test_claimed_task_is_skipped(self, dispatcher, registry, store):
        handler = RecordingHandler("job")
        registry.register("task_handler", handler)
        task = await dispatcher.enqueue(OWNER, "job")

        # Another dispatcher instance got there first
        assert store.claim_task(task.id, NOW) is True
        assert store.claim_task(task.id, NOW) is False

        assert await dispatcher.tick() == []
        assert handler.calls == []
        assert store.get_task(task.id).status == IN_PROGRESS


class TestTaskManagement:
    @pytest.mark.asyncio
    async def test_delete_pending_task(self, dispatcher):
        task = await dispatcher.enqueue(OWNER, "job")

        dispatcher.delete_task(task.id)

        with pytest.raises(TaskNotFoundError):
            dispatcher.get_task(task.id)

    @pytest.mark.asyncio
    async def test_delete_in_progress_task_fails(self, dispatcher, store):
        task = await dispatcher.enqueue(OWNER, "job")
        store.claim_task(task.id, NOW)

        with pytest.raises(TaskInProgressError):
            dispatcher.delete_task(task.id)
        assert store.get_task(task.id).status == IN_PROGRESS

    def test_delete_unknown_task(self, dispatcher):
        with pytest.raises(TaskNotFoundError):
            dispatcher.delete_task("task_missing")

    @pytest.mark.asyncio
    async def test_retry_failed_task_creates_child(self, dispatcher, registry, store):
        registry.register("task_handler", RecordingHandler(
            "job", result=TaskResult(success=False, error="nope"),
        ))
        task = await dispatcher.enqueue(OWNER, "job", {"a": 1}, priority=3)
        await dispatcher.tick()

        child = await dispatcher.retry_task(task.id)

        assert child.id != task.id
        assert child.parent_task_id == task.id
        assert child.status == PENDING
        assert child.payload == {"a": 1}
        assert child.priority == 3
        assert store.get_task(task.id).status == FAILED

    @pytest.mark.asyncio
    async def test_retry_requires_failed_task(self, dispatcher):
        task = await dispatcher.enqueue(OWNER, "job")

        with pytest.raises(InvalidTransitionError):
            await dispatcher.retry_task(task.id)

    @pytest.mark.asyncio
    async def test_list_tasks_paginates_newest_first(self, dispatcher, clock):
        ids = []
        for _ in range(3):
            ids.append((await dispatcher.enqueue(OWNER, "job")).id)
            clock.advance(seconds=1)
        await dispatcher.enqueue("owner_2", "job")

        page = dispatcher.list_tasks(owner_id=OWNER, page=1, limit=2)
        assert page.total == 3
        assert page.total_pages == 2
        assert [t.id for t in page.items] == [ids[2], ids[1]]

        page = dispatcher.list_tasks(owner_id=OWNER, page=2, limit=2)
        assert [t.id for t in page.items] == [ids[0]]

    @pytest.mark.asyncio
    async def test_list_tasks_filters(self, dispatcher, registry):
        registry.register("task_handler", RecordingHandler("job"))
        await dispatcher.enqueue(OWNER, "job")
        await dispatcher.enqueue(OWNER, "other")
        await dispatcher.tick()

        assert dispatcher.list_tasks(owner_id=OWNER, status=COMPLETED).total == 1
        assert dispatcher.list_tasks(owner_id=OWNER, status=FAILED).total == 1
        assert dispatcher.list_tasks(task_type="other").total == 1


class SlowHandler:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    @property
    def name(self) -> str:
        return "slow"

    async def run(self, owner_id: str, payload: dict) -> TaskResult:
        self.started.set()
        await self.release.wait()
        return TaskResult(success=True)


class TestLoop:
    @pytest.mark.asyncio
    async def test_loop_processes_and_stops(self, dispatcher, registry, store):
        registry.register("task_handler", RecordingHandler("job"))
        task = await dispatcher.enqueue(OWNER, "job")

        await dispatcher.start()
        assert dispatcher.running
        for _ in range(100):
            if store.get_task(task.id).status == COMPLETED:
                break
            await asyncio.sleep(0.01)
        await dispatcher.stop()

        assert not dispatcher.running
        assert store.get_task(task.id).status == COMPLETED

    @pytest.mark.asyncio
    async def test_stop_drains_running_tick(self, dispatcher, registry, store):
        handler = SlowHandler()
        registry.register("task_handler", handler)
        task = await dispatcher.enqueue(OWNER, "slow")

        await dispatcher.start()
        await asyncio.wait_for(handler.started.wait(), timeout=1)

        stopper = asyncio.create_task(dispatcher.stop(drain=True, timeout=1))
        await asyncio.sleep(0.05)
        handler.release.set()
        await stopper

        assert store.get_task(task.id).status == COMPLETED

    @pytest.mark.asyncio
    async def test_stop_cancels_after_timeout(self, dispatcher, registry, store):
        handler = SlowHandler()
        registry.register("task_handler", handler)
        task = await dispatcher.enqueue(OWNER, "slow")

        await dispatcher.start()
        await asyncio.wait_for(handler.started.wait(), timeout=1)
        await dispatcher.stop(drain=True, timeout=0.05)

        # Interrupted mid-run: the task stays claimed
        assert store.get_task(task.id).status == IN_PROGRESS
