"""Task dispatcher -- asyncio loop that claims due tasks and runs their handlers.

Every `check_interval` seconds:
1. Selects up to `batch_size` pending tasks with scheduled_for <= now,
   most urgent first (priority DESC, scheduled_for ASC)
2. Claims each one pending -> in-progress with a compare-and-swap update,
   in selection order; tasks another dispatcher claimed first are skipped
3. Runs the claimed handlers concurrently, looked up by task type
4. Stores each result independently (completed / failed) and publishes
   task.completed / task.failed events

There is no automatic retry; retry_task() re-enqueues a failed task as a new
child task. A task whose process died mid-run stays in-progress.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from core.bus import AsyncIOBus
from core.clock import Clock, SystemClock
from core.data.store import Store
from core.errors import InvalidTransitionError, TaskNotFoundError
from core.models.events import Event, EventTypes
from core.models.pagination import Page
from core.models.tasks import FAILED, IN_PROGRESS, PENDING, Task, TaskResult
from core.registry import PluginRegistry

logger = logging.getLogger(__name__)


class TaskDispatcher:
    """Durable priority queue runner.

    Usage:
        dispatcher = TaskDispatcher(store=store, registry=registry, bus=bus)
        await dispatcher.enqueue("owner_1", "content-generation", {"topic": "..."})
        await dispatcher.start()            # runs until stop()
        await dispatcher.stop(drain=True)
    """

    def __init__(
        self,
        store: Store,
        registry: PluginRegistry,
        bus: AsyncIOBus,
        clock: Clock | None = None,
        batch_size: int = 5,
        check_interval: float = 60,
        drain_timeout: float = 30,
    ) -> None:
        self._store = store
        self._registry = registry
        self._bus = bus
        self._clock = clock or SystemClock()
        self._batch_size = batch_size
        self._check_interval = check_interval
        self._drain_timeout = drain_timeout
        self._running = False
        self._task: asyncio.Task | None = None
        self._wakeup: asyncio.Event | None = None

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        owner_id: str,
        task_type: str,
        payload: dict | None = None,
        scheduled_for: datetime | None = None,
        priority: int = 1,
        parent_task_id: str | None = None,
    ) -> Task:
        """Add a pending task. The handler is resolved only when it runs."""
        now = self._clock.now()
        task = Task(
            owner_id=owner_id,
            type=task_type,
            payload=payload or {},
            priority=priority,
            scheduled_for=scheduled_for or now,
            created_at=now,
            parent_task_id=parent_task_id,
        )
        self._store.insert_task(task)
        logger.info(
            "Enqueued task %s (%s, priority %d) for %s due %s",
            task.id, task.type, task.priority, owner_id, task.scheduled_for.isoformat(),
        )

        await self._bus.publish(Event(
            type=EventTypes.TASK_ENQUEUED,
            source="dispatcher",
            payload={
                "task_id": task.id,
                "owner_id": owner_id,
                "type": task.type,
                "priority": task.priority,
                "scheduled_for": task.scheduled_for.isoformat(),
                "parent_task_id": parent_task_id,
            },
        ))
        return task

    def get_task(self, task_id: str) -> Task:
        task = self._store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def delete_task(self, task_id: str) -> None:
        """Delete a task. Raises TaskInProgressError while it is running."""
        self._store.delete_task(task_id)
        logger.info("Deleted task: %s", task_id)

    def list_tasks(
        self,
        owner_id: str | None = None,
        status: str | None = None,
        task_type: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page[Task]:
        return self._store.list_tasks(
            owner_id=owner_id,
            status=status,
            task_type=task_type,
            page=page,
            limit=limit,
        )

    async def retry_task(self, task_id: str) -> Task:
        """Re-run a failed task as a new pending child task."""
        task = self.get_task(task_id)
        if task.status != FAILED:
            raise InvalidTransitionError(task_id, task.status, PENDING)
        return await self.enqueue(
            owner_id=task.owner_id,
            task_type=task.type,
            payload=task.payload,
            priority=task.priority,
            parent_task_id=task.id,
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def tick(self) -> list[Task]:
        """One dispatch cycle. Returns the finished tasks in selection order."""
        now = self._clock.now()
        candidates = self._store.select_due_tasks(now, self._batch_size)

        claimed = []
        for task in candidates:
            if self._store.claim_task(task.id, now):
                claimed.append(task)
            else:
                logger.debug("Task %s was claimed elsewhere", task.id)
        if not claimed:
            return []

        logger.info("Dispatching %d task(s): %s", len(claimed), ", ".join(t.id for t in claimed))
        finished = await asyncio.gather(*(self._execute(task) for task in claimed))
        return [task for task in finished if task is not None]

    async def _execute(self, task: Task) -> Task | None:
        handler = self._registry.find("task_handler", task.type)
        if handler is None:
            logger.warning("No handler registered for '%s' (task %s)", task.type, task.id)
            result = TaskResult(
                success=False,
                error=f"No handler registered for task type '{task.type}'",
            )
        else:
            try:
                result = await handler.run(task.owner_id, task.payload)
            except Exception as exc:
                logger.exception("Task %s (%s) raised", task.id, task.type)
                result = TaskResult(success=False, error=str(exc) or type(exc).__name__)

        try:
            finished = self._store.finish_task(task.id, result, self._clock.now())
        except (TaskNotFoundError, InvalidTransitionError):
            logger.exception("Could not record the result of task %s", task.id)
            return None

        if result.success:
            logger.info("Task %s (%s) completed: %s", task.id, task.type, result.message or "ok")
        else:
            logger.warning("Task %s (%s) failed: %s", task.id, task.type, result.error or result.message)

        await self._bus.publish(Event(
            type=EventTypes.TASK_COMPLETED if result.success else EventTypes.TASK_FAILED,
            source="dispatcher",
            payload={
                "task_id": finished.id,
                "owner_id": finished.owner_id,
                "type": finished.type,
                "result": result.model_dump(mode="json"),
            },
        ))
        return finished

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the dispatch loop."""
        stuck = self._store.count_tasks(status=IN_PROGRESS)
        if stuck:
            logger.warning(
                "%d task(s) left in-progress by a previous run; they will not be reclaimed",
                stuck,
            )
        self._running = True
        self._wakeup = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info("Dispatcher started (check every %ss, batch %d)", self._check_interval, self._batch_size)

    async def stop(self, drain: bool = True, timeout: float | None = None) -> None:
        """Stop ticking. With drain, let the running tick finish (up to timeout)."""
        self._running = False
        if self._wakeup is not None:
            self._wakeup.set()
        task, self._task = self._task, None
        if task is None:
            return

        if drain:
            timeout = self._drain_timeout if timeout is None else timeout
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
                logger.info("Dispatcher stopped")
                return
            except asyncio.TimeoutError:
                logger.warning("Dispatcher did not drain within %ss; cancelling", timeout)

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Dispatcher stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception:
                logger.exception("Error in dispatcher loop")
            if not self._running:
                break
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._check_interval)
            except asyncio.TimeoutError:
                pass
