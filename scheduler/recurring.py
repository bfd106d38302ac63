"""Recurring job enqueuer -- cron-style system jobs that feed the task queue.

Each configured job has a 5-field cron expression. Once per matching minute
the enqueuer creates one task per listed owner; the dispatcher runs them like
any other task.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from core.bus import AsyncIOBus
from core.clock import Clock, SystemClock, load_timezone
from core.config import RecurringJobConfig
from core.models.events import Event, EventTypes
from core.models.tasks import Task
from scheduler.cron import CronExpression
from scheduler.dispatcher import TaskDispatcher

logger = logging.getLogger(__name__)


class RecurringEnqueuer:
    """Enqueues tasks for recurring jobs whose cron expression matches.

    Usage:
        recurring = RecurringEnqueuer(config.recurring, dispatcher, bus)
        await recurring.start()
    """

    def __init__(
        self,
        jobs: list[RecurringJobConfig],
        dispatcher: TaskDispatcher,
        bus: AsyncIOBus,
        clock: Clock | None = None,
        timezone_name: str = "UTC",
        check_interval: float = 20,
    ) -> None:
        self._dispatcher = dispatcher
        self._bus = bus
        self._clock = clock or SystemClock()
        self._tz = load_timezone(timezone_name)
        self._check_interval = check_interval
        self._jobs = [(job, CronExpression(job.cron)) for job in jobs if job.enabled]
        # Minute each job last fired in, so a fast loop never fires twice per minute
        self._last_fired: dict[str, datetime] = {}
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def job_names(self) -> list[str]:
        return [job.name for job, _ in self._jobs]

    async def check(self, now: datetime | None = None) -> list[Task]:
        """Enqueue tasks for every job due in the current minute."""
        local = (now or self._clock.now()).astimezone(self._tz)
        minute = local.replace(second=0, microsecond=0)

        enqueued: list[Task] = []
        for job, cron in self._jobs:
            if self._last_fired.get(job.name) == minute or not cron.matches(local):
                continue
            self._last_fired[job.name] = minute

            logger.info("Recurring job %s fired for %d owner(s)", job.name, len(job.owners))
            await self._bus.publish(Event(
                type=EventTypes.SCHEDULE_FIRED,
                source="recurring",
                payload={"job": job.name, "task_type": job.task_type, "owners": job.owners},
            ))
            for owner_id in job.owners:
                try:
                    task = await self._dispatcher.enqueue(
                        owner_id=owner_id,
                        task_type=job.task_type,
                        payload={**job.payload, "recurring_job": job.name},
                        priority=job.priority,
                    )
                except Exception:
                    logger.exception("Recurring job %s could not enqueue for %s", job.name, owner_id)
                    continue
                enqueued.append(task)
        return enqueued

    async def start(self) -> None:
        if not self._jobs:
            logger.info("No recurring jobs configured")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Recurring jobs started: %s", ", ".join(self.job_names))

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Recurring jobs stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.check()
            except Exception:
                logger.exception("Error in recurring job loop")
            await asyncio.sleep(self._check_interval)
