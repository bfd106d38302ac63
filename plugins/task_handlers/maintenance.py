"""Maintenance task handler -- prunes finished tasks of an owner.

Payload (optional):
    {"retention_days": 30}
"""

from __future__ import annotations

import logging
from datetime import timedelta

from core.clock import Clock, SystemClock
from core.data.store import Store
from core.models.tasks import TaskResult

logger = logging.getLogger(__name__)


class MaintenanceHandler:
    """Delete completed and failed tasks older than the retention window."""

    def __init__(self, store: Store, clock: Clock | None = None, retention_days: int = 30) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._retention_days = retention_days

    @property
    def name(self) -> str:
        return "maintenance"

    async def run(self, owner_id: str, payload: dict) -> TaskResult:
        try:
            days = int(payload.get("retention_days", self._retention_days))
        except (TypeError, ValueError):
            return TaskResult(success=False, error="retention_days must be an integer")
        if days < 1:
            return TaskResult(success=False, error="retention_days must be at least 1")

        cutoff = self._clock.now() - timedelta(days=days)
        deleted = self._store.prune_tasks(owner_id, cutoff)
        logger.info("Pruned %d finished task(s) of %s older than %d day(s)", deleted, owner_id, days)
        return TaskResult(
            success=True,
            message=f"Pruned {deleted} task(s) finished before {cutoff.date().isoformat()}",
            data={"deleted": deleted, "cutoff": cutoff.isoformat()},
        )
