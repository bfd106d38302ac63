"""Stats recorder -- one counter update per automation cycle, plus summaries."""

from __future__ import annotations

import logging
from datetime import datetime

from pydantic import BaseModel, Field, computed_field

from core.data.store import Store
from core.models.automations import AutomationRun

logger = logging.getLogger(__name__)


class AutomationSummary(BaseModel):
    """Aggregate view over automations, for one owner or all of them."""

    total: int = 0
    active: int = 0
    paused: int = 0
    draft: int = 0
    executions: int = 0
    successes: int = 0
    failures: int = 0
    owners: int = 0
    trigger_types: dict[str, int] = Field(default_factory=dict)

    @computed_field
    @property
    def success_rate(self) -> float:
        return self.successes / self.executions if self.executions else 0.0


class StatsRecorder:
    def __init__(self, store: Store) -> None:
        self._store = store

    def record(self, automation_id: str, success: bool, now: datetime) -> None:
        """Count one cycle. The increment happens in SQL, not read-modify-write."""
        if not self._store.record_execution(automation_id, success, now):
            # Deleted while its actions were running
            logger.warning("Automation %s vanished before its stats were recorded", automation_id)

    def record_run(self, run: AutomationRun) -> None:
        self.record(run.automation_id, run.success, run.executed_at)

    def summarize(self, owner_id: str | None = None) -> AutomationSummary:
        return AutomationSummary(**self._store.automation_totals(owner_id))
