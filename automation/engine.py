"""Automation engine -- wires matcher, evaluator, executor and stats together.

Event path: subscribed to `entity.changed` on the bus. For each matching
automation (oldest first) the entity is re-read, its conditions evaluated,
and its actions executed; every cycle gets exactly one stats update.

Schedule path: an asyncio loop sweeps every `sweep_interval` seconds. Each
due automation runs once per matching entity of its owner (converted leads
excluded), conditions acting as the filter.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from automation.actions import ActionExecutor
from automation.conditions import evaluate
from automation.matcher import TriggerMatcher
from automation.stats import StatsRecorder
from core.bus import AsyncIOBus
from core.clock import Clock, SystemClock
from core.models.automations import Automation, AutomationRun
from core.models.events import Event, EventTypes
from core.protocols import EntityStore
from crm.models import EntityBase

logger = logging.getLogger(__name__)


class AutomationEngine:
    """Runs automations for entity events and schedule sweeps.

    Usage:
        engine = AutomationEngine(entities, matcher, executor, stats, bus)
        engine.attach()          # subscribe to entity.changed
        await engine.start()     # schedule sweep loop
    """

    def __init__(
        self,
        entities: EntityStore,
        matcher: TriggerMatcher,
        executor: ActionExecutor,
        stats: StatsRecorder,
        bus: AsyncIOBus,
        clock: Clock | None = None,
        sweep_interval: float = 60,
    ) -> None:
        self._entities = entities
        self._matcher = matcher
        self._executor = executor
        self._stats = stats
        self._bus = bus
        self._clock = clock or SystemClock()
        self._sweep_interval = sweep_interval
        self._running = False
        self._task: asyncio.Task | None = None

    def attach(self) -> None:
        self._bus.subscribe(EventTypes.ENTITY_CHANGED, self.handle_entity_event)

    # ------------------------------------------------------------------
    # Event path
    # ------------------------------------------------------------------

    async def handle_entity_event(self, event: Event) -> None:
        """Bus callback for entity.changed."""
        payload = event.payload
        try:
            owner_id = payload["owner_id"]
            entity_type = payload["entity_type"]
            entity_id = payload["entity_id"]
            trigger_type = payload["trigger_type"]
        except KeyError as exc:
            logger.warning("Ignoring malformed %s event %s: missing %s", event.type, event.id, exc)
            return

        await self.handle_event(
            owner_id,
            entity_type,
            entity_id,
            trigger_type,
            change=payload.get("change") or {},
            correlation_id=event.correlation_id,
        )

    async def handle_event(
        self,
        owner_id: str,
        entity_type: str,
        entity_id: str,
        trigger_type: str,
        change: dict | None = None,
        correlation_id: str | None = None,
    ) -> list[AutomationRun]:
        automations = self._matcher.for_event(owner_id, entity_type, trigger_type, change)
        if not automations:
            return []

        logger.debug(
            "%d automation(s) match %s on %s %s",
            len(automations), trigger_type, entity_type, entity_id,
        )
        runs = []
        for automation in automations:
            # Earlier automations may have changed (or deleted) the entity
            entity = self._entities.get(entity_type, entity_id)
            if entity is None:
                logger.info("%s %s is gone; skipping remaining automations", entity_type, entity_id)
                break
            run = await self._run_guarded(automation, entity, trigger_type, correlation_id)
            if run is not None:
                runs.append(run)
        return runs

    # ------------------------------------------------------------------
    # Schedule path
    # ------------------------------------------------------------------

    async def run_scheduled(self, now: datetime | None = None) -> list[AutomationRun]:
        """Run every scheduled automation due at `now` against its matching entities."""
        now = now or self._clock.now()
        runs: list[AutomationRun] = []

        for automation in self._matcher.due_scheduled(now):
            fired = Event(
                type=EventTypes.SCHEDULE_FIRED,
                source="automation_engine",
                payload={"automation_id": automation.id, "owner_id": automation.owner_id},
            )
            await self._bus.publish(fired)

            entities = self._scheduled_targets(automation)
            logger.info(
                "Scheduled automation %s (%s) fired for %d candidate(s)",
                automation.id, automation.name, len(entities),
            )
            for entity in entities:
                run = await self._run_guarded(automation, entity, "scheduled", fired.correlation_id)
                if run is not None:
                    runs.append(run)
        return runs

    def _scheduled_targets(self, automation: Automation) -> list[EntityBase]:
        trigger = automation.trigger
        entity_types = ["lead", "contact"] if trigger.entity_type == "both" else [trigger.entity_type]
        targets = []
        for entity_type in entity_types:
            for entity in self._entities.list_for_owner(entity_type, automation.owner_id):
                if entity_type == "lead" and entity.status == "converted":
                    continue
                targets.append(entity)
        return targets

    async def start(self) -> None:
        """Start the schedule sweep loop."""
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Automation sweep started (every %ss)", self._sweep_interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Automation sweep stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_scheduled()
            except Exception:
                logger.exception("Error in automation sweep")
            await asyncio.sleep(self._sweep_interval)

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def run_cycle(
        self,
        automation: Automation,
        entity: EntityBase,
        trigger_type: str,
        correlation_id: str | None = None,
    ) -> AutomationRun | None:
        """Evaluate conditions and, if they hold, run the actions and record stats.

        Returns None when the conditions do not match.
        """
        if not evaluate(automation.conditions, entity):
            return None

        outcomes = await self._executor.execute(automation, entity)
        run = AutomationRun(
            automation_id=automation.id,
            entity_type=entity.entity_type,
            entity_id=entity.id,
            trigger_type=trigger_type,
            outcomes=outcomes,
            executed_at=self._clock.now(),
        )
        self._stats.record_run(run)

        failed = [o for o in outcomes if not o.success]
        if failed:
            logger.warning(
                "Automation %s on %s %s: %d/%d action(s) failed",
                automation.id, entity.entity_type, entity.id, len(failed), len(outcomes),
            )
        else:
            logger.info(
                "Automation %s (%s) ran on %s %s",
                automation.id, automation.name, entity.entity_type, entity.id,
            )

        event = Event(
            type=EventTypes.AUTOMATION_EXECUTED,
            source="automation_engine",
            payload={
                "automation_id": automation.id,
                "owner_id": automation.owner_id,
                "success": run.success,
                **run.model_dump(mode="json", exclude={"automation_id"}),
            },
        )
        if correlation_id:
            event.correlation_id = correlation_id
        await self._bus.publish(event)
        return run

    async def _run_guarded(
        self,
        automation: Automation,
        entity: EntityBase,
        trigger_type: str,
        correlation_id: str | None,
    ) -> AutomationRun | None:
        # One broken automation must not starve the others matched by the same trigger
        try:
            return await self.run_cycle(automation, entity, trigger_type, correlation_id)
        except Exception:
            logger.exception("Automation %s failed on %s %s", automation.id, entity.entity_type, entity.id)
            return None
