"""Delayed action handler -- runs an automation action whose delay has passed.

ActionExecutor enqueues `automation.<action type>` tasks with payload:
    {"automation_id", "action", "action_index", "entity_type", "entity_id"}

The automation and entity are re-read when the task runs. A paused or
drafted automation skips the action; a deleted automation or entity fails
the task.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from automation.actions import ActionExecutor, delayed_task_type
from core.data.store import Store
from core.models.automations import Action
from core.models.tasks import TaskResult
from core.protocols import EntityStore

logger = logging.getLogger(__name__)


class DelayedActionHandler:
    """Executes deferred actions of one action type."""

    def __init__(
        self,
        action_type: str,
        store: Store,
        entities: EntityStore,
        executor: ActionExecutor,
    ) -> None:
        self._action_type = action_type
        self._store = store
        self._entities = entities
        self._executor = executor

    @property
    def name(self) -> str:
        return delayed_task_type(self._action_type)

    async def run(self, owner_id: str, payload: dict) -> TaskResult:
        try:
            automation_id = payload["automation_id"]
            entity_type = payload["entity_type"]
            entity_id = payload["entity_id"]
            action = Action.model_validate(payload["action"])
        except (KeyError, ValidationError) as exc:
            return TaskResult(success=False, error=f"Malformed delayed action payload: {exc}")

        automation = self._store.get_automation(automation_id)
        if automation is None:
            return TaskResult(success=False, error=f"Automation {automation_id} no longer exists")
        if not automation.is_active:
            logger.info("Skipping delayed %s: automation %s is %s", action.type, automation_id, automation.status)
            return TaskResult(success=True, message=f"Skipped: automation is {automation.status}")

        entity = self._entities.get(entity_type, entity_id)
        if entity is None:
            return TaskResult(success=False, error=f"{entity_type} {entity_id} no longer exists")

        outcome = await self._executor.execute_one(
            automation,
            action.model_copy(update={"delay_minutes": 0}),
            entity,
            index=int(payload.get("action_index", 0)),
        )
        if not outcome.success:
            return TaskResult(success=False, error=outcome.error)
        return TaskResult(
            success=True,
            message=f"Applied {action.type} to {entity_type} {entity_id}",
        )
