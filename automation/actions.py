"""Action executor -- applies an automation's actions to one entity.

Actions run in order and best-effort: a failing action is logged and
recorded in its ActionOutcome, and the remaining actions still run.
An action with delay_minutes > 0 is not run here; it is enqueued as an
`automation.<type>` task due after the delay, and DelayedActionHandler runs
it when the dispatcher picks it up.

Actions that change the entity re-read it from the entity store and save it
without awaiting in between. Delegate calls (email, task enqueue) happen
before that read, so writes made while they were in flight are kept.
"""

from __future__ import annotations

import logging
import re
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Callable

from core.clock import Clock, SystemClock
from core.errors import ActionError
from core.models.automations import Action, ActionOutcome, Automation
from core.protocols import EntityStore, LeadConverter
from core.registry import PluginRegistry
from crm.models import MISSING, EntityBase, Lead

if TYPE_CHECKING:
    from scheduler.dispatcher import TaskDispatcher

logger = logging.getLogger(__name__)

DELAYED_TASK_PREFIX = "automation."

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def delayed_task_type(action_type: str) -> str:
    return f"{DELAYED_TASK_PREFIX}{action_type}"


class ActionExecutor:
    """Runs automation actions against leads and contacts.

    Collaborators:
        entities   -- loads/saves the entity and email templates
        dispatcher -- enqueues create_task and delayed actions
        registry   -- resolves the "email" and "webhook" delegates
        converter  -- performs convert_lead (the CRM service)
    """

    def __init__(
        self,
        entities: EntityStore,
        dispatcher: TaskDispatcher,
        registry: PluginRegistry,
        converter: LeadConverter | None = None,
        clock: Clock | None = None,
        delayed_priority: int = 3,
    ) -> None:
        self._entities = entities
        self._dispatcher = dispatcher
        self._registry = registry
        self._converter = converter
        self._clock = clock or SystemClock()
        self._delayed_priority = delayed_priority

    def set_converter(self, converter: LeadConverter) -> None:
        self._converter = converter

    async def execute(self, automation: Automation, entity: EntityBase) -> list[ActionOutcome]:
        """Run every action of the automation against the entity."""
        outcomes = []
        for index, action in enumerate(automation.actions):
            if action.delay_minutes > 0:
                outcome = await self._defer(index, automation, action, entity)
            else:
                outcome = await self.execute_one(automation, action, entity, index=index)
                # Later actions render from what is stored now, not from the copy we started with
                entity = self._entities.get(entity.entity_type, entity.id) or entity
            outcomes.append(outcome)
        return outcomes

    async def execute_one(
        self,
        automation: Automation,
        action: Action,
        entity: EntityBase,
        index: int = 0,
    ) -> ActionOutcome:
        """Run a single action now, turning any error into a failed outcome."""
        handler = getattr(self, f"_do_{action.type}", None)
        try:
            if handler is None:
                raise ActionError(f"Unsupported action type: {action.type}")
            await handler(automation, action.params, entity)
        except ActionError as exc:
            logger.warning(
                "Automation %s action #%d (%s) failed on %s %s: %s",
                automation.id, index, action.type, entity.entity_type, entity.id, exc,
            )
            return ActionOutcome(index=index, type=action.type, success=False, error=str(exc))
        except Exception as exc:
            logger.exception(
                "Automation %s action #%d (%s) crashed on %s %s",
                automation.id, index, action.type, entity.entity_type, entity.id,
            )
            return ActionOutcome(index=index, type=action.type, success=False, error=str(exc))

        logger.debug(
            "Automation %s action #%d (%s) applied to %s %s",
            automation.id, index, action.type, entity.entity_type, entity.id,
        )
        return ActionOutcome(index=index, type=action.type, success=True)

    async def _defer(
        self,
        index: int,
        automation: Automation,
        action: Action,
        entity: EntityBase,
    ) -> ActionOutcome:
        try:
            task = await self._dispatcher.enqueue(
                owner_id=automation.owner_id,
                task_type=delayed_task_type(action.type),
                payload={
                    "automation_id": automation.id,
                    "action": action.model_dump(mode="json"),
                    "action_index": index,
                    "entity_type": entity.entity_type,
                    "entity_id": entity.id,
                },
                scheduled_for=self._clock.now() + timedelta(minutes=action.delay_minutes),
                priority=self._delayed_priority,
            )
        except Exception as exc:
            logger.exception("Could not defer action #%d of automation %s", index, automation.id)
            return ActionOutcome(index=index, type=action.type, success=False, error=str(exc))

        logger.info(
            "Deferred action #%d (%s) of automation %s by %d min as task %s",
            index, action.type, automation.id, action.delay_minutes, task.id,
        )
        return ActionOutcome(index=index, type=action.type, success=True, deferred_task_id=task.id)

    def _mutate(self, entity: EntityBase, change: Callable[[EntityBase], None]) -> EntityBase:
        """Apply `change` to the stored copy of the entity and save it. No await in between."""
        current = self._entities.get(entity.entity_type, entity.id)
        if current is None:
            raise ActionError(f"{entity.entity_type} {entity.id} no longer exists")
        change(current)
        self._entities.save(current)
        return current

    # ------------------------------------------------------------------
    # Action implementations
    # ------------------------------------------------------------------

    async def _do_update_field(self, automation: Automation, params: dict, entity: EntityBase) -> None:
        field = params.get("field")
        if not field:
            raise ActionError("update_field requires a 'field' param")
        if "value" not in params:
            raise ActionError("update_field requires a 'value' param")
        now = self._clock.now()

        def change(current: EntityBase) -> None:
            previous_status = current.status
            try:
                current.set_path(field, params["value"])
            except ValueError as exc:
                raise ActionError(f"Cannot update {field!r}: {exc}") from exc
            if isinstance(current, Lead) and current.status != previous_status:
                # Same status timestamps as a lead updated through the CRM service
                if current.status == "qualified":
                    current.qualified_at = now
                elif current.status == "disqualified":
                    current.disqualified_at = now

        self._mutate(entity, change)

    async def _do_add_tag(self, automation: Automation, params: dict, entity: EntityBase) -> None:
        tags = _tags_param(params)
        self._mutate(entity, lambda current: current.add_tags(tags))

    async def _do_remove_tag(self, automation: Automation, params: dict, entity: EntityBase) -> None:
        tags = _tags_param(params)
        self._mutate(entity, lambda current: current.remove_tags(tags))

    async def _do_add_note(self, automation: Automation, params: dict, entity: EntityBase) -> None:
        note = str(params.get("note") or params.get("text") or "").strip()
        if not note:
            raise ActionError("add_note requires a non-empty 'note' param")
        self._mutate(entity, lambda current: current.add_activity(
            "note",
            render(note, current),
            metadata={"automation_id": automation.id},
            now=self._clock.now(),
        ))

    async def _do_send_email(self, automation: Automation, params: dict, entity: EntityBase) -> None:
        template_id = params.get("templateId") or params.get("template_id")
        if not template_id:
            raise ActionError("send_email requires a 'templateId' param")
        template = self._entities.get_template(template_id)
        if template is None or template.owner_id != automation.owner_id:
            raise ActionError(f"Email template not found: {template_id}")
        if not entity.email:
            raise ActionError(f"{entity.entity_type} {entity.id} has no email address")

        sender = self._registry.first("email")
        if sender is None:
            raise ActionError("No email sender registered")

        subject = render(template.subject, entity)
        await sender.send(
            owner_id=automation.owner_id,
            to=entity.email,
            subject=subject,
            body=render(template.body, entity),
            metadata={
                "automation_id": automation.id,
                "template_id": template.id,
                "entity_type": entity.entity_type,
                "entity_id": entity.id,
            },
        )
        self._mutate(entity, lambda current: current.add_activity(
            "email",
            f"Email sent: {subject}",
            metadata={"template_id": template.id, "subject": subject},
            now=self._clock.now(),
        ))

    async def _do_create_task(self, automation: Automation, params: dict, entity: EntityBase) -> None:
        task_type = params.get("taskType") or params.get("task_type")
        if not task_type:
            raise ActionError("create_task requires a 'taskType' param")
        payload = params.get("payload") or {}
        if not isinstance(payload, dict):
            raise ActionError("create_task 'payload' must be an object")
        payload = {
            "automation_id": automation.id,
            "entity_type": entity.entity_type,
            "entity_id": entity.id,
            **payload,
        }
        title = params.get("title") or task_type

        try:
            task = await self._dispatcher.enqueue(
                owner_id=automation.owner_id,
                task_type=task_type,
                payload=payload,
                priority=int(params.get("priority", 1)),
            )
        except ValueError as exc:
            raise ActionError(f"Invalid create_task params: {exc}") from exc

        self._mutate(entity, lambda current: current.add_activity(
            "task",
            f"Task created: {title}",
            metadata={"task_id": task.id, "task_type": task_type, "title": title},
            now=self._clock.now(),
        ))

    async def _do_convert_lead(self, automation: Automation, params: dict, entity: EntityBase) -> None:
        if entity.entity_type != "lead":
            raise ActionError("convert_lead only applies to leads")
        if self._converter is None:
            raise ActionError("No lead converter configured")
        await self._converter.convert_lead(entity.id)

    async def _do_webhook(self, automation: Automation, params: dict, entity: EntityBase) -> None:
        if not params.get("url"):
            raise ActionError("webhook requires a 'url' param")
        client = self._registry.first("webhook")
        if client is None:
            raise ActionError("No webhook client registered")
        status = await client.send(params, entity.model_dump(mode="json"))
        logger.info("Webhook for automation %s answered %d", automation.id, status)


def _tags_param(params: dict) -> list[str]:
    tags = params.get("tags", params.get("tag"))
    if isinstance(tags, str):
        tags = [tags]
    if not isinstance(tags, list) or not tags or not all(isinstance(t, str) and t for t in tags):
        raise ActionError("tag actions require a non-empty 'tags' list of strings")
    return tags


def render(text: str, entity: EntityBase) -> str:
    """Replace {{field.path}} placeholders with entity values (missing -> empty)."""
    def replace(match: re.Match) -> str:
        value: Any = entity.get_path(match.group(1))
        return "" if value is MISSING or value is None else str(value)
    return _PLACEHOLDER.sub(replace, text)
