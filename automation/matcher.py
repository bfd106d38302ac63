"""Trigger matcher -- finds the automations eligible to run.

Two paths:
  1. Event path: an entity changed, find the owner's active automations
     listening for that trigger type on that entity type.
  2. Schedule path: on each sweep, find active `scheduled` automations whose
     schedule matches the current local time, claiming one run per slot.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Literal

from pydantic.alias_generators import to_snake

from automation.conditions import check
from core.clock import load_timezone
from core.data.store import Store
from core.models.automations import Automation, Schedule, Trigger

logger = logging.getLogger(__name__)

Resolution = Literal["hour", "minute"]


class TriggerMatcher:
    """Selects automations for entity events and schedule sweeps.

    With resolution "hour" a schedule matches anywhere inside its hour
    (09:30 fires during 09:00-09:59); with "minute" only in its exact
    minute. Either way an automation fires at most once per slot.
    """

    def __init__(
        self,
        store: Store,
        timezone_name: str = "UTC",
        resolution: Resolution = "hour",
    ) -> None:
        if resolution not in ("hour", "minute"):
            raise ValueError(f"Unknown schedule resolution: {resolution!r}")
        self._store = store
        self._tz = load_timezone(timezone_name)
        self._resolution = resolution

    # -- Event path --

    def for_event(
        self,
        owner_id: str,
        entity_type: str,
        trigger_type: str,
        change: dict | None = None,
    ) -> list[Automation]:
        """Active automations for this event, oldest first."""
        candidates = self._store.find_event_automations(owner_id, trigger_type, entity_type)
        return [a for a in candidates if change_matches(a.trigger, change or {})]

    # -- Schedule path --

    def due_scheduled(self, now: datetime) -> list[Automation]:
        """Scheduled automations that match `now` and won this slot's claim."""
        slot = self.slot_start(now)
        due = []
        for automation in self._store.find_scheduled_automations():
            schedule = automation.trigger.schedule
            if schedule is None or not self.schedule_matches(schedule, now):
                continue
            if not self._store.claim_schedule_slot(automation.id, slot):
                logger.debug("Automation %s already fired in slot %s", automation.id, slot)
                continue
            due.append(automation)
        return due

    def schedule_matches(self, schedule: Schedule, now: datetime) -> bool:
        local = now.astimezone(self._tz)
        if local.hour != schedule.hour:
            return False
        if self._resolution == "minute" and local.minute != schedule.minute:
            return False
        if schedule.frequency == "weekly":
            # isoweekday: Monday=1 .. Sunday=7 -> 0=Sunday .. 6=Saturday
            return local.isoweekday() % 7 == schedule.day_of_week
        if schedule.frequency == "monthly":
            return local.day == schedule.day_of_month
        return True

    def slot_start(self, now: datetime) -> datetime:
        """UTC start of the hour or minute slot containing `now`.

        Slots are keyed on local wall time. The hour repeated when DST ends
        maps to its first occurrence, so it is one slot, not two.
        """
        local = now.astimezone(self._tz).replace(fold=0)
        if self._resolution == "hour":
            local = local.replace(minute=0, second=0, microsecond=0)
        else:
            local = local.replace(second=0, microsecond=0)
        return local.astimezone(timezone.utc)


def change_matches(trigger: Trigger, change: dict) -> bool:
    """Apply a trigger's specific_field / specific_value filter to a change."""
    if trigger.type == "field_updated":
        if trigger.specific_field and _field_key(trigger.specific_field) != _field_key(change.get("field", "")):
            return False
        if trigger.specific_value is not None:
            return check("equals", change.get("new_value"), trigger.specific_value)
        return True

    if trigger.type in ("tag_added", "tag_removed"):
        wanted = trigger.specific_value if trigger.specific_value is not None else trigger.specific_field
        return wanted is None or change.get("tag") == wanted

    return True


def _field_key(path: str) -> str:
    head, _, rest = str(path).partition(".")
    return f"{to_snake(head)}.{rest}" if rest else to_snake(head)
