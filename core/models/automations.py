"""Automation models -- trigger -> conditions -> actions rules and their run records.

Incoming JSON may use camelCase keys (entityType, delayMinutes, dayOfWeek)
or snake_case; both validate to the same model.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Literal, Union
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Tagged value variant used by condition values and trigger filters.
# Coercion rules for each operator live in automation/conditions.py.
ScalarValue = Union[bool, int, float, str]
ConditionValue = Union[ScalarValue, list[ScalarValue], None]

AutomationStatus = Literal["draft", "active", "paused"]
EntityType = Literal["lead", "contact"]
TriggerEntityType = Literal["lead", "contact", "both"]

TriggerType = Literal[
    "new_lead",
    "lead_updated",
    "lead_qualified",
    "lead_disqualified",
    "new_contact",
    "contact_updated",
    "contact_purchase",
    "tag_added",
    "tag_removed",
    "field_updated",
    "scheduled",
]

Operator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "greater_than",
    "less_than",
    "is_empty",
    "is_not_empty",
    "in_list",
    "not_in_list",
]

ActionType = Literal[
    "update_field",
    "add_tag",
    "remove_tag",
    "send_email",
    "create_task",
    "convert_lead",
    "add_note",
    "webhook",
]

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Schedule(_CamelModel):
    """When a scheduled automation fires.

    day_of_week follows 0 = Sunday .. 6 = Saturday.
    """

    frequency: Literal["daily", "weekly", "monthly"]
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    time: str = "00:00"

    @field_validator("time")
    @classmethod
    def _check_time(cls, value: str) -> str:
        if not _TIME_RE.match(value):
            raise ValueError(f"time must be HH:MM (24h), got {value!r}")
        return value

    @model_validator(mode="after")
    def _check_days(self) -> Schedule:
        if self.frequency == "weekly" and self.day_of_week is None:
            raise ValueError("weekly schedules require day_of_week")
        if self.frequency == "monthly" and self.day_of_month is None:
            raise ValueError("monthly schedules require day_of_month")
        return self

    @property
    def hour(self) -> int:
        return int(self.time[:2])

    @property
    def minute(self) -> int:
        return int(self.time[3:])


class Trigger(_CamelModel):
    type: TriggerType
    entity_type: TriggerEntityType = "both"
    # Narrow tag/field triggers to one field or tag, and optionally one value
    specific_field: str | None = None
    specific_value: ConditionValue = None
    schedule: Schedule | None = None

    @model_validator(mode="after")
    def _check_schedule(self) -> Trigger:
        if self.type == "scheduled" and self.schedule is None:
            raise ValueError("scheduled triggers require a schedule")
        return self


class Condition(_CamelModel):
    field: str
    operator: Operator = Field(validation_alias=AliasChoices("operator", "op"))
    value: ConditionValue = None


class Action(_CamelModel):
    type: ActionType
    params: dict = Field(default_factory=dict)
    delay_minutes: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("delay_minutes", "delayMinutes", "delay"),
    )


class AutomationStats(_CamelModel):
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_executed: datetime | None = None


class Automation(_CamelModel):
    """A persisted rule owned by one tenant."""

    id: str = Field(default_factory=lambda: f"auto_{uuid4().hex[:12]}")
    owner_id: str
    name: str
    description: str = ""
    status: AutomationStatus = "draft"
    trigger: Trigger
    conditions: list[Condition] = Field(default_factory=list)
    actions: list[Action] = Field(min_length=1)
    stats: AutomationStats = Field(default_factory=AutomationStats)
    metadata: dict = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    # Start of the last schedule slot this automation fired in
    last_fired_at: datetime | None = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be empty")
        return value

    @property
    def is_active(self) -> bool:
        return self.status == "active"


# -- Run records (not persisted; returned to callers and published on the bus) --

class ActionOutcome(BaseModel):
    index: int
    type: str
    success: bool
    error: str | None = None
    deferred_task_id: str | None = None


class AutomationRun(BaseModel):
    """Outcome of one trigger-match-and-act cycle for one entity."""

    automation_id: str
    entity_type: str
    entity_id: str
    trigger_type: str
    outcomes: list[ActionOutcome] = Field(default_factory=list)
    executed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return all(o.success for o in self.outcomes)
