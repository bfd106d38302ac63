"""Pydantic data models shared across all components."""

from core.models.automations import (
    Action,
    ActionOutcome,
    Automation,
    AutomationRun,
    AutomationStats,
    Condition,
    Schedule,
    Trigger,
)
from core.models.events import Event, EventTypes
from core.models.pagination import Page
from core.models.tasks import Task, TaskResult

__all__ = [
    "Action",
    "ActionOutcome",
    "Automation",
    "AutomationRun",
    "AutomationStats",
    "Condition",
    "Event",
    "EventTypes",
    "Page",
    "Schedule",
    "Task",
    "TaskResult",
    "Trigger",
]
