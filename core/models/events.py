"""Event model -- the message format carried by the in-process bus."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel, Field


class Event(BaseModel):
    """A typed event that flows through the EventBus.

    Entity lifecycle changes, task outcomes and automation runs are all
    published as Events and persisted to daily JSONL files for auditability.
    """

    id: str = Field(default_factory=lambda: f"evt_{uuid4().hex[:12]}")
    type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    source: str
    payload: dict = Field(default_factory=dict)
    metadata: dict | None = None

    def derive(self, type: str, source: str, payload: dict | None = None) -> Event:
        """Create a new event in the same correlation chain."""
        return Event(
            type=type,
            correlation_id=self.correlation_id,
            source=source,
            payload=payload or {},
        )


# -- Event type constants --

class EventTypes:
    """Well-known event type strings."""

    # CRM entities (payload: entity_type, trigger_type, entity_id, owner_id, change)
    ENTITY_CHANGED = "entity.changed"

    # Task queue
    TASK_ENQUEUED = "task.enqueued"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"

    # Automation runtime
    AUTOMATION_EXECUTED = "automation.executed"

    # Schedulers
    SCHEDULE_FIRED = "schedule.fired"
