"""Task model -- units of deferred work processed by the dispatcher."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

TaskStatus = Literal["pending", "in-progress", "completed", "failed"]

PENDING: TaskStatus = "pending"
IN_PROGRESS: TaskStatus = "in-progress"
COMPLETED: TaskStatus = "completed"
FAILED: TaskStatus = "failed"


class TaskResult(BaseModel):
    """Result returned by a TaskHandler and stored on the task.

    Handlers report business failures with success=False instead of raising.
    """

    success: bool = False
    message: str | None = None
    data: Any = None
    error: str | None = None


class Task(BaseModel):
    """A queued unit of work.

    Status only moves pending -> in-progress -> completed|failed, and only
    the dispatcher moves it.
    """

    id: str = Field(default_factory=lambda: f"task_{uuid4().hex[:12]}")
    owner_id: str
    type: str
    status: TaskStatus = PENDING
    priority: int = Field(default=1, ge=1, le=5)
    payload: dict = Field(default_factory=dict)
    result: TaskResult | None = None

    scheduled_for: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Set when the task was created by retrying a failed one
    parent_task_id: str | None = None
