"""File + SQLite storage layer.

SQLite holds the task queue and the automation rules: both are mutated by
several independent loops, so every state change is a single conditional
UPDATE (compare-and-swap claims, in-place counter increments).
Files (JSON) hold the CRM records and email templates.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from core.clock import ensure_utc
from core.errors import InvalidTransitionError, TaskInProgressError, TaskNotFoundError
from core.models.automations import Automation, AutomationStats
from core.models.pagination import Page, normalize_page
from core.models.tasks import COMPLETED, FAILED, IN_PROGRESS, PENDING, Task, TaskResult

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

# Rule fields kept in the JSON document column; everything else has its own column.
_AUTOMATION_DOCUMENT_FIELDS = {"description", "trigger", "conditions", "actions", "metadata"}


def _ts(dt: datetime | None) -> str | None:
    """Fixed-width UTC ISO timestamp, so TEXT comparison is chronological."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Store:
    """Unified storage layer for files + SQLite.

    All paths are relative to the home directory (~/.leadpilot/).
    """

    def __init__(self, home: Path) -> None:
        self._home = home
        self._home.mkdir(parents=True, exist_ok=True)
        self._db_path = home / "db.sqlite"
        self._db: sqlite3.Connection | None = None
        self._init_sqlite()

    # ------------------------------------------------------------------
    # SQLite
    # ------------------------------------------------------------------

    def _init_sqlite(self) -> None:
        """Initialize SQLite database and create tables if needed."""
        self._db = sqlite3.connect(str(self._db_path))
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")

        self._db.executescript("""
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                type TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                priority INTEGER NOT NULL DEFAULT 1,
                payload TEXT NOT NULL DEFAULT '{}',
                result TEXT,
                scheduled_for TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                created_at TEXT NOT NULL,
                parent_task_id TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_tasks_due
                ON tasks(status, scheduled_for, priority);
            CREATE INDEX IF NOT EXISTS idx_tasks_owner_created
                ON tasks(owner_id, created_at);

            CREATE TABLE IF NOT EXISTS automations (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'draft',
                trigger_type TEXT NOT NULL,
                entity_type TEXT NOT NULL DEFAULT 'both',
                document TEXT NOT NULL,
                execution_count INTEGER NOT NULL DEFAULT 0,
                success_count INTEGER NOT NULL DEFAULT 0,
                failure_count INTEGER NOT NULL DEFAULT 0,
                last_executed TEXT,
                last_fired_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_automations_owner_status
                ON automations(owner_id, status);
            CREATE INDEX IF NOT EXISTS idx_automations_trigger
                ON automations(status, trigger_type, entity_type);
        """)
        self._db.commit()
        logger.info("SQLite initialized at %s", self._db_path)

    @property
    def db(self) -> sqlite3.Connection:
        if self._db is None:
            raise RuntimeError("Store not initialized")
        return self._db

    def close(self) -> None:
        """Close the SQLite connection."""
        if self._db:
            self._db.close()
            self._db = None

    # ------------------------------------------------------------------
    # Tasks (SQLite)
    # ------------------------------------------------------------------

    def insert_task(self, task: Task) -> Task:
        self.db.execute(
            """INSERT INTO tasks
               (id, owner_id, type, status, priority, payload, result,
                scheduled_for, started_at, completed_at, created_at, parent_task_id)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                task.id,
                task.owner_id,
                task.type,
                task.status,
                task.priority,
                json.dumps(task.payload, default=str),
                task.result.model_dump_json() if task.result else None,
                _ts(task.scheduled_for),
                _ts(task.started_at),
                _ts(task.completed_at),
                _ts(task.created_at),
                task.parent_task_id,
            ),
        )
        self.db.commit()
        return task

    def get_task(self, task_id: str) -> Task | None:
        row = self.db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def select_due_tasks(self, now: datetime, limit: int) -> list[Task]:
        """Pending tasks due at `now`, most urgent first, oldest first within a priority."""
        rows = self.db.execute(
            """SELECT * FROM tasks
               WHERE status = ? AND scheduled_for <= ?
               ORDER BY priority DESC, scheduled_for ASC, created_at ASC
               LIMIT ?""",
            (PENDING, _ts(now), limit),
        ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def claim_task(self, task_id: str, now: datetime) -> bool:
        """Atomically move a task pending -> in-progress. False if someone else got it."""
        cursor = self.db.execute(
            """UPDATE tasks SET status = ?, started_at = ?
               WHERE id = ? AND status = ?""",
            (IN_PROGRESS, _ts(now), task_id, PENDING),
        )
        self.db.commit()
        return cursor.rowcount == 1

    def finish_task(self, task_id: str, result: TaskResult, now: datetime) -> Task:
        """Move a claimed task to completed/failed according to result.success."""
        status = COMPLETED if result.success else FAILED
        cursor = self.db.execute(
            """UPDATE tasks SET status = ?, result = ?, completed_at = ?
               WHERE id = ? AND status = ?""",
            (status, result.model_dump_json(), _ts(now), task_id, IN_PROGRESS),
        )
        self.db.commit()
        if cursor.rowcount != 1:
            current = self.get_task(task_id)
            if current is None:
                raise TaskNotFoundError(task_id)
            raise InvalidTransitionError(task_id, current.status, status)
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def delete_task(self, task_id: str) -> None:
        """Delete a task unless a dispatcher is running it."""
        cursor = self.db.execute(
            "DELETE FROM tasks WHERE id = ? AND status != ?",
            (task_id, IN_PROGRESS),
        )
        self.db.commit()
        if cursor.rowcount == 1:
            return
        if self.get_task(task_id) is None:
            raise TaskNotFoundError(task_id)
        raise TaskInProgressError(task_id)

    def list_tasks(
        self,
        owner_id: str | None = None,
        status: str | None = None,
        task_type: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page[Task]:
        """Paginated tasks, newest first."""
        where, params = _where(owner_id=owner_id, status=status, type=task_type)
        page, limit, offset = normalize_page(page, limit)

        total = self.db.execute(f"SELECT COUNT(*) FROM tasks {where}", params).fetchone()[0]
        rows = self.db.execute(
            f"SELECT * FROM tasks {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            params + [limit, offset],
        ).fetchall()
        return Page[Task](
            items=[self._row_to_task(r) for r in rows],
            total=total,
            page=page,
            limit=limit,
        )

    def count_tasks(self, status: str | None = None, owner_id: str | None = None) -> int:
        where, params = _where(owner_id=owner_id, status=status)
        return self.db.execute(f"SELECT COUNT(*) FROM tasks {where}", params).fetchone()[0]

    def prune_tasks(self, owner_id: str, completed_before: datetime) -> int:
        """Delete terminal tasks of an owner that finished before the cutoff."""
        cursor = self.db.execute(
            """DELETE FROM tasks
               WHERE owner_id = ? AND status IN (?, ?) AND completed_at < ?""",
            (owner_id, COMPLETED, FAILED, _ts(completed_before)),
        )
        self.db.commit()
        return cursor.rowcount

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            owner_id=row["owner_id"],
            type=row["type"],
            status=row["status"],
            priority=row["priority"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            result=TaskResult.model_validate_json(row["result"]) if row["result"] else None,
            scheduled_for=_dt(row["scheduled_for"]),
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            created_at=_dt(row["created_at"]),
            parent_task_id=row["parent_task_id"],
        )

    # ------------------------------------------------------------------
    # Automations (SQLite)
    # ------------------------------------------------------------------

    def insert_automation(self, automation: Automation) -> Automation:
        stats = automation.stats
        self.db.execute(
            """INSERT INTO automations
               (id, owner_id, name, status, trigger_type, entity_type, document,
                execution_count, success_count, failure_count, last_executed,
                last_fired_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                automation.id,
                automation.owner_id,
                automation.name,
                automation.status,
                automation.trigger.type,
                automation.trigger.entity_type,
                _automation_document(automation),
                stats.execution_count,
                stats.success_count,
                stats.failure_count,
                _ts(stats.last_executed),
                _ts(automation.last_fired_at),
                _ts(automation.created_at),
                _ts(automation.updated_at),
            ),
        )
        self.db.commit()
        return automation

    def get_automation(self, automation_id: str) -> Automation | None:
        row = self.db.execute(
            "SELECT * FROM automations WHERE id = ?", (automation_id,)
        ).fetchone()
        return self._row_to_automation(row) if row else None

    def update_automation(self, automation: Automation) -> bool:
        """Persist edits to a rule. Stats and schedule bookkeeping are left untouched."""
        cursor = self.db.execute(
            """UPDATE automations
               SET name = ?, status = ?, trigger_type = ?, entity_type = ?,
                   document = ?, updated_at = ?
               WHERE id = ?""",
            (
                automation.name,
                automation.status,
                automation.trigger.type,
                automation.trigger.entity_type,
                _automation_document(automation),
                _ts(automation.updated_at),
                automation.id,
            ),
        )
        self.db.commit()
        return cursor.rowcount == 1

    def set_automation_status(self, automation_id: str, status: str, now: datetime) -> bool:
        cursor = self.db.execute(
            "UPDATE automations SET status = ?, updated_at = ? WHERE id = ?",
            (status, _ts(now), automation_id),
        )
        self.db.commit()
        return cursor.rowcount == 1

    def delete_automation(self, automation_id: str) -> bool:
        cursor = self.db.execute("DELETE FROM automations WHERE id = ?", (automation_id,))
        self.db.commit()
        return cursor.rowcount == 1

    def list_automations(
        self,
        owner_id: str | None = None,
        status: str | None = None,
        trigger_type: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page[Automation]:
        """Paginated automations, newest first."""
        where, params = _where(owner_id=owner_id, status=status, trigger_type=trigger_type)
        page, limit, offset = normalize_page(page, limit)

        total = self.db.execute(
            f"SELECT COUNT(*) FROM automations {where}", params
        ).fetchone()[0]
        rows = self.db.execute(
            f"""SELECT * FROM automations {where}
                ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?""",
            params + [limit, offset],
        ).fetchall()
        return Page[Automation](
            items=[self._row_to_automation(r) for r in rows],
            total=total,
            page=page,
            limit=limit,
        )

    def find_event_automations(
        self,
        owner_id: str,
        trigger_type: str,
        entity_type: str,
    ) -> list[Automation]:
        """Active automations of an owner listening for trigger_type on entity_type."""
        rows = self.db.execute(
            """SELECT * FROM automations
               WHERE owner_id = ? AND status = 'active' AND trigger_type = ?
                 AND entity_type IN (?, 'both')
               ORDER BY created_at ASC, id ASC""",
            (owner_id, trigger_type, entity_type),
        ).fetchall()
        return [self._row_to_automation(r) for r in rows]

    def find_scheduled_automations(self) -> list[Automation]:
        rows = self.db.execute(
            """SELECT * FROM automations
               WHERE status = 'active' AND trigger_type = 'scheduled'
               ORDER BY created_at ASC, id ASC"""
        ).fetchall()
        return [self._row_to_automation(r) for r in rows]

    def record_execution(self, automation_id: str, success: bool, now: datetime) -> bool:
        """Increment run counters in place (no read-modify-write)."""
        column = "success_count" if success else "failure_count"
        cursor = self.db.execute(
            f"""UPDATE automations
                SET execution_count = execution_count + 1,
                    {column} = {column} + 1,
                    last_executed = ?
                WHERE id = ?""",
            (_ts(now), automation_id),
        )
        self.db.commit()
        return cursor.rowcount == 1

    def claim_schedule_slot(self, automation_id: str, slot_start: datetime) -> bool:
        """Mark the automation as fired for the slot. False if it already fired in it."""
        cursor = self.db.execute(
            """UPDATE automations SET last_fired_at = ?
               WHERE id = ? AND (last_fired_at IS NULL OR last_fired_at < ?)""",
            (_ts(slot_start), automation_id, _ts(slot_start)),
        )
        self.db.commit()
        return cursor.rowcount == 1

    def automation_totals(self, owner_id: str | None = None) -> dict[str, Any]:
        """Aggregate counts over automations, optionally for one owner."""
        where, params = _where(owner_id=owner_id)
        row = self.db.execute(
            f"""SELECT COUNT(*) AS total,
                       SUM(status = 'active') AS active,
                       SUM(status = 'paused') AS paused,
                       SUM(status = 'draft') AS draft,
                       COALESCE(SUM(execution_count), 0) AS executions,
                       COALESCE(SUM(success_count), 0) AS successes,
                       COALESCE(SUM(failure_count), 0) AS failures,
                       COUNT(DISTINCT owner_id) AS owners
                FROM automations {where}""",
            params,
        ).fetchone()
        trigger_rows = self.db.execute(
            f"""SELECT trigger_type, COUNT(*) AS n FROM automations {where}
                GROUP BY trigger_type ORDER BY trigger_type""",
            params,
        ).fetchall()
        totals = {key: row[key] or 0 for key in row.keys()}
        totals["trigger_types"] = {r["trigger_type"]: r["n"] for r in trigger_rows}
        return totals

    def _row_to_automation(self, row: sqlite3.Row) -> Automation:
        document = json.loads(row["document"])
        return Automation(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            status=row["status"],
            stats=AutomationStats(
                execution_count=row["execution_count"],
                success_count=row["success_count"],
                failure_count=row["failure_count"],
                last_executed=_dt(row["last_executed"]),
            ),
            last_fired_at=_dt(row["last_fired_at"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            **document,
        )

    # ------------------------------------------------------------------
    # File operations (JSON)
    # ------------------------------------------------------------------

    def write_json(self, subdir: str, filename: str, model: BaseModel) -> Path:
        """Write a Pydantic model as a JSON file (atomic rename)."""
        path = self._home / subdir / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(model.model_dump_json(indent=2))
        tmp.replace(path)
        return path

    def read_json(self, subdir: str, filename: str, model_class: type[T]) -> T | None:
        """Read a JSON file and parse it as a Pydantic model."""
        path = self._home / subdir / filename
        if not path.exists():
            return None
        try:
            return model_class.model_validate_json(path.read_text())
        except (ValidationError, OSError):
            logger.exception("Failed to read %s", path)
            return None

    def list_json(self, subdir: str, model_class: type[T]) -> list[T]:
        """List and parse all JSON files in a subdirectory."""
        dirpath = self._home / subdir
        if not dirpath.exists():
            return []

        results = []
        for filepath in sorted(dirpath.glob("*.json")):
            try:
                results.append(model_class.model_validate_json(filepath.read_text()))
            except (ValidationError, OSError):
                logger.exception("Failed to parse %s", filepath)
        return results

    def delete_file(self, subdir: str, filename: str) -> bool:
        """Delete a file. Returns True if it existed."""
        path = self._home / subdir / filename
        if path.exists():
            path.unlink()
            return True
        return False


def _where(**filters: Any) -> tuple[str, list[Any]]:
    """Build a WHERE clause from non-None equality filters (column names are trusted)."""
    clauses = []
    params: list[Any] = []
    for column, value in filters.items():
        if value is None:
            continue
        clauses.append(f"{column} = ?")
        params.append(value)
    return (f"WHERE {' AND '.join(clauses)}" if clauses else ""), params


def _automation_document(automation: Automation) -> str:
    return json.dumps(
        automation.model_dump(mode="json", include=_AUTOMATION_DOCUMENT_FIELDS)
    )
