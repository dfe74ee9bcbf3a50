"""Scheduled task and run persistence, plus linked-skill counters."""

from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime
from typing import Any

from agentcron.infrastructure.database import to_db_timestamp, utc_now
from agentcron.scheduling.timezone import zone_for
from agentcron.scheduling.types import ScheduledTask, ScheduledTaskRun, Skill

_TASK_JSON_FIELDS = ("prompt_variables", "context_sources", "delivery_config")
_TASK_BOOL_FIELDS = ("enabled", "create_new_session_per_run")


def _encode(key: str, value: Any) -> Any:
    if isinstance(value, datetime):
        return to_db_timestamp(value)
    if isinstance(value, bool):
        return 1 if value else 0
    if key in _TASK_JSON_FIELDS or key == "metadata":
        if isinstance(value, list):
            value = [v.model_dump() if hasattr(v, "model_dump") else v for v in value]
        return json.dumps(value)
    return value


class TaskRepository:
    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    # --- Tasks ---

    def create_task(self, task: ScheduledTask) -> ScheduledTask:
        now = utc_now()
        data = task.model_dump()
        if data["scheduled_at"] is not None and data["scheduled_at"].tzinfo is None:
            # Naive one-shot times are wall-clock times in the task's own zone.
            data["scheduled_at"] = data["scheduled_at"].replace(tzinfo=zone_for(task.timezone))
        data["created_at"] = data["created_at"] or now
        data["updated_at"] = now
        columns = list(data.keys())
        self._db.execute(
            f"INSERT INTO scheduled_tasks ({', '.join(columns)}) VALUES ({', '.join('?' * len(columns))})",
            [_encode(key, data[key]) for key in columns],
        )
        self._db.commit()
        return self.get_task_by_id(task.id)  # type: ignore[return-value]

    def get_task_by_id(self, id: str) -> ScheduledTask | None:
        row = self._db.execute("SELECT * FROM scheduled_tasks WHERE id = ?", (id,)).fetchone()
        if not row:
            return None
        return self._row_to_task(row)

    def get_all_tasks(self) -> list[ScheduledTask]:
        rows = self._db.execute("SELECT * FROM scheduled_tasks ORDER BY created_at").fetchall()
        return [self._row_to_task(row) for row in rows]

    def get_triggerable_tasks(self) -> list[ScheduledTask]:
        rows = self._db.execute(
            "SELECT * FROM scheduled_tasks WHERE enabled = 1 AND status = 'active' ORDER BY created_at"
        ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def get_due_interval_tasks(self, now: datetime) -> list[ScheduledTask]:
        rows = self._db.execute(
            """SELECT * FROM scheduled_tasks
               WHERE enabled = 1 AND status = 'active' AND schedule_type = 'interval'
               AND (next_run_at IS NULL OR next_run_at <= ?)
               ORDER BY next_run_at""",
            (to_db_timestamp(now),),
        ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def get_due_paused_tasks(self, now: datetime) -> list[ScheduledTask]:
        """Tasks whose pause window has elapsed (paused via status or via the enabled flag)."""
        rows = self._db.execute(
            """SELECT * FROM scheduled_tasks
               WHERE paused_until IS NOT NULL AND paused_until <= ?
               AND (status = 'paused' OR enabled = 0)
               AND status != 'archived'""",
            (to_db_timestamp(now),),
        ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def update_task(self, id: str, **updates: Any) -> None:
        """Set the given columns. Unlike a partial patch, None values are written as NULL."""
        if not updates:
            return
        updates.setdefault("updated_at", utc_now())
        fields = [f"{key} = ?" for key in updates]
        values = [_encode(key, value) for key, value in updates.items()]
        values.append(id)
        self._db.execute(f"UPDATE scheduled_tasks SET {', '.join(fields)} WHERE id = ?", values)
        self._db.commit()

    def delete_task(self, id: str) -> None:
        self._db.execute("DELETE FROM scheduled_task_runs WHERE task_id = ?", (id,))
        self._db.execute("DELETE FROM scheduled_tasks WHERE id = ?", (id,))
        self._db.commit()

    # --- Runs ---

    def create_run(
        self,
        task_id: str,
        scheduled_for: datetime,
        resolved_prompt: str | None,
        status: str = "pending",
    ) -> ScheduledTaskRun:
        run_id = str(uuid.uuid4())
        self._db.execute(
            """INSERT INTO scheduled_task_runs
               (id, task_id, status, scheduled_for, attempt_number, resolved_prompt, metadata, created_at)
               VALUES (?, ?, ?, ?, 1, ?, '{}', ?)""",
            (run_id, task_id, status, to_db_timestamp(scheduled_for), resolved_prompt, to_db_timestamp(utc_now())),
        )
        self._db.commit()
        return self.get_run(run_id)  # type: ignore[return-value]

    def get_run(self, id: str) -> ScheduledTaskRun | None:
        row = self._db.execute("SELECT * FROM scheduled_task_runs WHERE id = ?", (id,)).fetchone()
        if not row:
            return None
        return self._row_to_run(row)

    def get_runs_for_task(self, task_id: str) -> list[ScheduledTaskRun]:
        rows = self._db.execute(
            "SELECT * FROM scheduled_task_runs WHERE task_id = ? ORDER BY created_at DESC", (task_id,)
        ).fetchall()
        return [self._row_to_run(row) for row in rows]

    def update_run(self, id: str, status: str, **fields: Any) -> None:
        columns = ["status = ?"]
        values: list[Any] = [status]
        for key, value in fields.items():
            columns.append(f"{key} = ?")
            values.append(_encode(key, value))
        values.append(id)
        self._db.execute(f"UPDATE scheduled_task_runs SET {', '.join(columns)} WHERE id = ?", values)
        self._db.commit()

    def get_unfinished_runs(self) -> list[ScheduledTaskRun]:
        rows = self._db.execute(
            """SELECT * FROM scheduled_task_runs
               WHERE status IN ('pending', 'queued', 'running')
               ORDER BY created_at""",
        ).fetchall()
        return [self._row_to_run(row) for row in rows]

    # --- Linked skills ---

    def create_skill(self, skill: Skill) -> None:
        self._db.execute(
            "INSERT INTO skills (id, user_id, name, run_count, success_count) VALUES (?, ?, ?, ?, ?)",
            (skill.id, skill.user_id, skill.name, skill.run_count, skill.success_count),
        )
        self._db.commit()

    def get_skill(self, id: str) -> Skill | None:
        row = self._db.execute("SELECT * FROM skills WHERE id = ?", (id,)).fetchone()
        if not row:
            return None
        return Skill(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            run_count=row["run_count"],
            success_count=row["success_count"],
            last_run_at=row["last_run_at"],
        )

    def record_skill_run(self, skill_id: str, user_id: str, succeeded: bool) -> None:
        now = to_db_timestamp(utc_now())
        self._db.execute(
            """UPDATE skills
               SET run_count = run_count + 1,
                   success_count = success_count + ?,
                   last_run_at = ?, updated_at = ?
               WHERE id = ? AND user_id = ?""",
            (1 if succeeded else 0, now, now, skill_id, user_id),
        )
        self._db.commit()

    # --- Row mapping ---

    def _row_to_task(self, row: sqlite3.Row) -> ScheduledTask:
        data = dict(row)
        for key in _TASK_JSON_FIELDS:
            data[key] = json.loads(data[key]) if data[key] else None
        for key in _TASK_BOOL_FIELDS:
            data[key] = bool(data[key])
        data["prompt_variables"] = data["prompt_variables"] or {}
        data["context_sources"] = data["context_sources"] or []
        data["delivery_config"] = data["delivery_config"] or {}
        return ScheduledTask(**data)

    def _row_to_run(self, row: sqlite3.Row) -> ScheduledTaskRun:
        data = dict(row)
        data["metadata"] = json.loads(data["metadata"]) if data["metadata"] else {}
        return ScheduledTaskRun(**data)
