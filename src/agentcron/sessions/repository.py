"""Session and message persistence."""

from __future__ import annotations

import json
import sqlite3
import uuid
from typing import Any

from agentcron.infrastructure.database import to_db_timestamp, utc_now
from agentcron.sessions.types import Message, Session


class SessionRepository:
    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    # --- Sessions ---

    def create_session(self, user_id: str, title: str, metadata: dict[str, Any] | None = None) -> Session:
        session_id = str(uuid.uuid4())
        now = to_db_timestamp(utc_now())
        self._db.execute(
            """INSERT INTO sessions (id, user_id, title, metadata, message_count, created_at, updated_at)
               VALUES (?, ?, ?, ?, 0, ?, ?)""",
            (session_id, user_id, title, json.dumps(metadata or {}), now, now),
        )
        self._db.commit()
        return self.get_session(session_id)  # type: ignore[return-value]

    def get_session(self, id: str) -> Session | None:
        row = self._db.execute("SELECT * FROM sessions WHERE id = ?", (id,)).fetchone()
        if not row:
            return None
        data = dict(row)
        data["metadata"] = json.loads(data["metadata"]) if data["metadata"] else {}
        return Session(**data)

    def update_session_metadata(self, id: str, **updates: Any) -> None:
        """Merge `updates` into the session's metadata map."""
        session = self.get_session(id)
        if not session:
            return
        metadata = {**session.metadata, **updates}
        self._db.execute(
            "UPDATE sessions SET metadata = ?, updated_at = ? WHERE id = ?",
            (json.dumps(metadata), to_db_timestamp(utc_now()), id),
        )
        self._db.commit()

    # --- Messages ---

    def next_ordering_index(self, session_id: str) -> int:
        row = self._db.execute(
            "SELECT MAX(ordering_index) AS max_index FROM messages WHERE session_id = ?", (session_id,)
        ).fetchone()
        return 0 if row["max_index"] is None else row["max_index"] + 1

    def add_message(
        self,
        session_id: str,
        role: str,
        text: str,
        metadata: dict[str, Any] | None = None,
        scheduled_run_id: str | None = None,
    ) -> Message:
        message_id = str(uuid.uuid4())
        now = to_db_timestamp(utc_now())
        self._db.execute(
            """INSERT INTO messages
               (id, session_id, role, content, metadata, scheduled_run_id, ordering_index, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                message_id,
                session_id,
                role,
                json.dumps([{"type": "text", "text": text}]),
                json.dumps(metadata or {}),
                scheduled_run_id,
                self.next_ordering_index(session_id),
                now,
            ),
        )
        self._db.execute(
            "UPDATE sessions SET message_count = message_count + 1, updated_at = ? WHERE id = ?",
            (now, session_id),
        )
        self._db.commit()
        return self._get_message(message_id)

    def find_run_prompt(self, session_id: str, run_id: str) -> Message | None:
        """The user-turn message already inserted for `run_id`, if any."""
        row = self._db.execute(
            """SELECT * FROM messages
               WHERE session_id = ? AND role = 'user' AND scheduled_run_id = ?
               LIMIT 1""",
            (session_id, run_id),
        ).fetchone()
        return self._row_to_message(row) if row else None

    def get_messages(self, session_id: str) -> list[Message]:
        rows = self._db.execute(
            """SELECT * FROM messages WHERE session_id = ?
               ORDER BY ordering_index IS NULL, ordering_index, created_at""",
            (session_id,),
        ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def get_last_assistant_text(self, session_id: str) -> str | None:
        assistant = [m for m in self.get_messages(session_id) if m.role == "assistant"]
        if not assistant:
            return None
        return assistant[-1].text or None

    def _get_message(self, id: str) -> Message:
        row = self._db.execute("SELECT * FROM messages WHERE id = ?", (id,)).fetchone()
        return self._row_to_message(row)

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        data = dict(row)
        data["content"] = json.loads(data["content"]) if data["content"] else []
        data["metadata"] = json.loads(data["metadata"]) if data["metadata"] else {}
        return Message(**data)
