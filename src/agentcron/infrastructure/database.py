"""SQLite database schema, timestamp helpers, and AppDatabase composition root."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime

from agentcron.infrastructure.config import STORE_DIR
from agentcron.infrastructure.logger import logger


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_db_timestamp(value: datetime | None) -> str | None:
    """Normalize a datetime to a UTC ISO string with millisecond precision.

    Every timestamp column uses this format so lexical order equals time order.
    Naive datetimes are taken to be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds")


def create_schema(db: sqlite3.Connection) -> None:
    """Create all tables and indexes. Safe to call multiple times (IF NOT EXISTS)."""
    db.executescript("""
        CREATE TABLE IF NOT EXISTS scheduled_tasks (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            agent_id TEXT NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            description TEXT,
            schedule_type TEXT NOT NULL DEFAULT 'cron',
            cron_expression TEXT,
            interval_minutes INTEGER,
            scheduled_at TEXT,
            timezone TEXT NOT NULL DEFAULT 'UTC',
            initial_prompt TEXT NOT NULL,
            prompt_variables TEXT NOT NULL DEFAULT '{}',
            context_sources TEXT NOT NULL DEFAULT '[]',
            enabled INTEGER NOT NULL DEFAULT 1,
            max_retries INTEGER NOT NULL DEFAULT 3,
            timeout_ms INTEGER NOT NULL DEFAULT 300000,
            priority TEXT NOT NULL DEFAULT 'normal',
            status TEXT NOT NULL DEFAULT 'active',
            paused_at TEXT,
            paused_until TEXT,
            pause_reason TEXT,
            delivery_method TEXT NOT NULL DEFAULT 'session',
            delivery_config TEXT NOT NULL DEFAULT '{}',
            result_session_id TEXT,
            skill_id TEXT,
            create_new_session_per_run INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            last_run_at TEXT,
            next_run_at TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_tasks_status ON scheduled_tasks(enabled, status);
        CREATE INDEX IF NOT EXISTS idx_tasks_next_run ON scheduled_tasks(next_run_at);

        CREATE TABLE IF NOT EXISTS scheduled_task_runs (
            id TEXT PRIMARY KEY,
            task_id TEXT NOT NULL,
            agent_run_id TEXT,
            session_id TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            scheduled_for TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT,
            duration_ms INTEGER,
            attempt_number INTEGER NOT NULL DEFAULT 1,
            result_summary TEXT,
            error TEXT,
            resolved_prompt TEXT,
            metadata TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            FOREIGN KEY (task_id) REFERENCES scheduled_tasks(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_runs_task ON scheduled_task_runs(task_id, created_at);
        CREATE INDEX IF NOT EXISTS idx_runs_status ON scheduled_task_runs(status);

        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            title TEXT NOT NULL DEFAULT '',
            metadata TEXT NOT NULL DEFAULT '{}',
            message_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS messages (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL,
            role TEXT NOT NULL,
            content TEXT NOT NULL DEFAULT '[]',
            metadata TEXT NOT NULL DEFAULT '{}',
            scheduled_run_id TEXT,
            ordering_index INTEGER,
            created_at TEXT NOT NULL,
            FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, ordering_index);
        CREATE INDEX IF NOT EXISTS idx_messages_run ON messages(session_id, scheduled_run_id);

        CREATE TABLE IF NOT EXISTS skills (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            run_count INTEGER NOT NULL DEFAULT 0,
            success_count INTEGER NOT NULL DEFAULT 0,
            last_run_at TEXT,
            updated_at TEXT
        );
    """)


class AppDatabase:
    """Composition root that initializes the DB and exposes repositories."""

    def __init__(self) -> None:
        self._db: sqlite3.Connection | None = None
        # Repositories are set after init
        self.task_repo: TaskRepository | None = None  # type: ignore[assignment]
        self.session_repo: SessionRepository | None = None  # type: ignore[assignment]

    @property
    def db(self) -> sqlite3.Connection:
        assert self._db is not None, "Database not initialized. Call init() first."
        return self._db

    def init(self) -> None:
        """Open (or create) the database file at the standard location."""
        db_path = STORE_DIR / "agentcron.db"
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(str(db_path))
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA foreign_keys = ON")
        self._init_repos()
        logger.info("Database opened", path=str(db_path))

    def _init_test(self) -> None:
        """For tests only. Creates a fresh in-memory database."""
        self._db = sqlite3.connect(":memory:")
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA foreign_keys = ON")
        self._init_repos()

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None
            self.task_repo = None
            self.session_repo = None

    def _init_repos(self) -> None:
        assert self._db is not None
        create_schema(self._db)

        # Import here to avoid circular imports
        from agentcron.scheduling.repository import TaskRepository
        from agentcron.sessions.repository import SessionRepository

        self.task_repo = TaskRepository(self._db)
        self.session_repo = SessionRepository(self._db)


# Singleton instance
database = AppDatabase()
