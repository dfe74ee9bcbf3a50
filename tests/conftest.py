import pytest

from agentcron.infrastructure.database import AppDatabase
from agentcron.scheduling.types import ScheduledTask


@pytest.fixture
def db() -> AppDatabase:
    """Create an in-memory database for testing."""
    app_db = AppDatabase()
    app_db._init_test()
    return app_db


@pytest.fixture
def task_repo(db):
    return db.task_repo


@pytest.fixture
def session_repo(db):
    return db.session_repo


@pytest.fixture
def make_task(task_repo):
    """Persist a ScheduledTask with sensible defaults; keyword overrides win."""

    def _make(id: str = "task-1", **overrides) -> ScheduledTask:
        fields = {
            "id": id,
            "user_id": "user-1",
            "agent_id": "agent-1",
            "name": f"Task {id}",
            "schedule_type": "cron",
            "cron_expression": "0 9 * * *",
            "initial_prompt": "Summarize my inbox",
        }
        fields.update(overrides)
        return task_repo.create_task(ScheduledTask(**fields))

    return _make
