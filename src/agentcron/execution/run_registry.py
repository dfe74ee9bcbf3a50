"""In-process registry of live runs so progress can be observed while they execute."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from agentcron.infrastructure.database import utc_now
from agentcron.infrastructure.logger import logger
from agentcron.scheduling.types import TERMINAL_RUN_STATUSES

MAX_PROGRESS_EVENTS = 50
MAX_TRACKED_RUNS = 500


@dataclass
class ProgressEvent:
    run_id: str
    message: str
    at: datetime
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class TrackedRun:
    run_id: str
    task_id: str
    task_name: str
    user_id: str
    agent_id: str
    status: str
    started_at: datetime
    prompt: str = ""
    priority: str = "normal"
    attempt_number: int = 1
    max_retries: int = 3
    session_id: str | None = None
    duration_ms: int | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    progress: list[ProgressEvent] = field(default_factory=list)


Listener = Callable[[TrackedRun, ProgressEvent | None], None]


class RunRegistry:
    def __init__(self) -> None:
        self._runs: dict[str, TrackedRun] = {}
        self._listeners: list[Listener] = []

    def register(self, run: TrackedRun) -> None:
        self._runs[run.run_id] = run
        self._prune()
        self._notify(run, None)

    def get(self, run_id: str) -> TrackedRun | None:
        return self._runs.get(run_id)

    def get_all(self) -> list[TrackedRun]:
        return list(self._runs.values())

    def update_status(self, run_id: str, status: str, **fields: Any) -> None:
        run = self._runs.get(run_id)
        if not run:
            return
        run.status = status
        for key, value in fields.items():
            if key == "metadata":
                run.metadata.update(value)
            elif hasattr(run, key):
                setattr(run, key, value)
        self._notify(run, None)

    def emit_progress(self, run_id: str, message: str, **data: Any) -> None:
        run = self._runs.get(run_id)
        if not run:
            return
        event = ProgressEvent(run_id=run_id, message=message, at=utc_now(), data=data)
        run.progress.append(event)
        del run.progress[:-MAX_PROGRESS_EVENTS]
        self._notify(run, event)

    def remove(self, run_id: str) -> None:
        self._runs.pop(run_id, None)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _prune(self) -> None:
        """Drop the oldest finished runs once the registry grows past its bound."""
        excess = len(self._runs) - MAX_TRACKED_RUNS
        if excess <= 0:
            return
        finished = [run_id for run_id, run in self._runs.items() if run.status in TERMINAL_RUN_STATUSES]
        for run_id in finished[:excess]:
            del self._runs[run_id]

    def _notify(self, run: TrackedRun, event: ProgressEvent | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(run, event)
            except Exception:
                logger.exception("Run listener failed", run_id=run.run_id)
