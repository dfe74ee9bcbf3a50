"""Execution domain types."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from pydantic import BaseModel, Field

from agentcron.scheduling.types import ContextSource, DeliveryMethod, Priority


@dataclass(frozen=True)
class QueuedTask:
    """Everything needed to execute one run without re-reading the task row.

    Immutable: a retry is a new value produced by next_attempt().
    """

    run_id: str
    task_id: str
    task_name: str
    agent_id: str
    user_id: str
    prompt: str
    agent_name: str | None = None
    context_sources: tuple[ContextSource, ...] = ()
    timeout_ms: int = 300_000
    max_retries: int = 3
    priority: Priority = "normal"
    create_new_session: bool = True
    existing_session_id: str | None = None
    attempt_number: int = 1
    delivery_method: DeliveryMethod = "session"
    delivery_config: dict[str, Any] = field(default_factory=dict)
    skill_id: str | None = None

    def next_attempt(self, session_id: str | None = None) -> QueuedTask:
        """The retry of this run. A session created by this attempt is reused by the next."""
        delivery_config = dict(self.delivery_config)
        if session_id:
            return replace(
                self,
                attempt_number=self.attempt_number + 1,
                existing_session_id=session_id,
                create_new_session=False,
                delivery_config=delivery_config,
            )
        return replace(self, attempt_number=self.attempt_number + 1, delivery_config=delivery_config)


class ExecutionResult(BaseModel):
    agent_run_id: str | None = None
    summary: str | None = None
    full_text: str | None = None


class DeliveryPayload(BaseModel):
    task_id: str
    task_name: str
    run_id: str
    status: str
    summary: str | None = None
    session_id: str | None = None
    session_url: str | None = None
    error: str | None = None
    duration_ms: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
