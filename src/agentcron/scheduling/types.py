"""Scheduling domain types."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

ScheduleType = Literal["cron", "interval", "once"]
TaskStatus = Literal["draft", "active", "paused", "archived"]
Priority = Literal["high", "normal", "low"]
DeliveryMethod = Literal["session", "email", "slack", "webhook", "channel"]
RunStatus = Literal["pending", "queued", "running", "succeeded", "failed", "cancelled", "timeout"]

TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({"succeeded", "failed", "cancelled", "timeout"})
PRIORITY_RANK: dict[str, int] = {"high": 0, "normal": 1, "low": 2}


class ContextSource(BaseModel):
    type: Literal["file", "web", "text", "folder"]
    value: str
    options: dict[str, Any] = Field(default_factory=dict)


class ScheduledTask(BaseModel):
    id: str
    user_id: str
    agent_id: str
    name: str = ""
    description: str | None = None

    schedule_type: ScheduleType = "cron"
    cron_expression: str | None = None
    interval_minutes: int | None = None
    scheduled_at: datetime | None = None
    timezone: str = "UTC"

    initial_prompt: str
    prompt_variables: dict[str, str] = Field(default_factory=dict)
    context_sources: list[ContextSource] = Field(default_factory=list)

    enabled: bool = True
    max_retries: int = Field(default=3, ge=0)
    timeout_ms: int = 300_000
    priority: Priority = "normal"
    status: TaskStatus = "active"

    paused_at: datetime | None = None
    paused_until: datetime | None = None
    pause_reason: str | None = None

    delivery_method: DeliveryMethod = "session"
    delivery_config: dict[str, Any] = Field(default_factory=dict)

    result_session_id: str | None = None
    skill_id: str | None = None
    create_new_session_per_run: bool = True

    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None

    @property
    def triggerable(self) -> bool:
        return self.enabled and self.status == "active"


class ScheduledTaskRun(BaseModel):
    id: str
    task_id: str
    agent_run_id: str | None = None
    session_id: str | None = None
    status: RunStatus = "pending"
    scheduled_for: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    attempt_number: int = 1
    result_summary: str | None = None
    error: str | None = None
    resolved_prompt: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


class Skill(BaseModel):
    id: str
    user_id: str
    name: str = ""
    run_count: int = 0
    success_count: int = 0
    last_run_at: datetime | None = None
