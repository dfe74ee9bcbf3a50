"""Session domain types."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class Session(BaseModel):
    id: str
    user_id: str
    title: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    message_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Message(BaseModel):
    id: str
    session_id: str
    role: Literal["user", "assistant", "system", "tool"]
    content: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    scheduled_run_id: str | None = None
    ordering_index: int | None = None
    created_at: datetime | None = None

    @property
    def text(self) -> str:
        return "\n".join(part["text"] for part in self.content if part.get("type") == "text" and part.get("text"))
