"""Execution error taxonomy."""

from __future__ import annotations

from typing import Any


class ExecutionError(Exception):
    """Transient failure of a single run; eligible for retry."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class ExecutionTimeout(ExecutionError):
    """The run exceeded its deadline. Retried like any transient failure."""


class RunCancelled(Exception):
    """Cancellation was observed mid-flight. Terminal, never retried."""
