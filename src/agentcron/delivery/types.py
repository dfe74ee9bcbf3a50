"""Delivery domain types and handler protocol."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from agentcron.execution.types import DeliveryPayload


class DeliveryError(Exception):
    """A handler could not ship a result to its destination."""


@dataclass
class DeliveryResult:
    method: str
    success: bool
    target: str = ""
    error: str | None = None


@runtime_checkable
class DeliveryHandler(Protocol):
    method: str

    async def deliver(self, config: dict[str, Any], payload: DeliveryPayload) -> str:
        """Ship `payload`; returns a short description of the target. Raises DeliveryError."""
        ...
