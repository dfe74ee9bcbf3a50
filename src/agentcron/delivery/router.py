"""Routes run results to the delivery handler registered for a method."""

from __future__ import annotations

from typing import Any

from agentcron.delivery.types import DeliveryError, DeliveryHandler, DeliveryResult
from agentcron.execution.types import DeliveryPayload
from agentcron.infrastructure.logger import logger


class DeliveryRouter:
    """Registry of delivery handlers keyed by method name."""

    def __init__(self, handlers: list[DeliveryHandler] | None = None) -> None:
        self._handlers: dict[str, DeliveryHandler] = {}
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: DeliveryHandler) -> None:
        if handler.method in self._handlers:
            raise ValueError(f'Delivery handler "{handler.method}" is already registered')
        self._handlers[handler.method] = handler

    def methods(self) -> list[str]:
        return sorted(self._handlers)

    async def deliver(self, method: str, config: dict[str, Any], payload: DeliveryPayload) -> DeliveryResult:
        """Deliver `payload`. Never raises for handler failures; the result carries the error."""
        if method == "session":
            return DeliveryResult(method=method, success=True, target=payload.session_id or "")

        handler = self._handlers.get(method)
        if not handler:
            logger.warning("No delivery handler registered", method=method, run_id=payload.run_id)
            return DeliveryResult(method=method, success=False, error=f"Unknown delivery method: {method}")

        try:
            target = await handler.deliver(config, payload)
        except DeliveryError as err:
            logger.warning("Delivery failed", method=method, run_id=payload.run_id, error=str(err))
            return DeliveryResult(method=method, success=False, error=str(err))

        logger.info("Delivered run result", method=method, run_id=payload.run_id, target=target[:60])
        return DeliveryResult(method=method, success=True, target=target)
