"""Built-in delivery handlers: webhook, slack, email and channel."""

from __future__ import annotations

from typing import Any, Awaitable, Callable

import httpx

from agentcron.delivery.formatter import format_notification, format_subject
from agentcron.delivery.types import DeliveryError
from agentcron.execution.types import DeliveryPayload

HTTP_TIMEOUT_S = 15.0

SendMessage = Callable[[str, str], Awaitable[None]]
SendEmail = Callable[[str, str, str], Awaitable[None]]


async def _post_json(client: httpx.AsyncClient | None, url: str, body: Any, headers: dict[str, str] | None = None) -> None:
    try:
        if client is not None:
            response = await client.post(url, json=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_S) as owned:
                response = await owned.post(url, json=body, headers=headers)
        response.raise_for_status()
    except httpx.HTTPStatusError as err:
        raise DeliveryError(f"HTTP {err.response.status_code} from {url}") from err
    except httpx.HTTPError as err:
        raise DeliveryError(f"Request to {url} failed: {err}") from err


class WebhookDelivery:
    """POSTs the JSON payload to `config["url"]`."""

    method = "webhook"

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    async def deliver(self, config: dict[str, Any], payload: DeliveryPayload) -> str:
        url = config.get("url") or config.get("webhookUrl")
        if not url:
            raise DeliveryError("Webhook delivery requires a url")
        headers = dict(config.get("headers") or {})
        await _post_json(self._client, url, payload.model_dump(mode="json"), headers)
        return url


class SlackDelivery:
    """Posts a formatted message to a Slack incoming webhook."""

    method = "slack"

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    async def deliver(self, config: dict[str, Any], payload: DeliveryPayload) -> str:
        url = config.get("webhook_url") or config.get("webhookUrl")
        if not url:
            raise DeliveryError("Slack delivery requires a webhook_url")
        body: dict[str, Any] = {"text": format_notification(payload)}
        if config.get("channel"):
            body["channel"] = config["channel"]
        await _post_json(self._client, url, body)
        return config.get("channel") or url


class ChannelDelivery:
    """Sends a formatted message through a host-provided messaging channel."""

    method = "channel"

    def __init__(self, send_message: SendMessage) -> None:
        self._send_message = send_message

    async def deliver(self, config: dict[str, Any], payload: DeliveryPayload) -> str:
        target = config.get("channelId") or config.get("channel_id") or config.get("target")
        if not target:
            raise DeliveryError("Channel delivery requires a channelId")
        await self._send_message(target, format_notification(payload))
        return target


class EmailDelivery:
    """Sends a formatted message through a host-provided email sender."""

    method = "email"

    def __init__(self, send_email: SendEmail) -> None:
        self._send_email = send_email

    async def deliver(self, config: dict[str, Any], payload: DeliveryPayload) -> str:
        to = config.get("to") or config.get("email")
        if not to:
            raise DeliveryError("Email delivery requires a recipient")
        await self._send_email(to, format_subject(payload), format_notification(payload))
        return to
