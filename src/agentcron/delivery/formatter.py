"""Render run results as plain-text notifications."""

from __future__ import annotations

from agentcron.execution.types import DeliveryPayload

MAX_NOTIFICATION_CHARS = 3500


def format_notification(payload: DeliveryPayload) -> str:
    if payload.status == "succeeded":
        header = f'Scheduled task "{payload.task_name}" completed'
        body = payload.summary or "(no output)"
    else:
        header = f'Scheduled task "{payload.task_name}" {payload.status}'
        body = f"Error: {payload.error or 'Unknown error'}"

    if len(body) > MAX_NOTIFICATION_CHARS:
        body = body[:MAX_NOTIFICATION_CHARS] + "..."

    lines = [header, "", body]
    if payload.duration_ms is not None:
        lines += ["", f"Duration: {payload.duration_ms / 1000:.1f}s"]
    if payload.session_url:
        lines.append(f"View session: {payload.session_url}")
    return "\n".join(lines)


def format_subject(payload: DeliveryPayload) -> str:
    return f"[{payload.status}] {payload.task_name}"
