"""Prompt template expansion for scheduled runs."""

from __future__ import annotations

import re
from datetime import datetime, timedelta

NEVER = "Never"
DEFAULT_AGENT_NAME = "Agent"

_TOKEN_RE = re.compile(r"\{\{\s*([A-Za-z0-9_.-]+)\s*\}\}")

_WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
_MONTHS = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)


def builtin_variables(now: datetime, agent_name: str | None = None, last_run_at: datetime | None = None) -> dict[str, str]:
    """Tokens derived from the clock and run context.

    Dates are rendered in `now`'s own timezone, so callers pass the task-local time.
    """
    today = now.date()
    return {
        "NOW": now.isoformat(timespec="seconds"),
        "TODAY": today.isoformat(),
        "YESTERDAY": (today - timedelta(days=1)).isoformat(),
        "LAST_7_DAYS": f"{(today - timedelta(days=7)).isoformat()} to {today.isoformat()}",
        "LAST_30_DAYS": f"{(today - timedelta(days=30)).isoformat()} to {today.isoformat()}",
        # Locale-independent names, unlike strftime("%A").
        "WEEKDAY": _WEEKDAYS[today.weekday()],
        "MONTH": _MONTHS[today.month - 1],
        "AGENT_NAME": agent_name or DEFAULT_AGENT_NAME,
        "LAST_RUN": last_run_at.isoformat(timespec="seconds") if last_run_at else NEVER,
    }


def resolve_prompt(
    template: str,
    variables: dict[str, str] | None,
    now: datetime,
    agent_name: str | None = None,
    last_run_at: datetime | None = None,
) -> str:
    """Expand built-in tokens first, then caller-supplied ``{{KEY}}`` variables.

    Unknown tokens are left verbatim.
    """
    resolved = template
    for key, value in builtin_variables(now, agent_name, last_run_at).items():
        resolved = resolved.replace(f"{{{{{key}}}}}", value)
    for key, value in (variables or {}).items():
        resolved = resolved.replace(f"{{{{{key}}}}}", str(value))
    return resolved


def unresolved_tokens(text: str) -> list[str]:
    return _TOKEN_RE.findall(text)
