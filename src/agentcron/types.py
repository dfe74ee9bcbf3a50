"""Barrel re-export of all domain types."""

from agentcron.delivery.types import DeliveryResult
from agentcron.execution.types import DeliveryPayload, ExecutionResult, QueuedTask
from agentcron.scheduling.types import ContextSource, ScheduledTask, ScheduledTaskRun, Skill
from agentcron.sessions.types import Message, Session

__all__ = [
    "ContextSource",
    "DeliveryPayload",
    "DeliveryResult",
    "ExecutionResult",
    "Message",
    "QueuedTask",
    "ScheduledTask",
    "ScheduledTaskRun",
    "Session",
    "Skill",
]
