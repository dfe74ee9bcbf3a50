"""Execution service: submits a run's prompt to the chat API and collects the reply."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import httpx

from agentcron.execution.cancellation import CancellationToken
from agentcron.execution.errors import ExecutionError
from agentcron.execution.types import ExecutionResult, QueuedTask
from agentcron.infrastructure.config import INTERNAL_API_SECRET, INTERNAL_BASE_URL, SUMMARY_MAX_CHARS
from agentcron.infrastructure.logger import logger
from agentcron.sessions.repository import SessionRepository


@runtime_checkable
class ExecutionService(Protocol):
    async def execute(self, task: QueuedTask, session_id: str, token: CancellationToken) -> ExecutionResult: ...


class HttpExecutionService:
    """Calls the internal chat endpoint and drains its streamed response.

    The agent writes its reply into the session, so the result is read back
    from the session store once the stream ends. Deadlines and cancellation
    are applied by the caller through CancellationToken.guard(); the token is
    also checked between streamed chunks.
    """

    def __init__(
        self,
        session_repo: SessionRepository,
        base_url: str = INTERNAL_BASE_URL,
        api_secret: str = INTERNAL_API_SECRET,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._session_repo = session_repo
        self._base_url = base_url.rstrip("/")
        self._api_secret = api_secret
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0))

    async def execute(self, task: QueuedTask, session_id: str, token: CancellationToken) -> ExecutionResult:
        headers = {
            "Content-Type": "application/json",
            "X-Session-Id": session_id,
            "X-Character-Id": task.agent_id,
            "X-Scheduled-Run": "true",
            "X-Scheduled-Run-Id": task.run_id,
            "X-Scheduled-Task-Id": task.task_id,
            "X-Scheduled-Task-Name": task.task_name,
            "X-Internal-Auth": self._api_secret,
        }
        body = {"messages": [{"role": "user", "content": task.prompt}], "sessionId": session_id}

        try:
            async with self._client.stream("POST", f"{self._base_url}/api/chat", headers=headers, json=body) as response:
                if not response.is_success:
                    text = (await response.aread()).decode(errors="replace")
                    raise ExecutionError(
                        f"Chat API returned {response.status_code}: {text[:500]}",
                        {"status_code": response.status_code},
                    )
                async for _chunk in response.aiter_bytes():
                    token.raise_if_cancelled()
        except httpx.HTTPError as err:
            raise ExecutionError(f"Chat API request failed: {err}") from err

        return self.collect_result(session_id)

    def collect_result(self, session_id: str) -> ExecutionResult:
        session = self._session_repo.get_session(session_id)
        agent_run_id = session.metadata.get("lastAgentRunId") if session else None
        full_text = self._session_repo.get_last_assistant_text(session_id)
        if full_text is None:
            logger.debug("No assistant reply found in session", session_id=session_id)
        return ExecutionResult(
            agent_run_id=agent_run_id,
            summary=full_text[:SUMMARY_MAX_CHARS] if full_text else None,
            full_text=full_text,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
