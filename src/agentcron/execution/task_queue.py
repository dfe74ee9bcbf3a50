"""Priority task queue with a global concurrency limit, retry/backoff and cancellation."""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from datetime import datetime

from agentcron.context.resolver import ContextResolver
from agentcron.delivery.router import DeliveryRouter
from agentcron.execution.cancellation import CancellationToken
from agentcron.execution.errors import ExecutionTimeout, RunCancelled
from agentcron.execution.execution_service import ExecutionService
from agentcron.execution.run_registry import RunRegistry, TrackedRun
from agentcron.execution.types import DeliveryPayload, QueuedTask
from agentcron.infrastructure.config import INTERNAL_BASE_URL, QueueConfig
from agentcron.infrastructure.database import utc_now
from agentcron.infrastructure.logger import logger
from agentcron.infrastructure.poll_loop import PollLoop
from agentcron.scheduling.repository import TaskRepository
from agentcron.scheduling.types import PRIORITY_RANK
from agentcron.sessions.repository import SessionRepository


class TaskQueue:
    """Dispatches queued runs, at most `max_concurrent` at a time.

    The queue is a list kept in priority order (FIFO within a priority); the
    dispatch loop pops from the head. All bookkeeping happens on the event
    loop, so the structures below are never mutated concurrently.
    """

    def __init__(
        self,
        task_repo: TaskRepository,
        session_repo: SessionRepository,
        execution_service: ExecutionService,
        context_resolver: ContextResolver | None = None,
        delivery_router: DeliveryRouter | None = None,
        run_registry: RunRegistry | None = None,
        config: QueueConfig | None = None,
        base_url: str = INTERNAL_BASE_URL,
    ) -> None:
        self._task_repo = task_repo
        self._session_repo = session_repo
        self._execution = execution_service
        self._context_resolver = context_resolver
        self._delivery_router = delivery_router
        self._registry = run_registry or RunRegistry()
        self._config = config or QueueConfig()
        self._base_url = base_url.rstrip("/")

        self._queue: list[QueuedTask] = []
        self._processing: dict[str, QueuedTask] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._workers: set[asyncio.Task[None]] = set()
        self._retry_timers: dict[str, asyncio.Task[None]] = {}
        self._loop = PollLoop("Task queue", self._config.poll_interval_s, self._dispatch)

    # --- Introspection ---

    @property
    def running(self) -> bool:
        return self._loop.running

    @property
    def registry(self) -> RunRegistry:
        return self._registry

    def get_queue_size(self) -> int:
        return len(self._queue)

    def get_processing_count(self) -> int:
        return len(self._processing)

    def queued_run_ids(self) -> list[str]:
        return [t.run_id for t in self._queue]

    def is_processing(self, run_id: str) -> bool:
        return run_id in self._processing

    def tracked_run_ids(self) -> set[str]:
        """Runs this queue still owns: queued, executing or waiting to retry."""
        return {t.run_id for t in self._queue} | set(self._processing) | set(self._retry_timers)

    # --- Lifecycle ---

    def start(self) -> None:
        if self.running:
            return
        self._loop.start()
        logger.info("Task queue started", max_concurrent=self._config.max_concurrent)

    async def stop(self) -> None:
        """Stop dispatching and wait for in-flight runs to finish."""
        self._loop.stop()
        for run_id, timer in list(self._retry_timers.items()):
            timer.cancel()
            logger.info("Dropped pending retry on shutdown", run_id=run_id)
        self._retry_timers.clear()

        while self._processing:
            await asyncio.sleep(self._config.drain_poll_s)
        logger.info("Task queue stopped", queued=len(self._queue))

    # --- Queue operations ---

    def enqueue(self, task: QueuedTask) -> None:
        rank = PRIORITY_RANK[task.priority]
        index = next((i for i, t in enumerate(self._queue) if PRIORITY_RANK[t.priority] > rank), len(self._queue))
        self._queue.insert(index, task)

        self._task_repo.update_run(task.run_id, "queued", attempt_number=task.attempt_number)
        logger.info(
            "Enqueued run",
            run_id=task.run_id,
            task_id=task.task_id,
            priority=task.priority,
            attempt=task.attempt_number,
            queue_size=len(self._queue),
        )

    def cancel(self, run_id: str) -> bool:
        """Cancel a queued, retry-waiting or running run. Returns False if the run is unknown or already finished."""
        index = next((i for i, t in enumerate(self._queue) if t.run_id == run_id), None)
        if index is not None:
            self._queue.pop(index)
            self._mark_cancelled(run_id)
            logger.info("Cancelled queued run", run_id=run_id)
            return True

        timer = self._retry_timers.pop(run_id, None)
        if timer:
            timer.cancel()
            self._mark_cancelled(run_id)
            logger.info("Cancelled run awaiting retry", run_id=run_id)
            return True

        token = self._tokens.get(run_id)
        if token:
            token.cancel("Cancelled by request")
            self._mark_cancelled(run_id)
            logger.info("Cancelled running run", run_id=run_id)
            return True

        return False

    def _mark_cancelled(self, run_id: str) -> None:
        self._task_repo.update_run(run_id, "cancelled", completed_at=utc_now())
        self._registry.update_status(run_id, "cancelled")

    # --- Dispatch ---

    async def _dispatch(self) -> None:
        self.dispatch_ready()

    def dispatch_ready(self) -> int:
        """Start as many queued runs as capacity allows. Returns how many were started."""
        started = 0
        while self._queue and len(self._processing) < self._config.max_concurrent:
            task = self._queue.pop(0)
            token = CancellationToken()
            self._processing[task.run_id] = task
            self._tokens[task.run_id] = token
            worker = asyncio.create_task(self._execute(task, token), name=f"run:{task.run_id}")
            self._workers.add(worker)
            worker.add_done_callback(self._workers.discard)
            started += 1
        return started

    # --- Execution ---

    async def _execute(self, task: QueuedTask, token: CancellationToken) -> None:
        start = time.monotonic()
        started_at = utc_now()
        session_id: str | None = None
        log = logger.bind(run_id=task.run_id, task_id=task.task_id, attempt=task.attempt_number)

        try:
            token.raise_if_cancelled()
            self._task_repo.update_run(task.run_id, "running", started_at=started_at)
            self._track_start(task, started_at)
            log.info("Executing run")

            prompt = task.prompt
            if task.context_sources and self._context_resolver:
                context = await token.guard(self._context_resolver.resolve(task.context_sources, task.user_id))
                prompt = self._context_resolver.apply(prompt, context)
                log.debug("Applied context sources", count=len(task.context_sources))

            token.raise_if_cancelled()
            session_id = self.prepare_session(task, prompt)
            self._task_repo.update_run(task.run_id, "running", session_id=session_id)
            self._registry.update_status(task.run_id, "running", session_id=session_id)
            self._registry.emit_progress(task.run_id, "Session ready", session_id=session_id)

            result = await token.guard(
                self._execution.execute(replace(task, prompt=prompt), session_id, token),
                timeout_s=task.timeout_ms / 1000,
            )
            token.raise_if_cancelled()

            duration_ms = int((time.monotonic() - start) * 1000)
            self._task_repo.update_run(
                task.run_id,
                "succeeded",
                completed_at=utc_now(),
                duration_ms=duration_ms,
                result_summary=result.summary,
                session_id=session_id,
                agent_run_id=result.agent_run_id,
                error=None,
                metadata={"fullText": result.full_text} if result.full_text else {},
            )
            self._registry.update_status(
                task.run_id,
                "succeeded",
                session_id=session_id,
                duration_ms=duration_ms,
                metadata={"resultSummary": result.summary, "agentRunId": result.agent_run_id},
            )
            log.info("Run succeeded", duration_ms=duration_ms)
            self._finalize(task.run_id)

            await self._deliver(
                task,
                "succeeded",
                summary=result.full_text or result.summary,
                session_id=session_id,
                duration_ms=duration_ms,
            )
            self._record_skill_run(task, succeeded=True)

        except RunCancelled:
            self._finish_cancelled(task, session_id, start)
        except Exception as err:
            if token.cancelled:
                self._finish_cancelled(task, session_id, start)
            else:
                await self._handle_failure(task, err, start, session_id)
        finally:
            self._tokens.pop(task.run_id, None)
            self._processing.pop(task.run_id, None)

    def _finalize(self, run_id: str) -> None:
        # Terminal state is persisted; a late cancel must not overwrite it.
        self._tokens.pop(run_id, None)

    def _finish_cancelled(self, task: QueuedTask, session_id: str | None, start: float) -> None:
        duration_ms = int((time.monotonic() - start) * 1000)
        self._task_repo.update_run(task.run_id, "cancelled", duration_ms=duration_ms, session_id=session_id)
        self._registry.update_status(task.run_id, "cancelled", session_id=session_id, duration_ms=duration_ms)
        logger.info("Run was cancelled", run_id=task.run_id, duration_ms=duration_ms)

    async def _handle_failure(self, task: QueuedTask, error: Exception, start: float, session_id: str | None) -> None:
        message = str(error) or type(error).__name__
        attempt = task.attempt_number
        logger.error(
            "Run failed",
            run_id=task.run_id,
            task_id=task.task_id,
            attempt=attempt,
            max_retries=task.max_retries,
            error=message,
        )

        if attempt < task.max_retries:
            delay_s = self._config.retry_delay_for(attempt)
            self._task_repo.update_run(task.run_id, "pending", error=message, attempt_number=attempt + 1)
            self._registry.update_status(task.run_id, "queued", error=message, attempt_number=attempt + 1)
            self._schedule_retry(task.next_attempt(session_id), delay_s)
            return

        status = "timeout" if isinstance(error, ExecutionTimeout) else "failed"
        duration_ms = int((time.monotonic() - start) * 1000)
        self._task_repo.update_run(
            task.run_id,
            status,
            completed_at=utc_now(),
            duration_ms=duration_ms,
            error=message,
            session_id=session_id,
        )
        self._registry.update_status(task.run_id, status, session_id=session_id, duration_ms=duration_ms, error=message)
        self._finalize(task.run_id)
        await self._deliver(task, status, session_id=session_id, error=message, duration_ms=duration_ms)
        self._record_skill_run(task, succeeded=False)

    def _schedule_retry(self, task: QueuedTask, delay_s: float) -> None:
        logger.info("Scheduling retry with backoff", run_id=task.run_id, attempt=task.attempt_number, delay_s=delay_s)

        async def retry_later() -> None:
            await asyncio.sleep(delay_s)
            self._retry_timers.pop(task.run_id, None)
            self.enqueue(task)

        self._retry_timers[task.run_id] = asyncio.create_task(retry_later(), name=f"retry:{task.run_id}")

    # --- Sessions ---

    def prepare_session(self, task: QueuedTask, prompt: str | None = None) -> str:
        """Resolve the session for this run and insert its user turn exactly once."""
        prompt = task.prompt if prompt is None else prompt

        if task.existing_session_id and not task.create_new_session:
            session_id = task.existing_session_id
        else:
            metadata: dict[str, object] = {
                "characterId": task.agent_id,
                "scheduledTaskId": task.task_id,
                "scheduledRunId": task.run_id,
                "isScheduledRun": True,
            }
            channel_type = task.delivery_config.get("channelType")
            if isinstance(channel_type, str):
                metadata["channelType"] = channel_type
            title = f"Scheduled: {task.agent_name or 'Agent'} - {utc_now().date().isoformat()}"
            session_id = self._session_repo.create_session(task.user_id, title, metadata).id

        if self._session_repo.find_run_prompt(session_id, task.run_id):
            logger.debug("Run prompt already in session, skipping insert", run_id=task.run_id, session_id=session_id)
            return session_id

        self._session_repo.add_message(
            session_id,
            "user",
            prompt,
            metadata={"isScheduledPrompt": True, "scheduledTaskId": task.task_id, "scheduledRunId": task.run_id},
            scheduled_run_id=task.run_id,
        )
        return session_id

    # --- Side effects ---

    def _track_start(self, task: QueuedTask, started_at: datetime) -> None:
        if self._registry.get(task.run_id):
            self._registry.update_status(task.run_id, "running", attempt_number=task.attempt_number, started_at=started_at)
            return
        self._registry.register(
            TrackedRun(
                run_id=task.run_id,
                task_id=task.task_id,
                task_name=task.task_name,
                user_id=task.user_id,
                agent_id=task.agent_id,
                status="running",
                started_at=started_at,
                prompt=task.prompt,
                priority=task.priority,
                attempt_number=task.attempt_number,
                max_retries=task.max_retries,
            )
        )

    def session_url(self, agent_id: str, session_id: str | None) -> str | None:
        if not session_id:
            return None
        return f"{self._base_url}/chat/{agent_id}?sessionId={session_id}"

    async def _deliver(
        self,
        task: QueuedTask,
        status: str,
        summary: str | None = None,
        session_id: str | None = None,
        error: str | None = None,
        duration_ms: int | None = None,
    ) -> None:
        if self._delivery_router is None or task.delivery_method == "session":
            return
        payload = DeliveryPayload(
            task_id=task.task_id,
            task_name=task.task_name,
            run_id=task.run_id,
            status=status,
            summary=summary,
            session_id=session_id,
            session_url=self.session_url(task.agent_id, session_id),
            error=error,
            duration_ms=duration_ms,
        )
        try:
            await self._delivery_router.deliver(task.delivery_method, task.delivery_config, payload)
        except Exception:
            logger.exception("Delivery failed", run_id=task.run_id, method=task.delivery_method)

    def _record_skill_run(self, task: QueuedTask, succeeded: bool) -> None:
        if not task.skill_id:
            return
        try:
            self._task_repo.record_skill_run(task.skill_id, task.user_id, succeeded)
        except Exception:
            logger.exception("Failed to update linked skill stats", run_id=task.run_id, skill_id=task.skill_id)
