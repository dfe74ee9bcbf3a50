"""Scheduler service: owns cron/one-shot timers, checks interval due-ness, and hands runs to the task queue."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from agentcron.execution.task_queue import TaskQueue
from agentcron.execution.types import QueuedTask
from agentcron.infrastructure.config import SchedulerConfig
from agentcron.infrastructure.database import utc_now
from agentcron.infrastructure.logger import logger
from agentcron.infrastructure.poll_loop import PollLoop
from agentcron.scheduling.cron_job import CronJob, OneShotJob, ScheduleConfigError, TimerJob, next_fire_time
from agentcron.scheduling.repository import TaskRepository
from agentcron.scheduling.templates import resolve_prompt, unresolved_tokens
from agentcron.scheduling.timezone import resolve_timezone, zone_for
from agentcron.scheduling.types import ScheduledTask

AgentNameLookup = Callable[[str], str | None]

INTERRUPTED_ERROR = "Run interrupted: scheduler restarted before it finished"


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class SchedulerStatus:
    is_running: bool
    active_jobs: int
    queue_size: int
    processing: int


class SchedulerService:
    """Single scheduler instance per process, constructed once and passed to whoever needs it.

    `_jobs` maps task id to the timer it owns. Registration always stops and
    replaces the previous timer for a task; it never mutates one in place.
    """

    def __init__(
        self,
        task_repo: TaskRepository,
        task_queue: TaskQueue,
        config: SchedulerConfig | None = None,
        agent_names: AgentNameLookup | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._task_repo = task_repo
        self._queue = task_queue
        self._config = config or SchedulerConfig()
        self._agent_names = agent_names
        self._clock = clock
        self._state = SchedulerState.STOPPED
        self._jobs: dict[str, TimerJob] = {}
        self._tick = PollLoop("Scheduler", self._config.check_interval_s, self._check, run_immediately=False)

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == SchedulerState.RUNNING

    def _transition(self, expected: SchedulerState, target: SchedulerState) -> bool:
        if self._state != expected:
            return False
        self._state = target
        return True

    # --- Lifecycle ---

    def start(self) -> None:
        if not self._config.enabled:
            logger.info("Scheduler disabled, skipping start")
            return
        if not self._transition(SchedulerState.STOPPED, SchedulerState.STARTING):
            logger.debug("Scheduler already started", state=self._state.value)
            return

        logger.info("Starting scheduler")
        try:
            self.reconcile_stale_runs()
            self.load_schedules()
            self._tick.start()
            self._queue.start()
        except Exception:
            self._stop_jobs()
            self._tick.stop()
            self._state = SchedulerState.STOPPED
            raise
        self._state = SchedulerState.RUNNING

    async def stop(self) -> None:
        """Stop all timers and the tick, then drain the task queue."""
        if not self._transition(SchedulerState.RUNNING, SchedulerState.STOPPING):
            return
        logger.info("Stopping scheduler", active_jobs=len(self._jobs))
        self._stop_jobs()
        self._tick.stop()
        try:
            await self._queue.stop()
        finally:
            self._state = SchedulerState.STOPPED

    def load_schedules(self) -> int:
        tasks = self._task_repo.get_triggerable_tasks()
        for task in tasks:
            self.register_schedule(task)
        logger.info("Loaded active schedules", count=len(tasks), armed=len(self._jobs))
        return len(tasks)

    def reconcile_stale_runs(self) -> int:
        """Fail unfinished runs that no longer have an owner.

        This process is the only writer of run state, so a pending, queued or
        running row the task queue is not tracking can never complete.
        """
        now = self._clock()
        owned = self._queue.tracked_run_ids()
        stale = [run for run in self._task_repo.get_unfinished_runs() if run.id not in owned]
        for run in stale:
            self._task_repo.update_run(run.id, "failed", error=INTERRUPTED_ERROR, completed_at=now)
        if stale:
            logger.warning("Marked interrupted runs as failed", count=len(stale), run_ids=[run.id for run in stale])
        return len(stale)

    # --- Registration ---

    def register_schedule(self, task: ScheduledTask) -> None:
        self.unregister_schedule(task.id)

        if not task.triggerable:
            return
        if self._state not in (SchedulerState.STARTING, SchedulerState.RUNNING):
            logger.debug("Scheduler not running, not arming timer", task_id=task.id)
            return

        try:
            if task.schedule_type == "cron":
                self._register_cron(task)
            elif task.schedule_type == "once":
                self._register_once(task)
        except ScheduleConfigError as err:
            logger.error("Invalid schedule, task left unregistered", task_id=task.id, name=task.name, error=str(err))

    def unregister_schedule(self, task_id: str) -> None:
        job = self._jobs.pop(task_id, None)
        if job:
            job.stop()

    def reload_schedule(self, task_id: str) -> None:
        task = self._task_repo.get_task_by_id(task_id)
        if task:
            self.register_schedule(task)
        else:
            self.unregister_schedule(task_id)

    def _register_cron(self, task: ScheduledTask) -> None:
        if not task.cron_expression:
            raise ScheduleConfigError("Cron task has no cron expression")
        timezone = resolve_timezone(task.timezone)
        job = CronJob(f"cron:{task.id}", task.cron_expression, timezone, lambda: self._on_cron_fire(task.id))
        job.start()
        self._jobs[task.id] = job

        if job.next_fire_time:
            self._task_repo.update_task(task.id, next_run_at=job.next_fire_time)
        logger.info(
            "Registered cron job",
            task_id=task.id,
            name=task.name,
            expression=task.cron_expression,
            timezone=timezone,
            next_run_at=job.next_fire_time.isoformat() if job.next_fire_time else None,
        )

    def _register_once(self, task: ScheduledTask) -> None:
        if not task.scheduled_at:
            raise ScheduleConfigError("One-time task has no scheduled time")
        fire_at = task.scheduled_at
        if fire_at.tzinfo is None:
            fire_at = fire_at.replace(tzinfo=zone_for(task.timezone))

        if fire_at <= self._clock():
            logger.info("One-time task is past due, not registering", task_id=task.id, scheduled_at=fire_at.isoformat())
            return

        job = OneShotJob(f"once:{task.id}", fire_at, lambda: self._on_once_fire(task.id))
        job.start()
        self._jobs[task.id] = job
        logger.info("Registered one-time job", task_id=task.id, name=task.name, fire_at=fire_at.isoformat())

    async def _on_cron_fire(self, task_id: str) -> None:
        await self.trigger_task(task_id)
        task = self._task_repo.get_task_by_id(task_id)
        if task and task.cron_expression:
            self._task_repo.update_task(
                task_id, next_run_at=next_fire_time(task.cron_expression, resolve_timezone(task.timezone))
            )

    async def _on_once_fire(self, task_id: str) -> None:
        job = self._jobs.get(task_id)
        if isinstance(job, OneShotJob):
            del self._jobs[task_id]
        await self.trigger_task(task_id)

    # --- Triggering ---

    async def trigger_task(self, task_id: str) -> str | None:
        """Create a pending run for the task and enqueue it. Returns the run id, or None if skipped."""
        task = self._task_repo.get_task_by_id(task_id)
        if not task or not task.triggerable:
            logger.info("Task not found, disabled or not active, skipping", task_id=task_id)
            return None

        now = self._clock()
        agent_name = self._agent_names(task.agent_id) if self._agent_names else None
        local_now = now.astimezone(zone_for(task.timezone))
        last_run_at = task.last_run_at.astimezone(local_now.tzinfo) if task.last_run_at else None
        prompt = resolve_prompt(task.initial_prompt, task.prompt_variables, local_now, agent_name, last_run_at)

        leftover = unresolved_tokens(prompt)
        if leftover:
            logger.warning("Prompt has unresolved template tokens", task_id=task.id, tokens=leftover)

        run = self._task_repo.create_run(task.id, now, prompt)
        logger.info("Triggering task", task_id=task.id, name=task.name, run_id=run.id)

        self._queue.enqueue(
            QueuedTask(
                run_id=run.id,
                task_id=task.id,
                task_name=task.name,
                agent_id=task.agent_id,
                user_id=task.user_id,
                prompt=prompt,
                agent_name=agent_name,
                context_sources=tuple(task.context_sources),
                timeout_ms=task.timeout_ms,
                max_retries=task.max_retries,
                priority=task.priority,
                create_new_session=task.create_new_session_per_run,
                existing_session_id=task.result_session_id,
                delivery_method=task.delivery_method,
                delivery_config=dict(task.delivery_config),
                skill_id=task.skill_id,
            )
        )
        self._task_repo.update_task(task.id, last_run_at=now)
        return run.id

    # --- Periodic check ---

    async def _check(self) -> None:
        await self.check_due_tasks()

    async def check_due_tasks(self, now: datetime | None = None) -> int:
        """Resume elapsed pauses, then trigger due interval tasks. Returns how many were triggered."""
        now = now or self._clock()
        self.resume_paused_tasks(now)

        triggered = 0
        for task in self._task_repo.get_due_interval_tasks(now):
            if not task.interval_minutes or task.interval_minutes <= 0:
                logger.error("Interval task has no valid interval, skipping", task_id=task.id)
                continue
            try:
                run_id = await self.trigger_task(task.id)
            except Exception:
                logger.exception("Failed to trigger interval task", task_id=task.id)
                continue
            self._task_repo.update_task(task.id, next_run_at=now + timedelta(minutes=task.interval_minutes))
            if run_id:
                triggered += 1

        if triggered:
            logger.info("Queued due interval tasks", count=triggered)
        return triggered

    def resume_paused_tasks(self, now: datetime) -> list[str]:
        resumed: list[str] = []
        for task in self._task_repo.get_due_paused_tasks(now):
            try:
                self._task_repo.update_task(
                    task.id,
                    status="active",
                    enabled=True,
                    paused_at=None,
                    paused_until=None,
                    pause_reason=None,
                    updated_at=now,
                )
                refreshed = self._task_repo.get_task_by_id(task.id)
                if refreshed:
                    self.register_schedule(refreshed)
            except Exception:
                logger.exception("Failed to auto-resume task", task_id=task.id)
                continue
            resumed.append(task.id)
            logger.info("Auto-resumed task", task_id=task.id, name=task.name)
        return resumed

    # --- Introspection ---

    def get_status(self) -> SchedulerStatus:
        return SchedulerStatus(
            is_running=self.is_running,
            active_jobs=len(self._jobs),
            queue_size=self._queue.get_queue_size(),
            processing=self._queue.get_processing_count(),
        )

    def cancel_run(self, run_id: str) -> bool:
        return self._queue.cancel(run_id)

    def job_for(self, task_id: str) -> TimerJob | None:
        return self._jobs.get(task_id)

    def _stop_jobs(self) -> None:
        for job in self._jobs.values():
            job.stop()
        self._jobs.clear()
