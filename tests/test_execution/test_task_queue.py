"""Tests for the priority task queue."""

import asyncio
from datetime import UTC, datetime

import pytest

from agentcron.execution.errors import ExecutionError
from agentcron.execution.run_registry import RunRegistry
from agentcron.execution.task_queue import TaskQueue
from agentcron.execution.types import ExecutionResult, QueuedTask
from agentcron.infrastructure.config import QueueConfig
from agentcron.scheduling.types import ContextSource, Skill


class FakeExecution:
    """Plays back scripted outcomes; an Exception outcome is raised."""

    def __init__(self, outcomes=None, gate=None, delay_s=0.0):
        self.outcomes = list(outcomes or [])
        self.gate = gate
        self.delay_s = delay_s
        self.calls = []

    async def execute(self, task, session_id, token):
        self.calls.append((task.run_id, task.attempt_number, session_id, task.prompt))
        if self.gate:
            await self.gate.wait()
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        outcome = self.outcomes.pop(0) if self.outcomes else ExecutionResult(summary="done", full_text="done in full")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeContext:
    def __init__(self):
        self.resolved = []

    async def resolve(self, sources, user_id):
        self.resolved.append((list(sources), user_id))
        return "CTX"

    def apply(self, prompt, context):
        return f"{context}|{prompt}"


class FakeRouter:
    def __init__(self, fail=False):
        self.fail = fail
        self.delivered = []

    async def deliver(self, method, config, payload):
        self.delivered.append((method, config, payload))
        if self.fail:
            raise RuntimeError("smtp down")


class BlockingRouter:
    """Holds every delivery until `release` is set."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.statuses = []

    async def deliver(self, method, config, payload):
        self.statuses.append(payload.status)
        self.started.set()
        await self.release.wait()


@pytest.fixture
def make_run(task_repo, make_task):
    make_task()

    def _make(priority="normal", **overrides) -> QueuedTask:
        run = task_repo.create_run("task-1", datetime.now(UTC), "Summarize my inbox")
        fields = {
            "run_id": run.id,
            "task_id": "task-1",
            "task_name": "Inbox digest",
            "agent_id": "agent-1",
            "user_id": "user-1",
            "prompt": "Summarize my inbox",
            "priority": priority,
        }
        fields.update(overrides)
        return QueuedTask(**fields)

    return _make


def _queue(db, execution, **kwargs):
    config = kwargs.pop("config", None) or QueueConfig(max_concurrent=1, retry_delay_ms=5000, poll_interval_s=0.01, drain_poll_s=0.01)
    return TaskQueue(db.task_repo, db.session_repo, execution, config=config, base_url="http://app.test", **kwargs)


async def _drain(queue, limit=200):
    """Dispatch until nothing is queued or processing."""
    for _ in range(limit):
        queue.dispatch_ready()
        await asyncio.sleep(0.005)
        if not queue.get_queue_size() and not queue.get_processing_count():
            return
    raise AssertionError("queue did not drain")


class TestEnqueue:
    def test_priority_order_with_fifo_ties(self, db, make_run):
        queue = _queue(db, FakeExecution())
        low, high_a, normal, high_b = make_run("low"), make_run("high"), make_run("normal"), make_run("high")
        for task in (low, high_a, normal, high_b):
            queue.enqueue(task)
        assert queue.queued_run_ids() == [high_a.run_id, high_b.run_id, normal.run_id, low.run_id]

    def test_enqueue_marks_run_queued(self, db, task_repo, make_run):
        queue = _queue(db, FakeExecution())
        task = make_run()
        queue.enqueue(task)
        assert task_repo.get_run(task.run_id).status == "queued"
        assert queue.get_queue_size() == 1

    @pytest.mark.asyncio
    async def test_dispatch_follows_priority(self, db, make_run):
        execution = FakeExecution()
        queue = _queue(db, execution)
        tasks = [make_run("low"), make_run("high"), make_run("normal"), make_run("high")]
        for task in tasks:
            queue.enqueue(task)

        await _drain(queue)
        dispatched = [call[0] for call in execution.calls]
        assert dispatched == [tasks[1].run_id, tasks[3].run_id, tasks[2].run_id, tasks[0].run_id]


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_respects_max_concurrent(self, db, make_run):
        gate = asyncio.Event()
        queue = _queue(db, FakeExecution(gate=gate), config=QueueConfig(max_concurrent=2, poll_interval_s=0.01))
        for _ in range(3):
            queue.enqueue(make_run())

        assert queue.dispatch_ready() == 2
        assert queue.dispatch_ready() == 0
        assert queue.get_processing_count() == 2
        assert queue.get_queue_size() == 1

        gate.set()
        await _drain(queue)
        assert queue.get_processing_count() == 0

    @pytest.mark.asyncio
    async def test_start_stop_drains_in_flight_work(self, db, task_repo, make_run):
        queue = _queue(db, FakeExecution(delay_s=0.05))
        task = make_run()
        queue.enqueue(task)
        queue.start()
        queue.start()
        assert queue.running
        await asyncio.sleep(0.02)

        await queue.stop()
        assert not queue.running
        assert queue.get_processing_count() == 0
        assert task_repo.get_run(task.run_id).status == "succeeded"


class TestExecution:
    @pytest.mark.asyncio
    async def test_success_persists_result(self, db, task_repo, session_repo, make_run):
        execution = FakeExecution([ExecutionResult(agent_run_id="ar-1", summary="short", full_text="the full text")])
        registry = RunRegistry()
        queue = _queue(db, execution, run_registry=registry)
        task = make_run()
        queue.enqueue(task)
        await _drain(queue)

        run = task_repo.get_run(task.run_id)
        assert run.status == "succeeded"
        assert run.result_summary == "short"
        assert run.agent_run_id == "ar-1"
        assert run.metadata == {"fullText": "the full text"}
        assert run.started_at is not None and run.completed_at is not None
        assert run.duration_ms is not None
        assert run.session_id is not None

        session = session_repo.get_session(run.session_id)
        assert session.metadata["scheduledTaskId"] == "task-1"
        assert session.metadata["scheduledRunId"] == task.run_id
        assert session.metadata["isScheduledRun"] is True
        assert session.title.startswith("Scheduled: Agent - ")

        tracked = registry.get(task.run_id)
        assert tracked.status == "succeeded"
        assert tracked.metadata["agentRunId"] == "ar-1"

    @pytest.mark.asyncio
    async def test_context_is_applied_before_execution(self, db, make_run):
        execution = FakeExecution()
        context = FakeContext()
        queue = _queue(db, execution, context_resolver=context)
        queue.enqueue(make_run(context_sources=(ContextSource(type="text", value="notes"),)))
        await _drain(queue)

        assert context.resolved[0][1] == "user-1"
        assert execution.calls[0][3] == "CTX|Summarize my inbox"

    @pytest.mark.asyncio
    async def test_session_delivery_is_not_routed(self, db, make_run):
        router = FakeRouter()
        queue = _queue(db, FakeExecution(), delivery_router=router)
        queue.enqueue(make_run())
        await _drain(queue)
        assert router.delivered == []

    @pytest.mark.asyncio
    async def test_delivery_payload(self, db, make_run):
        router = FakeRouter()
        queue = _queue(db, FakeExecution(), delivery_router=router)
        task = make_run(delivery_method="webhook", delivery_config={"url": "https://hooks.test/x"})
        queue.enqueue(task)
        await _drain(queue)

        method, config, payload = router.delivered[0]
        assert method == "webhook"
        assert config == {"url": "https://hooks.test/x"}
        assert payload.status == "succeeded"
        assert payload.summary == "done in full"
        assert payload.session_url == f"http://app.test/chat/agent-1?sessionId={payload.session_id}"

    @pytest.mark.asyncio
    async def test_delivery_failure_keeps_success(self, db, task_repo, make_run):
        queue = _queue(db, FakeExecution(), delivery_router=FakeRouter(fail=True))
        task = make_run(delivery_method="email", delivery_config={"to": "a@b.test"})
        queue.enqueue(task)
        await _drain(queue)
        assert task_repo.get_run(task.run_id).status == "succeeded"

    @pytest.mark.asyncio
    async def test_linked_skill_counters(self, db, task_repo, make_run):
        task_repo.create_skill(Skill(id="skill-1", user_id="user-1"))
        queue = _queue(db, FakeExecution([ExecutionResult(summary="ok"), ExecutionError("nope")]))
        queue.enqueue(make_run(skill_id="skill-1"))
        queue.enqueue(make_run(skill_id="skill-1", max_retries=0))
        await _drain(queue)

        skill = task_repo.get_skill("skill-1")
        assert skill.run_count == 2
        assert skill.success_count == 1


class TestRetry:
    @pytest.mark.asyncio
    async def test_exponential_backoff_then_failed(self, db, task_repo, make_run, monkeypatch):
        execution = FakeExecution([ExecutionError("503"), ExecutionError("503"), ExecutionError("still 503")])
        router = FakeRouter()
        queue = _queue(db, execution, delivery_router=router)
        delays = []

        def retry_now(task, delay_s):
            delays.append(delay_s)
            queue.enqueue(task)

        monkeypatch.setattr(queue, "_schedule_retry", retry_now)
        task = make_run(max_retries=3, delivery_method="slack", delivery_config={"webhook_url": "https://slack.test"})
        queue.enqueue(task)
        await _drain(queue)

        assert delays == [5.0, 10.0]
        assert [call[1] for call in execution.calls] == [1, 2, 3]
        assert {call[0] for call in execution.calls} == {task.run_id}

        run = task_repo.get_run(task.run_id)
        assert run.status == "failed"
        assert run.attempt_number == 3
        assert run.error == "still 503"
        assert run.completed_at is not None

        assert len(router.delivered) == 1
        assert router.delivered[0][2].status == "failed"
        assert router.delivered[0][2].error == "still 503"

    @pytest.mark.asyncio
    async def test_retry_reuses_session_without_duplicate_prompt(self, db, session_repo, make_run, monkeypatch):
        execution = FakeExecution([ExecutionError("flaky")])
        queue = _queue(db, execution)
        monkeypatch.setattr(queue, "_schedule_retry", lambda task, delay_s: queue.enqueue(task))
        task = make_run(max_retries=2)
        queue.enqueue(task)
        await _drain(queue)

        first_session, second_session = execution.calls[0][2], execution.calls[1][2]
        assert first_session == second_session
        prompts = [m for m in session_repo.get_messages(first_session) if m.scheduled_run_id == task.run_id]
        assert len(prompts) == 1

    @pytest.mark.asyncio
    async def test_retry_timer_reenqueues(self, db, task_repo, make_run):
        execution = FakeExecution([ExecutionError("flaky")])
        queue = _queue(db, execution, config=QueueConfig(max_concurrent=1, retry_delay_ms=20, poll_interval_s=0.01, drain_poll_s=0.01))
        task = make_run(max_retries=2)
        queue.enqueue(task)
        queue.start()
        try:
            for _ in range(100):
                await asyncio.sleep(0.01)
                if task_repo.get_run(task.run_id).status == "succeeded":
                    break
        finally:
            await queue.stop()

        run = task_repo.get_run(task.run_id)
        assert run.status == "succeeded"
        assert run.attempt_number == 2

    @pytest.mark.asyncio
    async def test_failed_attempt_reverts_to_pending(self, db, task_repo, make_run):
        queue = _queue(db, FakeExecution([ExecutionError("flaky")]))
        task = make_run(max_retries=3)
        queue.enqueue(task)
        await _drain(queue)

        run = task_repo.get_run(task.run_id)
        assert run.status == "pending"
        assert run.attempt_number == 2
        assert run.error == "flaky"
        await queue.stop()

    @pytest.mark.asyncio
    async def test_tracked_run_ids_cover_queued_running_and_retrying(self, db, make_run):
        gate = asyncio.Event()
        queue = _queue(db, FakeExecution([ExecutionError("flaky")], gate=gate))
        retrying, waiting = make_run(max_retries=3), make_run()
        queue.enqueue(retrying)
        queue.enqueue(waiting)
        queue.dispatch_ready()
        assert queue.tracked_run_ids() == {retrying.run_id, waiting.run_id}

        gate.set()
        await asyncio.sleep(0.02)
        assert retrying.run_id in queue.tracked_run_ids()

        await queue.stop()
        assert retrying.run_id not in queue.tracked_run_ids()

    def test_retry_gets_its_own_delivery_config(self, make_run):
        task = make_run(delivery_method="webhook", delivery_config={"url": "https://hooks.test/x"})
        retry = task.next_attempt("sess-1")
        retry.delivery_config["url"] = "https://hooks.test/changed"
        assert task.delivery_config == {"url": "https://hooks.test/x"}
        assert retry.next_attempt().delivery_config is not retry.delivery_config

    @pytest.mark.asyncio
    async def test_exhausting_timeout_is_labelled_timeout(self, db, task_repo, make_run):
        queue = _queue(db, FakeExecution(delay_s=1.0))
        task = make_run(timeout_ms=30, max_retries=1)
        queue.enqueue(task)
        await _drain(queue)

        run = task_repo.get_run(task.run_id)
        assert run.status == "timeout"
        assert "timed out" in run.error


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_queued_run(self, db, task_repo, make_run):
        gate = asyncio.Event()
        queue = _queue(db, FakeExecution(gate=gate))
        running, waiting = make_run(), make_run()
        queue.enqueue(running)
        queue.enqueue(waiting)
        queue.dispatch_ready()

        assert queue.cancel(waiting.run_id) is True
        assert queue.get_queue_size() == 0
        assert queue.get_processing_count() == 1
        assert task_repo.get_run(waiting.run_id).status == "cancelled"

        gate.set()
        await _drain(queue)

    @pytest.mark.asyncio
    async def test_cancel_running_run(self, db, task_repo, make_run):
        gate = asyncio.Event()
        execution = FakeExecution(gate=gate)
        router = FakeRouter()
        queue = _queue(db, execution, delivery_router=router)
        running, waiting = make_run(), make_run()
        queue.enqueue(running)
        queue.enqueue(waiting)
        queue.dispatch_ready()
        await asyncio.sleep(0.01)

        assert queue.cancel(running.run_id) is True
        assert queue.get_queue_size() == 1
        await asyncio.sleep(0.02)

        assert not queue.is_processing(running.run_id)
        assert task_repo.get_run(running.run_id).status == "cancelled"
        assert len(execution.calls) == 1
        assert router.delivered == []

        gate.set()
        await _drain(queue)
        assert task_repo.get_run(running.run_id).status == "cancelled"
        assert task_repo.get_run(waiting.run_id).status == "succeeded"

    @pytest.mark.asyncio
    async def test_cancel_run_waiting_for_retry(self, db, task_repo, make_run):
        queue = _queue(db, FakeExecution([ExecutionError("flaky")]))
        task = make_run(max_retries=3)
        queue.enqueue(task)
        await _drain(queue)

        assert queue.cancel(task.run_id) is True
        await asyncio.sleep(0.01)
        assert task_repo.get_run(task.run_id).status == "cancelled"
        assert queue.get_queue_size() == 0

    def test_cancel_unknown_run(self, db):
        queue = _queue(db, FakeExecution())
        assert queue.cancel("nope") is False

    @pytest.mark.asyncio
    async def test_cancel_during_delivery_keeps_success(self, db, task_repo, make_run):
        task_repo.create_skill(Skill(id="skill-1", user_id="user-1"))
        router = BlockingRouter()
        queue = _queue(db, FakeExecution(), delivery_router=router)
        task = make_run(delivery_method="webhook", delivery_config={"url": "https://hooks.test/x"}, skill_id="skill-1")
        queue.enqueue(task)
        queue.dispatch_ready()
        await asyncio.wait_for(router.started.wait(), timeout=1)

        assert task_repo.get_run(task.run_id).status == "succeeded"
        assert queue.cancel(task.run_id) is False

        router.release.set()
        await _drain(queue)
        assert task_repo.get_run(task.run_id).status == "succeeded"
        assert queue.registry.get(task.run_id).status == "succeeded"
        assert task_repo.get_skill("skill-1").success_count == 1

    @pytest.mark.asyncio
    async def test_cancel_during_failure_delivery_keeps_failed(self, db, task_repo, make_run):
        router = BlockingRouter()
        queue = _queue(db, FakeExecution([ExecutionError("quota exceeded")]), delivery_router=router)
        task = make_run(delivery_method="webhook", delivery_config={"url": "https://hooks.test/x"}, max_retries=1)
        queue.enqueue(task)
        queue.dispatch_ready()
        await asyncio.wait_for(router.started.wait(), timeout=1)

        assert queue.cancel(task.run_id) is False

        router.release.set()
        await _drain(queue)
        assert router.statuses == ["failed"]
        assert task_repo.get_run(task.run_id).status == "failed"


class TestPrepareSession:
    def test_idempotent_prompt_insertion(self, db, session_repo, make_run):
        queue = _queue(db, FakeExecution())
        task = make_run()
        session_id = queue.prepare_session(task)
        reused = task.next_attempt(session_id)

        assert queue.prepare_session(reused) == session_id
        assert queue.prepare_session(reused) == session_id
        messages = session_repo.get_messages(session_id)
        assert len(messages) == 1
        assert messages[0].scheduled_run_id == task.run_id
        assert messages[0].text == "Summarize my inbox"

    def test_reuses_configured_session(self, db, session_repo, make_run):
        existing = session_repo.create_session("user-1", "My chat")
        queue = _queue(db, FakeExecution())
        task = make_run(existing_session_id=existing.id, create_new_session=False)
        assert queue.prepare_session(task) == existing.id

    def test_new_session_per_run_ignores_existing(self, db, session_repo, make_run):
        existing = session_repo.create_session("user-1", "My chat")
        queue = _queue(db, FakeExecution())
        task = make_run(existing_session_id=existing.id, create_new_session=True, agent_name="Ada",
                        delivery_config={"channelType": "telegram"})
        session_id = queue.prepare_session(task)
        assert session_id != existing.id
        session = session_repo.get_session(session_id)
        assert session.title.startswith("Scheduled: Ada - ")
        assert session.metadata["channelType"] == "telegram"
