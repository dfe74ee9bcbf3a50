"""Orchestrator class: composes services and wires subsystems."""

from __future__ import annotations

import httpx

from agentcron.context.resolver import DefaultContextResolver
from agentcron.delivery.handlers import ChannelDelivery, EmailDelivery, SendEmail, SendMessage, SlackDelivery, WebhookDelivery
from agentcron.delivery.router import DeliveryRouter
from agentcron.execution.execution_service import ExecutionService, HttpExecutionService
from agentcron.execution.run_registry import RunRegistry
from agentcron.execution.task_queue import TaskQueue
from agentcron.infrastructure.config import (
    INTERNAL_API_SECRET,
    INTERNAL_BASE_URL,
    QueueConfig,
    SchedulerConfig,
)
from agentcron.infrastructure.database import AppDatabase, database
from agentcron.infrastructure.logger import logger
from agentcron.scheduling.scheduler import AgentNameLookup, SchedulerService, SchedulerStatus

HTTP_TIMEOUT_S = 30.0


class Orchestrator:
    """Composes all services and manages the application lifecycle.

    Collaborators that live outside this process (agent names, channel and
    email senders, the execution service) are injected; anything not given
    falls back to the HTTP implementations pointed at INTERNAL_BASE_URL.
    """

    def __init__(
        self,
        db: AppDatabase = database,
        execution_service: ExecutionService | None = None,
        agent_names: AgentNameLookup | None = None,
        send_message: SendMessage | None = None,
        send_email: SendEmail | None = None,
        scheduler_config: SchedulerConfig | None = None,
        queue_config: QueueConfig | None = None,
    ) -> None:
        self._db = db
        self._execution_service = execution_service
        self._agent_names = agent_names
        self._send_message = send_message
        self._send_email = send_email
        self._scheduler_config = scheduler_config or SchedulerConfig()
        self._queue_config = queue_config or QueueConfig()

        self._client: httpx.AsyncClient | None = None
        self._owned_execution: HttpExecutionService | None = None
        self.registry = RunRegistry()
        self.scheduler: SchedulerService | None = None
        self.queue: TaskQueue | None = None

    async def start(self) -> None:
        """Initialize the database, build the queue and scheduler, and start them."""
        logger.info("Starting agentcron...")

        if self._db.task_repo is None:
            self._db.init()
        assert self._db.task_repo is not None and self._db.session_repo is not None

        self._client = httpx.AsyncClient(timeout=HTTP_TIMEOUT_S, follow_redirects=True)

        execution = self._execution_service
        if execution is None:
            self._owned_execution = HttpExecutionService(
                self._db.session_repo, INTERNAL_BASE_URL, INTERNAL_API_SECRET
            )
            execution = self._owned_execution

        router = DeliveryRouter([WebhookDelivery(self._client), SlackDelivery(self._client)])
        if self._send_message:
            router.register(ChannelDelivery(self._send_message))
        if self._send_email:
            router.register(EmailDelivery(self._send_email))
        logger.info("Delivery methods available", methods=router.methods())

        self.queue = TaskQueue(
            self._db.task_repo,
            self._db.session_repo,
            execution,
            context_resolver=DefaultContextResolver(client=self._client),
            delivery_router=router,
            run_registry=self.registry,
            config=self._queue_config,
            base_url=INTERNAL_BASE_URL,
        )
        self.scheduler = SchedulerService(
            self._db.task_repo,
            self.queue,
            config=self._scheduler_config,
            agent_names=self._agent_names,
        )
        self.scheduler.start()

        logger.info("agentcron started", **vars(self.scheduler.get_status()))

    def status(self) -> SchedulerStatus | None:
        return self.scheduler.get_status() if self.scheduler else None

    async def shutdown(self) -> None:
        """Gracefully shut down all services."""
        logger.info("Shutting down agentcron...")

        if self.scheduler:
            await self.scheduler.stop()
        if self._owned_execution:
            await self._owned_execution.aclose()
        if self._client:
            await self._client.aclose()
            self._client = None
        self._db.close()

        logger.info("agentcron shut down complete")
