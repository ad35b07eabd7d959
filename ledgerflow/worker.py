"""Worker that consumes trigger events and routes them to the runners."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError

from .agents.runner import AgentRunner
from .constants import (
    DEFAULT_WORKER_MAX_ATTEMPTS,
    TOPIC_AGENT_RUN,
    TOPIC_WORKFLOW_APPROVED,
    TOPIC_WORKFLOW_RUN,
)
from .contracts import (
    AgentRunRequested,
    EngineEvent,
    PersistenceError,
    WorkflowApproved,
    WorkflowRunRequested,
)
from .transports import BaseTransport
from .utils.retry import schedule_retry
from .workflows.models import TriggerContext
from .workflows.runner import WorkflowRunner

logger = logging.getLogger(__name__)

TOPICS = (TOPIC_WORKFLOW_RUN, TOPIC_WORKFLOW_APPROVED, TOPIC_AGENT_RUN)


class EventWorker:
    """Listens on the trigger topics and hands each event to its runner.

    A ``PersistenceError`` means the checkpoint was not written, so the
    event is published again with ``attempt + 1`` after a backoff, up to
    ``max_attempts`` deliveries.
    """

    def __init__(
        self,
        transport: BaseTransport,
        workflow_runner: Optional[WorkflowRunner] = None,
        agent_runner: Optional[AgentRunner] = None,
        max_attempts: int = DEFAULT_WORKER_MAX_ATTEMPTS,
        retry_delay: Callable[[int], Awaitable[None]] = schedule_retry,
    ) -> None:
        self._transport = transport
        self._workflow_runner = workflow_runner
        self._agent_runner = agent_runner
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume all trigger topics until ``lifespan`` seconds have passed."""
        if self._workflow_runner is not None:
            await self._workflow_runner.expire_overdue()
        try:
            await asyncio.gather(*(self._consume(topic, lifespan) for topic in TOPICS))
        finally:
            if self._workflow_runner is not None:
                await self._workflow_runner.close()

    async def _consume(self, topic: str, lifespan: Optional[float]) -> None:
        await self._transport.consume(topic, self.handle, lifespan=lifespan)

    async def handle(self, event: EngineEvent) -> bool:
        """Process one event; returns True when it was handled."""
        try:
            await self._route(event)
            return True
        except ValidationError as e:
            logger.error(f"Dropping malformed {event.name} event {event.message_id}: {e}")
            return False
        except PersistenceError as e:
            if event.attempt + 1 >= self._max_attempts:
                logger.error(
                    f"Giving up on {event.name} event {event.message_id} after {event.attempt + 1} attempts: {e}"
                )
                return False
            logger.warning(
                f"Persistence failed for {event.name} event {event.message_id}, retrying: {e}"
            )
            await self._retry_delay(event.attempt)
            await self._transport.redeliver(event)
            return False

    async def _route(self, event: EngineEvent) -> None:
        if event.name == TOPIC_WORKFLOW_RUN:
            if self._workflow_runner is None:
                logger.warning(f"No workflow runner configured for {event.message_id}")
                return
            payload = WorkflowRunRequested.model_validate(event.data)
            trigger_context = TriggerContext.model_validate(
                {"organization_id": payload.organization_id, **payload.trigger_context}
            )
            await self._workflow_runner.run(
                payload.automation_rule_id,
                payload.workflow_run_id,
                payload.organization_id,
                trigger_context,
            )
        elif event.name == TOPIC_WORKFLOW_APPROVED:
            if self._workflow_runner is None:
                logger.warning(f"No workflow runner configured for {event.message_id}")
                return
            payload = WorkflowApproved.model_validate(event.data)
            await self._workflow_runner.resume(
                payload.workflow_run_id,
                payload.decision,
                payload.approved_by,
                step_id=payload.step_id,
            )
        elif event.name == TOPIC_AGENT_RUN:
            if self._agent_runner is None:
                logger.warning(f"No agent runner configured for {event.message_id}")
                return
            payload = AgentRunRequested.model_validate(event.data)
            await self._agent_runner.run(
                payload.agent_definition_id,
                payload.organization_id,
                triggered_by=payload.triggered_by,
                task_context_ref=payload.task_context_ref,
                execution_id=payload.execution_id or event.message_id,
            )
        else:
            logger.warning(f"Ignoring event {event.message_id} with unknown name {event.name}")
