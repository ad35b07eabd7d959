"""Event dispatcher for ledgerflow."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .constants import TOPIC_AGENT_RUN, TOPIC_WORKFLOW_APPROVED, TOPIC_WORKFLOW_RUN
from .contracts import (
    AgentRunRequested,
    EngineEvent,
    WorkflowApproved,
    WorkflowRunRequested,
)
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Publishes the engine's trigger events on a transport."""

    def __init__(self, transport: BaseTransport) -> None:
        self._transport = transport

    async def _publish(self, topic: str, payload: Any) -> EngineEvent:
        event = EngineEvent(name=topic, data=payload.model_dump(mode="json"))
        await self._transport.publish(topic, event)
        logger.debug(f"Published {topic} event {event.message_id}")
        return event

    async def emit_workflow_run(
        self,
        automation_rule_id: str,
        workflow_run_id: str,
        organization_id: str,
        trigger_context: Optional[Dict[str, Any]] = None,
    ) -> EngineEvent:
        return await self._publish(
            TOPIC_WORKFLOW_RUN,
            WorkflowRunRequested(
                automation_rule_id=automation_rule_id,
                workflow_run_id=workflow_run_id,
                organization_id=organization_id,
                trigger_context=trigger_context or {},
            ),
        )

    async def emit_approval(
        self,
        workflow_run_id: str,
        decision: str,
        approved_by: str,
        step_id: Optional[str] = None,
    ) -> EngineEvent:
        return await self._publish(
            TOPIC_WORKFLOW_APPROVED,
            WorkflowApproved(
                workflow_run_id=workflow_run_id,
                decision=decision,
                approved_by=approved_by,
                step_id=step_id,
            ),
        )

    async def emit_agent_run(
        self,
        agent_definition_id: str,
        organization_id: str,
        triggered_by: Optional[str] = None,
        task_context_ref: Optional[Dict[str, Any]] = None,
        execution_id: Optional[str] = None,
    ) -> EngineEvent:
        return await self._publish(
            TOPIC_AGENT_RUN,
            AgentRunRequested(
                agent_definition_id=agent_definition_id,
                organization_id=organization_id,
                triggered_by=triggered_by,
                task_context_ref=task_context_ref or {},
                execution_id=execution_id,
            ),
        )
