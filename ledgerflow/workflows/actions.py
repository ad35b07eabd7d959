"""Action handlers invoked by ``action`` and ``agent_run`` steps."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, Field

from ..agents.models import AgentExecutionStatus
from ..persistence.repository import WorkflowRepository
from ..sinks import Notification, NotificationSink, emit_notification
from .models import TriggerContext

if TYPE_CHECKING:
    from ..agents.runner import AgentRunner

logger = logging.getLogger(__name__)


class ActionContext(BaseModel):
    run_id: str
    step_id: str
    organization_id: Optional[str] = None
    automation_rule_id: Optional[str] = None
    trigger_context: TriggerContext = Field(default_factory=TriggerContext)

    @property
    def idempotency_key(self) -> str:
        return f"{self.run_id}:{self.step_id}"


class ActionResult(BaseModel):
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    target_type: Optional[str] = None
    target_id: Optional[str] = None


ActionHandler = Callable[[Dict[str, Any], ActionContext], Awaitable[ActionResult]]


class ActionRegistry:
    """Maps ``action_type`` names to handlers.

    Side-effecting handlers should be registered through :meth:`idempotent`
    so that re-running a step after a crash returns the stored result
    instead of repeating the effect.
    """

    def __init__(
        self,
        repository: Optional[WorkflowRepository] = None,
        agent_runner: Optional["AgentRunner"] = None,
    ) -> None:
        self._handlers: Dict[str, ActionHandler] = {}
        self.repository = repository
        self.agent_runner = agent_runner

    def register(self, name: str, handler: ActionHandler) -> None:
        self._handlers[name] = handler

    def action(self, name: str, idempotent: bool = False) -> Callable[[ActionHandler], ActionHandler]:
        def decorator(handler: ActionHandler) -> ActionHandler:
            self.register(name, self.idempotent(handler) if idempotent else handler)
            return handler

        return decorator

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    def idempotent(self, handler: ActionHandler) -> ActionHandler:
        """Wrap ``handler`` so its result is stored under the effect key."""

        async def wrapper(params: Dict[str, Any], context: ActionContext) -> ActionResult:
            if self.repository is None:
                return await handler(params, context)
            key = context.idempotency_key
            stored = await self.repository.get_action_effect(key)
            if stored is not None:
                logger.info(f"Reusing stored effect for {key}")
                return ActionResult.model_validate(stored)
            result = await handler(params, context)
            if result.success:
                await self.repository.record_action_effect(key, result.model_dump())
            return result

        return wrapper

    async def execute(
        self, action_type: str, params: Dict[str, Any], context: ActionContext
    ) -> ActionResult:
        handler = self._handlers.get(action_type)
        if handler is None:
            return ActionResult(success=False, error=f"Unknown action type: {action_type}")
        try:
            return await handler(dict(params), context)
        except Exception as e:
            logger.warning(
                f"Action {action_type} failed for run {context.run_id} step {context.step_id}: {e}"
            )
            return ActionResult(success=False, error=str(e) or e.__class__.__name__)

    async def delegate_agent_run(
        self,
        agent_definition_id: str,
        task_context_ref: Dict[str, Any],
        context: ActionContext,
    ) -> ActionResult:
        """Run an agent synchronously; the effect key doubles as execution id."""
        if self.agent_runner is None:
            return ActionResult(success=False, error="No agent runner configured")
        organization_id = context.organization_id or context.trigger_context.organization_id
        result = await self.agent_runner.run(
            agent_definition_id,
            organization_id or "",
            triggered_by=None,
            task_context_ref=task_context_ref,
            execution_id=context.idempotency_key,
        )
        succeeded = result.status in (
            AgentExecutionStatus.COMPLETED,
            AgentExecutionStatus.NEEDS_REVIEW,
        )
        data = {
            "execution_id": result.execution_id,
            "status": result.status.value,
            "summary": result.outcome.summary,
            "match_rate": result.outcome.match_rate,
        }
        return ActionResult(
            success=succeeded,
            data=data,
            error=None if succeeded else f"Agent execution {result.status.value}: {result.outcome.summary}",
            target_type="agent_execution",
            target_id=result.execution_id,
        )


def register_default_actions(
    registry: ActionRegistry, notifier: Optional[NotificationSink] = None
) -> ActionRegistry:
    """Register ``send_request`` and ``trigger_agent``."""

    @registry.action("send_request", idempotent=True)
    async def send_request(params: Dict[str, Any], context: ActionContext) -> ActionResult:
        recipients = [str(r) for r in params.get("recipient_ids", [])]
        if not recipients:
            return ActionResult(success=False, error="No recipients given")
        subject = params.get("subject") or "Request"
        await emit_notification(
            notifier,
            Notification(
                recipient_ids=recipients,
                subject=subject,
                body=params.get("message", ""),
                run_id=context.run_id,
                step_id=context.step_id,
            ),
        )
        return ActionResult(
            success=True,
            data={"sent_to": recipients, "subject": subject},
            target_type="request",
            target_id=context.idempotency_key,
        )

    @registry.action("trigger_agent")
    async def trigger_agent(params: Dict[str, Any], context: ActionContext) -> ActionResult:
        agent_definition_id = params.get("agent_definition_id")
        if not agent_definition_id:
            return ActionResult(success=False, error="Missing agent_definition_id")
        return await registry.delegate_agent_run(
            agent_definition_id, dict(params.get("task_context_ref") or {}), context
        )

    return registry
