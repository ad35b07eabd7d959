"""Event envelope, trigger payloads and engine exceptions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class LedgerflowError(Exception):
    """Base class for engine errors."""


class BudgetExceeded(LedgerflowError):
    """Raised when an execution runs out of token, cost or time budget."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"BUDGET_EXCEEDED: {reason}")
        self.reason = reason


class ReasoningError(LedgerflowError):
    """The reasoning service failed to produce a decision.

    Carries whatever usage was consumed before the failure so it can still
    be billed against the cost guard.
    """

    def __init__(
        self, message: str, tokens_used: int = 0, cost_usd: float = 0.0
    ) -> None:
        super().__init__(message)
        self.tokens_used = tokens_used
        self.cost_usd = cost_usd


class PersistenceError(LedgerflowError):
    """The backing store is unavailable; the current checkpoint was not written."""


class WorkflowRunRequested(BaseModel):
    """Payload of ``workflow.run``."""

    automation_rule_id: str
    workflow_run_id: str
    organization_id: str
    trigger_context: Dict[str, Any] = Field(default_factory=dict)


class WorkflowApproved(BaseModel):
    """Payload of ``workflow.approved``; matched to a run by ``workflow_run_id``."""

    workflow_run_id: str
    decision: Literal["approved", "rejected"]
    approved_by: str
    step_id: Optional[str] = None


class AgentRunRequested(BaseModel):
    """Payload of ``agent.run``."""

    agent_definition_id: str
    organization_id: str
    triggered_by: Optional[str] = None
    task_context_ref: Dict[str, Any] = Field(default_factory=dict)
    execution_id: Optional[str] = None


class EngineEvent(BaseModel):
    """Envelope exchanged over the transport."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempt: int = 0
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "EngineEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)

    def bump_attempt(self) -> "EngineEvent":
        """Return a copy scheduled for redelivery."""
        logger.debug(f"Event {self.message_id} ({self.name}) attempt {self.attempt + 1}")
        return self.model_copy(update={"attempt": self.attempt + 1})
