"""Workflow definitions, runs and step results."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ..utils.clock import utcnow


class StepType(str, Enum):
    ACTION = "action"
    CONDITION = "condition"
    HUMAN_APPROVAL = "human_approval"
    AGENT_RUN = "agent_run"


class RunStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    WAITING_APPROVAL = "WAITING_APPROVAL"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
)


class StepOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


ConditionOperator = Literal["eq", "neq", "gt", "lt", "gte", "lte", "contains"]


class ConditionSpec(BaseModel):
    """Predicate evaluated by a ``condition`` step.

    ``field`` is a dotted path rooted at ``steps.<step_id>`` (prior step data)
    or ``trigger`` (trigger metadata).
    """

    field: str
    operator: ConditionOperator
    value: Any = None


class WorkflowStep(BaseModel):
    """One node of a workflow graph.

    ``type`` is kept as a plain string so that definitions carrying an
    unrecognised step type still load and fail when the step is dispatched.
    """

    id: str
    type: str
    label: str = ""
    action_type: Optional[str] = None
    action_params: Dict[str, Any] = Field(default_factory=dict)
    condition: Optional[ConditionSpec] = None
    on_true: Optional[str] = None
    on_false: Optional[str] = None
    approval_message: Optional[str] = None
    notify_user_ids: List[str] = Field(default_factory=list)
    timeout_hours: Optional[float] = None
    agent_definition_id: Optional[str] = None
    task_context_ref: Dict[str, Any] = Field(default_factory=dict)
    next_step_id: Optional[str] = None
    on_error: Literal["fail", "skip"] = "fail"

    @property
    def display_label(self) -> str:
        return self.label or self.id


class WorkflowDefinition(BaseModel):
    version: int = 1
    steps: List[WorkflowStep] = Field(default_factory=list)

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def index_of(self, step_id: str) -> int:
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return -1


class TriggerContext(BaseModel):
    """Describes the event that started a run."""

    trigger_type: str = "manual"
    trigger_event_id: Optional[str] = None
    organization_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StepResult(BaseModel):
    """Persisted outcome of one executed step. Written at most once per run."""

    step_id: str
    step_label: str = ""
    type: str
    outcome: StepOutcome
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    completed_at: datetime = Field(default_factory=utcnow)


class StepExecutionResult(BaseModel):
    """What dispatching a step produced: a result to persist, or a wait signal."""

    result: Optional[StepResult] = None
    wait_for_approval: bool = False


class AutomationRule(BaseModel):
    """Owns a workflow definition and the trigger that starts it."""

    id: str
    organization_id: str
    name: str = ""
    trigger_type: str
    conditions: Dict[str, Any] = Field(default_factory=dict)
    definition: WorkflowDefinition = Field(default_factory=WorkflowDefinition)
    is_active: bool = True
    created_by: Optional[str] = None


class WorkflowRun(BaseModel):
    run_id: str
    automation_rule_id: Optional[str] = None
    organization_id: Optional[str] = None
    status: RunStatus = RunStatus.PENDING
    trigger_context: TriggerContext = Field(default_factory=TriggerContext)
    definition: Optional[WorkflowDefinition] = None
    step_results: List[StepResult] = Field(default_factory=list)
    waiting_step_id: Optional[str] = None
    approval_expires_at: Optional[datetime] = None
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def result_for(self, step_id: str) -> Optional[StepResult]:
        for result in self.step_results:
            if result.step_id == step_id:
                return result
        return None


class RunOutcome(BaseModel):
    """Summary returned to callers of the workflow runner."""

    run_id: str
    status: RunStatus
    reason: Optional[str] = None
    steps_executed: int = 0
    waiting_step_id: Optional[str] = None
