"""Repository abstraction for run and execution state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Sequence

from ..agents.models import (
    AgentDefinition,
    AgentExecution,
    AgentExecutionStatus,
    AgentRecommendation,
    ExecutionOutcome,
    ExecutionStep,
    FallbackInfo,
    UsageTotals,
)
from ..workflows.models import (
    AutomationRule,
    RunStatus,
    StepResult,
    TriggerContext,
    WorkflowDefinition,
    WorkflowRun,
)


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Every write is safe to repeat. Methods returning ``bool`` report whether
    this call performed the write (``False`` means it was already done or the
    state no longer allowed it). Backend failures surface as
    ``PersistenceError``.
    """

    # -- automation rules -------------------------------------------------
    async def save_rule(self, rule: AutomationRule) -> None:
        """Insert or replace an automation rule."""

    async def get_rule(self, rule_id: str) -> AutomationRule | None:
        """Retrieve a rule by id."""

    async def list_rules(
        self,
        organization_id: Optional[str] = None,
        trigger_type: Optional[str] = None,
    ) -> list[AutomationRule]:
        """Return rules, optionally filtered."""

    async def load_definition(self, rule_id: str) -> WorkflowDefinition | None:
        """Return the workflow definition owned by a rule."""

    # -- workflow runs ----------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> bool:
        """Persist a new PENDING run; ``False`` if the run id exists."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run together with its step results."""

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[WorkflowRun]:
        """Return runs, newest first."""

    async def list_waiting_runs(self) -> list[WorkflowRun]:
        """Return runs suspended at an approval step."""

    async def find_run_by_idempotency_key(self, key: str) -> WorkflowRun | None:
        """Return the most recent run created for a trigger key."""

    async def start_run(
        self,
        run_id: str,
        definition: WorkflowDefinition,
        trigger_context: TriggerContext,
        automation_rule_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> WorkflowRun:
        """Move a PENDING (or unknown) run to RUNNING with a definition snapshot.

        Runs already past PENDING keep their stored state and snapshot.
        Returns the stored run.
        """

    async def record_step_result(self, run_id: str, result: StepResult) -> bool:
        """Append a step result; at most once per ``(run_id, step_id)``."""

    async def set_waiting_approval(
        self, run_id: str, step_id: str, expires_at: datetime
    ) -> bool:
        """RUNNING -> WAITING_APPROVAL at ``step_id``."""

    async def resume_run(self, run_id: str) -> bool:
        """WAITING_APPROVAL -> RUNNING."""

    async def complete_run(self, run_id: str) -> bool:
        """Non-terminal -> COMPLETED."""

    async def fail_run(self, run_id: str, reason: str) -> bool:
        """Non-terminal -> FAILED with a reason."""

    async def cancel_run(self, run_id: str, reason: str) -> bool:
        """Non-terminal -> CANCELLED with a reason."""

    # -- action effects ---------------------------------------------------
    async def get_action_effect(self, key: str) -> Dict[str, Any] | None:
        """Return the stored result of a side effect."""

    async def record_action_effect(self, key: str, result: Dict[str, Any]) -> bool:
        """Store a side-effect result once per key."""

    # -- agent definitions ------------------------------------------------
    async def save_agent_definition(self, definition: AgentDefinition) -> None:
        """Insert or replace an agent definition."""

    async def load_agent_definition(
        self, agent_definition_id: str
    ) -> AgentDefinition | None:
        """Retrieve an agent definition."""

    # -- agent executions -------------------------------------------------
    async def create_execution(self, execution: AgentExecution) -> bool:
        """Persist a new running execution; ``False`` if the id exists."""

    async def get_execution(self, execution_id: str) -> AgentExecution | None:
        """Retrieve an execution together with its steps."""

    async def list_executions(
        self, organization_id: Optional[str] = None
    ) -> list[AgentExecution]:
        """Return executions, newest first."""

    async def append_step(self, execution_id: str, step: ExecutionStep) -> bool:
        """Append a loop step; at most once per step number."""

    async def finalize_execution(
        self,
        execution_id: str,
        status: AgentExecutionStatus,
        outcome: ExecutionOutcome,
        fallback: Optional[FallbackInfo] = None,
        usage: Optional[UsageTotals] = None,
        recommendations: Sequence[AgentRecommendation] = (),
    ) -> bool:
        """running -> terminal status, exactly once."""

    async def request_cancel(self, execution_id: str) -> bool:
        """Flag a running execution for cooperative cancellation."""

    async def is_cancel_requested(self, execution_id: str) -> bool:
        """Return whether cancellation has been requested."""


