"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

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
from ..utils.clock import utcnow
from ..workflows.models import (
    AutomationRule,
    RunStatus,
    StepResult,
    TriggerContext,
    WorkflowDefinition,
    WorkflowRun,
)
from .repository import WorkflowRepository

_OPEN_STATUSES = (RunStatus.PENDING, RunStatus.RUNNING, RunStatus.WAITING_APPROVAL)


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store runs and executions in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Stored models are copied on the way
    in and out so callers never mutate repository state directly.
    """

    def __init__(self) -> None:
        self._rules: Dict[str, AutomationRule] = {}
        self._runs: Dict[str, WorkflowRun] = {}
        self._effects: Dict[str, Dict[str, Any]] = {}
        self._agents: Dict[str, AgentDefinition] = {}
        self._executions: Dict[str, AgentExecution] = {}

    # ------------------------------------------------------------------
    async def save_rule(self, rule: AutomationRule) -> None:
        self._rules[rule.id] = rule.model_copy(deep=True)

    async def get_rule(self, rule_id: str) -> AutomationRule | None:
        rule = self._rules.get(rule_id)
        return rule.model_copy(deep=True) if rule else None

    async def list_rules(
        self,
        organization_id: Optional[str] = None,
        trigger_type: Optional[str] = None,
    ) -> list[AutomationRule]:
        return [
            rule.model_copy(deep=True)
            for rule in self._rules.values()
            if (organization_id is None or rule.organization_id == organization_id)
            and (trigger_type is None or rule.trigger_type == trigger_type)
        ]

    async def load_definition(self, rule_id: str) -> WorkflowDefinition | None:
        rule = self._rules.get(rule_id)
        return rule.definition.model_copy(deep=True) if rule else None

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> bool:
        if run.run_id in self._runs:
            return False
        self._runs[run.run_id] = run.model_copy(deep=True)
        return True

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[WorkflowRun]:
        runs = [r for r in self._runs.values() if status is None or r.status == status]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs]

    async def list_waiting_runs(self) -> list[WorkflowRun]:
        return await self.list_runs(RunStatus.WAITING_APPROVAL)

    async def find_run_by_idempotency_key(self, key: str) -> WorkflowRun | None:
        matches = [r for r in self._runs.values() if r.idempotency_key == key]
        if not matches:
            return None
        return max(matches, key=lambda r: r.created_at).model_copy(deep=True)

    async def start_run(
        self,
        run_id: str,
        definition: WorkflowDefinition,
        trigger_context: TriggerContext,
        automation_rule_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> WorkflowRun:
        run = self._runs.get(run_id)
        if run is None:
            run = WorkflowRun(
                run_id=run_id,
                automation_rule_id=automation_rule_id,
                organization_id=organization_id or trigger_context.organization_id,
                trigger_context=trigger_context,
            )
            self._runs[run_id] = run
        if run.status == RunStatus.PENDING:
            run.status = RunStatus.RUNNING
            run.definition = definition.model_copy(deep=True)
            run.trigger_context = trigger_context.model_copy(deep=True)
            run.started_at = utcnow()
        return run.model_copy(deep=True)

    async def record_step_result(self, run_id: str, result: StepResult) -> bool:
        run = self._runs.get(run_id)
        if run is None or run.result_for(result.step_id) is not None:
            return False
        run.step_results.append(result.model_copy(deep=True))
        return True

    def _transition(
        self,
        run_id: str,
        allowed: Sequence[RunStatus],
        status: RunStatus,
        reason: Optional[str] = None,
    ) -> Optional[WorkflowRun]:
        run = self._runs.get(run_id)
        if run is None or run.status not in allowed:
            return None
        run.status = status
        if reason is not None:
            run.reason = reason
        if run.is_terminal:
            run.completed_at = utcnow()
            run.waiting_step_id = None
            run.approval_expires_at = None
        return run

    async def set_waiting_approval(
        self, run_id: str, step_id: str, expires_at: datetime
    ) -> bool:
        run = self._transition(run_id, [RunStatus.RUNNING], RunStatus.WAITING_APPROVAL)
        if run is None:
            return False
        run.waiting_step_id = step_id
        run.approval_expires_at = expires_at
        return True

    async def resume_run(self, run_id: str) -> bool:
        run = self._transition(
            run_id, [RunStatus.WAITING_APPROVAL], RunStatus.RUNNING
        )
        if run is None:
            return False
        run.waiting_step_id = None
        run.approval_expires_at = None
        return True

    async def complete_run(self, run_id: str) -> bool:
        return self._transition(run_id, _OPEN_STATUSES, RunStatus.COMPLETED) is not None

    async def fail_run(self, run_id: str, reason: str) -> bool:
        return self._transition(run_id, _OPEN_STATUSES, RunStatus.FAILED, reason) is not None

    async def cancel_run(self, run_id: str, reason: str) -> bool:
        return (
            self._transition(run_id, _OPEN_STATUSES, RunStatus.CANCELLED, reason)
            is not None
        )

    # ------------------------------------------------------------------
    async def get_action_effect(self, key: str) -> Dict[str, Any] | None:
        effect = self._effects.get(key)
        return dict(effect) if effect is not None else None

    async def record_action_effect(self, key: str, result: Dict[str, Any]) -> bool:
        if key in self._effects:
            return False
        self._effects[key] = dict(result)
        return True

    # ------------------------------------------------------------------
    async def save_agent_definition(self, definition: AgentDefinition) -> None:
        self._agents[definition.id] = definition.model_copy(deep=True)

    async def load_agent_definition(
        self, agent_definition_id: str
    ) -> AgentDefinition | None:
        definition = self._agents.get(agent_definition_id)
        return definition.model_copy(deep=True) if definition else None

    # ------------------------------------------------------------------
    async def create_execution(self, execution: AgentExecution) -> bool:
        if execution.execution_id in self._executions:
            return False
        self._executions[execution.execution_id] = execution.model_copy(deep=True)
        return True

    async def get_execution(self, execution_id: str) -> AgentExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self, organization_id: Optional[str] = None
    ) -> list[AgentExecution]:
        executions: List[AgentExecution] = [
            e
            for e in self._executions.values()
            if organization_id is None or e.organization_id == organization_id
        ]
        executions.sort(key=lambda e: e.created_at, reverse=True)
        return [e.model_copy(deep=True) for e in executions]

    async def append_step(self, execution_id: str, step: ExecutionStep) -> bool:
        execution = self._executions.get(execution_id)
        if execution is None or execution.is_terminal:
            return False
        if any(s.step_number == step.step_number for s in execution.steps):
            return False
        execution.steps.append(step.model_copy(deep=True))
        return True

    async def finalize_execution(
        self,
        execution_id: str,
        status: AgentExecutionStatus,
        outcome: ExecutionOutcome,
        fallback: Optional[FallbackInfo] = None,
        usage: Optional[UsageTotals] = None,
        recommendations: Sequence[AgentRecommendation] = (),
    ) -> bool:
        execution = self._executions.get(execution_id)
        if execution is None or execution.is_terminal:
            return False
        execution.status = status
        execution.outcome = outcome.model_copy()
        execution.fallback = fallback.model_copy() if fallback else None
        if usage is not None:
            execution.usage = usage.model_copy()
        execution.recommendations = list(recommendations)
        execution.completed_at = utcnow()
        return True

    async def request_cancel(self, execution_id: str) -> bool:
        execution = self._executions.get(execution_id)
        if execution is None or execution.is_terminal:
            return False
        execution.cancel_requested = True
        return True

    async def is_cancel_requested(self, execution_id: str) -> bool:
        execution = self._executions.get(execution_id)
        return bool(execution and execution.cancel_requested)
