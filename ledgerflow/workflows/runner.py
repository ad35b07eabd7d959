"""Workflow runner: executes a step graph with a checkpoint per step."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from ..constants import DEFAULT_APPROVAL_TIMEOUT_HOURS
from ..contracts import PersistenceError
from ..persistence.repository import WorkflowRepository
from ..sinks import (
    AuditEvent,
    AuditSink,
    Notification,
    NotificationSink,
    emit_audit,
    emit_notification,
)
from ..utils.clock import Clock, ensure_utc, utcnow
from .actions import ActionContext, ActionRegistry, ActionResult
from .engine import CONDITION_RESULT_KEY, evaluate_condition, get_next_step
from .models import (
    RunOutcome,
    RunStatus,
    StepExecutionResult,
    StepOutcome,
    StepResult,
    StepType,
    TriggerContext,
    WorkflowDefinition,
    WorkflowRun,
    WorkflowStep,
)
from .timeouts import ApprovalTimeoutScheduler

logger = logging.getLogger(__name__)


def _failed(step: WorkflowStep, error: str, data: Optional[dict] = None) -> StepResult:
    return StepResult(
        step_id=step.id,
        step_label=step.display_label,
        type=step.type,
        outcome=StepOutcome.FAILED,
        error=error,
        data=data,
    )


def _succeeded(step: WorkflowStep, data: Optional[dict] = None) -> StepResult:
    return StepResult(
        step_id=step.id,
        step_label=step.display_label,
        type=step.type,
        outcome=StepOutcome.SUCCESS,
        data=data,
    )


def _outcome_of(run: WorkflowRun) -> RunOutcome:
    return RunOutcome(
        run_id=run.run_id,
        status=run.status,
        reason=run.reason,
        steps_executed=len(run.step_results),
        waiting_step_id=run.waiting_step_id,
    )


class WorkflowRunner:
    """Drives workflow runs from start to a terminal status.

    Every step result is persisted before the next step is chosen. Calling
    :meth:`start` again for the same run replays the persisted results
    through the same logic that applied them live and continues at the
    first step without a result. A ``human_approval`` step suspends the run;
    :meth:`resume` and :meth:`timeout_approval` resolve it.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        actions: Optional[ActionRegistry] = None,
        *,
        audit: Optional[AuditSink] = None,
        notifier: Optional[NotificationSink] = None,
        approval_timeout_hours: float = DEFAULT_APPROVAL_TIMEOUT_HOURS,
        schedule_timeouts: bool = True,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._actions = actions or ActionRegistry(repository=repository)
        self._audit = audit
        self._notifier = notifier
        self._approval_timeout_hours = approval_timeout_hours
        self._clock = clock
        self._timeouts = (
            ApprovalTimeoutScheduler(self._on_timeout) if schedule_timeouts else None
        )

    # ------------------------------------------------------------------
    async def run(
        self,
        automation_rule_id: str,
        run_id: str,
        organization_id: Optional[str] = None,
        trigger_context: Optional[TriggerContext] = None,
    ) -> RunOutcome:
        """Start (or resume) the run of an automation rule's workflow."""
        trigger_context = trigger_context or TriggerContext(organization_id=organization_id)
        existing = await self._repository.get_run(run_id)
        if existing is not None and existing.definition is not None:
            return await self.start(
                existing.definition,
                run_id,
                existing.trigger_context,
                automation_rule_id=existing.automation_rule_id,
                organization_id=existing.organization_id,
            )

        rule = await self._repository.get_rule(automation_rule_id)
        if rule is None or (organization_id and rule.organization_id != organization_id):
            await self._repository.start_run(
                run_id,
                WorkflowDefinition(),
                trigger_context,
                automation_rule_id=automation_rule_id,
                organization_id=organization_id,
            )
            await self._fail(
                run_id,
                f"Workflow definition not found for rule {automation_rule_id}",
                organization_id,
            )
            return await self._outcome(run_id)

        return await self.start(
            rule.definition,
            run_id,
            trigger_context,
            automation_rule_id=rule.id,
            organization_id=organization_id or rule.organization_id,
        )

    async def start(
        self,
        definition: WorkflowDefinition,
        run_id: str,
        trigger_context: Optional[TriggerContext] = None,
        automation_rule_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> RunOutcome:
        trigger_context = trigger_context or TriggerContext(organization_id=organization_id)
        run = await self._repository.start_run(
            run_id,
            definition,
            trigger_context,
            automation_rule_id=automation_rule_id,
            organization_id=organization_id,
        )
        if run.is_terminal:
            logger.info(f"Run {run_id} already finished as {run.status.value}")
            return _outcome_of(run)
        if run.status == RunStatus.WAITING_APPROVAL:
            logger.info(f"Run {run_id} is waiting for approval at step {run.waiting_step_id}")
            self._rearm(run)
            return _outcome_of(run)

        snapshot = run.definition or definition
        if not snapshot.steps:
            await self._fail(run_id, "Workflow has no steps", run.organization_id)
            return await self._outcome(run_id)

        if not run.step_results:
            logger.info(f"Starting run {run_id} with {len(snapshot.steps)} steps")
            await emit_audit(
                self._audit,
                AuditEvent(
                    organization_id=run.organization_id,
                    run_id=run_id,
                    action="workflow_started",
                    target_type="automation_rule",
                    target_id=run.automation_rule_id,
                ),
            )
        else:
            logger.info(f"Resuming run {run_id} after {len(run.step_results)} persisted steps")
        return await self._drive(run_id)

    # ------------------------------------------------------------------
    async def _drive(self, run_id: str) -> RunOutcome:
        run = await self._repository.get_run(run_id)
        if run is None or run.definition is None:
            raise PersistenceError(f"Run {run_id} has no stored definition")
        definition = run.definition
        results: List[StepResult] = list(run.step_results)
        visited = set()

        step = get_next_step(definition, None, results)
        while step is not None:
            if step.id in visited:
                await self._fail(
                    run_id, f'Cycle detected at step "{step.display_label}"', run.organization_id
                )
                return await self._outcome(run_id)
            visited.add(step.id)

            result = next((r for r in results if r.step_id == step.id), None)
            if result is None:
                execution = await self._execute_step(run, step, results)
                if execution.wait_for_approval:
                    await self._suspend(run, step)
                    return await self._outcome(run_id)
                result = await self._checkpoint(run, step, execution.result)
                if result is None:
                    return await self._outcome(run_id)
                results.append(result)

            if await self._apply_result(run, step, result):
                return await self._outcome(run_id)
            step = get_next_step(definition, step.id, results)

        if await self._repository.complete_run(run_id):
            logger.info(f"Run {run_id} completed")
            await emit_audit(
                self._audit,
                AuditEvent(
                    organization_id=run.organization_id,
                    run_id=run_id,
                    action="workflow_completed",
                ),
            )
        return await self._outcome(run_id)

    async def _checkpoint(
        self, run: WorkflowRun, step: WorkflowStep, result: StepResult
    ) -> Optional[StepResult]:
        """Persist ``result``; returns the result that won, or ``None`` if the run ended."""
        if await self._repository.record_step_result(run.run_id, result):
            logger.info(
                f"Run {run.run_id} step {step.id} ({step.type}) -> {result.outcome.value}"
            )
            await emit_audit(
                self._audit,
                AuditEvent(
                    organization_id=run.organization_id,
                    run_id=run.run_id,
                    step_id=step.id,
                    action="step_completed",
                    outcome=result.outcome.value,
                    detail={"type": step.type, "error": result.error} if result.error else {"type": step.type},
                ),
            )
            return result

        stored = await self._repository.get_run(run.run_id)
        if stored is None or stored.is_terminal:
            return None
        logger.warning(f"Run {run.run_id} step {step.id} was already recorded; using stored result")
        return stored.result_for(step.id) or result

    async def _apply_result(
        self, run: WorkflowRun, step: WorkflowStep, result: StepResult
    ) -> bool:
        """Apply a step result to the run; returns True when the run stopped."""
        if result.outcome == StepOutcome.SUCCESS:
            return False

        if step.type == StepType.HUMAN_APPROVAL.value:
            reason = (result.data or {}).get("reason") or (
                f'Approval failed on step "{step.display_label}"'
            )
            if await self._repository.cancel_run(run.run_id, reason):
                logger.info(f"Run {run.run_id} cancelled: {reason}")
                await emit_audit(
                    self._audit,
                    AuditEvent(
                        organization_id=run.organization_id,
                        run_id=run.run_id,
                        step_id=step.id,
                        action="workflow_cancelled",
                        outcome="cancelled",
                        detail={"reason": reason},
                    ),
                )
            return True

        if step.on_error == "skip":
            logger.warning(
                f"Run {run.run_id} step {step.id} failed and is skipped: {result.error}"
            )
            return False

        await self._fail(
            run.run_id,
            f'Step "{step.display_label}" failed: {result.error}',
            run.organization_id,
        )
        return True

    async def _fail(self, run_id: str, reason: str, organization_id: Optional[str]) -> None:
        if await self._repository.fail_run(run_id, reason):
            logger.error(f"Run {run_id} failed: {reason}")
            await emit_audit(
                self._audit,
                AuditEvent(
                    organization_id=organization_id,
                    run_id=run_id,
                    action="workflow_failed",
                    outcome="failed",
                    detail={"reason": reason},
                ),
            )

    async def _outcome(self, run_id: str) -> RunOutcome:
        run = await self._repository.get_run(run_id)
        if run is None:
            raise PersistenceError(f"Run {run_id} disappeared from the repository")
        return _outcome_of(run)

    # ------------------------------------------------------------------
    async def _execute_step(
        self, run: WorkflowRun, step: WorkflowStep, results: List[StepResult]
    ) -> StepExecutionResult:
        try:
            return await self._dispatch(run, step, results)
        except PersistenceError:
            raise
        except Exception as e:
            logger.exception(f"Run {run.run_id} step {step.id} raised")
            return StepExecutionResult(result=_failed(step, f"Unhandled error: {e}"))

    async def _dispatch(
        self, run: WorkflowRun, step: WorkflowStep, results: List[StepResult]
    ) -> StepExecutionResult:
        context = ActionContext(
            run_id=run.run_id,
            step_id=step.id,
            organization_id=run.organization_id,
            automation_rule_id=run.automation_rule_id,
            trigger_context=run.trigger_context,
        )

        if step.type == StepType.ACTION.value:
            if not step.action_type:
                return StepExecutionResult(result=_failed(step, "Missing actionType"))
            action = await self._actions.execute(step.action_type, step.action_params, context)
            return StepExecutionResult(result=self._from_action(step, action))

        if step.type == StepType.CONDITION.value:
            if step.condition is None:
                return StepExecutionResult(result=_failed(step, "Missing condition definition"))
            matched = evaluate_condition(step.condition, results, run.trigger_context)
            return StepExecutionResult(result=_succeeded(step, {CONDITION_RESULT_KEY: matched}))

        if step.type == StepType.HUMAN_APPROVAL.value:
            return StepExecutionResult(wait_for_approval=True)

        if step.type == StepType.AGENT_RUN.value:
            if not step.agent_definition_id:
                return StepExecutionResult(result=_failed(step, "Missing agentDefinitionId"))
            action = await self._actions.delegate_agent_run(
                step.agent_definition_id, dict(step.task_context_ref), context
            )
            return StepExecutionResult(result=self._from_action(step, action))

        return StepExecutionResult(result=_failed(step, f"Unknown step type: {step.type}"))

    @staticmethod
    def _from_action(step: WorkflowStep, action: ActionResult) -> StepResult:
        data = dict(action.data or {})
        if action.target_type:
            data.setdefault("target_type", action.target_type)
        if action.target_id:
            data.setdefault("target_id", action.target_id)
        if action.success:
            return _succeeded(step, data or None)
        return _failed(step, action.error or "Action failed", data or None)

    # ------------------------------------------------------------------
    def _timeout_hours(self, step: Optional[WorkflowStep]) -> float:
        if step is not None and step.timeout_hours is not None:
            return step.timeout_hours
        return self._approval_timeout_hours

    async def _suspend(self, run: WorkflowRun, step: WorkflowStep) -> None:
        hours = self._timeout_hours(step)
        expires_at = self._clock() + timedelta(hours=hours)
        if not await self._repository.set_waiting_approval(run.run_id, step.id, expires_at):
            logger.warning(f"Run {run.run_id} could not be suspended at step {step.id}")
            return

        logger.info(
            f"Run {run.run_id} waiting for approval at step {step.id} until {expires_at.isoformat()}"
        )
        await emit_audit(
            self._audit,
            AuditEvent(
                organization_id=run.organization_id,
                run_id=run.run_id,
                step_id=step.id,
                action="approval_requested",
                outcome="waiting",
                detail={"expires_at": expires_at.isoformat()},
            ),
        )
        await emit_notification(
            self._notifier,
            Notification(
                recipient_ids=list(step.notify_user_ids),
                subject=f"Approval needed: {step.display_label}",
                body=step.approval_message or "",
                run_id=run.run_id,
                step_id=step.id,
            ),
        )
        if self._timeouts is not None:
            self._timeouts.arm(run.run_id, step.id, hours * 3600)

    def _rearm(self, run: WorkflowRun) -> None:
        if self._timeouts is None or self._timeouts.armed(run.run_id):
            return
        if run.waiting_step_id is None or run.approval_expires_at is None:
            return
        remaining = (ensure_utc(run.approval_expires_at) - self._clock()).total_seconds()
        self._timeouts.arm(run.run_id, run.waiting_step_id, remaining)

    async def _on_timeout(self, run_id: str, step_id: str) -> None:
        await self.timeout_approval(run_id, step_id)

    async def _waiting_step(
        self, run_id: str, step_id: Optional[str], signal: str
    ) -> tuple[Optional[WorkflowRun], Optional[WorkflowStep]]:
        run = await self._repository.get_run(run_id)
        if run is None:
            logger.warning(f"Ignoring {signal} for unknown run {run_id}")
            return None, None
        if run.status != RunStatus.WAITING_APPROVAL:
            logger.warning(f"Ignoring {signal} for run {run_id} in status {run.status.value}")
            return run, None
        if step_id is not None and step_id != run.waiting_step_id:
            logger.warning(
                f"Ignoring {signal} for run {run_id}: step {step_id} is not the waiting step {run.waiting_step_id}"
            )
            return run, None
        step = run.definition.get_step(run.waiting_step_id) if run.definition else None
        if step is None:
            logger.warning(f"Ignoring {signal} for run {run_id}: waiting step is not in its definition")
            return run, None
        return run, step

    async def resume(
        self,
        run_id: str,
        decision: str,
        approved_by: str,
        step_id: Optional[str] = None,
    ) -> Optional[RunOutcome]:
        """Resolve a pending approval with an ``approved`` or ``rejected`` decision."""
        run, step = await self._waiting_step(run_id, step_id, f"{decision} signal")
        if step is None:
            return _outcome_of(run) if run else None

        if decision == "approved":
            result = _succeeded(step, {"decision": "approved", "approved_by": approved_by})
        else:
            reason = f'Rejected by {approved_by} at step "{step.display_label}"'
            result = _failed(
                step,
                "Rejected by user",
                {"decision": "rejected", "approved_by": approved_by, "reason": reason},
            )
        return await self._resolve_approval(run, step, result)

    async def timeout_approval(
        self, run_id: str, step_id: Optional[str] = None
    ) -> Optional[RunOutcome]:
        """Expire a pending approval; the run ends CANCELLED."""
        run, step = await self._waiting_step(run_id, step_id, "approval timeout")
        if step is None:
            return _outcome_of(run) if run else None

        hours = self._timeout_hours(step)
        reason = f'Approval timeout on step "{step.display_label}"'
        result = _failed(
            step,
            f"Approval timed out after {hours:g} hours",
            {"decision": "timeout", "reason": reason},
        )
        return await self._resolve_approval(run, step, result)

    async def _resolve_approval(
        self, run: WorkflowRun, step: WorkflowStep, result: StepResult
    ) -> RunOutcome:
        decision = (result.data or {}).get("decision")
        if not await self._repository.record_step_result(run.run_id, result):
            stored = await self._repository.get_run(run.run_id)
            if (
                stored is None
                or stored.status != RunStatus.WAITING_APPROVAL
                or stored.result_for(step.id) is None
            ):
                logger.warning(f"Ignoring {decision} for run {run.run_id}: already resolved")
                return _outcome_of(stored or run)
            logger.warning(
                f"Approval of step {step.id} in run {run.run_id} was already recorded; finishing it"
            )
        else:
            logger.info(f"Run {run.run_id} step {step.id} resolved: {decision}")
            await emit_audit(
                self._audit,
                AuditEvent(
                    organization_id=run.organization_id,
                    run_id=run.run_id,
                    step_id=step.id,
                    action="approval_resolved",
                    outcome=str(decision),
                    detail=result.data or {},
                ),
            )

        if self._timeouts is not None:
            self._timeouts.disarm(run.run_id)
        await self._repository.resume_run(run.run_id)
        current = await self._repository.get_run(run.run_id)
        if current is None or current.status != RunStatus.RUNNING:
            return await self._outcome(run.run_id)
        return await self._drive(run.run_id)

    async def expire_overdue(self, now: Optional[datetime] = None) -> List[RunOutcome]:
        """Time out every waiting run whose approval expiry has passed."""
        now = now or self._clock()
        outcomes: List[RunOutcome] = []
        for run in await self._repository.list_waiting_runs():
            expires_at = ensure_utc(run.approval_expires_at)
            if expires_at is None or expires_at > now:
                continue
            outcome = await self.timeout_approval(run.run_id, run.waiting_step_id)
            if outcome is not None:
                outcomes.append(outcome)
        if outcomes:
            logger.info(f"Expired {len(outcomes)} overdue approvals")
        return outcomes

    async def close(self) -> None:
        if self._timeouts is not None:
            await self._timeouts.cancel_all()
