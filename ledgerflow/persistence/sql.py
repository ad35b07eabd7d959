"""SQLModel-backed repository (sqlite via aiosqlite, Postgres via asyncpg)."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col

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
from ..contracts import PersistenceError
from ..db import (
    ActionEffectRow,
    AgentDefinitionRow,
    AgentExecutionRow,
    AutomationRuleRow,
    Database,
    ExecutionStepRow,
    StepResultRow,
    WorkflowRunRow,
)
from ..utils.clock import ensure_utc, utcnow
from ..workflows.models import (
    AutomationRule,
    RunStatus,
    StepOutcome,
    StepResult,
    TriggerContext,
    WorkflowDefinition,
    WorkflowRun,
)
from .repository import WorkflowRepository

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (RunStatus.PENDING, RunStatus.RUNNING, RunStatus.WAITING_APPROVAL)


def _run_from_row(row: WorkflowRunRow, results: Iterable[StepResultRow]) -> WorkflowRun:
    return WorkflowRun(
        run_id=row.run_id,
        automation_rule_id=row.automation_rule_id,
        organization_id=row.organization_id,
        status=RunStatus(row.status),
        trigger_context=TriggerContext.model_validate(row.trigger_context or {}),
        definition=(
            WorkflowDefinition.model_validate(row.definition)
            if row.definition is not None
            else None
        ),
        step_results=[_result_from_row(r) for r in results],
        waiting_step_id=row.waiting_step_id,
        approval_expires_at=ensure_utc(row.approval_expires_at),
        reason=row.reason,
        idempotency_key=row.idempotency_key,
        created_at=ensure_utc(row.created_at),
        started_at=ensure_utc(row.started_at),
        completed_at=ensure_utc(row.completed_at),
    )


def _result_from_row(row: StepResultRow) -> StepResult:
    return StepResult(
        step_id=row.step_id,
        step_label=row.step_label,
        type=row.type,
        outcome=StepOutcome(row.outcome),
        data=row.data,
        error=row.error,
        completed_at=ensure_utc(row.completed_at),
    )


def _execution_from_row(
    row: AgentExecutionRow, steps: Iterable[ExecutionStepRow]
) -> AgentExecution:
    return AgentExecution(
        execution_id=row.execution_id,
        agent_definition_id=row.agent_definition_id,
        organization_id=row.organization_id,
        trigger_type=row.trigger_type,
        triggered_by=row.triggered_by,
        goal=row.goal,
        input_context=row.input_context or {},
        steps=[
            ExecutionStep(
                step_number=s.step_number,
                timestamp=ensure_utc(s.timestamp),
                reasoning=s.reasoning,
                action=s.action,
                tool_name=s.tool_name,
                tool_input=s.tool_input,
                tool_output=s.tool_output,
                status=s.status,
                model=s.model,
                tokens_used=s.tokens_used,
                cost_usd=s.cost_usd,
                duration_ms=s.duration_ms,
            )
            for s in steps
        ],
        status=AgentExecutionStatus(row.status),
        outcome=ExecutionOutcome.model_validate(row.outcome) if row.outcome else None,
        fallback=FallbackInfo.model_validate(row.fallback) if row.fallback else None,
        usage=UsageTotals.model_validate(row.usage or {}),
        recommendations=[
            AgentRecommendation.model_validate(r) for r in row.recommendations or []
        ],
        cancel_requested=row.cancel_requested,
        created_at=ensure_utc(row.created_at),
        completed_at=ensure_utc(row.completed_at),
    )


class SQLWorkflowRepository(WorkflowRepository):
    """Repository backed by SQLModel tables on an async SQLAlchemy engine.

    At-most-once writes rely on primary keys and the ``(run_id, step_id)``
    unique constraint; state transitions are conditional updates whose row
    count tells whether this call won.
    """

    def __init__(self, database: Database | str) -> None:
        self._db = database if isinstance(database, Database) else Database(database)

    @property
    def database(self) -> Database:
        return self._db

    async def init_db(self) -> None:
        await self._db.init_db()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._db.session() as session:
                yield session
        except IntegrityError:
            raise
        except (SQLAlchemyError, OSError) as exc:
            logger.error(f"Database operation failed: {exc}")
            raise PersistenceError(str(exc)) from exc

    async def _insert(self, row: Any) -> bool:
        try:
            async with self._session() as session:
                session.add(row)
                await session.commit()
        except IntegrityError:
            return False
        return True

    async def _update(self, statement: Any) -> bool:
        async with self._session() as session:
            result = await session.execute(statement)
            await session.commit()
            return result.rowcount == 1

    # ------------------------------------------------------------------
    async def save_rule(self, rule: AutomationRule) -> None:
        row = AutomationRuleRow(
            id=rule.id,
            organization_id=rule.organization_id,
            name=rule.name,
            trigger_type=rule.trigger_type,
            conditions=rule.conditions,
            definition=rule.definition.model_dump(mode="json"),
            is_active=rule.is_active,
            created_by=rule.created_by,
        )
        async with self._session() as session:
            await session.merge(row)
            await session.commit()

    @staticmethod
    def _rule_from_row(row: AutomationRuleRow) -> AutomationRule:
        return AutomationRule(
            id=row.id,
            organization_id=row.organization_id,
            name=row.name,
            trigger_type=row.trigger_type,
            conditions=row.conditions or {},
            definition=WorkflowDefinition.model_validate(row.definition or {}),
            is_active=row.is_active,
            created_by=row.created_by,
        )

    async def get_rule(self, rule_id: str) -> AutomationRule | None:
        async with self._session() as session:
            row = await session.get(AutomationRuleRow, rule_id)
        return self._rule_from_row(row) if row else None

    async def list_rules(
        self,
        organization_id: Optional[str] = None,
        trigger_type: Optional[str] = None,
    ) -> list[AutomationRule]:
        statement = select(AutomationRuleRow)
        if organization_id is not None:
            statement = statement.where(
                col(AutomationRuleRow.organization_id) == organization_id
            )
        if trigger_type is not None:
            statement = statement.where(col(AutomationRuleRow.trigger_type) == trigger_type)
        async with self._session() as session:
            rows = (await session.execute(statement)).scalars().all()
        return [self._rule_from_row(row) for row in rows]

    async def load_definition(self, rule_id: str) -> WorkflowDefinition | None:
        rule = await self.get_rule(rule_id)
        return rule.definition if rule else None

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> bool:
        return await self._insert(
            WorkflowRunRow(
                run_id=run.run_id,
                automation_rule_id=run.automation_rule_id,
                organization_id=run.organization_id,
                status=run.status.value,
                trigger_context=run.trigger_context.model_dump(mode="json"),
                definition=(
                    run.definition.model_dump(mode="json") if run.definition else None
                ),
                idempotency_key=run.idempotency_key,
                created_at=run.created_at,
            )
        )

    async def _load_runs(self, rows: Sequence[WorkflowRunRow]) -> List[WorkflowRun]:
        if not rows:
            return []
        run_ids = [row.run_id for row in rows]
        async with self._session() as session:
            results = (
                await session.execute(
                    select(StepResultRow)
                    .where(col(StepResultRow.run_id).in_(run_ids))
                    .order_by(col(StepResultRow.id))
                )
            ).scalars().all()
        by_run: Dict[str, List[StepResultRow]] = {run_id: [] for run_id in run_ids}
        for result in results:
            by_run[result.run_id].append(result)
        return [_run_from_row(row, by_run[row.run_id]) for row in rows]

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        async with self._session() as session:
            row = await session.get(WorkflowRunRow, run_id)
        if row is None:
            return None
        return (await self._load_runs([row]))[0]

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[WorkflowRun]:
        statement = select(WorkflowRunRow).order_by(col(WorkflowRunRow.created_at).desc())
        if status is not None:
            statement = statement.where(col(WorkflowRunRow.status) == status.value)
        async with self._session() as session:
            rows = (await session.execute(statement)).scalars().all()
        return await self._load_runs(rows)

    async def list_waiting_runs(self) -> list[WorkflowRun]:
        return await self.list_runs(RunStatus.WAITING_APPROVAL)

    async def find_run_by_idempotency_key(self, key: str) -> WorkflowRun | None:
        statement = (
            select(WorkflowRunRow)
            .where(col(WorkflowRunRow.idempotency_key) == key)
            .order_by(col(WorkflowRunRow.created_at).desc())
            .limit(1)
        )
        async with self._session() as session:
            row = (await session.execute(statement)).scalars().first()
        if row is None:
            return None
        return (await self._load_runs([row]))[0]

    def _transition(self, run_id: str, allowed: Sequence[RunStatus], **values: Any) -> Any:
        return (
            update(WorkflowRunRow)
            .where(
                col(WorkflowRunRow.run_id) == run_id,
                col(WorkflowRunRow.status).in_([s.value for s in allowed]),
            )
            .values(**values)
        )

    async def start_run(
        self,
        run_id: str,
        definition: WorkflowDefinition,
        trigger_context: TriggerContext,
        automation_rule_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> WorkflowRun:
        context = trigger_context.model_dump(mode="json")
        await self._insert(
            WorkflowRunRow(
                run_id=run_id,
                automation_rule_id=automation_rule_id,
                organization_id=organization_id or trigger_context.organization_id,
                trigger_context=context,
            )
        )
        await self._update(
            self._transition(
                run_id,
                [RunStatus.PENDING],
                status=RunStatus.RUNNING.value,
                definition=definition.model_dump(mode="json"),
                trigger_context=context,
                started_at=utcnow(),
            )
        )
        run = await self.get_run(run_id)
        if run is None:
            raise PersistenceError(f"Run {run_id} vanished while starting")
        return run

    async def record_step_result(self, run_id: str, result: StepResult) -> bool:
        async with self._session() as session:
            if await session.get(WorkflowRunRow, run_id) is None:
                return False
        return await self._insert(
            StepResultRow(
                run_id=run_id,
                step_id=result.step_id,
                step_label=result.step_label,
                type=result.type,
                outcome=result.outcome.value,
                data=result.model_dump(mode="json")["data"],
                error=result.error,
                completed_at=result.completed_at,
            )
        )

    async def set_waiting_approval(
        self, run_id: str, step_id: str, expires_at: datetime
    ) -> bool:
        return await self._update(
            self._transition(
                run_id,
                [RunStatus.RUNNING],
                status=RunStatus.WAITING_APPROVAL.value,
                waiting_step_id=step_id,
                approval_expires_at=expires_at,
            )
        )

    async def resume_run(self, run_id: str) -> bool:
        return await self._update(
            self._transition(
                run_id,
                [RunStatus.WAITING_APPROVAL],
                status=RunStatus.RUNNING.value,
                waiting_step_id=None,
                approval_expires_at=None,
            )
        )

    async def _finish(self, run_id: str, status: RunStatus, reason: Optional[str]) -> bool:
        values: Dict[str, Any] = dict(
            status=status.value,
            completed_at=utcnow(),
            waiting_step_id=None,
            approval_expires_at=None,
        )
        if reason is not None:
            values["reason"] = reason
        return await self._update(self._transition(run_id, _OPEN_STATUSES, **values))

    async def complete_run(self, run_id: str) -> bool:
        return await self._finish(run_id, RunStatus.COMPLETED, None)

    async def fail_run(self, run_id: str, reason: str) -> bool:
        return await self._finish(run_id, RunStatus.FAILED, reason)

    async def cancel_run(self, run_id: str, reason: str) -> bool:
        return await self._finish(run_id, RunStatus.CANCELLED, reason)

    # ------------------------------------------------------------------
    async def get_action_effect(self, key: str) -> Dict[str, Any] | None:
        async with self._session() as session:
            row = await session.get(ActionEffectRow, key)
        return dict(row.result) if row else None

    async def record_action_effect(self, key: str, result: Dict[str, Any]) -> bool:
        return await self._insert(ActionEffectRow(key=key, result=result))

    # ------------------------------------------------------------------
    async def save_agent_definition(self, definition: AgentDefinition) -> None:
        row = AgentDefinitionRow(
            id=definition.id,
            organization_id=definition.organization_id,
            name=definition.name,
            task_type=definition.task_type,
            config_id=definition.config_id,
            is_active=definition.is_active,
            settings=definition.settings.model_dump(mode="json"),
        )
        async with self._session() as session:
            await session.merge(row)
            await session.commit()

    async def load_agent_definition(
        self, agent_definition_id: str
    ) -> AgentDefinition | None:
        async with self._session() as session:
            row = await session.get(AgentDefinitionRow, agent_definition_id)
        if row is None:
            return None
        return AgentDefinition(
            id=row.id,
            organization_id=row.organization_id,
            name=row.name,
            task_type=row.task_type,
            config_id=row.config_id,
            is_active=row.is_active,
            settings=row.settings or {},
        )

    # ------------------------------------------------------------------
    async def create_execution(self, execution: AgentExecution) -> bool:
        return await self._insert(
            AgentExecutionRow(
                execution_id=execution.execution_id,
                agent_definition_id=execution.agent_definition_id,
                organization_id=execution.organization_id,
                trigger_type=execution.trigger_type,
                triggered_by=execution.triggered_by,
                goal=execution.goal,
                input_context=execution.input_context,
                status=execution.status.value,
                usage=execution.usage.model_dump(mode="json"),
                created_at=execution.created_at,
            )
        )

    async def _load_executions(
        self, rows: Sequence[AgentExecutionRow]
    ) -> List[AgentExecution]:
        if not rows:
            return []
        ids = [row.execution_id for row in rows]
        async with self._session() as session:
            steps = (
                await session.execute(
                    select(ExecutionStepRow)
                    .where(col(ExecutionStepRow.execution_id).in_(ids))
                    .order_by(col(ExecutionStepRow.step_number))
                )
            ).scalars().all()
        by_execution: Dict[str, List[ExecutionStepRow]] = {i: [] for i in ids}
        for step in steps:
            by_execution[step.execution_id].append(step)
        return [_execution_from_row(row, by_execution[row.execution_id]) for row in rows]

    async def get_execution(self, execution_id: str) -> AgentExecution | None:
        async with self._session() as session:
            row = await session.get(AgentExecutionRow, execution_id)
        if row is None:
            return None
        return (await self._load_executions([row]))[0]

    async def list_executions(
        self, organization_id: Optional[str] = None
    ) -> list[AgentExecution]:
        statement = select(AgentExecutionRow).order_by(
            col(AgentExecutionRow.created_at).desc()
        )
        if organization_id is not None:
            statement = statement.where(
                col(AgentExecutionRow.organization_id) == organization_id
            )
        async with self._session() as session:
            rows = (await session.execute(statement)).scalars().all()
        return await self._load_executions(rows)

    async def append_step(self, execution_id: str, step: ExecutionStep) -> bool:
        async with self._session() as session:
            row = await session.get(AgentExecutionRow, execution_id)
        if row is None or row.status != AgentExecutionStatus.RUNNING.value:
            return False
        dumped = step.model_dump(mode="json")
        return await self._insert(
            ExecutionStepRow(
                execution_id=execution_id,
                step_number=step.step_number,
                timestamp=step.timestamp,
                reasoning=step.reasoning,
                action=step.action,
                tool_name=step.tool_name,
                tool_input=dumped["tool_input"],
                tool_output=dumped["tool_output"],
                status=step.status,
                model=step.model,
                tokens_used=step.tokens_used,
                cost_usd=step.cost_usd,
                duration_ms=step.duration_ms,
            )
        )

    async def finalize_execution(
        self,
        execution_id: str,
        status: AgentExecutionStatus,
        outcome: ExecutionOutcome,
        fallback: Optional[FallbackInfo] = None,
        usage: Optional[UsageTotals] = None,
        recommendations: Sequence[AgentRecommendation] = (),
    ) -> bool:
        values: Dict[str, Any] = dict(
            status=status.value,
            outcome=outcome.model_dump(mode="json"),
            fallback=fallback.model_dump(mode="json") if fallback else None,
            recommendations=[r.model_dump(mode="json") for r in recommendations],
            completed_at=utcnow(),
        )
        if usage is not None:
            values["usage"] = usage.model_dump(mode="json")
        return await self._update(
            update(AgentExecutionRow)
            .where(
                col(AgentExecutionRow.execution_id) == execution_id,
                col(AgentExecutionRow.status) == AgentExecutionStatus.RUNNING.value,
            )
            .values(**values)
        )

    async def request_cancel(self, execution_id: str) -> bool:
        return await self._update(
            update(AgentExecutionRow)
            .where(
                col(AgentExecutionRow.execution_id) == execution_id,
                col(AgentExecutionRow.status) == AgentExecutionStatus.RUNNING.value,
            )
            .values(cancel_requested=True)
        )

    async def is_cancel_requested(self, execution_id: str) -> bool:
        async with self._session() as session:
            row = await session.get(AgentExecutionRow, execution_id)
        return bool(row and row.cancel_requested)
