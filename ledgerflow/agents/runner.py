"""Bounded reasoning loop with deterministic fallback."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from ..config import AgentConfig
from ..constants import (
    ENTITY_KEY_FIELDS,
    ENTITY_ROWS_PER_SOURCE,
    MAX_ENTITY_KEYS,
    STATE_SUMMARY_LIMIT,
)
from ..contracts import BudgetExceeded, PersistenceError, ReasoningError
from ..persistence.repository import WorkflowRepository
from ..sinks import AuditEvent, AuditSink, emit_audit
from .cost_guard import CostGuard
from .memory import LearningService, MemoryStore
from .models import (
    AgentDefinition,
    AgentExecution,
    AgentExecutionStatus,
    AgentRecommendation,
    ExecutionMetrics,
    ExecutionOutcome,
    ExecutionResult,
    ExecutionStep,
    FallbackInfo,
    Memory,
    ToolContext,
    UsageTotals,
)
from .reasoning import DEFAULT_SYSTEM_PROMPT, ReasoningService
from .reconciliation import (
    MatchingResult,
    ReconciliationInput,
    TaskDataSource,
    extract_entity_keys,
    match_rate,
    match_rows,
)
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

FallbackFn = Callable[[ReconciliationInput], MatchingResult]

INITIAL_STATE = "Starting reconciliation run. No matching has been performed yet."


def tool_call_key(tool_name: str, tool_input: Any) -> str:
    return f"{tool_name}:{json.dumps(tool_input or {}, sort_keys=True, default=str)}"


def describe_result(action: str, data: Any) -> str:
    rendered = json.dumps(data, default=str)[:STATE_SUMMARY_LIMIT]
    return f"Last action: {action}. Result: {rendered}"


def _persisted_recommendations(steps: List[ExecutionStep]) -> List[AgentRecommendation]:
    recommendations: List[AgentRecommendation] = []
    for step in steps:
        if step.tool_name != "recommend_resolution" or step.status != "completed":
            continue
        if isinstance(step.tool_output, dict) and step.tool_output.get("recommendation"):
            recommendations.append(
                AgentRecommendation.model_validate(step.tool_output["recommendation"])
            )
    return recommendations


class _LoopState:
    """Mutable bookkeeping of one invocation, seeded from persisted steps on resume."""

    def __init__(self, execution: AgentExecution, guard: CostGuard) -> None:
        self.execution_id = execution.execution_id
        self.steps: List[ExecutionStep] = list(execution.steps)
        self.guard = guard
        self.recommendations = _persisted_recommendations(self.steps)
        self.seen_calls: Set[str] = {
            tool_call_key(s.tool_name, s.tool_input) for s in self.steps if s.tool_name
        }
        self.state = INITIAL_STATE
        for step in reversed(self.steps):
            if step.tool_name and step.status == "completed" and step.tool_output:
                self.state = describe_result(step.action or step.tool_name, step.tool_output)
                break
        self.memories: List[Memory] = []

    @property
    def reasoning_steps(self) -> int:
        return sum(1 for s in self.steps if s.model is not None or s.tool_name)


class AgentRunner:
    """Runs one agent execution to a terminal status.

    Every iteration's step is appended to persistence before the next one
    starts. Any failure inside the loop, budget exhaustion included, is
    caught once and routed to the deterministic fallback. Persistence
    failures propagate so the host can re-invoke the runner, which then
    resumes from the persisted steps.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        reasoning: ReasoningService,
        tools: ToolRegistry,
        *,
        memory_store: Optional[MemoryStore] = None,
        data_source: Optional[TaskDataSource] = None,
        fallback: FallbackFn = match_rows,
        config: Optional[AgentConfig] = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        cost_guard_factory: Optional[Callable[[], CostGuard]] = None,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self._repository = repository
        self._reasoning = reasoning
        self._tools = tools
        self._memory_store = memory_store
        self._data_source = data_source
        self._fallback = fallback
        self._config = config or AgentConfig()
        self._system_prompt = system_prompt
        self._cost_guard_factory = cost_guard_factory or self._default_cost_guard
        self._audit = audit

    def _default_cost_guard(self) -> CostGuard:
        return CostGuard(
            max_tokens=self._config.max_tokens_per_execution,
            max_cost_usd=self._config.max_cost_per_execution,
            max_duration_seconds=self._config.max_duration_seconds,
        )

    # ------------------------------------------------------------------
    async def run(
        self,
        agent_definition_id: str,
        organization_id: str,
        triggered_by: Optional[str] = None,
        task_context_ref: Optional[Mapping[str, Any]] = None,
        execution_id: Optional[str] = None,
    ) -> ExecutionResult:
        execution_id = execution_id or str(uuid.uuid4())
        task_context_ref = dict(task_context_ref or {})

        existing = await self._repository.get_execution(execution_id)
        if existing is not None and existing.is_terminal:
            logger.info(f"Execution {execution_id} already finalized as {existing.status.value}")
            return self._result_from(existing)

        definition = await self._repository.load_agent_definition(agent_definition_id)
        execution = existing or AgentExecution(
            execution_id=execution_id,
            agent_definition_id=agent_definition_id,
            organization_id=organization_id,
            trigger_type="manual" if triggered_by else "event",
            triggered_by=triggered_by,
            goal=self._goal(definition, task_context_ref),
            input_context={
                **task_context_ref,
                "task_type": definition.task_type if definition else None,
            },
        )
        if existing is None:
            await self._repository.create_execution(execution)
            logger.info(f"Created execution {execution_id} for agent {agent_definition_id}")

        guard = self._cost_guard_factory()
        loop = _LoopState(execution, guard)

        problem = self._definition_problem(definition, agent_definition_id, organization_id)
        if problem is not None:
            logger.error(f"Execution {execution_id} cannot start: {problem}")
            return await self._finalize(
                loop,
                execution,
                AgentExecutionStatus.FAILED,
                ExecutionOutcome(summary=f"Agent failed: {problem}"),
            )

        data = await self._load_input(organization_id, task_context_ref)
        loop.memories = await self._load_memories(
            organization_id, agent_definition_id, data, definition.settings.confidence_threshold
        )

        try:
            status, outcome = await self._reason(loop, execution, definition, task_context_ref)
            fallback = None
        except PersistenceError:
            raise
        except Exception as e:
            logger.warning(
                f"Reasoning loop failed for execution {execution_id}, falling back: {e}"
            )
            status = AgentExecutionStatus.FAILED
            outcome, fallback = await self._run_fallback(loop, organization_id, task_context_ref, e)

        return await self._finalize(loop, execution, status, outcome, fallback)

    # ------------------------------------------------------------------
    @staticmethod
    def _definition_problem(
        definition: Optional[AgentDefinition], agent_definition_id: str, organization_id: str
    ) -> Optional[str]:
        if definition is None or definition.organization_id != organization_id:
            return f"Agent {agent_definition_id} not found"
        if not definition.is_active:
            return f"Agent {agent_definition_id} is inactive"
        return None

    @staticmethod
    def _goal(definition: Optional[AgentDefinition], ref: Mapping[str, Any]) -> str:
        run_id = ref.get("reconciliation_run_id", "unknown")
        config_id = definition.config_id if definition and definition.config_id else "unknown"
        return (
            f"Reconcile data for reconciliation run {run_id} (config {config_id}). "
            "Find matches, classify exceptions, and recommend resolutions based on your memory."
        )

    def _max_iterations(self, definition: AgentDefinition) -> int:
        limit = self._config.max_iterations
        if definition.settings.max_iterations:
            limit = min(limit, definition.settings.max_iterations)
        return limit

    async def _load_input(
        self, organization_id: str, ref: Mapping[str, Any]
    ) -> Optional[ReconciliationInput]:
        if self._data_source is None:
            return None
        try:
            return await self._data_source.load(organization_id, ref)
        except Exception as e:
            logger.warning(f"Could not load task input for {dict(ref)}: {e}")
            return None

    async def _load_memories(
        self,
        organization_id: str,
        agent_definition_id: str,
        data: Optional[ReconciliationInput],
        confidence_threshold: Optional[float] = None,
    ) -> List[Memory]:
        if self._memory_store is None:
            return []
        entity_keys = (
            extract_entity_keys(data, ENTITY_KEY_FIELDS, ENTITY_ROWS_PER_SOURCE, MAX_ENTITY_KEYS)
            if data is not None
            else []
        )
        try:
            return await self._memory_store.retrieve(
                organization_id,
                agent_definition_id,
                entity_keys,
                max_memories=self._config.max_memories,
                confidence_floor=(
                    self._config.confidence_floor
                    if confidence_threshold is None
                    else confidence_threshold
                ),
            )
        except Exception as e:
            logger.warning(f"Memory retrieval failed for agent {agent_definition_id}: {e}")
            return []

    async def _log_step(self, loop: _LoopState, **fields: Any) -> ExecutionStep:
        step = ExecutionStep(step_number=len(loop.steps) + 1, **fields)
        loop.steps.append(step)
        await self._repository.append_step(loop.execution_id, step)
        return step

    # ------------------------------------------------------------------
    async def _reason(
        self,
        loop: _LoopState,
        execution: AgentExecution,
        definition: AgentDefinition,
        ref: Mapping[str, Any],
    ) -> Tuple[AgentExecutionStatus, ExecutionOutcome]:
        tool_context = ToolContext(
            organization_id=execution.organization_id,
            agent_definition_id=execution.agent_definition_id,
            execution_id=execution.execution_id,
            config_id=definition.config_id,
            task_context_ref=dict(ref),
        )
        first = loop.reasoning_steps + 1
        for iteration in range(first, self._max_iterations(definition) + 1):
            if await self._repository.is_cancel_requested(loop.execution_id):
                await self._log_step(
                    loop,
                    reasoning="Execution was cancelled by user.",
                    action="cancelled",
                    status="skipped",
                )
                return AgentExecutionStatus.CANCELLED, ExecutionOutcome(
                    summary="Execution cancelled by user.",
                    recommended=len(loop.recommendations),
                )

            exceeded = loop.guard.check()
            if exceeded:
                await self._log_step(
                    loop,
                    reasoning=f"Budget exceeded: {exceeded}. Falling back to deterministic matching.",
                    action="budget_exceeded",
                    status="skipped",
                )
                raise BudgetExceeded(exceeded)

            try:
                response = await self._reasoning.decide(
                    system_prompt=self._system_prompt,
                    goal=execution.goal,
                    state=loop.state,
                    memories=loop.memories,
                    history=list(loop.steps),
                    iteration=iteration,
                    custom_instructions=definition.settings.custom_instructions,
                )
            except ReasoningError as e:
                loop.guard.record(e.tokens_used, e.cost_usd, llm_call=True)
                raise
            loop.guard.record(response.tokens_used, response.cost_usd, llm_call=True)
            decision = response.decision
            billing: Dict[str, Any] = dict(
                model=response.model or "unknown",
                tokens_used=response.tokens_used,
                cost_usd=response.cost_usd,
                duration_ms=response.duration_ms,
            )

            if decision.tool_name:
                key = tool_call_key(decision.tool_name, decision.tool_input)
                if key in loop.seen_calls:
                    await self._log_step(
                        loop,
                        reasoning=f"Duplicate tool call detected ({decision.tool_name}). Skipping to avoid infinite loop.",
                        action="deduplicated",
                        tool_name=decision.tool_name,
                        tool_input=decision.tool_input,
                        status="skipped",
                        **billing,
                    )
                    return AgentExecutionStatus.COMPLETED, ExecutionOutcome(
                        summary=f"Agent stopped after repeating the {decision.tool_name} call.",
                        recommended=len(loop.recommendations),
                    )
                loop.seen_calls.add(key)

            if decision.done:
                await self._log_step(
                    loop,
                    reasoning=decision.reasoning,
                    action=decision.action or "done",
                    status="completed",
                    **billing,
                )
                return AgentExecutionStatus.COMPLETED, ExecutionOutcome(
                    summary=decision.reasoning or "Agent finished.",
                    recommended=len(loop.recommendations),
                    flagged_for_review=1 if decision.needs_human else 0,
                )

            if decision.needs_human:
                await self._log_step(
                    loop,
                    reasoning=decision.reasoning,
                    action="needs_human_review",
                    tool_output={"message": decision.human_message},
                    status="completed",
                    **billing,
                )
                return AgentExecutionStatus.NEEDS_REVIEW, ExecutionOutcome(
                    summary=decision.human_message or decision.reasoning or "Agent needs review.",
                    recommended=len(loop.recommendations),
                    flagged_for_review=1,
                )

            if not decision.tool_name:
                await self._log_step(
                    loop,
                    reasoning=decision.reasoning,
                    action=decision.action or "think",
                    status="completed",
                    **billing,
                )
                continue

            result = await self._tools.execute(
                decision.tool_name, decision.tool_input, tool_context
            )
            if result.tokens_used:
                loop.guard.record(result.tokens_used, 0.0)
            if decision.tool_name == "recommend_resolution" and result.success:
                recommendation = (result.data or {}).get("recommendation")
                if recommendation:
                    loop.recommendations.append(
                        AgentRecommendation.model_validate(recommendation)
                    )
            billing["duration_ms"] += result.duration_ms
            await self._log_step(
                loop,
                reasoning=decision.reasoning,
                action=decision.action or decision.tool_name,
                tool_name=decision.tool_name,
                tool_input=decision.tool_input,
                tool_output=result.data if result.success else result.error,
                status="completed" if result.success else "failed",
                **billing,
            )
            if result.success and result.data:
                loop.state = describe_result(decision.action or decision.tool_name, result.data)

        return AgentExecutionStatus.COMPLETED, ExecutionOutcome(
            summary="Agent completed maximum iterations.",
            recommended=len(loop.recommendations),
        )

    async def _run_fallback(
        self,
        loop: _LoopState,
        organization_id: str,
        ref: Mapping[str, Any],
        error: Exception,
    ) -> Tuple[ExecutionOutcome, FallbackInfo]:
        message = str(error) or error.__class__.__name__
        result: Optional[MatchingResult] = None
        total_a = 0
        detail = "No input data available for deterministic matching."
        try:
            data = await self._data_source.load(organization_id, ref) if self._data_source else None
            if data is not None:
                result = self._fallback(data)
                total_a = len(data.source_a_rows)
        except Exception as fallback_error:
            logger.exception(f"Deterministic fallback failed for execution {loop.execution_id}")
            detail = f"Fallback also failed: {fallback_error}."

        if result is not None:
            matched = len(result.matched)
            await self._log_step(
                loop,
                reasoning=f"Agent reasoning failed: {message}. Deterministic matching was used as fallback.",
                action="deterministic_fallback",
                tool_output={"fallback": True, "matched_count": matched},
                status="completed",
            )
            outcome = ExecutionOutcome(
                summary=f"Agent failed: {message}. Deterministic matching completed as fallback.",
                matched_count=matched,
                match_rate=match_rate(matched, total_a) if total_a else None,
                exception_count=len(result.exceptions),
                variance=result.variance,
                recommended=len(loop.recommendations),
            )
            return outcome, FallbackInfo(used=True, reason=message, succeeded=True)

        await self._log_step(
            loop,
            reasoning=f"Agent reasoning failed: {message}. {detail}",
            action="deterministic_fallback",
            status="failed",
        )
        return (
            ExecutionOutcome(summary=f"Agent failed: {message}. {detail}"),
            FallbackInfo(used=True, reason=message, succeeded=False),
        )

    # ------------------------------------------------------------------
    async def _finalize(
        self,
        loop: _LoopState,
        execution: AgentExecution,
        status: AgentExecutionStatus,
        outcome: ExecutionOutcome,
        fallback: Optional[FallbackInfo] = None,
    ) -> ExecutionResult:
        usage = loop.guard.usage()
        finalized = await self._repository.finalize_execution(
            loop.execution_id,
            status,
            outcome,
            fallback=fallback,
            usage=usage,
            recommendations=loop.recommendations,
        )
        if not finalized:
            stored = await self._repository.get_execution(loop.execution_id)
            if stored is not None and stored.is_terminal:
                logger.info(f"Execution {loop.execution_id} was finalized elsewhere")
                return self._result_from(stored)

        logger.info(f"Execution {loop.execution_id} finished as {status.value}: {outcome.summary}")
        await emit_audit(
            self._audit,
            AuditEvent(
                organization_id=execution.organization_id,
                action="agent_execution_finalized",
                outcome=status.value,
                target_type="agent_execution",
                target_id=loop.execution_id,
                detail={"fallback_used": bool(fallback and fallback.used)},
            ),
        )

        if status in (AgentExecutionStatus.COMPLETED, AgentExecutionStatus.NEEDS_REVIEW):
            await self._learn(loop, execution, status, outcome, usage)

        return ExecutionResult(
            execution_id=loop.execution_id,
            status=status,
            outcome=outcome,
            fallback=fallback,
            usage=usage,
            recommendations=loop.recommendations,
        )

    async def _learn(
        self,
        loop: _LoopState,
        execution: AgentExecution,
        status: AgentExecutionStatus,
        outcome: ExecutionOutcome,
        usage: UsageTotals,
    ) -> None:
        if self._memory_store is None:
            return
        created = updated = 0
        try:
            created, updated = await LearningService(self._memory_store).distill(
                execution.organization_id,
                execution.agent_definition_id,
                loop.recommendations,
            )
        except Exception:
            logger.exception(f"Learning failed for execution {loop.execution_id}")
        try:
            await self._memory_store.save_metrics(
                ExecutionMetrics(
                    execution_id=loop.execution_id,
                    organization_id=execution.organization_id,
                    agent_definition_id=execution.agent_definition_id,
                    status=status,
                    agent_match_rate=outcome.match_rate,
                    exceptions_recommended=len(loop.recommendations),
                    memories_used=len(loop.memories),
                    memories_created=created,
                    memories_updated=updated,
                    llm_call_count=usage.llm_calls,
                    total_tokens_used=usage.tokens_used,
                    estimated_cost_usd=usage.cost_usd,
                    execution_time_ms=usage.duration_ms,
                    fallback_used=False,
                )
            )
        except Exception:
            logger.exception(f"Saving metrics failed for execution {loop.execution_id}")

    @staticmethod
    def _result_from(execution: AgentExecution) -> ExecutionResult:
        return ExecutionResult(
            execution_id=execution.execution_id,
            status=execution.status,
            outcome=execution.outcome
            or ExecutionOutcome(summary=f"Execution {execution.status.value}."),
            fallback=execution.fallback,
            usage=execution.usage,
            recommendations=execution.recommendations,
        )
