"""Reasoning service: one decision per loop iteration."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, List, Optional, Protocol, Sequence, Union

from pydantic import BaseModel, Field
from pydantic_ai import Agent, RunContext
from pydantic_ai.models import Model

from ..contracts import ReasoningError
from .models import ExecutionStep, Memory, ReasoningDecision, ReasoningResponse
from .tools import ToolSpec

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a reconciliation agent. Each turn, either call exactly one tool, "
    "finish with a summary when the work is done, or ask for a human when you "
    "are unsure. Never repeat a tool call with identical input."
)


class ReasoningService(Protocol):
    async def decide(
        self,
        *,
        system_prompt: str,
        goal: str,
        state: str,
        memories: Sequence[Memory],
        history: Sequence[ExecutionStep],
        iteration: int,
        custom_instructions: Optional[str] = None,
    ) -> ReasoningResponse:
        """Return the next decision; raise ``ReasoningError`` on failure."""


class ReasoningRequest(BaseModel):
    """Everything the model sees for one decision."""

    system_prompt: str
    goal: str
    state: str
    memories: List[Memory] = Field(default_factory=list)
    history: List[ExecutionStep] = Field(default_factory=list)
    iteration: int = 1
    custom_instructions: Optional[str] = None
    tools: List[ToolSpec] = Field(default_factory=list)


def _format_memories(memories: Sequence[Memory]) -> str:
    if not memories:
        return "No relevant memories."
    lines = []
    for memory in memories:
        subject = memory.entity_key or memory.category or memory.scope.value
        description = memory.content.get("description", "")
        lines.append(
            f"- [{memory.id}] {subject}: {description} (confidence {memory.confidence:.2f})"
        )
    return "\n".join(lines)


def _format_history(history: Sequence[ExecutionStep]) -> str:
    if not history:
        return "No steps taken yet."
    lines = []
    for step in history:
        call = f" {step.tool_name}({json.dumps(step.tool_input, default=str)})" if step.tool_name else ""
        lines.append(f"{step.step_number}. {step.action}{call} -> {step.status}")
    return "\n".join(lines)


def build_user_prompt(request: ReasoningRequest) -> str:
    return (
        f"Goal: {request.goal}\n"
        f"Iteration: {request.iteration}\n"
        f"Current state: {request.state}\n\n"
        f"Memories:\n{_format_memories(request.memories)}\n\n"
        f"Steps so far:\n{_format_history(request.history)}"
    )


class PydanticAIReasoningService:
    """Asks a pydantic-ai agent for a structured ``ReasoningDecision``."""

    def __init__(
        self,
        model: Union[str, Model],
        tools: Sequence[ToolSpec] = (),
        cost_per_1k_tokens: float = 0.0,
    ) -> None:
        self._tools = list(tools)
        self._cost_per_1k_tokens = cost_per_1k_tokens
        self._model_name = model if isinstance(model, str) else getattr(model, "model_name", None)
        self.agent: Agent[ReasoningRequest, ReasoningDecision] = Agent(
            model,
            deps_type=ReasoningRequest,
            output_type=ReasoningDecision,
            defer_model_check=True,
        )

        @self.agent.system_prompt
        def _system_prompt(ctx: RunContext[ReasoningRequest]) -> str:
            request = ctx.deps
            parts = [request.system_prompt]
            if request.custom_instructions:
                parts.append(f"Additional instructions: {request.custom_instructions}")
            if request.tools:
                listing = "\n".join(
                    f"- {tool.name}: {tool.description} input={json.dumps(tool.input_schema)}"
                    for tool in request.tools
                )
                parts.append(f"Available tools:\n{listing}")
            return "\n\n".join(parts)

    def _cost(self, tokens: int) -> float:
        return tokens / 1000 * self._cost_per_1k_tokens

    async def decide(
        self,
        *,
        system_prompt: str,
        goal: str,
        state: str,
        memories: Sequence[Memory],
        history: Sequence[ExecutionStep],
        iteration: int,
        custom_instructions: Optional[str] = None,
    ) -> ReasoningResponse:
        request = ReasoningRequest(
            system_prompt=system_prompt,
            goal=goal,
            state=state,
            memories=list(memories),
            history=list(history),
            iteration=iteration,
            custom_instructions=custom_instructions,
            tools=self._tools,
        )
        started = time.monotonic()
        try:
            result = await self.agent.run(build_user_prompt(request), deps=request)
            decision = result.output
            usage = result.usage
            # method on older pydantic-ai releases, property on newer ones
            tokens = _total_tokens(usage() if callable(usage) else usage)
        except Exception as e:
            logger.warning(f"Reasoning call failed at iteration {iteration}: {e}")
            raise ReasoningError(f"Reasoning call failed: {e}") from e

        return ReasoningResponse(
            decision=decision,
            tokens_used=tokens,
            cost_usd=self._cost(tokens),
            duration_ms=int((time.monotonic() - started) * 1000),
            model=self._model_name,
        )


def _total_tokens(usage: Any) -> int:
    total = getattr(usage, "total_tokens", None)
    if total is None:
        total = (getattr(usage, "input_tokens", 0) or 0) + (
            getattr(usage, "output_tokens", 0) or 0
        )
    return int(total or 0)
