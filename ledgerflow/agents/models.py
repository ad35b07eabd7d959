"""Agent definitions, executions and reasoning-loop records."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..utils.clock import utcnow


class AgentExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    NEEDS_REVIEW = "needs_review"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_EXECUTION_STATUSES = frozenset(
    {
        AgentExecutionStatus.COMPLETED,
        AgentExecutionStatus.NEEDS_REVIEW,
        AgentExecutionStatus.CANCELLED,
        AgentExecutionStatus.FAILED,
    }
)


class AgentSettings(BaseModel):
    custom_instructions: Optional[str] = None
    confidence_threshold: Optional[float] = None
    max_iterations: Optional[int] = None


class AgentDefinition(BaseModel):
    id: str
    organization_id: str
    name: str = ""
    task_type: str = "reconciliation"
    config_id: Optional[str] = None
    is_active: bool = True
    settings: AgentSettings = Field(default_factory=AgentSettings)


class ExecutionStep(BaseModel):
    """One iteration of the reasoning loop, appended as it happens."""

    step_number: int
    timestamp: datetime = Field(default_factory=utcnow)
    reasoning: str = ""
    action: str
    tool_name: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None
    tool_output: Any = None
    status: Literal["completed", "failed", "skipped"] = "completed"
    model: Optional[str] = None
    tokens_used: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0


class ExecutionOutcome(BaseModel):
    summary: str
    matched_count: Optional[int] = None
    match_rate: Optional[int] = None
    exception_count: Optional[int] = None
    recommended: Optional[int] = None
    flagged_for_review: Optional[int] = None
    variance: Optional[float] = None


class AgentRecommendation(BaseModel):
    """A proposed resolution for one exception; never mutated once created."""

    model_config = ConfigDict(frozen=True)

    exception_index: int
    category: str
    reason: str
    confidence: float
    based_on_memory_id: Optional[str] = None


class FallbackInfo(BaseModel):
    used: bool = False
    reason: Optional[str] = None
    succeeded: bool = False


class UsageTotals(BaseModel):
    tokens_used: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0
    llm_calls: int = 0


class AgentExecution(BaseModel):
    execution_id: str
    agent_definition_id: str
    organization_id: str
    trigger_type: Literal["manual", "event"] = "event"
    triggered_by: Optional[str] = None
    goal: str = ""
    input_context: Dict[str, Any] = Field(default_factory=dict)
    steps: List[ExecutionStep] = Field(default_factory=list)
    status: AgentExecutionStatus = AgentExecutionStatus.RUNNING
    outcome: Optional[ExecutionOutcome] = None
    fallback: Optional[FallbackInfo] = None
    usage: UsageTotals = Field(default_factory=UsageTotals)
    recommendations: List[AgentRecommendation] = Field(default_factory=list)
    cancel_requested: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES


class ExecutionResult(BaseModel):
    """What ``AgentRunner.run`` hands back to its caller."""

    execution_id: str
    status: AgentExecutionStatus
    outcome: ExecutionOutcome
    fallback: Optional[FallbackInfo] = None
    usage: UsageTotals = Field(default_factory=UsageTotals)
    recommendations: List[AgentRecommendation] = Field(default_factory=list)


class MemoryScope(str, Enum):
    ENTITY = "entity"
    PATTERN = "pattern"
    CONFIG = "config"


class Memory(BaseModel):
    id: str
    organization_id: str
    agent_definition_id: str
    scope: MemoryScope
    entity_key: Optional[str] = None
    category: Optional[str] = None
    content: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = 0.5
    usage_count: int = 0
    relevance_score: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class LearningLesson(BaseModel):
    scope: MemoryScope
    entity_key: Optional[str] = None
    category: Optional[str] = None
    content: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = 0.6


class ExecutionMetrics(BaseModel):
    execution_id: str
    organization_id: str
    agent_definition_id: str
    status: AgentExecutionStatus
    agent_match_rate: Optional[int] = None
    exceptions_recommended: int = 0
    memories_used: int = 0
    memories_created: int = 0
    memories_updated: int = 0
    llm_call_count: int = 0
    total_tokens_used: int = 0
    estimated_cost_usd: float = 0.0
    execution_time_ms: int = 0
    fallback_used: bool = False


class ReasoningDecision(BaseModel):
    """One decision of the reasoning service."""

    reasoning: str
    action: str = ""
    tool_name: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None
    done: bool = False
    needs_human: bool = False
    human_message: Optional[str] = None


class ReasoningResponse(BaseModel):
    decision: ReasoningDecision
    tokens_used: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0
    model: Optional[str] = None


class ToolResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    tokens_used: int = 0
    duration_ms: int = 0


class ToolContext(BaseModel):
    organization_id: str
    agent_definition_id: str
    execution_id: str
    config_id: Optional[str] = None
    task_context_ref: Dict[str, Any] = Field(default_factory=dict)
