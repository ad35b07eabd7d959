from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from ..utils.clock import utcnow


def _stamped_now() -> Any:
    return Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


def _timestamp() -> Any:
    return Field(default=None, sa_column=Column(DateTime(timezone=True)))


class AutomationRuleRow(SQLModel, table=True):
    """An automation rule and the workflow definition it owns."""

    __tablename__ = "automation_rules"

    id: str = Field(primary_key=True)
    organization_id: str = Field(index=True)
    name: str = ""
    trigger_type: str = Field(index=True)
    conditions: dict = Field(default_factory=dict, sa_column=Column(JSON))
    definition: dict = Field(default_factory=dict, sa_column=Column(JSON))
    is_active: bool = True
    created_by: Optional[str] = None


class WorkflowRunRow(SQLModel, table=True):
    """One execution of a workflow definition."""

    __tablename__ = "workflow_runs"

    run_id: str = Field(primary_key=True)
    automation_rule_id: Optional[str] = Field(default=None, index=True)
    organization_id: Optional[str] = None
    status: str = Field(default="PENDING", index=True)
    trigger_context: dict = Field(default_factory=dict, sa_column=Column(JSON))
    definition: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    waiting_step_id: Optional[str] = None
    approval_expires_at: Optional[datetime] = _timestamp()
    reason: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, index=True)
    created_at: datetime = _stamped_now()
    started_at: Optional[datetime] = _timestamp()
    completed_at: Optional[datetime] = _timestamp()


class StepResultRow(SQLModel, table=True):
    """Checkpoint of one executed step; unique per run and step id."""

    __tablename__ = "workflow_step_results"
    __table_args__ = (UniqueConstraint("run_id", "step_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: str = Field(foreign_key="workflow_runs.run_id", index=True)
    step_id: str
    step_label: str = ""
    type: str
    outcome: str
    data: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = None
    completed_at: datetime = _stamped_now()


class ActionEffectRow(SQLModel, table=True):
    """Result of a side-effecting action keyed by ``<run_id>:<step_id>``."""

    __tablename__ = "action_effects"

    key: str = Field(primary_key=True)
    result: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = _stamped_now()


class AgentDefinitionRow(SQLModel, table=True):
    __tablename__ = "agent_definitions"

    id: str = Field(primary_key=True)
    organization_id: str = Field(index=True)
    name: str = ""
    task_type: str = "reconciliation"
    config_id: Optional[str] = None
    is_active: bool = True
    settings: dict = Field(default_factory=dict, sa_column=Column(JSON))


class AgentExecutionRow(SQLModel, table=True):
    """One invocation of the reasoning loop."""

    __tablename__ = "agent_executions"

    execution_id: str = Field(primary_key=True)
    agent_definition_id: str = Field(index=True)
    organization_id: str = Field(index=True)
    trigger_type: str = "event"
    triggered_by: Optional[str] = None
    goal: str = ""
    input_context: dict = Field(default_factory=dict, sa_column=Column(JSON))
    status: str = Field(default="running", index=True)
    outcome: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    fallback: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    usage: dict = Field(default_factory=dict, sa_column=Column(JSON))
    recommendations: list = Field(default_factory=list, sa_column=Column(JSON))
    cancel_requested: bool = False
    created_at: datetime = _stamped_now()
    completed_at: Optional[datetime] = _timestamp()


class ExecutionStepRow(SQLModel, table=True):
    __tablename__ = "agent_execution_steps"

    execution_id: str = Field(
        foreign_key="agent_executions.execution_id", primary_key=True
    )
    step_number: int = Field(primary_key=True)
    timestamp: datetime = _stamped_now()
    reasoning: str = ""
    action: str
    tool_name: Optional[str] = None
    tool_input: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    tool_output: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    status: str = "completed"
    model: Optional[str] = None
    tokens_used: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0


class AgentMemoryRow(SQLModel, table=True):
    """A distilled lesson available to future executions."""

    __tablename__ = "agent_memories"

    id: str = Field(primary_key=True)
    organization_id: str = Field(index=True)
    agent_definition_id: str = Field(index=True)
    scope: str
    entity_key: Optional[str] = Field(default=None, index=True)
    category: Optional[str] = None
    content: dict = Field(default_factory=dict, sa_column=Column(JSON))
    confidence: float = 0.5
    usage_count: int = 0
    created_at: datetime = _stamped_now()
    updated_at: datetime = _stamped_now()


class ExecutionMetricsRow(SQLModel, table=True):
    __tablename__ = "agent_execution_metrics"

    execution_id: str = Field(primary_key=True)
    organization_id: str = Field(index=True)
    agent_definition_id: str
    status: str
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
    recorded_at: datetime = _stamped_now()
