from .engine import Database, normalize_database_url
from .models import (
    ActionEffectRow,
    AgentDefinitionRow,
    AgentExecutionRow,
    AgentMemoryRow,
    AutomationRuleRow,
    ExecutionMetricsRow,
    ExecutionStepRow,
    StepResultRow,
    WorkflowRunRow,
)

__all__ = [
    "Database",
    "normalize_database_url",
    "ActionEffectRow",
    "AgentDefinitionRow",
    "AgentExecutionRow",
    "AgentMemoryRow",
    "AutomationRuleRow",
    "ExecutionMetricsRow",
    "ExecutionStepRow",
    "StepResultRow",
    "WorkflowRunRow",
]
