"""Wiring of the runners, worker and pydantic-ai reasoning from configuration."""

from __future__ import annotations

from typing import Optional

from .agents.memory import InMemoryMemoryStore, MemoryStore, SQLMemoryStore
from .agents.reasoning import PydanticAIReasoningService, ReasoningService
from .agents.reconciliation import (
    InMemoryTaskDataSource,
    TaskDataSource,
    register_reconciliation_tools,
)
from .agents.runner import AgentRunner
from .agents.tools import ToolRegistry
from .config import LedgerflowConfig
from .persistence import SQLWorkflowRepository, WorkflowRepository
from .sinks import AuditSink, LoggingAuditSink, LoggingNotificationSink, NotificationSink
from .transports import BaseTransport
from .worker import EventWorker
from .workflows.actions import ActionRegistry, register_default_actions
from .workflows.runner import WorkflowRunner


def build_memory_store(repository: WorkflowRepository) -> MemoryStore:
    """Share the repository's database when it has one."""
    if isinstance(repository, SQLWorkflowRepository):
        return SQLMemoryStore(repository.database)
    return InMemoryMemoryStore()


def build_agent_runner(
    config: LedgerflowConfig,
    repository: WorkflowRepository,
    data_source: Optional[TaskDataSource] = None,
    memory_store: Optional[MemoryStore] = None,
    reasoning: Optional[ReasoningService] = None,
    audit: Optional[AuditSink] = None,
) -> AgentRunner:
    data_source = data_source or InMemoryTaskDataSource()
    tools = ToolRegistry()
    register_reconciliation_tools(tools, data_source)
    reasoning = reasoning or PydanticAIReasoningService(
        config.reasoning.model,
        tools=tools.specs(),
        cost_per_1k_tokens=config.reasoning.cost_per_1k_tokens,
    )
    return AgentRunner(
        repository,
        reasoning,
        tools,
        memory_store=memory_store or build_memory_store(repository),
        data_source=data_source,
        config=config.agent,
        audit=audit,
    )


def build_workflow_runner(
    config: LedgerflowConfig,
    repository: WorkflowRepository,
    agent_runner: Optional[AgentRunner] = None,
    audit: Optional[AuditSink] = None,
    notifier: Optional[NotificationSink] = None,
) -> WorkflowRunner:
    notifier = notifier or LoggingNotificationSink()
    actions = register_default_actions(
        ActionRegistry(repository=repository, agent_runner=agent_runner), notifier
    )
    return WorkflowRunner(
        repository,
        actions,
        audit=audit,
        notifier=notifier,
        approval_timeout_hours=config.workflow.approval_timeout_hours,
    )


def build_worker(
    config: LedgerflowConfig,
    transport: BaseTransport,
    repository: WorkflowRepository,
    data_source: Optional[TaskDataSource] = None,
    reasoning: Optional[ReasoningService] = None,
) -> EventWorker:
    audit = LoggingAuditSink()
    agent_runner = build_agent_runner(
        config, repository, data_source=data_source, reasoning=reasoning, audit=audit
    )
    workflow_runner = build_workflow_runner(config, repository, agent_runner, audit=audit)
    return EventWorker(
        transport,
        workflow_runner=workflow_runner,
        agent_runner=agent_runner,
        max_attempts=config.worker.max_attempts,
    )
