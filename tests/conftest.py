"""Shared fixtures for ledgerflow tests."""

from __future__ import annotations

from typing import Any, List, Optional, Sequence, Union

import pytest

from ledgerflow.agents.memory import InMemoryMemoryStore
from ledgerflow.agents.models import (
    AgentDefinition,
    ReasoningDecision,
    ReasoningResponse,
)
from ledgerflow.agents.reconciliation import (
    ColumnConfig,
    InMemoryTaskDataSource,
    MatchingRules,
    ReconciliationInput,
    SourceConfig,
    register_reconciliation_tools,
)
from ledgerflow.agents.runner import AgentRunner
from ledgerflow.agents.tools import ToolRegistry
from ledgerflow.config import AgentConfig
from ledgerflow.persistence import InMemoryWorkflowRepository
from ledgerflow.sinks import CollectingAuditSink, CollectingNotificationSink

ORG = "org-1"
AGENT_ID = "agent-1"
RECON_RUN = "recon-1"


class ScriptedReasoning:
    """Reasoning service replaying a fixed list of decisions or errors."""

    def __init__(
        self,
        script: Sequence[Union[ReasoningDecision, Exception]],
        tokens_per_call: int = 100,
        cost_per_call: float = 0.001,
    ) -> None:
        self.script = list(script)
        self.tokens_per_call = tokens_per_call
        self.cost_per_call = cost_per_call
        self.calls: List[dict] = []

    async def decide(self, **kwargs: Any) -> ReasoningResponse:
        self.calls.append(kwargs)
        index = len(self.calls) - 1
        item = (
            self.script[index]
            if index < len(self.script)
            else ReasoningDecision(reasoning="Finished.", action="finish", done=True)
        )
        if isinstance(item, Exception):
            raise item
        return ReasoningResponse(
            decision=item,
            tokens_used=self.tokens_per_call,
            cost_usd=self.cost_per_call,
            duration_ms=5,
            model="scripted",
        )


def reconciliation_input(matching: int = 7, total_a: int = 10) -> ReconciliationInput:
    """``total_a`` bank rows of which ``matching`` have a ledger counterpart."""
    columns = [
        ColumnConfig(key="date", type="date"),
        ColumnConfig(key="amount", type="amount"),
        ColumnConfig(key="description", type="text"),
    ]
    source_a_rows = [
        {"date": "2024-01-05", "amount": f"{100 + i}.00", "description": f"Vendor {i}"}
        for i in range(total_a)
    ]
    source_b_rows = [
        {"date": "2024-01-05", "amount": 100 + i, "description": f"Vendor {i}"}
        for i in range(matching)
    ]
    source_b_rows.append({"date": "2024-01-05", "amount": 999, "description": "Unknown"})
    return ReconciliationInput(
        source_a_rows=source_a_rows,
        source_b_rows=source_b_rows,
        source_a=SourceConfig(label="Bank", columns=columns),
        source_b=SourceConfig(label="Ledger", columns=columns),
        rules=MatchingRules(amount_match="exact", date_window_days=0),
    )


@pytest.fixture
def repo() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def audit() -> CollectingAuditSink:
    return CollectingAuditSink()


@pytest.fixture
def notifier() -> CollectingNotificationSink:
    return CollectingNotificationSink()


@pytest.fixture
def data_source() -> InMemoryTaskDataSource:
    return InMemoryTaskDataSource({RECON_RUN: reconciliation_input()})


@pytest.fixture
def memory_store() -> InMemoryMemoryStore:
    return InMemoryMemoryStore()


@pytest.fixture
def make_agent_runner(repo, data_source, memory_store):
    """Async factory: saves the agent definition and returns an ``AgentRunner``."""

    async def _make(
        reasoning: Any,
        config: Optional[AgentConfig] = None,
        definition: Optional[AgentDefinition] = None,
        **kwargs: Any,
    ) -> AgentRunner:
        await repo.save_agent_definition(
            definition
            or AgentDefinition(id=AGENT_ID, organization_id=ORG, name="Bank rec", config_id="cfg-1")
        )
        tools = ToolRegistry()
        register_reconciliation_tools(tools, data_source)
        kwargs.setdefault("memory_store", memory_store)
        kwargs.setdefault("data_source", data_source)
        return AgentRunner(repo, reasoning, tools, config=config, **kwargs)

    return _make


@pytest.fixture
def scripted():
    """The ``ScriptedReasoning`` class, for building per-test scripts."""
    return ScriptedReasoning
