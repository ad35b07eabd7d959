import asyncio

import pytest
from typer.testing import CliRunner

from ledgerflow.agents.models import (
    AgentExecution,
    AgentExecutionStatus,
    ExecutionOutcome,
    ExecutionStep,
    FallbackInfo,
)
from ledgerflow.cli import app
from ledgerflow.constants import TOPIC_WORKFLOW_APPROVED
from ledgerflow.persistence.inmemory import InMemoryWorkflowRepository
from ledgerflow.transports.inmemory import InMemoryTransport
from ledgerflow.workflows.models import (
    RunStatus,
    StepOutcome,
    StepResult,
    WorkflowRun,
)

runner = CliRunner()


@pytest.fixture
def cli_repo(monkeypatch):
    repo = InMemoryWorkflowRepository()
    monkeypatch.setattr("ledgerflow.persistence._repository_instance", repo)
    return repo


@pytest.fixture
def cli_transport(monkeypatch):
    transport = InMemoryTransport()
    monkeypatch.setattr("ledgerflow.cli.get_transport", lambda *a, **k: transport)
    return transport


def seed_run(repo, **fields):
    run = WorkflowRun(run_id="run-1", automation_rule_id="rule-1", organization_id="org-1", **fields)
    asyncio.run(repo.create_run(run))


def test_runs_list_empty(cli_repo):
    result = runner.invoke(app, ["runs", "list"])
    assert result.exit_code == 0
    assert "No runs found" in result.stdout


def test_runs_list_and_show(cli_repo):
    seed_run(
        cli_repo,
        status=RunStatus.CANCELLED,
        reason='Rejected by u1 at step "Sign-off"',
        step_results=[
            StepResult(
                step_id="approve",
                type="human_approval",
                outcome=StepOutcome.FAILED,
                error="Rejected by user",
            )
        ],
    )

    listed = runner.invoke(app, ["runs", "list"])
    shown = runner.invoke(app, ["runs", "show", "run-1"])

    assert "run-1\tCANCELLED" in listed.stdout
    assert shown.exit_code == 0
    assert 'Reason: Rejected by u1 at step "Sign-off"' in shown.stdout
    assert "- approve (human_approval): failed - Rejected by user" in shown.stdout


def test_runs_show_missing(cli_repo):
    result = runner.invoke(app, ["runs", "show", "nope"])
    assert result.exit_code == 1
    assert "Run not found" in result.stdout


def test_runs_approve_publishes_event(cli_repo, cli_transport):
    seed_run(cli_repo, status=RunStatus.WAITING_APPROVAL, waiting_step_id="approve")

    result = runner.invoke(app, ["runs", "approve", "run-1", "--by", "u1", "--reject"])

    assert result.exit_code == 0
    assert "Published rejected for run run-1" in result.stdout
    [(_, event)] = list(cli_transport._queues[TOPIC_WORKFLOW_APPROVED])
    assert event.data["decision"] == "rejected"
    assert event.data["approved_by"] == "u1"


def test_runs_approve_unknown_run(cli_repo, cli_transport):
    result = runner.invoke(app, ["runs", "approve", "nope", "--by", "u1"])
    assert result.exit_code == 1
    assert cli_transport.pending(TOPIC_WORKFLOW_APPROVED) == 0


def test_executions_show_and_cancel(cli_repo):
    asyncio.run(
        cli_repo.create_execution(
            AgentExecution(
                execution_id="exec-1",
                agent_definition_id="agent-1",
                organization_id="org-1",
                steps=[
                    ExecutionStep(
                        step_number=1,
                        action="run_deterministic_matching",
                        tool_name="run_deterministic_matching",
                    )
                ],
            )
        )
    )

    listed = runner.invoke(app, ["executions", "list", "--org", "org-1"])
    shown = runner.invoke(app, ["executions", "show", "exec-1"])
    cancelled = runner.invoke(app, ["executions", "cancel", "exec-1"])

    assert "exec-1\trunning\tagent-1" in listed.stdout
    assert "1. run_deterministic_matching run_deterministic_matching: completed" in shown.stdout
    assert cancelled.exit_code == 0
    assert asyncio.run(cli_repo.is_cancel_requested("exec-1"))


def test_cancel_finished_execution_fails(cli_repo):
    asyncio.run(
        cli_repo.create_execution(
            AgentExecution(
                execution_id="exec-2", agent_definition_id="agent-1", organization_id="org-1"
            )
        )
    )
    asyncio.run(
        cli_repo.finalize_execution(
            "exec-2",
            AgentExecutionStatus.FAILED,
            ExecutionOutcome(summary="Agent failed: boom"),
            fallback=FallbackInfo(used=True, reason="boom"),
        )
    )

    shown = runner.invoke(app, ["executions", "show", "exec-2"])
    result = runner.invoke(app, ["executions", "cancel", "exec-2"])

    assert "Summary: Agent failed: boom" in shown.stdout
    assert "Fallback: boom" in shown.stdout
    assert result.exit_code == 1
    assert "already finished" in result.stdout
