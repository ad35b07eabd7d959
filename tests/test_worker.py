import pytest

from ledgerflow.agents.models import AgentExecutionStatus, ReasoningDecision
from ledgerflow.constants import TOPIC_WORKFLOW_RUN
from ledgerflow.contracts import EngineEvent, PersistenceError
from ledgerflow.dispatch import EventDispatcher
from ledgerflow.transports.inmemory import InMemoryTransport
from ledgerflow.worker import EventWorker
from ledgerflow.workflows.actions import ActionRegistry, ActionResult
from ledgerflow.workflows.models import AutomationRule, RunStatus
from ledgerflow.workflows.runner import WorkflowRunner
from ledgerflow.workflows.triggers import TriggerRouter


async def no_delay(attempt):
    return None


def workflow_runner(repo):
    registry = ActionRegistry(repository=repo)

    @registry.action("record")
    async def record(params, context):
        return ActionResult(success=True, data={"ok": True})

    return WorkflowRunner(repo, registry, schedule_timeouts=False)


async def save_rule(repo, steps):
    await repo.save_rule(
        AutomationRule(
            id="rule-1",
            organization_id="org-1",
            trigger_type="data_uploaded",
            definition={"steps": steps},
        )
    )


@pytest.mark.asyncio
async def test_worker_runs_triggered_workflow_and_approval(repo):
    transport = InMemoryTransport(poll_interval=0.01)
    dispatcher = EventDispatcher(transport)
    await save_rule(
        repo,
        [
            {"id": "a", "type": "action", "action_type": "record"},
            {"id": "ok", "type": "human_approval", "label": "Sign-off"},
            {"id": "b", "type": "action", "action_type": "record"},
        ],
    )
    worker = EventWorker(transport, workflow_runner(repo), retry_delay=no_delay)

    [run_id] = await TriggerRouter(repo, dispatcher).dispatch_trigger(
        "data_uploaded", "org-1", event_id="evt-1"
    )
    await worker.start(lifespan=0.2)
    assert (await repo.get_run(run_id)).status == RunStatus.WAITING_APPROVAL

    await dispatcher.emit_approval(run_id, "approved", "u1")
    await worker.start(lifespan=0.2)

    run = await repo.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert [r.step_id for r in run.step_results] == ["a", "ok", "b"]


@pytest.mark.asyncio
async def test_worker_routes_agent_runs(repo, make_agent_runner, scripted):
    transport = InMemoryTransport(poll_interval=0.01)
    agent_runner = await make_agent_runner(
        scripted([ReasoningDecision(reasoning="Done.", done=True)])
    )
    worker = EventWorker(transport, agent_runner=agent_runner, retry_delay=no_delay)

    event = await EventDispatcher(transport).emit_agent_run(
        "agent-1", "org-1", "u1", {"reconciliation_run_id": "recon-1"}
    )
    await worker.start(lifespan=0.2)

    execution = await repo.get_execution(event.message_id)
    assert execution.status == AgentExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_persistence_errors_are_retried_with_a_new_attempt(repo):
    transport = InMemoryTransport()

    class FlakyRunner:
        def __init__(self):
            self.calls = 0

        async def run(self, *args, **kwargs):
            self.calls += 1
            raise PersistenceError("db unavailable")

    runner = FlakyRunner()
    worker = EventWorker(transport, runner, max_attempts=3, retry_delay=no_delay)
    event = EngineEvent(
        name=TOPIC_WORKFLOW_RUN,
        data={"automation_rule_id": "r", "workflow_run_id": "w", "organization_id": "o"},
    )

    assert await worker.handle(event) is False
    retried = transport._queues[TOPIC_WORKFLOW_RUN][-1][1]
    assert retried.attempt == 1
    assert retried.message_id == event.message_id

    assert await worker.handle(retried) is False
    last = transport._queues[TOPIC_WORKFLOW_RUN][-1][1]
    assert last.attempt == 2

    assert await worker.handle(last) is False
    assert transport.pending(TOPIC_WORKFLOW_RUN) == 2
    assert runner.calls == 3


@pytest.mark.asyncio
async def test_malformed_events_are_dropped(repo):
    transport = InMemoryTransport()
    worker = EventWorker(transport, workflow_runner(repo), retry_delay=no_delay)

    handled = await worker.handle(EngineEvent(name=TOPIC_WORKFLOW_RUN, data={"bogus": 1}))
    unknown = await worker.handle(EngineEvent(name="something.else"))

    assert handled is False
    assert unknown is True
    assert transport.pending(TOPIC_WORKFLOW_RUN) == 0
