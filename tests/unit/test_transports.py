"""Transport tests."""

import pytest

from ledgerflow.contracts import EngineEvent
from ledgerflow.transports.inmemory import InMemoryTransport
from ledgerflow.transports.redis import RedisTransport


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    """Test basic InMemoryTransport publish/subscribe."""
    transport = InMemoryTransport()
    event = EngineEvent(name="workflow.run", data={"workflow_run_id": "run-1"})

    await transport.publish("workflow.run", event)

    received = False
    async for raw_msg, received_event in transport.subscribe("workflow.run"):
        assert received_event.message_id == event.message_id
        assert received_event.data["workflow_run_id"] == "run-1"
        await transport.ack(raw_msg)
        received = True
        break

    assert received
    assert transport.pending("workflow.run") == 0


@pytest.mark.asyncio
async def test_redeliver_bumps_attempt_on_the_event_topic():
    transport = InMemoryTransport()
    event = EngineEvent(name="agent.run", data={"agent_definition_id": "agent-1"})

    retry = await transport.redeliver(event)

    assert retry.attempt == 1
    assert retry.message_id == event.message_id
    assert transport.pending("agent.run") == 1
    async for _, received in transport.subscribe("agent.run"):
        assert received.attempt == 1
        break


@pytest.mark.asyncio
async def test_consume_hands_each_event_to_the_handler():
    transport = InMemoryTransport(poll_interval=0.01)
    for run_id in ("run-1", "run-2"):
        await transport.publish("workflow.run", EngineEvent(name="workflow.run", data={"id": run_id}))
    seen = []

    async def handler(event):
        seen.append(event.data["id"])

    handled = await transport.consume("workflow.run", handler, lifespan=0.05)

    assert handled == 2
    assert seen == ["run-1", "run-2"]
    assert transport.pending("workflow.run") == 0


@pytest.mark.asyncio
async def test_consume_stops_when_the_handler_raises():
    transport = InMemoryTransport(poll_interval=0.01)
    await transport.publish("workflow.run", EngineEvent(name="workflow.run"))

    async def handler(event):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        await transport.consume("workflow.run", handler, lifespan=0.05)


@pytest.mark.asyncio
async def test_subscribe_stops_after_lifespan():
    transport = InMemoryTransport(poll_interval=0.01)

    seen = [event async for _, event in transport.subscribe("idle", lifespan=0.05)]

    assert seen == []


def test_event_json_roundtrip_keeps_attempts():
    event = EngineEvent(name="workflow.approved", data={"decision": "approved"}).bump_attempt()

    restored = EngineEvent.from_json(event.to_json())

    assert restored.attempt == 1
    assert restored == event


def test_redis_transport_defaults():
    transport = RedisTransport()
    assert transport.host == "localhost"
    assert transport.port == 6379
    assert transport._queue_name("workflow.run") == "ledgerflow:workflow.run"
