"""Transport tests."""

import pytest

from flowguard.contracts import ExecutionEvent
from flowguard.transports import get_transport
from flowguard.transports.inmemory import InMemoryTransport
from flowguard.transports.redis import RedisTransport


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    """Test basic InMemoryTransport publish/subscribe."""
    transport = InMemoryTransport()

    event = ExecutionEvent(
        event="completed",
        execution_id="exec-123",
        workflow_id="inspection",
        status="completed",
        data={"duration": 12.5},
    )
    await transport.publish("executions", event)
    assert [e.execution_id for e in transport.pending("executions")] == ["exec-123"]

    message_received = False
    async for raw_msg, received in transport.subscribe("executions"):
        assert received.execution_id == "exec-123"
        assert received.data["duration"] == 12.5
        assert ExecutionEvent.from_json(raw_msg[0]) == received

        await transport.ack(raw_msg)
        message_received = True
        break

    assert message_received
    assert transport.pending("executions") == []


@pytest.mark.asyncio
async def test_subscribe_stops_after_lifespan():
    transport = InMemoryTransport()
    received = [event async for _, event in transport.subscribe("quiet", lifespan=0.05)]
    assert received == []


def test_redis_transport_instantiation():
    transport = RedisTransport()
    assert transport.host == "localhost"
    assert transport.port == 6379
    assert transport.queue_name("executions") == "flowguard:executions"


def test_unknown_backend_is_rejected(monkeypatch):
    monkeypatch.delenv("FLOWGUARD_TRANSPORT", raising=False)
    with pytest.raises(ValueError):
        get_transport("kafka")
