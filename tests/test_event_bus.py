import pytest

from groupcast.bus import events
from groupcast.bus.events import TenantEvent
from groupcast.bus.queue import EventBus


@pytest.mark.asyncio
async def test_publish_reaches_only_subscribers_of_same_tenant():
    bus = EventBus()
    t1 = bus.subscribe("t1")
    t2 = bus.subscribe("t2")

    await bus.publish(TenantEvent(tenant_id="t1", name=events.READY))

    assert t1.qsize() == 1
    assert t2.qsize() == 0
    assert (await t1.get()).name == events.READY


@pytest.mark.asyncio
async def test_publish_always_lands_on_outbound_queue():
    bus = EventBus()

    await bus.publish(TenantEvent(tenant_id="t1", name=events.CHALLENGE, payload={"payload": "Q1"}))

    assert bus.outbound_size == 1
    event = await bus.consume()
    assert event.payload == {"payload": "Q1"}


def test_has_pending_for_tenant_scans_outbound_queue():
    bus = EventBus()
    bus.outbound.put_nowait(TenantEvent(tenant_id="t1", name=events.READY))

    assert bus.has_pending_for_tenant("t1") is True
    assert bus.has_pending_for_tenant("t2") is False


@pytest.mark.asyncio
async def test_full_queue_drops_oldest_event():
    bus = EventBus(maxsize=2)

    for i in range(3):
        await bus.publish(TenantEvent(tenant_id="t1", name=events.MESSAGE_OBSERVED, payload={"n": i}))

    assert bus.outbound_size == 2
    assert (await bus.consume()).payload == {"n": 1}
    assert (await bus.consume()).payload == {"n": 2}


def test_unsubscribe_removes_queue():
    bus = EventBus()
    queue = bus.subscribe("t1")
    assert bus.subscriber_count("t1") == 1

    bus.unsubscribe("t1", queue)
    bus.unsubscribe("t1", queue)

    assert bus.subscriber_count("t1") == 0


def test_tenant_event_to_dict_uses_wire_names():
    event = TenantEvent(tenant_id="t1", name=events.LOGGED_OUT, payload={"reason": 401})

    data = event.to_dict()

    assert data["tenantId"] == "t1"
    assert data["event"] == "loggedOut"
    assert data["payload"] == {"reason": 401}
    assert "T" in data["timestamp"]
