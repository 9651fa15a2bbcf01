import asyncio

import pytest

from cutterworks.domain.errors import ForbiddenTransition
from cutterworks.services.realtime import (
    ORDER_LIST_CHANNEL,
    Broadcaster,
    ClientOrderState,
    Connection,
    EventActor,
    EventType,
    OrderEvent,
    SubscriberOverflow,
    order_channel,
)

from helpers import ADMIN, BAKER, NOW, OTHER_BAKER, completed_order, cutter, run


def _event(sequence, event_type=EventType.STAGE_CHANGED, order_id=7, baker_id="B001", by=ADMIN, stage="Submitted"):
    return OrderEvent(
        order_id=order_id,
        order_number=f"{baker_id}-001",
        baker_id=baker_id,
        event_type=event_type,
        updated_by=EventActor.from_actor(by),
        sequence=sequence,
        timestamp=NOW,
        order=None if event_type == EventType.DELETED else {"id": order_id, "version": sequence, "stage": stage},
    )


class FakeSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, message):
        self.sent.append(message)


def test_event_reaches_room_and_list_once():
    broadcaster = Broadcaster()
    received = []
    broadcaster.subscribe(order_channel(7), received.append)
    broadcaster.subscribe(ORDER_LIST_CHANNEL, received.append)
    assert broadcaster.publish(_event(2)) == 2
    assert len(received) == 2


def test_same_subscriber_in_two_rooms_gets_one_copy():
    broadcaster = Broadcaster()
    received = []
    sub = broadcaster.subscribe(order_channel(7), received.append)
    broadcaster.join(sub.subscriber, ORDER_LIST_CHANNEL)
    assert broadcaster.publish(_event(2)) == 1


def test_list_events_filtered_by_ownership():
    broadcaster = Broadcaster()
    owner, other, admin = [], [], []
    broadcaster.subscribe(ORDER_LIST_CHANNEL, owner.append, actor=BAKER)
    broadcaster.subscribe(ORDER_LIST_CHANNEL, other.append, actor=OTHER_BAKER)
    broadcaster.subscribe(ORDER_LIST_CHANNEL, admin.append, actor=ADMIN)
    broadcaster.publish(_event(2))
    assert len(owner) == 1
    assert other == []
    assert len(admin) == 1


def test_failing_subscriber_is_dropped_and_others_still_served():
    broadcaster = Broadcaster()
    received = []

    def broken(event):
        raise RuntimeError("socket gone")

    broadcaster.subscribe(ORDER_LIST_CHANNEL, broken)
    broadcaster.subscribe(ORDER_LIST_CHANNEL, received.append)
    assert broadcaster.publish(_event(2)) == 1
    assert len(received) == 1
    assert len(broadcaster.members(ORDER_LIST_CHANNEL)) == 1


def test_join_and_leave_are_idempotent():
    broadcaster = Broadcaster()
    sub = broadcaster.subscribe(order_channel(7), lambda e: None)
    broadcaster.join(sub.subscriber, order_channel(7))
    assert len(broadcaster.members(order_channel(7))) == 1
    sub.unsubscribe()
    sub.unsubscribe()
    assert broadcaster.members(order_channel(7)) == set()


def test_deleted_order_room_is_closed():
    broadcaster = Broadcaster()
    broadcaster.subscribe(order_channel(7), lambda e: None)
    broadcaster.publish(_event(3, EventType.DELETED))
    assert broadcaster.members(order_channel(7)) == set()


def test_publish_without_subscribers():
    assert Broadcaster().publish(_event(1)) == 0


def test_engine_failure_publishes_nothing(order_engine, events):
    order = run(order_engine.create_order(BAKER, [cutter()]))
    room = []
    order_engine.broadcaster.subscribe(order_channel(order.id), room.append)
    with pytest.raises(ForbiddenTransition):
        run(order_engine.change_stage(order.id, BAKER, "Printing"))
    assert room == []
    run(order_engine.add_item(order.id, BAKER, cutter()))
    assert [e.event_type for e in room] == [EventType.ITEM_ADDED]


def test_connection_queues_frames_for_sender():
    async def scenario():
        socket = FakeSocket()
        conn = Connection(socket, BAKER)
        sender = asyncio.create_task(conn.run_sender())
        conn.deliver(_event(2))
        await asyncio.sleep(0.01)
        conn.close()
        await sender
        return socket.sent

    sent = run(scenario())
    assert len(sent) == 1
    assert sent[0]["type"] == "event"
    assert sent[0]["event"]["sequence"] == 2


def test_slow_connection_overflows_and_is_dropped():
    async def scenario():
        broadcaster = Broadcaster()
        conn = Connection(FakeSocket(), BAKER, max_queue=1)
        broadcaster.join(conn, ORDER_LIST_CHANNEL)
        broadcaster.publish(_event(2))
        with pytest.raises(SubscriberOverflow):
            conn.deliver(_event(3))
        return conn, broadcaster

    conn, broadcaster = run(scenario())
    assert conn.closed


def test_broadcaster_drops_overflowing_connection():
    async def scenario():
        broadcaster = Broadcaster()
        conn = Connection(FakeSocket(), BAKER, max_queue=1)
        broadcaster.join(conn, ORDER_LIST_CHANNEL)
        broadcaster.publish(_event(2))
        broadcaster.publish(_event(3))
        return conn, broadcaster

    conn, broadcaster = run(scenario())
    assert conn.closed
    assert broadcaster.members(ORDER_LIST_CHANNEL) == set()


def test_client_state_ignores_stale_and_duplicate_events():
    state = ClientOrderState(user_id=BAKER.user_id)
    state.load({"id": 7, "version": 3, "stage": "Under Review"})
    assert state.apply(_event(3)) is False
    assert state.apply(_event(2)) is False
    assert state.orders[7]["stage"] == "Under Review"

    assert state.apply(_event(4, stage="Requires Approval")) is True
    assert state.apply(_event(4, stage="Requires Approval")) is False
    assert state.orders[7]["stage"] == "Requires Approval"


def test_client_state_suppresses_own_echo():
    state = ClientOrderState(user_id=BAKER.user_id)
    state.load({"id": 7, "version": 1})
    assert state.apply(_event(2, by=BAKER)) is False
    assert state.orders[7]["version"] == 2


def test_client_state_removes_deleted_orders():
    state = ClientOrderState(user_id=BAKER.user_id)
    state.load({"id": 7, "version": 1})
    state.apply(_event(2, EventType.DELETED))
    assert 7 not in state.orders
    assert state.apply(_event(2)) is False


def test_client_resync_after_disconnect(order_engine, events):
    order = run(completed_order(order_engine))
    client = ClientOrderState(user_id=BAKER.user_id)
    client.load(events[0].order)
    client.disconnected()
    assert client.needs_resync

    client.resync(o.to_snapshot() for o in order_engine.list_orders(BAKER))
    assert not client.needs_resync
    assert client.orders[order.id]["stage"] == "Completed"
    for event in events:
        assert client.apply(event) is False


def test_client_state_flags_gaps():
    state = ClientOrderState(user_id=BAKER.user_id)
    state.load({"id": 7, "version": 2})
    state.apply(_event(3))
    assert not state.needs_resync
    assert state.apply(_event(5)) is True
    assert state.needs_resync
    assert state.orders[7]["version"] == 5


def test_subscribe_by_order_id():
    broadcaster = Broadcaster()
    received = []
    broadcaster.subscribe(7, received.append)
    broadcaster.publish(_event(2, order_id=7))
    broadcaster.publish(_event(2, order_id=8))
    assert [e.order_id for e in received] == [7]
