"""Live order updates.

Every successful mutation produces one `OrderEvent` carrying the full
resulting order snapshot and a per-order `sequence` (the order version after
the write). The broadcaster fans it out to the order's room and to the
order-list channel. Delivery is best-effort: a slow or broken subscriber is
dropped, never allowed to fail the write. There is no backlog; clients that
reconnect resync by fetching the order again.
"""
import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Set, Union

from pydantic import BaseModel, Field

from cutterworks.domain.capabilities import Actor
from cutterworks.domain.stages import Role

logger = logging.getLogger(__name__)

ORDER_LIST_CHANNEL = "orders-list"


def order_channel(order_id: int) -> str:
    return f"order-{order_id}"


class EventType(str, Enum):
    CREATED = "created"
    STAGE_CHANGED = "stage_changed"
    ITEM_ADDED = "item_added"
    ITEM_UPDATED = "item_updated"
    ITEM_DELETED = "item_deleted"
    IMAGE_UPLOADED = "image_uploaded"
    IMAGE_DELETED = "image_deleted"
    COMPLETION_UPDATED = "completion_updated"
    COMPLETION_CONFIRMED = "completion_confirmed"
    UPDATE_REQUESTED = "update_requested"
    UPDATE_RESOLVED = "update_resolved"
    DELETED = "deleted"


class EventActor(BaseModel):
    user_id: str
    email: str = ""
    role: Role

    @classmethod
    def from_actor(cls, actor: Actor) -> "EventActor":
        return cls(user_id=actor.user_id, email=actor.email, role=actor.role)


class OrderEvent(BaseModel):
    order_id: int
    order_number: str
    baker_id: str
    event_type: EventType
    updated_by: EventActor
    sequence: int
    timestamp: datetime
    order: Optional[Dict[str, Any]] = None
    delta: Dict[str, Any] = Field(default_factory=dict)


class Subscriber:
    """Anything that can receive events. `actor` None means unrestricted."""

    actor: Optional[Actor] = None

    def deliver(self, event: OrderEvent) -> None:
        raise NotImplementedError


class HandlerSubscriber(Subscriber):
    def __init__(self, handler: Callable[[OrderEvent], None], actor: Optional[Actor] = None):
        self.handler = handler
        self.actor = actor

    def deliver(self, event: OrderEvent) -> None:
        self.handler(event)


class Subscription:
    def __init__(self, broadcaster: "Broadcaster", subscriber: Subscriber, channel: str):
        self.broadcaster = broadcaster
        self.subscriber = subscriber
        self.channel = channel

    def unsubscribe(self) -> None:
        self.broadcaster.leave(self.subscriber, self.channel)


def may_see(actor: Optional[Actor], baker_id: str) -> bool:
    if actor is None or actor.is_admin:
        return True
    return actor.baker_id == baker_id


class Broadcaster:
    def __init__(self):
        self._rooms: Dict[str, Set[Subscriber]] = {}

    def join(self, subscriber: Subscriber, channel: str) -> None:
        self._rooms.setdefault(channel, set()).add(subscriber)

    def leave(self, subscriber: Subscriber, channel: str) -> None:
        members = self._rooms.get(channel)
        if members is None:
            return
        members.discard(subscriber)
        if not members:
            del self._rooms[channel]

    def leave_all(self, subscriber: Subscriber) -> None:
        for channel in [c for c, members in self._rooms.items() if subscriber in members]:
            self.leave(subscriber, channel)

    def subscribe(
        self, target: Union[int, str], handler: Callable[[OrderEvent], None], actor: Optional[Actor] = None,
    ) -> Subscription:
        """Call `handler` for events on an order id or a named channel such as ORDER_LIST_CHANNEL."""
        channel = order_channel(target) if isinstance(target, int) else target
        subscriber = HandlerSubscriber(handler, actor)
        self.join(subscriber, channel)
        return Subscription(self, subscriber, channel)

    def members(self, channel: str) -> Set[Subscriber]:
        return set(self._rooms.get(channel, ()))

    def _targets(self, event: OrderEvent) -> Iterable[Subscriber]:
        seen: Set[int] = set()
        for channel in (order_channel(event.order_id), ORDER_LIST_CHANNEL):
            for subscriber in self.members(channel):
                if id(subscriber) in seen or not may_see(subscriber.actor, event.baker_id):
                    continue
                seen.add(id(subscriber))
                yield subscriber

    def publish(self, event: OrderEvent) -> int:
        """Deliver `event` to every eligible subscriber; returns how many got it."""
        delivered = 0
        for subscriber in self._targets(event):
            try:
                subscriber.deliver(event)
                delivered += 1
            except Exception:
                logger.exception("Dropping subscriber after failed delivery order_id=%s", event.order_id)
                self.leave_all(subscriber)
        logger.debug(
            "Published %s order_id=%s sequence=%s to %s subscriber(s)",
            event.event_type.value, event.order_id, event.sequence, delivered,
        )
        if event.event_type == EventType.DELETED:
            self._rooms.pop(order_channel(event.order_id), None)
        return delivered


class SubscriberOverflow(Exception):
    pass


class Connection(Subscriber):
    """One WebSocket client. Outgoing frames are queued and sent by `run_sender`."""

    def __init__(self, websocket, actor: Actor, max_queue: int = 256):
        self.websocket = websocket
        self.actor = actor
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.closed = False

    def send(self, message: Dict[str, Any]) -> None:
        if self.closed:
            return
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            self.closed = True
            raise SubscriberOverflow(f"send queue full for user {self.actor.user_id}")

    def deliver(self, event: OrderEvent) -> None:
        self.send({"type": "event", "event": event.model_dump(mode="json")})

    async def run_sender(self) -> None:
        while True:
            message = await self.queue.get()
            if message is None or self.closed:
                return
            await self.websocket.send_json(message)

    def close(self) -> None:
        self.closed = True
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            pass


class ClientOrderState:
    """What a connected client holds: the latest snapshot per order.

    Applying is idempotent: an event whose sequence is not newer than what the
    client already has is ignored, so a client that already applied its own
    direct response ignores the echo. `apply` reports whether the client
    should surface a notification, which is never the case for events the
    client's own user caused. A gap in an order's sequence sets `needs_resync`.
    """

    def __init__(self, user_id: str):
        self.user_id = user_id
        self.orders: Dict[int, Dict[str, Any]] = {}
        self.sequences: Dict[int, int] = {}
        self.needs_resync = False

    def load(self, snapshot: Dict[str, Any]) -> None:
        order_id = snapshot["id"]
        if snapshot.get("version", 0) >= self.sequences.get(order_id, 0):
            self.orders[order_id] = snapshot
            self.sequences[order_id] = snapshot.get("version", 0)

    def resync(self, snapshots: Iterable[Dict[str, Any]]) -> None:
        self.orders.clear()
        self.sequences.clear()
        for snapshot in snapshots:
            self.load(snapshot)
        self.needs_resync = False

    def disconnected(self) -> None:
        self.needs_resync = True

    def apply(self, event: OrderEvent) -> bool:
        known = self.sequences.get(event.order_id)
        if event.sequence <= (known or 0):
            return False
        if known is not None and event.sequence > known + 1:
            # missed at least one event for this order
            self.needs_resync = True
        self.sequences[event.order_id] = event.sequence
        if event.event_type == EventType.DELETED:
            self.orders.pop(event.order_id, None)
        elif event.order is not None:
            self.orders[event.order_id] = event.order
        return event.updated_by.user_id != self.user_id
