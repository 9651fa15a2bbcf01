import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect

from cutterworks.api.deps import build_actor
from cutterworks.domain.errors import OrderError
from cutterworks.services.engine import OrderEngine
from cutterworks.services.realtime import ORDER_LIST_CHANNEL, Connection, order_channel

logger = logging.getLogger(__name__)
router = APIRouter()


def _order_id(message: Dict[str, Any]) -> int:
    try:
        return int(message["order_id"])
    except (KeyError, TypeError, ValueError):
        raise ValueError("order_id is required")


async def _handle(engine: OrderEngine, conn: Connection, message: Dict[str, Any]) -> None:
    broadcaster = engine.broadcaster
    action = message.get("action")
    if action == "join":
        order = engine.get_order(_order_id(message), conn.actor)
        broadcaster.join(conn, order_channel(order.id))
        conn.send({"type": "sync", "order": order.to_snapshot()})
    elif action == "leave":
        order_id = _order_id(message)
        broadcaster.leave(conn, order_channel(order_id))
        conn.send({"type": "left", "order_id": order_id})
    elif action == "resync":
        if message.get("order_id") is None:
            orders = engine.list_orders(conn.actor)
            conn.send({"type": "sync-list", "orders": [o.to_snapshot() for o in orders]})
        else:
            order = engine.get_order(_order_id(message), conn.actor)
            conn.send({"type": "sync", "order": order.to_snapshot()})
    elif action == "join-list":
        broadcaster.join(conn, ORDER_LIST_CHANNEL)
        conn.send({"type": "joined-list"})
    elif action == "leave-list":
        broadcaster.leave(conn, ORDER_LIST_CHANNEL)
        conn.send({"type": "left-list"})
    else:
        raise ValueError(f"unknown action {action!r}")


async def _receive(engine: OrderEngine, conn: Connection) -> None:
    while True:
        message = await conn.websocket.receive_json()
        try:
            await _handle(engine, conn, message if isinstance(message, dict) else {})
        except OrderError as e:
            conn.send({"type": "error", **e.to_dict()})
        except ValueError as e:
            conn.send({"type": "error", "error": "validation", "detail": str(e)})


@router.websocket("/ws")
async def order_updates(
    websocket: WebSocket,
    user_id: Optional[str] = None,
    role: Optional[str] = None,
    email: Optional[str] = None,
    baker_id: Optional[str] = None,
):
    """Live order events. Clients join order rooms and the order list explicitly.

    Nothing missed while disconnected is replayed; a reconnecting client sends
    `resync` and replaces its state with the answer.
    """
    try:
        actor = build_actor(user_id, role, email, baker_id)
    except HTTPException as e:
        await websocket.close(code=1008, reason=str(e.detail))
        return

    engine: OrderEngine = websocket.app.state.order_engine
    await websocket.accept()
    conn = Connection(websocket, actor)
    engine.broadcaster.join(conn, ORDER_LIST_CHANNEL)
    conn.send({"type": "connected", "user_id": actor.user_id, "role": actor.role.value})
    logger.info("Realtime client connected user=%s role=%s", actor.user_id, actor.role.value)

    receiver = asyncio.create_task(_receive(engine, conn))
    sender = asyncio.create_task(conn.run_sender())
    try:
        done, _ = await asyncio.wait({receiver, sender}, return_when=asyncio.FIRST_COMPLETED)
        if sender in done and conn.closed and not receiver.done():
            logger.warning("Disconnecting slow realtime client user=%s", actor.user_id)
            await websocket.close(code=1013, reason="too slow; reconnect and resync")
    finally:
        engine.broadcaster.leave_all(conn)
        conn.close()
        for task in (receiver, sender):
            task.cancel()
        results = await asyncio.gather(receiver, sender, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and not isinstance(result, (WebSocketDisconnect, asyncio.CancelledError)):
                logger.warning("Realtime connection for user=%s ended with %r", actor.user_id, result)
        logger.info("Realtime client disconnected user=%s", actor.user_id)
