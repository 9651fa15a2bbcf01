import asyncio
import logging
import os
from typing import Awaitable, Callable, Optional, TypeVar

from fastapi import Header, HTTPException, Request
from sqlalchemy.exc import OperationalError

from cutterworks.domain.capabilities import Actor
from cutterworks.domain.stages import Role
from cutterworks.services.engine import OrderEngine

logger = logging.getLogger(__name__)

PERSIST_RETRIES = int(os.getenv("PERSIST_RETRIES", "3"))

T = TypeVar("T")


def build_actor(user_id: Optional[str], role: Optional[str], email: Optional[str], baker_id: Optional[str]) -> Actor:
    if not user_id or not role:
        raise HTTPException(status_code=401, detail="Missing caller identity")
    try:
        parsed = Role(role.strip().lower())
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown role {role!r}")
    if parsed == Role.BAKER and not baker_id:
        raise HTTPException(status_code=401, detail="Baker identity requires a baker id")
    return Actor(user_id=user_id, role=parsed, email=email or "", baker_id=baker_id if parsed == Role.BAKER else None)


def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
    x_baker_id: Optional[str] = Header(None),
) -> Actor:
    """Caller identity as forwarded by the authenticating proxy."""
    return build_actor(x_user_id, x_user_role, x_user_email, x_baker_id)


def get_order_engine(request: Request) -> OrderEngine:
    return request.app.state.order_engine


async def with_retries(call: Callable[[], Awaitable[T]], retries: int = PERSIST_RETRIES, backoff: float = 0.1) -> T:
    """Run an engine call, retrying transient database failures.

    Engine calls are all-or-nothing, so a failed attempt left nothing behind.
    """
    for attempt in range(1, retries + 1):
        try:
            return await call()
        except OperationalError as e:
            if attempt == retries:
                logger.exception("Giving up after %s attempts: %s", attempt, e)
                raise HTTPException(status_code=503, detail="Order store unavailable, try again")
            logger.warning("Attempt %s hit a database error, retrying: %s", attempt, e)
            await asyncio.sleep(backoff * attempt)
