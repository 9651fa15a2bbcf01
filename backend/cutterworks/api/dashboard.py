import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from cutterworks.api.deps import get_actor, get_order_engine
from cutterworks.domain.capabilities import Actor
from cutterworks.domain.stages import COMPLETION_STAGES, STAGE_SEQUENCE
from cutterworks.services.engine import OrderEngine

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/stats")
async def stats(
    actor: Actor = Depends(get_actor),
    engine: OrderEngine = Depends(get_order_engine),
) -> Dict[str, Any]:
    """Order counts by stage for the caller's orders (all orders for admins)."""
    orders = engine.list_orders(actor)
    by_stage: Dict[str, int] = {stage.value: 0 for stage in STAGE_SEQUENCE}
    revenue = 0.0
    pending_updates = 0
    for o in orders:
        by_stage[o.stage.value] += 1
        if o.stage in COMPLETION_STAGES and o.price is not None:
            revenue += o.price
        if o.completion.update_request is not None and o.completion.update_request.status == "pending":
            pending_updates += 1

    logger.debug("Computed stats for %s over %s order(s)", actor.user_id, len(orders))
    return {
        "total_orders": len(orders),
        "by_stage": by_stage,
        "pending_update_requests": pending_updates,
        "revenue": round(revenue, 2),
    }
