from datetime import date, datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from cutterworks.api.deps import get_actor
from cutterworks.domain.capabilities import Actor
from cutterworks.domain.pickup import PICKUP_LOCATION, availability, check_slot, format_12h

router = APIRouter()


class SlotRequest(BaseModel):
    date: date
    time: str


@router.get("/location")
async def location(actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    return PICKUP_LOCATION


@router.get("/availability/{day}")
async def day_availability(day: date, actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    return availability(day)


@router.post("/validate-slot")
async def validate_slot(req: SlotRequest, actor: Actor = Depends(get_actor)) -> Dict[str, Any]:
    problem = check_slot(req.date, req.time, datetime.now(timezone.utc))
    if problem:
        raise HTTPException(status_code=400, detail=problem)
    return {
        "valid": True,
        "date": req.date.isoformat(),
        "time": req.time,
        "formatted": {"date": req.date.strftime("%d/%m/%Y"), "time": format_12h(req.time)},
    }
