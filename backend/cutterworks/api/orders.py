import logging
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from cutterworks.api.deps import get_actor, get_order_engine, with_retries
from cutterworks.domain.capabilities import Actor
from cutterworks.domain.completion import DeliveryAddress, PickupSchedule, RequestedChanges
from cutterworks.domain.order import ItemPatch, ItemSpec
from cutterworks.services.engine import FileUpload, OrderEngine

logger = logging.getLogger(__name__)
router = APIRouter()


class CreateOrderRequest(BaseModel):
    items: List[ItemSpec]
    date_required: Optional[date] = None
    comments: Optional[str] = None


class StageChangeRequest(BaseModel):
    stage: str
    comments: Optional[str] = None
    price: Optional[float] = None
    confirm: bool = False


class CompletionRequest(BaseModel):
    delivery_method: Optional[str] = None
    payment_method: Optional[str] = None
    pickup_schedule: Optional[PickupSchedule] = None
    delivery_address: Optional[DeliveryAddress] = None


class UpdateRequestCreate(BaseModel):
    reason: Optional[str] = None
    requested_changes: Optional[RequestedChanges] = None


class UpdateRequestResolve(BaseModel):
    action: str
    admin_response: Optional[str] = None


@router.post("/orders", status_code=201)
async def create_order(
    req: CreateOrderRequest,
    actor: Actor = Depends(get_actor),
    engine: OrderEngine = Depends(get_order_engine),
) -> Dict[str, Any]:
    order = await with_retries(lambda: engine.create_order(actor, req.items, req.date_required, req.comments))
    return order.to_snapshot()


@router.get("/orders")
async def list_orders(
    stage: Optional[str] = None,
    actor: Actor = Depends(get_actor),
    engine: OrderEngine = Depends(get_order_engine),
) -> List[Dict[str, Any]]:
    return [o.to_snapshot() for o in engine.list_orders(actor, stage=stage)]


@router.get("/orders/{order_id}")
async def get_order(
    order_id: int,
    actor: Actor = Depends(get_actor),
    engine: OrderEngine = Depends(get_order_engine),
) -> Dict[str, Any]:
    return engine.get_order(order_id, actor).to_snapshot()


@router.get("/orders/{order_id}/actions")
async def order_actions(
    order_id: int,
    actor: Actor = Depends(get_actor),
    engine: OrderEngine = Depends(get_order_engine),
) -> Dict[str, Any]:
    return engine.available_actions(order_id, actor)


@router.delete("/orders/{order_id}", status_code=204)
async def delete_order(
    order_id: int,
    actor: Actor = Depends(get_actor),
    engine: OrderEngine = Depends(get_order_engine),
) -> None:
    await with_retries(lambda: engine.delete_order(order_id, actor))


@router.post("/orders/{order_id}/stage")
async def change_stage(
    order_id: int,
    req: StageChangeRequest,
    actor: Actor = Depends(get_actor),
    engine: OrderEngine = Depends(get_order_engine),
) -> Dict[str, Any]:
    order = await with_retries(
        lambda: engine.change_stage(order_id, actor, req.stage, comments=req.comments, price=req.price, confirm=req.confirm)
    )
    return order.to_snapshot()


@router.post("/orders/{order_id}/items", status_code=201)
async def add_item(
    order_id: int,
    spec: ItemSpec,
    actor: Actor = Depends(get_actor),
    engine: OrderEngine = Depends(get_order_engine),
) -> Dict[str, Any]:
    order = await with_retries(lambda: engine.add_item(order_id, actor, spec))
    return order.to_snapshot()


@router.patch("/orders/{order_id}/items/{item_id}")
async def update_item(
    order_id: int,
    item_id: str,
    patch: ItemPatch,
    actor: Actor = Depends(get_actor),
    engine: OrderEngine = Depends(get_order_engine),
) -> Dict[str, Any]:
    order = await with_retries(lambda: engine.update_item(order_id, actor, item_id, patch))
    return order.to_snapshot()


@router.delete("/orders/{order_id}/items/{item_id}")
async def delete_item(
    order_id: int,
    item_id: str,
    actor: Actor = Depends(get_actor),
    engine: OrderEngine = Depends(get_order_engine),
) -> Dict[str, Any]:
    order = await with_retries(lambda: engine.delete_item(order_id, actor, item_id))
    return order.to_snapshot()


@router.post("/orders/{order_id}/items/{item_id}/files/{kind}")
async def upload_files(
    order_id: int,
    item_id: str,
    kind: str,
    files: List[UploadFile] = File(...),
    actor: Actor = Depends(get_actor),
    engine: OrderEngine = Depends(get_order_engine),
):
    """Upload one or more files. Each file succeeds or fails on its own."""
    uploads = []
    for f in files:
        content = await f.read()
        uploads.append(FileUpload(filename=f.filename or "upload", content=content, content_type=f.content_type))
    logger.info("Received %s %s file(s) for order=%s item=%s", len(uploads), kind, order_id, item_id)

    order, results = await engine.upload_images(order_id, actor, item_id, kind, uploads)
    ok = sum(1 for r in results if r.ok)
    status = 201 if ok == len(results) else (207 if ok else 422)
    return JSONResponse(
        {
            "order": order.to_snapshot() if order is not None else None,
            "uploaded": ok,
            "failed": len(results) - ok,
            "results": [r.model_dump(mode="json") for r in results],
        },
        status_code=status,
    )


@router.delete("/orders/{order_id}/items/{item_id}/files/{kind}/{key:path}")
async def delete_file(
    order_id: int,
    item_id: str,
    kind: str,
    key: str,
    actor: Actor = Depends(get_actor),
    engine: OrderEngine = Depends(get_order_engine),
) -> Dict[str, Any]:
    order = await with_retries(lambda: engine.delete_image(order_id, actor, item_id, kind, key))
    return order.to_snapshot()


@router.put("/orders/{order_id}/completion")
async def set_completion(
    order_id: int,
    req: CompletionRequest,
    actor: Actor = Depends(get_actor),
    engine: OrderEngine = Depends(get_order_engine),
) -> Dict[str, Any]:
    order, requires_confirmation = await with_retries(
        lambda: engine.set_completion(
            order_id, actor, req.delivery_method, req.payment_method, req.pickup_schedule, req.delivery_address,
        )
    )
    return {"order": order.to_snapshot(), "requires_confirmation": requires_confirmation}


@router.post("/orders/{order_id}/completion/confirm")
async def confirm_completion(
    order_id: int,
    actor: Actor = Depends(get_actor),
    engine: OrderEngine = Depends(get_order_engine),
) -> Dict[str, Any]:
    order = await with_retries(lambda: engine.confirm_completion(order_id, actor))
    return order.to_snapshot()


@router.post("/orders/{order_id}/update-request", status_code=201)
async def request_update(
    order_id: int,
    req: UpdateRequestCreate,
    actor: Actor = Depends(get_actor),
    engine: OrderEngine = Depends(get_order_engine),
) -> Dict[str, Any]:
    order = await with_retries(lambda: engine.request_update(order_id, actor, req.reason, req.requested_changes))
    return order.to_snapshot()


@router.post("/orders/{order_id}/update-request/resolve")
async def resolve_update_request(
    order_id: int,
    req: UpdateRequestResolve,
    actor: Actor = Depends(get_actor),
    engine: OrderEngine = Depends(get_order_engine),
) -> Dict[str, Any]:
    order = await with_retries(lambda: engine.resolve_update_request(order_id, actor, req.action, req.admin_response))
    return order.to_snapshot()


@router.get("/update-requests")
async def pending_update_requests(
    actor: Actor = Depends(get_actor),
    engine: OrderEngine = Depends(get_order_engine),
) -> List[Dict[str, Any]]:
    return [o.to_snapshot() for o in engine.pending_update_requests(actor)]
