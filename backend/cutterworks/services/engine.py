"""Order transition engine.

The single entry point for every change to an order. Each call runs under the
order's lock: load, check the caller's capabilities, apply the change to a
copy of the aggregate, persist it, publish one event. A call that raises has
persisted nothing and published nothing.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Hashable, List, NamedTuple, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from cutterworks.domain.capabilities import (
    DELETE_CAPABILITY,
    UPLOAD_CAPABILITY,
    Actor,
    Capability,
    capabilities_for,
)
from cutterworks.domain.completion import DeliveryAddress, PickupSchedule, RequestedChanges
from cutterworks.domain.errors import OrderError, PreconditionFailed, Unauthorized, ValidationFailed
from cutterworks.domain.order import FileKind, ItemPatch, ItemSpec, OrderAggregate, StoredFile
from cutterworks.domain.stages import COMPLETION_STAGES, Role, Stage, allowed_next_stages
from cutterworks.services.realtime import Broadcaster, EventActor, EventType, OrderEvent
from cutterworks.services.repository import OrderRepository
from cutterworks.services.storage import LocalBlobStore
from cutterworks.utils.files import detect_image_format, looks_like_stl

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OrderLocks:
    """Per-key FIFO locks, created on demand and dropped once nobody holds or waits."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class FileUpload(NamedTuple):
    filename: str
    content: bytes
    content_type: Optional[str] = None


class UploadResult(BaseModel):
    filename: str
    ok: bool
    file: Optional[StoredFile] = None
    error: Optional[Dict[str, Any]] = None


def _require(actor: Actor, order: OrderAggregate, capability: Capability) -> None:
    caps = capabilities_for(actor, order.baker_id, order.stage)
    if capability in caps:
        return
    if Capability.VIEW_ORDER not in caps:
        raise Unauthorized("You do not have access to this order", {"order_id": order.id})
    raise Unauthorized(
        f"Not allowed to {capability.value.replace('_', ' ')} while the order is {order.stage.value}",
        {"order_id": order.id, "stage": order.stage.value},
    )


def _require_completion(actor: Actor, order: OrderAggregate) -> None:
    if not actor.owns(order.baker_id):
        raise Unauthorized("Only the baker who placed the order can manage its completion details")
    if order.stage not in COMPLETION_STAGES:
        raise PreconditionFailed(
            f"Completion details can only be managed once the order is {Stage.COMPLETED.value}",
            {"stage": order.stage.value},
        )


def _file_kind(kind: Any) -> FileKind:
    try:
        return FileKind(kind)
    except ValueError:
        raise ValidationFailed(f"Unknown file kind {kind!r}", {"field": "kind"})


def check_upload(kind: FileKind, upload: FileUpload, max_bytes: int = MAX_UPLOAD_BYTES) -> None:
    size = len(upload.content)
    if size == 0:
        raise ValidationFailed(f"{upload.filename} is empty", {"filename": upload.filename})
    if size > max_bytes:
        raise ValidationFailed(
            f"{upload.filename} is larger than {max_bytes} bytes",
            {"filename": upload.filename, "size": size},
        )
    if kind == FileKind.STL:
        if not looks_like_stl(upload.content, upload.filename):
            raise ValidationFailed(f"{upload.filename} is not an STL file", {"filename": upload.filename})
    elif detect_image_format(upload.content) is None:
        raise ValidationFailed(f"{upload.filename} is not a supported image", {"filename": upload.filename})


class OrderEngine:
    def __init__(
        self,
        repository: OrderRepository,
        blob_store: LocalBlobStore,
        broadcaster: Broadcaster,
        clock: Callable[[], datetime] = utc_now,
        max_upload_bytes: int = MAX_UPLOAD_BYTES,
    ):
        self.repository = repository
        self.blob_store = blob_store
        self.broadcaster = broadcaster
        self.clock = clock
        self.max_upload_bytes = max_upload_bytes
        self.locks = OrderLocks()

    # plumbing

    def _publish(
        self,
        order: OrderAggregate,
        event_type: EventType,
        actor: Actor,
        delta: Dict[str, Any],
        sequence: Optional[int] = None,
        snapshot: bool = True,
    ) -> OrderEvent:
        event = OrderEvent(
            order_id=order.id,
            order_number=order.order_number,
            baker_id=order.baker_id,
            event_type=event_type,
            updated_by=EventActor.from_actor(actor),
            sequence=order.version if sequence is None else sequence,
            timestamp=self.clock(),
            order=order.to_snapshot() if snapshot else None,
            delta=delta,
        )
        self.broadcaster.publish(event)
        return event

    async def _mutate(
        self,
        order_id: int,
        actor: Actor,
        check: Callable[[OrderAggregate], None],
        event_type: EventType,
        change: Callable[[OrderAggregate, datetime], Optional[Dict[str, Any]]],
    ) -> Tuple[OrderAggregate, Dict[str, Any]]:
        async with self.locks.hold(order_id):
            order = self.repository.get(order_id)
            check(order)
            now = self.clock()
            draft = order.clone()
            delta = change(draft, now) or {}
            draft.updated_at = now
            saved = self.repository.save(draft)
            self._publish(saved, event_type, actor, delta)
            logger.info(
                "Order %s %s by %s (%s) version=%s",
                saved.order_number, event_type.value, actor.email or actor.user_id, actor.role.value, saved.version,
            )
            return saved, delta

    # reads

    def get_order(self, order_id: int, actor: Actor) -> OrderAggregate:
        order = self.repository.get(order_id)
        _require(actor, order, Capability.VIEW_ORDER)
        return order

    def list_orders(self, actor: Actor, stage: Optional[str] = None) -> List[OrderAggregate]:
        if actor.is_admin:
            return self.repository.list(stage=stage)
        if not actor.baker_id:
            return []
        return self.repository.list(baker_id=actor.baker_id, stage=stage)

    def pending_update_requests(self, actor: Actor) -> List[OrderAggregate]:
        if not actor.is_admin:
            raise Unauthorized("Only admins can review update requests")
        return self.repository.pending_update_requests()

    def available_actions(self, order_id: int, actor: Actor) -> Dict[str, Any]:
        order = self.get_order(order_id, actor)
        caps = capabilities_for(actor, order.baker_id, order.stage)
        next_stages = allowed_next_stages(order.stage, actor.role) if Capability.CHANGE_STAGE in caps else ()
        return {
            "order_id": order.id,
            "stage": order.stage.value,
            "capabilities": sorted(c.value for c in caps),
            "next_stages": [s.value for s in next_stages],
            "completion_state": order.completion.state.value,
        }

    # orders

    async def create_order(
        self,
        actor: Actor,
        items: List[ItemSpec],
        date_required: Optional[date] = None,
        comments: Optional[str] = None,
    ) -> OrderAggregate:
        if actor.role != Role.BAKER or not actor.baker_id:
            raise Unauthorized("Only bakers can place orders")
        async with self.locks.hold(f"new-{actor.baker_id}"):
            order = OrderAggregate.create(
                order_number=self.repository.next_order_number(actor.baker_id),
                baker_id=actor.baker_id,
                baker_email=actor.email,
                items=items,
                created_by=actor.user_id,
                now=self.clock(),
                date_required=date_required,
                comments=comments,
            )
            saved = self.repository.add(order)
        self._publish(saved, EventType.CREATED, actor, {})
        logger.info("Order %s created by %s", saved.order_number, actor.email or actor.user_id)
        return saved

    async def delete_order(self, order_id: int, actor: Actor) -> None:
        async with self.locks.hold(order_id):
            order = self.repository.get(order_id)
            _require(actor, order, Capability.DELETE_ORDER)
            self.repository.delete(order)
            self._publish(order, EventType.DELETED, actor, {}, sequence=order.version + 1, snapshot=False)
            logger.info("Order %s deleted by %s", order.order_number, actor.email or actor.user_id)
            for item in order.items:
                for stored in item.inspiration_images + item.preview_images + item.stl_files:
                    try:
                        await self.blob_store.delete(stored.key)
                    except OSError:
                        logger.exception("Failed to remove blob key=%s of deleted order %s", stored.key, order.order_number)

    async def change_stage(
        self,
        order_id: int,
        actor: Actor,
        target: str,
        comments: Optional[str] = None,
        price: Optional[float] = None,
        confirm: bool = False,
    ) -> OrderAggregate:
        def change(order: OrderAggregate, now: datetime):
            previous = order.stage
            entry = order.change_stage(target, actor.role, actor.user_id, now, comments=comments, price=price, confirm=confirm)
            return {"from": previous.value, "to": entry.stage.value, "comments": comments, "price": order.price}

        saved, _ = await self._mutate(
            order_id, actor, lambda o: _require(actor, o, Capability.CHANGE_STAGE), EventType.STAGE_CHANGED, change,
        )
        return saved

    # items

    async def add_item(self, order_id: int, actor: Actor, spec: ItemSpec) -> OrderAggregate:
        def change(order: OrderAggregate, now: datetime):
            return {"item_id": order.add_item(spec, now).id}

        saved, _ = await self._mutate(
            order_id, actor, lambda o: _require(actor, o, Capability.ADD_ITEM), EventType.ITEM_ADDED, change,
        )
        return saved

    async def update_item(self, order_id: int, actor: Actor, item_id: str, patch: ItemPatch) -> OrderAggregate:
        def change(order: OrderAggregate, now: datetime):
            order.update_item(item_id, patch)
            return {"item_id": item_id}

        saved, _ = await self._mutate(
            order_id, actor, lambda o: _require(actor, o, Capability.EDIT_ITEM), EventType.ITEM_UPDATED, change,
        )
        return saved

    async def delete_item(self, order_id: int, actor: Actor, item_id: str) -> OrderAggregate:
        def change(order: OrderAggregate, now: datetime):
            order.delete_item(item_id)
            return {"item_id": item_id}

        saved, _ = await self._mutate(
            order_id, actor, lambda o: _require(actor, o, Capability.DELETE_ITEM), EventType.ITEM_DELETED, change,
        )
        return saved

    # files

    async def upload_image(
        self, order_id: int, actor: Actor, item_id: str, kind: str, upload: FileUpload,
    ) -> Tuple[OrderAggregate, StoredFile]:
        kind = _file_kind(kind)
        check_upload(kind, upload, self.max_upload_bytes)
        async with self.locks.hold(order_id):
            order = self.repository.get(order_id)
            _require(actor, order, UPLOAD_CAPABILITY[kind.value])
            order.item(item_id)

            blob = await self.blob_store.store(upload.content, f"{kind.value}/{order_id}/{item_id}", upload.filename)
            now = self.clock()
            stored = StoredFile(key=blob.key, url=blob.url, uploaded_at=now, original_name=upload.filename)
            try:
                draft = order.clone()
                draft.add_file(item_id, kind, stored)
                draft.updated_at = now
                saved = self.repository.save(draft)
            except Exception:
                await self.blob_store.delete(blob.key)
                raise
            self._publish(
                saved, EventType.IMAGE_UPLOADED, actor,
                {"item_id": item_id, "kind": kind.value, "file": stored.model_dump(mode="json")},
            )
            logger.info("Stored %s file key=%s on order %s", kind.value, blob.key, saved.order_number)
            return saved, stored

    async def upload_images(
        self, order_id: int, actor: Actor, item_id: str, kind: str, uploads: List[FileUpload],
    ) -> Tuple[Optional[OrderAggregate], List[UploadResult]]:
        """Upload files one by one; a failed file does not stop the ones after it."""
        order = None
        results: List[UploadResult] = []
        for upload in uploads:
            try:
                order, stored = await self.upload_image(order_id, actor, item_id, kind, upload)
            except OrderError as e:
                logger.warning("Upload of %s to order %s rejected: %s", upload.filename, order_id, e.message)
                results.append(UploadResult(filename=upload.filename, ok=False, error=e.to_dict()))
            except (OSError, SQLAlchemyError) as e:
                logger.exception("Upload of %s to order %s failed", upload.filename, order_id)
                results.append(UploadResult(filename=upload.filename, ok=False, error={"error": "storage", "detail": str(e)}))
            else:
                results.append(UploadResult(filename=upload.filename, ok=True, file=stored))
        return order, results

    async def delete_image(self, order_id: int, actor: Actor, item_id: str, kind: str, key: str) -> OrderAggregate:
        kind = _file_kind(kind)
        removed: List[StoredFile] = []

        def change(order: OrderAggregate, now: datetime):
            removed.append(order.remove_file(item_id, kind, key))
            return {"item_id": item_id, "kind": kind.value, "key": key}

        saved, _ = await self._mutate(
            order_id, actor, lambda o: _require(actor, o, DELETE_CAPABILITY[kind.value]), EventType.IMAGE_DELETED, change,
        )
        if removed:
            try:
                await self.blob_store.delete(removed[0].key)
            except OSError:
                logger.exception("Failed to remove blob key=%s", removed[0].key)
        return saved

    # completion

    async def set_completion(
        self,
        order_id: int,
        actor: Actor,
        delivery_method: Optional[str],
        payment_method: Optional[str],
        schedule: Optional[PickupSchedule] = None,
        address: Optional[DeliveryAddress] = None,
    ) -> Tuple[OrderAggregate, bool]:
        def change(order: OrderAggregate, now: datetime):
            requires = order.completion.set_details(delivery_method, payment_method, schedule, address, now)
            return {"requires_confirmation": requires, "completion_state": order.completion.state.value}

        saved, delta = await self._mutate(
            order_id, actor, lambda o: _require_completion(actor, o), EventType.COMPLETION_UPDATED, change,
        )
        return saved, delta["requires_confirmation"]

    async def confirm_completion(self, order_id: int, actor: Actor) -> OrderAggregate:
        def change(order: OrderAggregate, now: datetime):
            order.completion.confirm(actor.user_id, now)

        saved, _ = await self._mutate(
            order_id, actor, lambda o: _require_completion(actor, o), EventType.COMPLETION_CONFIRMED, change,
        )
        return saved

    async def request_update(
        self, order_id: int, actor: Actor, reason: Optional[str], requested_changes: Optional[RequestedChanges] = None,
    ) -> OrderAggregate:
        def change(order: OrderAggregate, now: datetime):
            order.completion.request_update(reason, actor.user_id, now, requested_changes)
            return {"reason": reason}

        saved, _ = await self._mutate(
            order_id, actor, lambda o: _require_completion(actor, o), EventType.UPDATE_REQUESTED, change,
        )
        return saved

    async def resolve_update_request(
        self, order_id: int, actor: Actor, action: str, admin_response: Optional[str] = None,
    ) -> OrderAggregate:
        def change(order: OrderAggregate, now: datetime):
            order.completion.resolve_update(action, admin_response, actor.user_id, now)
            return {"status": order.completion.update_request.status, "admin_response": admin_response}

        saved, _ = await self._mutate(
            order_id, actor, lambda o: _require(actor, o, Capability.RESOLVE_UPDATE), EventType.UPDATE_RESOLVED, change,
        )
        return saved
