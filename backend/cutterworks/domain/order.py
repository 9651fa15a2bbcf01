"""Order aggregate.

An order owns its items, their files, the stage history and the completion
details. Every mutation goes through a method here so invariants are checked
in one place:

- at least one item, always
- stage history is append-only and its last entry matches `stage`
- stage and history change together

Methods raise before touching state where they can. Callers that need
all-or-nothing across several steps work on `clone()` and keep the original
untouched until persistence succeeds.
"""
import math
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from cutterworks.domain.completion import CompletionDetails
from cutterworks.domain.errors import (
    Conflict,
    ForbiddenTransition,
    NotFound,
    PreconditionFailed,
    Unauthorized,
    ValidationFailed,
)
from cutterworks.domain.stages import (
    Role,
    Stage,
    TransitionGate,
    allowed_next_stages,
    gates_for,
    stage_progress,
)

MAX_MEASUREMENT = 1000
MAX_COMMENTS = 1000


class ItemType(str, Enum):
    CUTTER = "Cutter"
    STAMP = "Stamp"
    STAMP_AND_CUTTER = "Stamp & Cutter"
    FILE_BASED = "File Based"


class Unit(str, Enum):
    CM = "cm"
    MM = "mm"


class FileKind(str, Enum):
    INSPIRATION = "inspiration"
    PREVIEW = "preview"
    STL = "stl"


class Measurement(BaseModel):
    value: float
    unit: Unit = Unit.CM


class StoredFile(BaseModel):
    key: str
    url: str
    uploaded_at: datetime
    original_name: Optional[str] = None


class ItemSpec(BaseModel):
    type: ItemType
    measurement: Optional[Measurement] = None
    additional_comments: Optional[str] = None


class ItemPatch(BaseModel):
    type: Optional[ItemType] = None
    measurement: Optional[Measurement] = None
    additional_comments: Optional[str] = None


class Item(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    type: ItemType
    measurement: Optional[Measurement] = None
    additional_comments: Optional[str] = None
    inspiration_images: List[StoredFile] = Field(default_factory=list)
    preview_images: List[StoredFile] = Field(default_factory=list)
    stl_files: List[StoredFile] = Field(default_factory=list)
    created_at: Optional[datetime] = None

    def files(self, kind: FileKind) -> List[StoredFile]:
        kind = FileKind(kind)
        if kind == FileKind.INSPIRATION:
            return self.inspiration_images
        if kind == FileKind.PREVIEW:
            return self.preview_images
        return self.stl_files


class StageHistoryEntry(BaseModel):
    stage: Stage
    changed_at: datetime
    changed_by: str
    comments: Optional[str] = None
    price: Optional[float] = None


def _check_item_fields(item_type: ItemType, measurement: Optional[Measurement], comments: Optional[str]) -> None:
    if item_type != ItemType.FILE_BASED:
        if measurement is None:
            raise ValidationFailed(
                f"A measurement is required for {item_type.value} items",
                {"missing": ["measurement"]},
            )
        if not math.isfinite(measurement.value) or not 0 < measurement.value <= MAX_MEASUREMENT:
            raise ValidationFailed(
                f"Measurement must be greater than 0 and at most {MAX_MEASUREMENT}",
                {"field": "measurement.value"},
            )
    if comments is not None and len(comments) > MAX_COMMENTS:
        raise ValidationFailed(
            f"Additional comments must be at most {MAX_COMMENTS} characters",
            {"field": "additional_comments"},
        )


def _check_price(price: Any) -> float:
    if isinstance(price, bool) or not isinstance(price, (int, float)) or not math.isfinite(price):
        raise ValidationFailed("Price must be a number", {"field": "price"})
    if price < 0:
        raise ValidationFailed("Price must be zero or more", {"field": "price"})
    return float(price)


class OrderAggregate(BaseModel):
    id: Optional[int] = None
    order_number: str
    baker_id: str
    baker_email: str
    date_required: Optional[date] = None
    stage: Stage = Stage.DRAFT
    price: Optional[float] = None
    items: List[Item] = Field(default_factory=list)
    stage_history: List[StageHistoryEntry] = Field(default_factory=list)
    completion: CompletionDetails = Field(default_factory=CompletionDetails)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def create(
        cls,
        order_number: str,
        baker_id: str,
        baker_email: str,
        items: List[ItemSpec],
        created_by: str,
        now: datetime,
        date_required: Optional[date] = None,
        comments: Optional[str] = None,
    ) -> "OrderAggregate":
        if not items:
            raise ValidationFailed("An order needs at least one item", {"missing": ["items"]})
        order = cls(
            order_number=order_number,
            baker_id=baker_id,
            baker_email=baker_email,
            date_required=date_required,
            created_at=now,
            updated_at=now,
        )
        for spec in items:
            order.add_item(spec, now)
        order.stage_history.append(
            StageHistoryEntry(stage=Stage.DRAFT, changed_at=now, changed_by=created_by, comments=comments)
        )
        return order

    def clone(self) -> "OrderAggregate":
        return self.model_copy(deep=True)

    # items

    def item(self, item_id: str) -> Item:
        for item in self.items:
            if item.id == item_id:
                return item
        raise NotFound(f"Item {item_id} not found", {"item_id": item_id})

    def add_item(self, spec: ItemSpec, now: datetime) -> Item:
        _check_item_fields(spec.type, spec.measurement, spec.additional_comments)
        item = Item(
            type=spec.type,
            measurement=None if spec.type == ItemType.FILE_BASED else spec.measurement,
            additional_comments=spec.additional_comments,
            created_at=now,
        )
        self.items.append(item)
        return item

    def update_item(self, item_id: str, patch: ItemPatch) -> Item:
        item = self.item(item_id)
        changes = patch.model_dump(exclude_unset=True)
        item_type = ItemType(changes.get("type", item.type))
        measurement = patch.measurement if "measurement" in changes else item.measurement
        comments = changes.get("additional_comments", item.additional_comments)
        _check_item_fields(item_type, measurement, comments)
        if item_type != ItemType.FILE_BASED and item.stl_files:
            raise ValidationFailed("Remove the STL files before changing the item type", {"field": "type"})

        item.type = item_type
        item.measurement = None if item_type == ItemType.FILE_BASED else measurement
        item.additional_comments = comments
        return item

    def delete_item(self, item_id: str) -> Item:
        item = self.item(item_id)
        if len(self.items) == 1:
            raise Conflict("An order must keep at least one item", {"item_id": item_id})
        self.items = [i for i in self.items if i.id != item_id]
        return item

    def add_file(self, item_id: str, kind: FileKind, stored: StoredFile) -> Item:
        item = self.item(item_id)
        if FileKind(kind) == FileKind.STL and item.type != ItemType.FILE_BASED:
            raise ValidationFailed("STL files can only be attached to File Based items", {"field": "kind"})
        item.files(kind).append(stored)
        return item

    def remove_file(self, item_id: str, kind: FileKind, key: str) -> StoredFile:
        files = self.item(item_id).files(kind)
        for i, stored in enumerate(files):
            if stored.key == key:
                del files[i]
                return stored
        raise NotFound(f"No {FileKind(kind).value} file with key {key}", {"item_id": item_id, "key": key})

    def items_missing_inspiration(self) -> List[str]:
        return [item.id for item in self.items if not item.inspiration_images]

    # stage

    def change_stage(
        self,
        target: Stage,
        role: Role,
        changed_by: str,
        now: datetime,
        comments: Optional[str] = None,
        price: Optional[float] = None,
        confirm: bool = False,
    ) -> StageHistoryEntry:
        try:
            target = Stage(target)
        except ValueError:
            raise ValidationFailed(f"Unknown stage {target!r}", {"field": "stage"})
        allowed = allowed_next_stages(self.stage, role)
        if target not in allowed:
            raise ForbiddenTransition(
                f"Cannot move from {self.stage.value} to {target.value}",
                {"stage": self.stage.value, "allowed": [s.value for s in allowed]},
            )

        new_price = self.price
        if price is not None:
            if Role(role) != Role.ADMIN:
                raise Unauthorized("Only admins can set the price")
            new_price = _check_price(price)

        gates = gates_for(target, role)
        if TransitionGate.PRICE in gates and new_price is None:
            raise ValidationFailed(
                f"A price is required before moving to {target.value}",
                {"missing": ["price"]},
            )
        if TransitionGate.INSPIRATION_IMAGES in gates:
            missing = self.items_missing_inspiration()
            if missing:
                raise PreconditionFailed(
                    f"{len(missing)} item(s) need at least one inspiration image before submitting",
                    {"missing_items": len(missing), "item_ids": missing},
                )
        if TransitionGate.CONFIRMATION in gates and not confirm:
            raise PreconditionFailed(
                f"Moving to {target.value} must be explicitly confirmed",
                {"requires_confirmation": True},
            )
        if TransitionGate.COMPLETION_CONFIRMED in gates and not self.completion.details_confirmed:
            raise PreconditionFailed(f"Collection details must be confirmed before {target.value}")

        entry = StageHistoryEntry(
            stage=target,
            changed_at=now,
            changed_by=changed_by,
            comments=comments,
            price=new_price,
        )
        self.price = new_price
        self.stage = target
        self.stage_history.append(entry)
        return entry

    # views

    def to_snapshot(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        position, total = stage_progress(self.stage)
        data["completion_state"] = self.completion.state.value
        data["progress"] = {"position": position, "total": total}
        return data
