import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from cutterworks.domain.completion import CompletionDetails
from cutterworks.domain.errors import Conflict, NotFound
from cutterworks.domain.order import OrderAggregate
from cutterworks.models.order import OrderRecord

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without an offset; they were written in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    return value.astimezone(timezone.utc) if value is not None else None


def _columns(order: OrderAggregate) -> Dict[str, Any]:
    c = order.completion
    dumped = c.model_dump(mode="json")
    return {
        "order_number": order.order_number,
        "baker_id": order.baker_id,
        "baker_email": order.baker_email,
        "date_required": order.date_required,
        "stage": order.stage.value,
        "price": order.price,
        "delivery_method": c.delivery_method.value if c.delivery_method else None,
        "payment_method": c.payment_method.value if c.payment_method else None,
        "details_confirmed": c.details_confirmed,
        "details_confirmed_at": _utc(c.details_confirmed_at),
        "details_confirmed_by": c.details_confirmed_by,
        "pickup_schedule": dumped["pickup_schedule"],
        "delivery_address": dumped["delivery_address"],
        "update_request": dumped["update_request"],
        "update_request_status": c.update_request.status if c.update_request else None,
        "items": [item.model_dump(mode="json") for item in order.items],
        "stage_history": [entry.model_dump(mode="json") for entry in order.stage_history],
        "created_at": _utc(order.created_at),
        "updated_at": _utc(order.updated_at),
    }


def to_aggregate(row: OrderRecord) -> OrderAggregate:
    completion = CompletionDetails.model_validate({
        "delivery_method": row.delivery_method,
        "payment_method": row.payment_method,
        "pickup_schedule": row.pickup_schedule,
        "delivery_address": row.delivery_address,
        "details_confirmed": row.details_confirmed,
        "details_confirmed_at": _aware(row.details_confirmed_at),
        "details_confirmed_by": row.details_confirmed_by,
        "update_request": row.update_request,
    })
    return OrderAggregate.model_validate({
        "id": row.id,
        "order_number": row.order_number,
        "baker_id": row.baker_id,
        "baker_email": row.baker_email,
        "date_required": row.date_required,
        "stage": row.stage,
        "price": row.price,
        "items": row.items or [],
        "stage_history": row.stage_history or [],
        "completion": completion,
        "created_at": _aware(row.created_at),
        "updated_at": _aware(row.updated_at),
        "version": row.version,
    })


class OrderRepository:
    """Load and save whole order aggregates.

    `save` is a compare-and-swap on `version`: a write based on a stale read
    is refused with Conflict instead of overwriting the newer state.
    """

    def __init__(self, engine):
        self.engine = engine

    def next_order_number(self, baker_id: str) -> str:
        with Session(self.engine) as session:
            last = session.exec(
                select(OrderRecord).where(OrderRecord.baker_id == baker_id).order_by(OrderRecord.id.desc())
            ).first()
        number = 1
        if last is not None:
            _, _, suffix = last.order_number.rpartition("-")
            if suffix.isdigit():
                number = int(suffix) + 1
        return f"{baker_id}-{number:03d}"

    def add(self, order: OrderAggregate) -> OrderAggregate:
        with Session(self.engine) as session:
            row = OrderRecord(**_columns(order), version=1)
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info("Inserted order id=%s number=%s", row.id, row.order_number)
            return to_aggregate(row)

    def get(self, order_id: int) -> OrderAggregate:
        with Session(self.engine) as session:
            row = session.get(OrderRecord, order_id)
            if row is None:
                raise NotFound(f"Order {order_id} not found", {"order_id": order_id})
            return to_aggregate(row)

    def save(self, order: OrderAggregate) -> OrderAggregate:
        values = _columns(order)
        with Session(self.engine) as session:
            result = session.exec(
                update(OrderRecord)
                .where(OrderRecord.id == order.id, OrderRecord.version == order.version)
                .values(**values, version=order.version + 1)
            )
            if result.rowcount != 1:
                session.rollback()
                if session.get(OrderRecord, order.id) is None:
                    raise NotFound(f"Order {order.id} not found", {"order_id": order.id})
                logger.warning("Stale write rejected order_id=%s version=%s", order.id, order.version)
                raise Conflict("Order was changed by someone else; reload and retry", {"order_id": order.id})
            session.commit()
        return order.model_copy(update={"version": order.version + 1})

    def delete(self, order: OrderAggregate) -> None:
        with Session(self.engine) as session:
            row = session.get(OrderRecord, order.id)
            if row is None:
                raise NotFound(f"Order {order.id} not found", {"order_id": order.id})
            if row.version != order.version:
                raise Conflict("Order was changed by someone else; reload and retry", {"order_id": order.id})
            session.delete(row)
            session.commit()

    def list(self, baker_id: Optional[str] = None, stage: Optional[str] = None) -> List[OrderAggregate]:
        query = select(OrderRecord).order_by(OrderRecord.id)
        if baker_id is not None:
            query = query.where(OrderRecord.baker_id == baker_id)
        if stage is not None:
            query = query.where(OrderRecord.stage == stage)
        with Session(self.engine) as session:
            return [to_aggregate(row) for row in session.exec(query).all()]

    def pending_update_requests(self) -> List[OrderAggregate]:
        query = select(OrderRecord).where(OrderRecord.update_request_status == "pending").order_by(OrderRecord.id)
        with Session(self.engine) as session:
            return [to_aggregate(row) for row in session.exec(query).all()]
