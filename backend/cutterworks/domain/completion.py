"""Completion details sub-workflow.

Once an order is Completed the owning baker records how it is collected and
paid for. Confirming those details locks them; afterwards the only way back
in is an update request that an admin approves, which re-opens the details
for exactly one more edit.

    unset -> set -> confirmed -> update_requested -> update_approved -> set
                                                  +-> update_rejected
"""
import datetime as dt
from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from cutterworks.domain.errors import Locked, PreconditionFailed, ValidationFailed
from cutterworks.domain.pickup import check_slot
from cutterworks.domain.postcodes import validate_postcode


class DeliveryMethod(str, Enum):
    PICKUP = "Pickup"
    DELIVERY = "Delivery"


class PaymentMethod(str, Enum):
    CASH = "Cash"
    CARD = "Card"


class CompletionState(str, Enum):
    UNSET = "unset"
    SET = "set"
    CONFIRMED = "confirmed"
    UPDATE_REQUESTED = "update_requested"
    UPDATE_APPROVED = "update_approved"
    UPDATE_REJECTED = "update_rejected"


class PickupSchedule(BaseModel):
    date: Optional[dt.date] = None
    time: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class DeliveryAddress(BaseModel):
    street: Optional[str] = Field(default=None, max_length=200)
    suburb: Optional[str] = Field(default=None, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    postcode: Optional[str] = Field(default=None, max_length=20)
    country: str = Field(default="Australia", max_length=100)
    instructions: Optional[str] = Field(default=None, max_length=500)


class RequestedChanges(BaseModel):
    """What the baker would like changed; advisory for the admin."""

    delivery_method: Optional[DeliveryMethod] = None
    payment_method: Optional[PaymentMethod] = None
    pickup_schedule: Optional[PickupSchedule] = None
    delivery_address: Optional[DeliveryAddress] = None


class _UpdateRequestBase(BaseModel):
    requested_by: str
    requested_at: datetime
    reason: str = Field(min_length=1)
    requested_changes: Optional[RequestedChanges] = None


class PendingUpdate(_UpdateRequestBase):
    status: Literal["pending"] = "pending"


class ApprovedUpdate(_UpdateRequestBase):
    status: Literal["approved"] = "approved"
    responded_by: str
    responded_at: datetime
    admin_response: Optional[str] = None
    consumed_at: Optional[datetime] = None


class RejectedUpdate(_UpdateRequestBase):
    status: Literal["rejected"] = "rejected"
    responded_by: str
    responded_at: datetime
    admin_response: str = Field(min_length=1)


UpdateRequest = Annotated[
    Union[PendingUpdate, ApprovedUpdate, RejectedUpdate],
    Field(discriminator="status"),
]


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def validate_details(
    delivery_method: Optional[str],
    payment_method: Optional[str],
    schedule: Optional[PickupSchedule],
    address: Optional[DeliveryAddress],
    now: datetime,
) -> None:
    """Raise ValidationFailed unless the method-specific fields are complete."""
    missing: List[str] = []
    if _blank(delivery_method):
        missing.append("delivery_method")
    if _blank(payment_method):
        missing.append("payment_method")
    if missing:
        raise ValidationFailed("Delivery method and payment method are required", {"missing": missing})
    try:
        method = DeliveryMethod(delivery_method)
        PaymentMethod(payment_method)
    except ValueError as e:
        raise ValidationFailed(str(e))

    if method == DeliveryMethod.PICKUP:
        if schedule is None or schedule.date is None:
            missing.append("date")
        if schedule is None or _blank(schedule.time):
            missing.append("time")
        if missing:
            raise ValidationFailed(
                "Pickup requires a schedule with " + " and ".join(missing),
                {"missing": missing},
            )
        problem = check_slot(schedule.date, schedule.time, now)
        if problem:
            raise ValidationFailed(problem, {"field": "pickup_schedule"})
        return

    required = ("street", "suburb", "state", "postcode", "country")
    if address is None:
        missing = list(required)
    else:
        missing = [name for name in required if _blank(getattr(address, name))]
    if missing:
        raise ValidationFailed(
            "Delivery address is incomplete: missing " + ", ".join(missing),
            {"missing": missing},
        )
    check = validate_postcode(address.postcode, address.country)
    if not check.valid:
        raise ValidationFailed(check.message, {"field": "postcode", "example": check.example})


class CompletionDetails(BaseModel):
    delivery_method: Optional[DeliveryMethod] = None
    payment_method: Optional[PaymentMethod] = None
    pickup_schedule: Optional[PickupSchedule] = None
    delivery_address: Optional[DeliveryAddress] = None
    details_confirmed: bool = False
    details_confirmed_at: Optional[datetime] = None
    details_confirmed_by: Optional[str] = None
    update_request: Optional[UpdateRequest] = None

    @property
    def is_set(self) -> bool:
        return self.delivery_method is not None and self.payment_method is not None

    @property
    def open_approval(self) -> Optional[ApprovedUpdate]:
        req = self.update_request
        if isinstance(req, ApprovedUpdate) and req.consumed_at is None:
            return req
        return None

    @property
    def state(self) -> CompletionState:
        req = self.update_request
        if isinstance(req, PendingUpdate):
            return CompletionState.UPDATE_REQUESTED
        if self.open_approval is not None:
            return CompletionState.UPDATE_APPROVED
        if self.details_confirmed:
            if isinstance(req, RejectedUpdate):
                return CompletionState.UPDATE_REJECTED
            return CompletionState.CONFIRMED
        return CompletionState.SET if self.is_set else CompletionState.UNSET

    def set_details(
        self,
        delivery_method: Optional[str],
        payment_method: Optional[str],
        schedule: Optional[PickupSchedule],
        address: Optional[DeliveryAddress],
        now: datetime,
    ) -> bool:
        """Record new details; returns True when the baker must now confirm them."""
        previous = self.state
        if self.details_confirmed and previous != CompletionState.UPDATE_APPROVED:
            raise Locked(
                "Completion details are confirmed; request an update to change them",
                {"completion_state": previous.value},
            )
        validate_details(delivery_method, payment_method, schedule, address, now)

        approval = self.open_approval
        if approval is not None:
            self.update_request = approval.model_copy(update={"consumed_at": now})
            self.details_confirmed = False
            self.details_confirmed_at = None
            self.details_confirmed_by = None

        self.delivery_method = DeliveryMethod(delivery_method)
        self.payment_method = PaymentMethod(payment_method)
        if self.delivery_method == DeliveryMethod.PICKUP:
            self.pickup_schedule = schedule
            self.delivery_address = None
        else:
            self.delivery_address = address
            self.pickup_schedule = None
        return not self.details_confirmed

    def confirm(self, actor_id: str, now: datetime) -> None:
        if self.details_confirmed:
            raise PreconditionFailed("Completion details are already confirmed")
        if not self.is_set:
            raise PreconditionFailed("Set delivery and payment details before confirming")
        self.details_confirmed = True
        self.details_confirmed_at = now
        self.details_confirmed_by = actor_id

    def request_update(
        self,
        reason: Optional[str],
        actor_id: str,
        now: datetime,
        requested_changes: Optional[RequestedChanges] = None,
    ) -> None:
        if not self.details_confirmed:
            raise PreconditionFailed("Completion details are not confirmed; edit them directly")
        if isinstance(self.update_request, PendingUpdate):
            raise PreconditionFailed("An update request is already pending")
        if self.open_approval is not None:
            raise PreconditionFailed("An approved update request has not been used yet")
        if _blank(reason):
            raise ValidationFailed("A reason is required for an update request", {"missing": ["reason"]})
        self.update_request = PendingUpdate(
            requested_by=actor_id,
            requested_at=now,
            reason=reason.strip(),
            requested_changes=requested_changes,
        )

    def resolve_update(self, action: str, admin_response: Optional[str], actor_id: str, now: datetime) -> None:
        req = self.update_request
        if not isinstance(req, PendingUpdate):
            raise PreconditionFailed("There is no pending update request")
        base = req.model_dump(exclude={"status"})
        if action == "approve":
            self.update_request = ApprovedUpdate(
                **base,
                responded_by=actor_id,
                responded_at=now,
                admin_response=None if _blank(admin_response) else admin_response.strip(),
            )
        elif action == "reject":
            if _blank(admin_response):
                raise ValidationFailed("A response is required when rejecting", {"missing": ["admin_response"]})
            self.update_request = RejectedUpdate(
                **base,
                responded_by=actor_id,
                responded_at=now,
                admin_response=admin_response.strip(),
            )
        else:
            raise ValidationFailed(f"Unknown action {action!r}; expected 'approve' or 'reject'")
