from datetime import date

import pytest

from cutterworks.domain.completion import (
    ApprovedUpdate,
    CompletionDetails,
    CompletionState,
    DeliveryAddress,
    PickupSchedule,
    RejectedUpdate,
)
from cutterworks.domain.errors import Locked, PreconditionFailed, ValidationFailed

from helpers import NOW

TUESDAY = date(2026, 10, 20)


def _pickup(time="10:30"):
    return PickupSchedule(date=TUESDAY, time=time)


def _address(**overrides):
    fields = dict(street="1 Main St", suburb="Bankstown", state="NSW", postcode="2200", country="Australia")
    fields.update(overrides)
    return DeliveryAddress(**fields)


def _confirmed():
    details = CompletionDetails()
    details.set_details("Pickup", "Cash", _pickup(), None, NOW)
    details.confirm("u-1", NOW)
    return details


def test_every_unconfirmed_set_requires_confirmation():
    details = CompletionDetails()
    assert details.state == CompletionState.UNSET
    assert details.set_details("Pickup", "Card", _pickup(), None, NOW) is True
    assert details.state == CompletionState.SET
    assert details.set_details("Pickup", "Cash", _pickup("11:00"), None, NOW) is True
    assert details.state == CompletionState.SET


def test_methods_required():
    with pytest.raises(ValidationFailed) as e:
        CompletionDetails().set_details(None, " ", None, None, NOW)
    assert e.value.details["missing"] == ["delivery_method", "payment_method"]


def test_unknown_method():
    with pytest.raises(ValidationFailed):
        CompletionDetails().set_details("Drone", "Cash", None, None, NOW)


def test_pickup_without_schedule_names_both_fields():
    with pytest.raises(ValidationFailed) as e:
        CompletionDetails().set_details("Pickup", "Cash", None, None, NOW)
    assert e.value.details["missing"] == ["date", "time"]
    assert "date and time" in e.value.message


@pytest.mark.parametrize("schedule", [
    PickupSchedule(date=date(2026, 10, 25), time="10:00"),
    PickupSchedule(date=TUESDAY, time="18:00"),
    PickupSchedule(date=date(2026, 10, 1), time="10:00"),
])
def test_pickup_slot_must_be_open(schedule):
    with pytest.raises(ValidationFailed):
        CompletionDetails().set_details("Pickup", "Cash", schedule, None, NOW)


def test_delivery_address_incomplete():
    with pytest.raises(ValidationFailed) as e:
        CompletionDetails().set_details("Delivery", "Card", None, _address(suburb="", state=None), NOW)
    assert e.value.details["missing"] == ["suburb", "state"]


def test_delivery_postcode_checked_against_country():
    with pytest.raises(ValidationFailed) as e:
        CompletionDetails().set_details("Delivery", "Card", None, _address(postcode="20000"), NOW)
    assert e.value.details["field"] == "postcode"
    assert e.value.details["example"] == "2000"


def test_switching_method_clears_other_fields():
    details = CompletionDetails()
    details.set_details("Pickup", "Cash", _pickup(), None, NOW)
    details.set_details("Delivery", "Cash", _pickup(), _address(), NOW)
    assert details.pickup_schedule is None
    assert details.delivery_address.postcode == "2200"


def test_confirm_needs_details_and_happens_once():
    details = CompletionDetails()
    with pytest.raises(PreconditionFailed):
        details.confirm("u-1", NOW)
    details.set_details("Pickup", "Cash", _pickup(), None, NOW)
    details.confirm("u-1", NOW)
    assert details.state == CompletionState.CONFIRMED
    assert details.details_confirmed_by == "u-1"
    with pytest.raises(PreconditionFailed):
        details.confirm("u-1", NOW)


def test_confirmed_details_are_locked():
    details = _confirmed()
    with pytest.raises(Locked):
        details.set_details("Pickup", "Card", _pickup(), None, NOW)
    assert details.payment_method.value == "Cash"


def test_update_request_needs_confirmed_details_and_reason():
    details = CompletionDetails()
    details.set_details("Pickup", "Cash", _pickup(), None, NOW)
    with pytest.raises(PreconditionFailed):
        details.request_update("please", "u-1", NOW)
    details.confirm("u-1", NOW)
    with pytest.raises(ValidationFailed):
        details.request_update("   ", "u-1", NOW)


def test_only_one_pending_request():
    details = _confirmed()
    details.request_update("wrong time", "u-1", NOW)
    assert details.state == CompletionState.UPDATE_REQUESTED
    with pytest.raises(PreconditionFailed):
        details.request_update("again", "u-1", NOW)


def test_approval_reopens_for_one_edit():
    details = _confirmed()
    details.request_update("wrong time", "u-1", NOW)
    details.resolve_update("approve", None, "u-admin", NOW)
    assert details.state == CompletionState.UPDATE_APPROVED
    with pytest.raises(PreconditionFailed):
        details.request_update("another", "u-1", NOW)

    assert details.set_details("Pickup", "Cash", _pickup("14:00"), None, NOW) is True
    assert details.state == CompletionState.SET
    assert details.details_confirmed is False
    assert isinstance(details.update_request, ApprovedUpdate)
    assert details.update_request.consumed_at == NOW

    details.confirm("u-1", NOW)
    with pytest.raises(Locked):
        details.set_details("Pickup", "Cash", _pickup("15:00"), None, NOW)
    details.request_update("one more change", "u-1", NOW)
    assert details.state == CompletionState.UPDATE_REQUESTED


def test_rejection_keeps_details_locked():
    details = _confirmed()
    details.request_update("wrong address", "u-1", NOW)
    with pytest.raises(ValidationFailed):
        details.resolve_update("reject", "", "u-admin", NOW)
    assert details.state == CompletionState.UPDATE_REQUESTED

    details.resolve_update("reject", "too late to change", "u-admin", NOW)
    assert details.state == CompletionState.UPDATE_REJECTED
    assert isinstance(details.update_request, RejectedUpdate)
    assert details.update_request.admin_response == "too late to change"
    assert details.details_confirmed is True
    with pytest.raises(Locked):
        details.set_details("Pickup", "Card", _pickup(), None, NOW)

    details.request_update("please reconsider", "u-1", NOW)
    assert details.state == CompletionState.UPDATE_REQUESTED


def test_resolve_needs_pending_request_and_known_action():
    details = _confirmed()
    with pytest.raises(PreconditionFailed):
        details.resolve_update("approve", None, "u-admin", NOW)
    details.request_update("wrong time", "u-1", NOW)
    with pytest.raises(ValidationFailed):
        details.resolve_update("maybe", None, "u-admin", NOW)


def test_update_request_survives_serialization():
    details = _confirmed()
    details.request_update("wrong time", "u-1", NOW)
    details.resolve_update("approve", "ok", "u-admin", NOW)
    restored = CompletionDetails.model_validate(details.model_dump(mode="json"))
    assert isinstance(restored.update_request, ApprovedUpdate)
    assert restored.state == CompletionState.UPDATE_APPROVED
