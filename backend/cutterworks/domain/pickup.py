from datetime import date, datetime, time
from typing import Any, Dict, List, Optional, Tuple

PICKUP_LOCATION: Dict[str, Any] = {
    "address": {
        "street": "40A Brancourt Ave",
        "suburb": "Bankstown",
        "state": "NSW",
        "postcode": "2200",
        "country": "Australia",
        "full": "40A Brancourt Ave, Bankstown NSW 2200, Australia",
    },
    "coordinates": {"latitude": -33.9137, "longitude": 151.0351},
    "instructions": [
        "Please bring photo ID for pickup verification",
        "Call ahead if you're running late",
        "Park in visitor parking spaces",
    ],
}

# weekday() -> (open, close); missing days are closed
BUSINESS_HOURS: Dict[int, Tuple[str, str]] = {
    0: ("09:00", "17:00"),
    1: ("09:00", "17:00"),
    2: ("09:00", "17:00"),
    3: ("09:00", "17:00"),
    4: ("09:00", "17:00"),
    5: ("10:00", "14:00"),
}

SLOT_MINUTES = 30

_DAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def parse_time(value: str) -> time:
    """Parse an HH:MM string, raising ValueError on anything else."""
    hours, _, minutes = (value or "").partition(":")
    if len(hours) != 2 or len(minutes) != 2 or not (hours + minutes).isdigit():
        raise ValueError(f"invalid time {value!r}, expected HH:MM")
    return time(int(hours), int(minutes))


def _minutes(value: str) -> int:
    t = parse_time(value)
    return t.hour * 60 + t.minute


def format_12h(value: str) -> str:
    t = parse_time(value)
    hour = t.hour % 12 or 12
    return f"{hour}:{t.minute:02d} {'PM' if t.hour >= 12 else 'AM'}"


def time_slots(open_at: str, close_at: str) -> List[Dict[str, str]]:
    slots = []
    start, end = _minutes(open_at), _minutes(close_at)
    for m in range(start, end, SLOT_MINUTES):
        value = f"{m // 60:02d}:{m % 60:02d}"
        slots.append({"value": value, "label": format_12h(value)})
    return slots


def availability(day: date) -> Dict[str, Any]:
    name = _DAY_NAMES[day.weekday()]
    hours = BUSINESS_HOURS.get(day.weekday())
    if hours is None:
        return {"available": False, "date": day.isoformat(), "reason": f"We are closed on {name}s"}
    return {
        "available": True,
        "date": day.isoformat(),
        "day_of_week": name,
        "business_hours": {"open": hours[0], "close": hours[1]},
        "available_time_slots": time_slots(*hours),
    }


def check_slot(day: date, at: str, now: datetime) -> Optional[str]:
    """Return why a pickup at `day` `at` is not possible, or None when it is."""
    if now.tzinfo is not None:
        # pickup slots are in the shop's local time
        now = now.astimezone().replace(tzinfo=None)
    try:
        requested = datetime.combine(day, parse_time(at))
    except ValueError as e:
        return str(e)
    if requested < now:
        return "Cannot schedule pickup in the past"

    hours = BUSINESS_HOURS.get(day.weekday())
    if hours is None:
        return f"We are closed on {_DAY_NAMES[day.weekday()]}s"
    minute = _minutes(at)
    if minute < _minutes(hours[0]) or minute >= _minutes(hours[1]):
        return f"Pickup time must be between {format_12h(hours[0])} and {format_12h(hours[1])}"
    return None
