"""
Booking domain rules shared by the booking engine and the HTTP layer.

Nothing in here touches storage:
1. Status vocabularies and the booking state machine
2. Composite spot addressing ({layout}_{row}_{slot})
3. Pricing modes (hourly / daily / monthly)
4. Display ordering of spots and timestamp handling
"""
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple

from parking_errors import ForbiddenError, InvalidArgumentError

# Largest value an SQLite INTEGER column holds
MAX_SQLITE_INT = 2 ** 63 - 1

# ===== STATUSES =====

SLOT_AVAILABLE = 'available'
SLOT_OCCUPIED = 'occupied'
SLOT_RESERVED = 'reserved'
SLOT_STATUSES = (SLOT_AVAILABLE, SLOT_OCCUPIED, SLOT_RESERVED)

# Status a slot takes while a pending/confirmed booking holds it
BOOKED_SLOT_STATUS = SLOT_OCCUPIED

BOOKING_PENDING = 'pending'
BOOKING_CONFIRMED = 'confirmed'
BOOKING_COMPLETED = 'completed'
BOOKING_CANCELLED = 'cancelled'
BOOKING_STATUSES = (BOOKING_PENDING, BOOKING_CONFIRMED, BOOKING_COMPLETED, BOOKING_CANCELLED)

ACTIVE_BOOKING_STATUSES = (BOOKING_PENDING, BOOKING_CONFIRMED)

# Transitions that hand the slot back to the lot
RELEASING_BOOKING_STATUSES = (BOOKING_CANCELLED, BOOKING_COMPLETED)

BOOKING_TRANSITIONS: Dict[str, Set[str]] = {
    BOOKING_PENDING: {BOOKING_CONFIRMED, BOOKING_CANCELLED},
    BOOKING_CONFIRMED: {BOOKING_COMPLETED, BOOKING_CANCELLED},
    BOOKING_COMPLETED: set(),
    BOOKING_CANCELLED: set(),
}

ROLE_USER = 'user'
ROLE_OWNER = 'owner'
ROLES = (ROLE_USER, ROLE_OWNER)


def validate_slot_status(status) -> str:
    if status not in SLOT_STATUSES:
        raise InvalidArgumentError(f"Invalid spot status: {status!r}")
    return status


def validate_booking_status(status) -> str:
    if status not in BOOKING_STATUSES:
        raise InvalidArgumentError(f"Invalid booking status: {status!r}")
    return status


def is_terminal(status: str) -> bool:
    return not BOOKING_TRANSITIONS.get(status)


def can_transition(current: str, target: str) -> bool:
    return target in BOOKING_TRANSITIONS.get(current, set())


def authorize_status_change(actor_id: int, booking_user_id: int,
                            lot_owner_id: Optional[int], target: str) -> None:
    """Raise ForbiddenError unless actor may move a booking to target.

    The booking's own user may only cancel, even when they also own the
    lot. The lot owner may request any status on other users' bookings.
    Everybody else is rejected.
    """
    if actor_id == booking_user_id:
        if target != BOOKING_CANCELLED:
            raise ForbiddenError("Users can only cancel their own bookings")
        return
    if lot_owner_id is not None and actor_id == lot_owner_id:
        return
    raise ForbiddenError("Not authorized to update this booking")


# ===== SPOT ADDRESSING =====

_INDEX_RE = re.compile(r'[0-9]+')


def format_space_id(layout_index: int, row_index: int, slot_index: int) -> str:
    return f"{layout_index}_{row_index}_{slot_index}"


def parse_space_id(space_id) -> Tuple[int, int, int]:
    """Split a composite space id into (layout, row, slot) indices"""
    parts = str(space_id).split('_')
    if len(parts) != 3 or not all(_INDEX_RE.fullmatch(part) for part in parts):
        raise InvalidArgumentError(f"Invalid parking space id: {space_id!r}")
    layout_index, row_index, slot_index = (int(part) for part in parts)
    if max(layout_index, row_index, slot_index) > MAX_SQLITE_INT:
        raise InvalidArgumentError(f"Invalid parking space id: {space_id!r}")
    return layout_index, row_index, slot_index


def spot_number_key(label: str) -> int:
    digits = re.sub(r'\D', '', label or '')
    return int(digits) if digits else 0


def sort_spots(spots: Iterable[Dict], label_key: str = 'label') -> List[Dict]:
    """Order spots by the numeric suffix of their label, keeping ties stable"""
    return sorted(spots, key=lambda spot: spot_number_key(spot[label_key]))


# ===== PRICING =====

HOURS_PER_DAY = 8
DAYS_PER_MONTH = 30

PRICING_HOURLY = 'hourly'
PRICING_DAILY = 'daily'
PRICING_MONTHLY = 'monthly'

PRICING_MULTIPLIERS = {
    PRICING_HOURLY: 1,
    PRICING_DAILY: HOURS_PER_DAY,
    PRICING_MONTHLY: HOURS_PER_DAY * DAYS_PER_MONTH,
}


def _billable_units(mode: str, quantity) -> int:
    if mode not in PRICING_MULTIPLIERS:
        raise InvalidArgumentError(f"Invalid pricing mode: {mode!r}")
    if isinstance(quantity, bool):
        raise InvalidArgumentError("quantity must be a number")
    try:
        value = float(quantity)
    except (TypeError, ValueError):
        raise InvalidArgumentError("quantity must be a number")
    if not math.isfinite(value) or value <= 0:
        raise InvalidArgumentError("quantity must be positive")
    if mode == PRICING_HOURLY:
        return math.ceil(value)
    if value != int(value):
        raise InvalidArgumentError(f"{mode} bookings need a whole number of units")
    return int(value)


def compute_total_price(price_per_hour: int, mode: str, quantity) -> int:
    """Price for a booking.

    hourly:  price_per_hour * hours (rounded up to whole hours)
    daily:   price_per_hour * 8 * days
    monthly: price_per_hour * 8 * 30 * months
    """
    units = _billable_units(mode, quantity)
    total = int(price_per_hour) * PRICING_MULTIPLIERS[mode] * units
    if total > MAX_SQLITE_INT:
        raise InvalidArgumentError("quantity is too large")
    return total


def booking_window(start_time: datetime, mode: str, quantity) -> Tuple[datetime, datetime]:
    units = _billable_units(mode, quantity)
    try:
        if mode == PRICING_HOURLY:
            delta = timedelta(hours=units)
        elif mode == PRICING_DAILY:
            delta = timedelta(days=units)
        else:
            delta = timedelta(days=DAYS_PER_MONTH * units)
        return start_time, start_time + delta
    except OverflowError:
        raise InvalidArgumentError("Booking window is out of range")


# ===== TIME =====

_CLOCK_RE = re.compile(r'^([01]\d|2[0-4]):([0-5]\d)$')


def parse_timestamp(value) -> datetime:
    """Parse an ISO-8601 value into a naive UTC datetime.

    Aware values are converted to UTC; naive values are taken as-is.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        if not isinstance(value, str) or not value.strip():
            raise InvalidArgumentError(f"Invalid timestamp: {value!r}")
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidArgumentError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is not None:
        try:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        except OverflowError:
            raise InvalidArgumentError(f"Invalid timestamp: {value!r}")
    return parsed


def intervals_overlap(start_a: datetime, end_a: datetime,
                      start_b: datetime, end_b: datetime) -> bool:
    return start_a < end_b and start_b < end_a


def validate_clock_time(value, field: str) -> str:
    match = _CLOCK_RE.match(value or '') if isinstance(value, str) else None
    if not match or (match.group(1) == '24' and match.group(2) != '00'):
        raise InvalidArgumentError(f"{field} must be a HH:MM clock time")
    return value
