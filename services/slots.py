"""
Slot status moves as conditional UPDATEs (compare-and-swap on the current
status). Callers run them inside their own transaction and check the result.
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_

from models.booking import BOOKING_CONFIRMED, BOOKING_PENDING
from models.slot import SLOT_AVAILABLE, SLOT_BOOKED, SLOT_RESERVED, Slot

_SLOT_FOR_BOOKING = {
    BOOKING_PENDING: SLOT_RESERVED,
    BOOKING_CONFIRMED: SLOT_BOOKED,
}


def slot_status_for(booking_status: str) -> str:
    """The slot status that agrees with a booking in booking_status."""
    return _SLOT_FOR_BOOKING.get(booking_status, SLOT_AVAILABLE)


def compare_and_set(slot_id: int, expected: str, new_status: str, now: datetime,
                    reservation_minutes: Optional[int] = None, business_id: int = None) -> bool:
    """
    Move slot_id from expected to new_status. Returns False when the slot was
    not in expected (someone else won). A reserved slot whose reservation
    already elapsed never counts as reserved.
    """
    query = Slot.query.filter(Slot.id == slot_id, Slot.status == expected)
    if business_id is not None:
        query = query.filter(Slot.business_id == business_id)
    if expected == SLOT_RESERVED:
        query = query.filter(or_(Slot.reserved_until.is_(None), Slot.reserved_until >= now))

    values = {Slot.status: new_status, Slot.updated_at: now}
    if new_status == SLOT_RESERVED:
        values[Slot.reserved_until] = now + timedelta(minutes=reservation_minutes or 10)
    else:
        values[Slot.reserved_until] = None

    return query.update(values, synchronize_session=False) == 1


def release_expired(slot_id: int, now: datetime) -> bool:
    """reserved -> available, only while the reservation is still past due."""
    updated = Slot.query.filter(
        Slot.id == slot_id,
        Slot.status == SLOT_RESERVED,
        Slot.reserved_until < now,
    ).update(
        {Slot.status: SLOT_AVAILABLE, Slot.reserved_until: None, Slot.updated_at: now},
        synchronize_session=False,
    )
    return updated == 1
