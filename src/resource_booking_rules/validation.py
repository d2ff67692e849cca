from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Iterable, Sequence

from .models import Booking


SAME_DAY_MESSAGE = "Multiple bookings can not be scheduled for the same day."


class DuplicateBookingConflict(Exception):
    """Raised when a work order already has a booking on the candidate's calendar day."""

    def __init__(self, candidate: Booking, conflicts: Sequence[Booking], message: str = SAME_DAY_MESSAGE) -> None:
        super().__init__(message)
        self.message = message
        self.candidate = candidate
        self.conflicts = list(conflicts)


def calendar_date(ts: datetime) -> date:
    # Dataverse stores date-times in UTC; naive values are read the same way.
    if ts.tzinfo is None:
        return ts.date()
    return ts.astimezone(timezone.utc).date()


def same_calendar_day(a: datetime, b: datetime) -> bool:
    return calendar_date(a) == calendar_date(b)


def find_same_day_bookings(candidate: Booking, existing: Iterable[Booking]) -> list[Booking]:
    day = calendar_date(candidate.start_time)
    return [b for b in existing if calendar_date(b.start_time) == day]


def validate(candidate: Booking, existing: Iterable[Booking]) -> None:
    """Reject ``candidate`` if any booking in ``existing`` falls on the same calendar day.

    Time of day and duration are ignored. ``existing`` is expected to hold the
    bookings of the candidate's work order.
    """
    conflicts = find_same_day_bookings(candidate, existing)
    if conflicts:
        raise DuplicateBookingConflict(candidate, conflicts)
