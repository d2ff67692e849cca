from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol, Sequence
import logging

from .dataverse import _iso, _normalize_guid
from .models import (
    BOOKING_ENTITY,
    BOOKING_ID_ATTRIBUTE,
    START_TIME_ATTRIBUTE,
    WORK_ORDER_ATTRIBUTE,
    Booking,
    _coerce_datetime,
)
from .validation import DuplicateBookingConflict, validate


logger = logging.getLogger(__name__)


class BookingSource(Protocol):
    def find_bookings_by_work_order(self, work_order_id: str) -> list[Booking]: ...

    def insert(self, entity_name: str, attributes: dict[str, Any]) -> dict[str, Any]: ...


@dataclass(frozen=True)
class ValidationOutcome:
    accepted: bool
    reason: Optional[str] = None
    conflicts: tuple[Booking, ...] = ()

    @classmethod
    def accept(cls) -> "ValidationOutcome":
        return cls(accepted=True)

    @classmethod
    def reject(cls, reason: str, conflicts: Sequence[Booking] = ()) -> "ValidationOutcome":
        return cls(accepted=False, reason=reason, conflicts=tuple(conflicts))

    def to_dict(self) -> dict[str, Any]:
        if self.accepted:
            return {"status": "accept"}
        return {
            "status": "reject",
            "reason": self.reason,
            "conflicts": [b.to_dict() for b in self.conflicts],
        }


class BookingValidationService:
    def __init__(self, gateway: BookingSource, *, allow_writes: bool = False, exclude_self: bool = False) -> None:
        self._gateway = gateway
        self._allow_writes = allow_writes
        self._exclude_self = exclude_self

    def _existing_for(self, candidate: Booking) -> list[Booking]:
        existing = self._gateway.find_bookings_by_work_order(candidate.work_order_id)
        if self._exclude_self and candidate.booking_id:
            # Opt-in: the stored copy of the booking being updated is left out of the set.
            existing = [b for b in existing if b.booking_id != candidate.booking_id]
        return existing

    def check(self, candidate: Booking) -> None:
        """Raise DuplicateBookingConflict if the candidate's work order already has a booking that day."""
        existing = self._existing_for(candidate)
        logger.info(
            "Checking booking for work order %s on %s against %d existing booking(s)",
            candidate.work_order_id,
            _iso(candidate.start_time),
            len(existing),
        )
        validate(candidate, existing)

    def validate_create(self, target: Mapping[str, Any], *, booking_id: Optional[str] = None) -> Booking:
        candidate = Booking.from_attributes(target, booking_id=booking_id)
        self.check(candidate)
        return candidate

    def validate_update(
        self,
        target: Mapping[str, Any],
        pre_image: Mapping[str, Any],
        *,
        booking_id: Optional[str] = None,
    ) -> Booking:
        prior = Booking.from_attributes(pre_image, booking_id=booking_id)
        candidate = prior.merged_with(target)
        self.check(candidate)
        return candidate

    def validate_booking(
        self,
        candidate: Mapping[str, Any],
        is_update: bool = False,
        prior_state: Optional[Mapping[str, Any]] = None,
    ) -> ValidationOutcome:
        """Accept or reject a candidate booking.

        On update, attributes missing from ``candidate`` are taken from ``prior_state``.
        Gateway faults are not converted into a rejection.
        """
        booking_id = candidate.get(BOOKING_ID_ATTRIBUTE) or (prior_state or {}).get(BOOKING_ID_ATTRIBUTE)
        if booking_id is not None and not isinstance(booking_id, str):
            raise ValueError(f"bookableresourcebookingid must be a GUID string, got: {booking_id!r}")
        try:
            if is_update and prior_state is not None:
                self.validate_update(candidate, prior_state, booking_id=booking_id)
            else:
                self.validate_create(candidate, booking_id=booking_id)
        except DuplicateBookingConflict as e:
            logger.info("Rejected booking for work order %s: %s", e.candidate.work_order_id, e.message)
            return ValidationOutcome.reject(e.message, e.conflicts)
        return ValidationOutcome.accept()

    def list_work_order_bookings(self, work_order_id: str) -> list[Booking]:
        bookings = self._gateway.find_bookings_by_work_order(_normalize_guid(work_order_id))
        return sorted(bookings, key=lambda b: b.start_time)

    def create_booking(
        self,
        *,
        work_order_id: str,
        resource_id: str,
        booking_status_id: str,
        start_time: datetime | str,
        end_time: datetime | str,
        name: Optional[str] = None,
    ) -> dict[str, Any]:
        """Validate and create a bookableresourcebooking for a work order."""
        if not self._allow_writes:
            raise RuntimeError("Writes are disabled. Set DATAVERSE_ALLOW_WRITES=true to create bookings.")

        start = _coerce_datetime(start_time)
        end = _coerce_datetime(end_time)
        if end <= start:
            raise ValueError("end_time must be after start_time")

        candidate = Booking.from_attributes({WORK_ORDER_ATTRIBUTE: work_order_id, START_TIME_ATTRIBUTE: start})
        self.check(candidate)

        payload: dict[str, Any] = {
            "starttime": _iso(start),
            "endtime": _iso(end),
            "Resource@odata.bind": f"/bookableresources({_normalize_guid(resource_id)})",
            "BookingStatus@odata.bind": f"/bookingstatuses({_normalize_guid(booking_status_id)})",
            "msdyn_workorder@odata.bind": f"/msdyn_workorders({candidate.work_order_id})",
        }
        if name:
            payload["name"] = name
        return self._gateway.insert(BOOKING_ENTITY, payload)
