"""Booking records as the validation rule sees them."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from .dataverse import _iso, _normalize_guid, _parse_iso_datetime


BOOKING_ENTITY = "bookableresourcebooking"
WORK_ORDER_ENTITY = "msdyn_workorder"

WORK_ORDER_ATTRIBUTE = "msdyn_workorder"
START_TIME_ATTRIBUTE = "starttime"
BOOKING_ID_ATTRIBUTE = "bookableresourcebookingid"


def _coerce_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, str):
        return _parse_iso_datetime(value)
    raise ValueError(f"Unsupported start time value: {value!r}")


def _coerce_reference_id(value: Any) -> str:
    """Accept a GUID string or an entity reference mapping ({"Id": ...} / {"id": ...})."""
    if isinstance(value, Mapping):
        value = value.get("Id") or value.get("id")
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Unsupported work order reference: {value!r}")
    return _normalize_guid(value)


@dataclass(frozen=True)
class Booking:
    """A bookable resource booking reduced to the fields the same-day rule reads."""

    work_order_id: str
    start_time: datetime
    booking_id: Optional[str] = None

    @classmethod
    def from_dataverse(cls, data: Mapping[str, Any]) -> "Booking":
        """Create a Booking from a Web API row (lookups arrive as _<name>_value)."""
        work_order = data.get(f"_{WORK_ORDER_ATTRIBUTE}_value") or data.get(WORK_ORDER_ATTRIBUTE)
        start = data.get(START_TIME_ATTRIBUTE)
        if work_order is None or start is None:
            raise ValueError("Dataverse booking row is missing msdyn_workorder or starttime")
        booking_id = data.get(BOOKING_ID_ATTRIBUTE)
        return cls(
            work_order_id=_coerce_reference_id(work_order),
            start_time=_coerce_datetime(start),
            booking_id=_normalize_guid(booking_id) if isinstance(booking_id, str) and booking_id.strip() else None,
        )

    @classmethod
    def from_attributes(cls, attributes: Mapping[str, Any], *, booking_id: Optional[str] = None) -> "Booking":
        """Create a Booking from a change set keyed by logical attribute name.

        Both msdyn_workorder and starttime must be present; use merged_with for partial updates.
        """
        missing = [a for a in (WORK_ORDER_ATTRIBUTE, START_TIME_ATTRIBUTE) if attributes.get(a) is None]
        if missing:
            raise ValueError(f"Booking is missing required attribute(s): {', '.join(missing)}")
        return cls(
            work_order_id=_coerce_reference_id(attributes[WORK_ORDER_ATTRIBUTE]),
            start_time=_coerce_datetime(attributes[START_TIME_ATTRIBUTE]),
            booking_id=_normalize_guid(booking_id) if booking_id else None,
        )

    def merged_with(self, changes: Mapping[str, Any]) -> "Booking":
        """Apply a partial update: only attributes present in ``changes`` override this booking."""
        work_order_id = self.work_order_id
        start_time = self.start_time
        if WORK_ORDER_ATTRIBUTE in changes:
            work_order_id = _coerce_reference_id(changes[WORK_ORDER_ATTRIBUTE])
        if START_TIME_ATTRIBUTE in changes:
            start_time = _coerce_datetime(changes[START_TIME_ATTRIBUTE])
        return Booking(work_order_id=work_order_id, start_time=start_time, booking_id=self.booking_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "work_order_id": self.work_order_id,
            "start_time": _iso(self.start_time),
        }
