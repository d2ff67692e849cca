from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest

from resource_booking_rules.models import Booking


WORK_ORDER = "6f1c2a9e-4b7d-4c1e-9a0b-1d2e3f405162"
OTHER_WORK_ORDER = "0a9b8c7d-6e5f-4a3b-2c1d-0e9f8a7b6c5d"
BOOKING_X = "11111111-2222-3333-4444-555555555555"
BOOKING_Y = "99999999-8888-7777-6666-555555555555"


def utc(*parts: int) -> datetime:
    return datetime(*parts, tzinfo=timezone.utc)


class StaticToken:
    def __init__(self, token: str = "test-token") -> None:
        self.token = token
        self.calls = 0

    def get_access_token(self) -> str:
        self.calls += 1
        return self.token


class FakeGateway:
    """In-memory stand-in for QueryGateway."""

    def __init__(self, bookings: list[Booking] | None = None, fault: Exception | None = None) -> None:
        self.bookings = list(bookings or [])
        self.fault = fault
        self.queries: list[str] = []
        self.inserted: list[tuple[str, dict[str, Any]]] = []

    def find_bookings_by_work_order(self, work_order_id: str) -> list[Booking]:
        self.queries.append(work_order_id)
        if self.fault is not None:
            raise self.fault
        return [b for b in self.bookings if b.work_order_id == work_order_id]

    def insert(self, entity_name: str, attributes: dict[str, Any]) -> dict[str, Any]:
        self.inserted.append((entity_name, attributes))
        return {**attributes, "id": "abcdefab-0000-0000-0000-000000000001"}


@pytest.fixture
def existing_booking() -> Booking:
    return Booking(work_order_id=WORK_ORDER, start_time=utc(2024, 3, 1, 9, 0, 0), booking_id=BOOKING_X)


@pytest.fixture
def gateway(existing_booking: Booking) -> FakeGateway:
    return FakeGateway([existing_booking])
