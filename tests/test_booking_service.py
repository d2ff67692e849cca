"""
Tests for BookingValidationService: create/update checks and guarded inserts.
"""
import pytest

from resource_booking_rules.booking_service import BookingValidationService
from resource_booking_rules.dataverse import GatewayFault
from resource_booking_rules.models import Booking
from resource_booking_rules.validation import SAME_DAY_MESSAGE, DuplicateBookingConflict

from conftest import BOOKING_X, BOOKING_Y, OTHER_WORK_ORDER, WORK_ORDER, FakeGateway, utc


RESOURCE = "b8dddd9c-3b61-ef11-bfe2-002248a36d0e"
STATUS = "f16d80d1-fd07-4237-8b69-187a11eb75f9"


class TestValidateCreate:
    """Tests for the create path."""

    def test_same_day_booking_is_rejected(self, gateway):
        service = BookingValidationService(gateway)

        with pytest.raises(DuplicateBookingConflict):
            service.validate_create({"msdyn_workorder": WORK_ORDER, "starttime": "2024-03-01T14:00:00Z"})

        assert gateway.queries == [WORK_ORDER]

    def test_next_day_booking_is_accepted(self, gateway):
        service = BookingValidationService(gateway)
        candidate = service.validate_create({"msdyn_workorder": WORK_ORDER, "starttime": "2024-03-02T09:00:00Z"})
        assert candidate.start_time == utc(2024, 3, 2, 9, 0)

    def test_other_work_order_is_not_compared(self, gateway):
        service = BookingValidationService(gateway)
        service.validate_create({"msdyn_workorder": OTHER_WORK_ORDER, "starttime": "2024-03-01T14:00:00Z"})
        assert gateway.queries == [OTHER_WORK_ORDER]

    def test_every_call_queries_fresh(self, gateway):
        service = BookingValidationService(gateway)
        for _ in range(3):
            service.validate_create({"msdyn_workorder": WORK_ORDER, "starttime": "2024-03-05T09:00:00Z"})
        assert len(gateway.queries) == 3


class TestValidateUpdate:
    """Tests for the update path and its partial-update merge."""

    def test_work_order_move_uses_the_prior_start_time(self):
        """Moving X to another work order compares X's stored 2024-03-01 date."""
        other = Booking(work_order_id=OTHER_WORK_ORDER, start_time=utc(2024, 3, 1, 16, 0), booking_id=BOOKING_Y)
        service = BookingValidationService(FakeGateway([other]))

        with pytest.raises(DuplicateBookingConflict) as exc:
            service.validate_update(
                {"msdyn_workorder": OTHER_WORK_ORDER},
                {"msdyn_workorder": WORK_ORDER, "starttime": "2024-03-01T09:00:00Z"},
                booking_id=BOOKING_X,
            )

        assert exc.value.candidate.start_time == utc(2024, 3, 1, 9, 0)
        assert exc.value.conflicts == [other]

    def test_own_stored_copy_counts_by_default(self, gateway, existing_booking):
        """The full work order set is compared, so keeping a booking on its day is rejected."""
        service = BookingValidationService(gateway)

        with pytest.raises(DuplicateBookingConflict) as exc:
            service.validate_update(
                {"starttime": "2024-03-01T11:00:00Z"},
                {"msdyn_workorder": WORK_ORDER, "starttime": "2024-03-01T09:00:00Z"},
                booking_id=existing_booking.booking_id,
            )
        assert exc.value.conflicts == [existing_booking]

    def test_own_stored_copy_is_skipped_when_excluded(self, gateway, existing_booking):
        service = BookingValidationService(gateway, exclude_self=True)
        candidate = service.validate_update(
            {"starttime": "2024-03-01T11:00:00Z"},
            {"msdyn_workorder": WORK_ORDER, "starttime": "2024-03-01T09:00:00Z"},
            booking_id=existing_booking.booking_id,
        )
        assert candidate.start_time == utc(2024, 3, 1, 11, 0)

    def test_exclusion_still_rejects_other_same_day_bookings(self, existing_booking):
        moving = Booking(work_order_id=WORK_ORDER, start_time=utc(2024, 3, 4, 9, 0), booking_id=BOOKING_Y)
        service = BookingValidationService(FakeGateway([existing_booking, moving]), exclude_self=True)

        with pytest.raises(DuplicateBookingConflict) as exc:
            service.validate_update(
                {"starttime": "2024-03-01T18:00:00Z"},
                {"msdyn_workorder": WORK_ORDER, "starttime": "2024-03-04T09:00:00Z"},
                booking_id=BOOKING_Y,
            )
        assert exc.value.conflicts == [existing_booking]

    def test_rescheduling_onto_a_taken_day_is_rejected(self, existing_booking):
        moving = Booking(work_order_id=WORK_ORDER, start_time=utc(2024, 3, 4, 9, 0), booking_id=BOOKING_Y)
        service = BookingValidationService(FakeGateway([existing_booking, moving]))

        with pytest.raises(DuplicateBookingConflict):
            service.validate_update(
                {"starttime": "2024-03-01T18:00:00Z"},
                {"msdyn_workorder": WORK_ORDER, "starttime": "2024-03-04T09:00:00Z"},
                booking_id=BOOKING_Y,
            )


class TestValidateBooking:
    """Tests for the accept/reject entry point."""

    def test_reject_carries_reason_and_conflicts(self, gateway, existing_booking):
        outcome = BookingValidationService(gateway).validate_booking(
            {"msdyn_workorder": WORK_ORDER, "starttime": "2024-03-01T14:00:00Z"}
        )
        assert not outcome.accepted
        assert outcome.reason == SAME_DAY_MESSAGE
        assert outcome.conflicts == (existing_booking,)
        assert outcome.to_dict()["status"] == "reject"

    def test_accept(self, gateway):
        outcome = BookingValidationService(gateway).validate_booking(
            {"msdyn_workorder": WORK_ORDER, "starttime": "2024-03-02T09:00:00Z"}
        )
        assert outcome.accepted
        assert outcome.to_dict() == {"status": "accept"}

    def test_update_with_prior_state(self, gateway):
        outcome = BookingValidationService(gateway).validate_booking(
            {"starttime": "2024-03-01T20:00:00Z"},
            is_update=True,
            prior_state={"msdyn_workorder": WORK_ORDER, "starttime": "2024-03-03T09:00:00Z", "bookableresourcebookingid": BOOKING_Y},
        )
        assert not outcome.accepted

    def test_gateway_fault_propagates(self):
        fault = GatewayFault("Dataverse GET failed: HTTP 503", status_code=503)
        service = BookingValidationService(FakeGateway(fault=fault))

        with pytest.raises(GatewayFault) as exc:
            service.validate_booking({"msdyn_workorder": WORK_ORDER, "starttime": "2024-03-01T14:00:00Z"})
        assert exc.value is fault

    def test_update_keeping_the_same_day_is_rejected(self, gateway):
        outcome = BookingValidationService(gateway).validate_booking(
            {"bookableresourcebookingid": BOOKING_X, "starttime": "2024-03-01T10:00:00Z"},
            True,
            {"msdyn_workorder": WORK_ORDER, "starttime": "2024-03-01T09:00:00Z"},
        )
        assert not outcome.accepted

    def test_non_string_booking_id_is_a_value_error(self, gateway):
        with pytest.raises(ValueError, match="bookableresourcebookingid"):
            BookingValidationService(gateway).validate_booking(
                {"bookableresourcebookingid": 42, "msdyn_workorder": WORK_ORDER, "starttime": "2024-03-02T09:00:00Z"}
            )

    def test_incomplete_candidate_is_a_value_error(self, gateway):
        with pytest.raises(ValueError):
            BookingValidationService(gateway).validate_booking({"starttime": "2024-03-01T14:00:00Z"})


class TestCreateBooking:
    """Tests for validated inserts."""

    def test_writes_disabled_by_default(self, gateway):
        with pytest.raises(RuntimeError, match="Writes are disabled"):
            BookingValidationService(gateway).create_booking(
                work_order_id=WORK_ORDER,
                resource_id=RESOURCE,
                booking_status_id=STATUS,
                start_time="2024-03-02T09:00:00Z",
                end_time="2024-03-02T10:00:00Z",
            )
        assert gateway.inserted == []

    def test_inserts_bound_booking(self, gateway):
        created = BookingValidationService(gateway, allow_writes=True).create_booking(
            work_order_id=WORK_ORDER,
            resource_id=RESOURCE,
            booking_status_id=STATUS,
            start_time="2024-03-02T09:00:00Z",
            end_time="2024-03-02T10:00:00Z",
            name="Boiler repair",
        )

        entity, payload = gateway.inserted[0]
        assert entity == "bookableresourcebooking"
        assert payload["msdyn_workorder@odata.bind"] == f"/msdyn_workorders({WORK_ORDER})"
        assert payload["Resource@odata.bind"] == f"/bookableresources({RESOURCE})"
        assert payload["starttime"] == "2024-03-02T09:00:00Z"
        assert created["id"]

    def test_same_day_insert_is_refused(self, gateway):
        with pytest.raises(DuplicateBookingConflict):
            BookingValidationService(gateway, allow_writes=True).create_booking(
                work_order_id=WORK_ORDER,
                resource_id=RESOURCE,
                booking_status_id=STATUS,
                start_time="2024-03-01T15:00:00Z",
                end_time="2024-03-01T16:00:00Z",
            )
        assert gateway.inserted == []

    def test_end_before_start(self, gateway):
        with pytest.raises(ValueError):
            BookingValidationService(gateway, allow_writes=True).create_booking(
                work_order_id=WORK_ORDER,
                resource_id=RESOURCE,
                booking_status_id=STATUS,
                start_time="2024-03-02T10:00:00Z",
                end_time="2024-03-02T09:00:00Z",
            )


class TestListWorkOrderBookings:
    def test_sorted_by_start(self):
        late = Booking(work_order_id=WORK_ORDER, start_time=utc(2024, 3, 9, 9, 0), booking_id=BOOKING_Y)
        early = Booking(work_order_id=WORK_ORDER, start_time=utc(2024, 3, 1, 9, 0), booking_id=BOOKING_X)
        service = BookingValidationService(FakeGateway([late, early]))
        assert service.list_work_order_bookings("{" + WORK_ORDER.upper() + "}") == [early, late]
