"""Same-day booking rule for Dynamics 365 Field Service work orders."""

from .booking_service import BookingValidationService, ValidationOutcome
from .dataverse import GatewayFault
from .models import Booking
from .validation import DuplicateBookingConflict, validate

__all__ = [
    "Booking",
    "BookingValidationService",
    "DuplicateBookingConflict",
    "GatewayFault",
    "ValidationOutcome",
    "validate",
]
__version__ = "0.1.0"
