from typing import Dict, Iterable, Optional


class BookingError(Exception):
    """Base class for every failure the booking core reports to its callers."""

    kind = "booking_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def extra(self) -> Dict:
        return {}


class ValidationError(BookingError):
    kind = "validation_error"
    status_code = 400


class NotFoundError(BookingError):
    kind = "not_found"
    status_code = 404


class PermissionDeniedError(BookingError):
    kind = "permission_denied"
    status_code = 403


class InactiveScheduleError(BookingError):
    kind = "inactive_schedule"
    status_code = 409


class CapacityError(BookingError):
    kind = "capacity_error"
    status_code = 409


class InventoryError(BookingError):
    """Seat flags and the schedule's seat counter disagree; the unit of work is rolled back."""

    kind = "inventory_error"
    status_code = 409


class SeatConflictError(BookingError):
    kind = "seat_conflict"
    status_code = 409

    def __init__(self, seats: Iterable[str], message: Optional[str] = None):
        self.seats = sorted(set(seats))
        super().__init__(message or f"Seats {', '.join(self.seats)} are already booked")

    def extra(self) -> Dict:
        return {"seats": self.seats}


class AuthenticityError(BookingError):
    kind = "authenticity_error"
    status_code = 400


class InvalidStateError(BookingError):
    kind = "invalid_state"
    status_code = 409

    def __init__(self, current_status: str, message: Optional[str] = None):
        self.current_status = current_status
        super().__init__(message or f"Booking is {current_status}")

    def extra(self) -> Dict:
        return {"current_status": self.current_status}


class ExpiredError(BookingError):
    kind = "expired"
    status_code = 410


class PaymentNotSuccessfulError(BookingError):
    kind = "payment_not_successful"
    status_code = 402


class GatewayError(BookingError):
    """Upstream payment gateway failure, with the gateway's own code and description when known."""

    kind = "gateway_error"
    status_code = 502

    def __init__(self, message: str, code: Optional[str] = None, description: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.description = description

    def extra(self) -> Dict:
        return {"code": self.code, "description": self.description}
