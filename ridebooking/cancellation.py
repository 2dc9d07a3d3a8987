import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from ridebooking import schedule_store
from ridebooking.errors import InvalidStateError, NotFoundError, PermissionDeniedError
from ridebooking.models import CANCELLED, CONFIRMED, PENDING, Booking, Route
from ridebooking.notifier import Notifier, notify_passengers

logger = logging.getLogger(__name__)

CANCELLABLE = (PENDING, CONFIRMED)


def cancel_booking(session_factory: sessionmaker, booking_id: int, admin_id: str,
                   notifier: Optional[Notifier] = None,
                   clock: Callable[[], datetime] = datetime.now) -> Booking:
    """
    Cancel a pending or confirmed booking on a route the caller administers and
    return its seats to the schedule. Refunds are left to the payment gateway.
    """
    with session_factory.begin() as db:
        booking = db.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        route = db.get(Route, booking.route_id)
        if route is None or route.admin_id != str(admin_id):
            raise PermissionDeniedError("You do not have permission to cancel this booking")
        if booking.status not in CANCELLABLE:
            raise InvalidStateError(booking.status, f"Booking is {booking.status} and cannot be cancelled")
        applied = schedule_store.release_booking(db, booking_id, CANCELLABLE, CANCELLED, now=clock())
        if not applied:
            current = db.get(Booking, booking_id, populate_existing=True)
            raise InvalidStateError(current.status, "Booking changed while cancelling")

    with session_factory() as db:
        booking = db.get(Booking, booking_id)
    logger.info("Booking %s cancelled by admin %s", booking_id, admin_id)
    notify_passengers(
        notifier, booking.passengers,
        lambda p: f"Hi {p.name}, booking #{booking_id} (seat {p.seat_number}) has been cancelled by the operator.",
    )
    return booking
