"""
Reservation engine.

 - validate the request against one consistent view of the schedule
 - mark the seats booked and create a 'pending' booking in the same transaction
 - ask the gateway for a payment order for the advance amount
 - if that fails, delete the booking and release the seats, then re-raise
 - arm the abandonment sweeper for the payment timeout
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from sqlalchemy import delete, update
from sqlalchemy.orm import sessionmaker

from ridebooking import schedule_store
from ridebooking.errors import (
    CapacityError, InactiveScheduleError, NotFoundError, SeatConflictError, ValidationError
)
from ridebooking.gateway import PaymentGateway
from ridebooking.models import ACTIVE, PENDING, PAYMENT_PENDING, Booking, BookingPassenger, Schedule
from ridebooking.notifier import Notifier, notify_passengers
from ridebooking.pricing import split_amount, total_amount

logger = logging.getLogger(__name__)

GENDERS = ("male", "female", "other")


def _check_passenger(idx: int, p) -> None:
    if not isinstance(p, dict):
        raise ValidationError(f"Passenger {idx + 1} must be an object")
    missing = [k for k in ("name", "age", "gender", "phone") if p.get(k) in (None, "")]
    if missing:
        raise ValidationError(f"Passenger {idx + 1} is missing {', '.join(missing)}")
    if not isinstance(p["age"], int) or isinstance(p["age"], bool) or not 0 <= p["age"] <= 120:
        raise ValidationError(f"Passenger {idx + 1} has an invalid age")
    if p["gender"] not in GENDERS:
        raise ValidationError(f"Passenger {idx + 1} gender must be one of {', '.join(GENDERS)}")


class ReservationEngine:
    def __init__(self, session_factory: sessionmaker, gateway: PaymentGateway,
                 notifier: Optional[Notifier] = None, sweeper=None,
                 currency: str = "INR", payment_timeout_minutes: int = 15, advance_percent: int = 40,
                 clock: Callable[[], datetime] = datetime.now):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.sweeper = sweeper
        self.currency = currency
        self.payment_timeout = timedelta(minutes=payment_timeout_minutes)
        self.advance_percent = advance_percent
        self.clock = clock

    def reserve(self, schedule_id: int, selected_seats: Sequence[str], passengers: List[dict],
                car_id: int, route_id: int, user_id: str) -> Booking:
        """
        Reserve ``selected_seats`` for ``passengers`` (paired by position) and open a
        payment order for the advance. Returns the pending booking.
        """
        seats = [str(s).strip() for s in selected_seats or []]
        passengers = list(passengers or [])
        if not passengers or len(passengers) != len(seats):
            raise ValidationError("Number of passengers must match number of selected seats")
        for idx, p in enumerate(passengers):
            _check_passenger(idx, p)
        if len(set(seats)) != len(seats):
            raise ValidationError("Selected seats must be distinct")
        if not user_id:
            raise ValidationError("user_id is required")

        now = self.clock()
        with self.session_factory.begin() as db:
            schedule = db.get(Schedule, schedule_id)
            if schedule is None:
                raise NotFoundError("Schedule not found")
            if schedule.status != ACTIVE:
                raise InactiveScheduleError("This schedule is not active for booking")
            if schedule.route_id != route_id:
                raise ValidationError("Schedule does not belong to the given route")
            if schedule.available_seats < len(passengers):
                raise CapacityError("Not enough seats available")

            booked, unknown = schedule_store.classify_seats(db, schedule_id, seats)
            if unknown:
                raise ValidationError(f"Unknown seats: {', '.join(unknown)}")
            if booked:
                raise SeatConflictError(booked)

            schedule_store.reserve_seats(db, schedule_id, seats)

            total = total_amount(len(passengers), schedule.price_per_seat)
            advance, remaining = split_amount(total, self.advance_percent)
            booking = Booking(
                user_id=str(user_id),
                route_id=route_id,
                schedule_id=schedule_id,
                car_id=car_id,
                total_amount=total,
                advance_amount=advance,
                remaining_amount=remaining,
                amount_paid=0,
                status=PENDING,
                payment_status=PAYMENT_PENDING,
                payment_timeout=now + self.payment_timeout,
                created_at=now,
                updated_at=now,
                passengers=[
                    BookingPassenger(
                        position=idx,
                        name=p["name"],
                        age=p["age"],
                        gender=p["gender"],
                        phone=p["phone"],
                        seat_number=seat,
                    )
                    for idx, (p, seat) in enumerate(zip(passengers, seats))
                ],
            )
            db.add(booking)
            db.flush()
            booking_id = booking.id
            payment_timeout = booking.payment_timeout

        logger.info("Booking %s reserved seats %s on schedule %s", booking_id, seats, schedule_id)

        try:
            order_id = self.gateway.create_intent(
                advance, self.currency, reference=f"booking_{booking_id}",
                notes={"booking_id": str(booking_id)},
            )
            with self.session_factory.begin() as db:
                db.execute(
                    update(Booking)
                    .where(Booking.id == booking_id)
                    .values(gateway_order_id=order_id)
                    .execution_options(synchronize_session=False)
                )
        except Exception:
            logger.warning("Payment order for booking %s failed, rolling back reservation", booking_id)
            self._compensate(booking_id, schedule_id, seats)
            raise

        if self.sweeper is not None:
            self.sweeper.arm(booking_id, payment_timeout)

        booking = self.get(booking_id)
        notify_passengers(
            self.notifier, booking.passengers,
            lambda p: (
                f"Hi {p.name}, seat {p.seat_number} is held for booking #{booking_id}. "
                f"Pay the advance of {booking.advance_amount} {self.currency} before "
                f"{payment_timeout:%H:%M} to confirm."
            ),
        )
        return booking

    def _compensate(self, booking_id: int, schedule_id: int, seats: Sequence[str]) -> None:
        # only undo a hold that is still ours; a cancelled or abandoned booking already gave its seats back
        with self.session_factory.begin() as db:
            deleted = db.execute(
                delete(Booking)
                .where(Booking.id == booking_id, Booking.status == PENDING)
                .execution_options(synchronize_session=False)
            ).rowcount
            if deleted != 1:
                logger.warning("Booking %s left 'pending' before rollback, seats not released", booking_id)
                return
            db.execute(
                delete(BookingPassenger)
                .where(BookingPassenger.booking_id == booking_id)
                .execution_options(synchronize_session=False)
            )
            schedule_store.release_seats(db, schedule_id, seats)

    def get(self, booking_id: int) -> Booking:
        with self.session_factory() as db:
            booking = db.get(Booking, booking_id)
            if booking is None:
                raise NotFoundError("Booking not found")
            return booking
