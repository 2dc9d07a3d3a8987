import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from ridebooking import schedule_store
from ridebooking.errors import (
    AuthenticityError, ExpiredError, InvalidStateError, NotFoundError,
    PaymentNotSuccessfulError, ValidationError
)
from ridebooking.gateway import SUCCESSFUL_PAYMENT_STATUSES, PaymentGateway, verify_signature
from ridebooking.models import (
    ABANDONED, CONFIRMED, EXPIRED, PARTIALLY_PAID, PAYMENT_COMPLETED, PAYMENT_FAILED, PENDING, Booking
)
from ridebooking.notifier import Notifier, notify_passengers
from ridebooking.pricing import to_money

logger = logging.getLogger(__name__)


class PaymentReconciler:
    """
    Turns gateway callbacks into booking state.

    confirm() authenticates the checkout callback, checks the booking is still
    payable and the gateway reports the payment as successful, then moves the
    booking to 'confirmed' with a conditional update. fail_payment() handles the
    gateway's failure callback by abandoning the booking and freeing its seats.
    """

    def __init__(self, session_factory: sessionmaker, gateway: PaymentGateway,
                 notifier: Optional[Notifier] = None, currency: str = "INR",
                 clock: Callable[[], datetime] = datetime.now):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.currency = currency
        self.clock = clock

    # ---------------------------
    # Booking resolution
    # ---------------------------
    def _resolve_booking_id(self, order_id: str, booking_id: Optional[int]) -> int:
        if booking_id is not None:
            with self.session_factory() as db:
                stored_order = db.execute(
                    select(Booking.gateway_order_id).where(Booking.id == booking_id)
                ).first()
            if stored_order is None:
                raise NotFoundError("Booking not found")
            if stored_order[0] != order_id:
                raise ValidationError("Order does not belong to this booking")
            return booking_id

        notes = self.gateway.fetch_order(order_id).get("notes") or {}
        if notes.get("booking_id"):
            try:
                return int(notes["booking_id"])
            except (TypeError, ValueError):
                raise ValidationError("Payment order carries an invalid booking id")

        with self.session_factory() as db:
            found = db.execute(select(Booking.id).where(Booking.gateway_order_id == order_id)).scalar()
        if found is None:
            raise NotFoundError("No booking is linked to this payment order")
        return found

    def _load(self, db: Session, booking_id: int) -> Booking:
        booking = db.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        return booking

    def _expire(self, booking_id: int) -> None:
        with self.session_factory.begin() as db:
            schedule_store.release_booking(
                db, booking_id, [PENDING], EXPIRED, payment_status=PAYMENT_FAILED, now=self.clock()
            )

    def _check_payable(self, booking: Booking, payment_id: str, now: datetime) -> Optional[Booking]:
        """Return the booking when it is already confirmed by this payment; raise when not payable."""
        if booking.status == CONFIRMED and booking.gateway_payment_id == payment_id:
            return booking
        if booking.status in (ABANDONED, EXPIRED):
            raise ExpiredError("Payment window for this booking has expired")
        if booking.status != PENDING:
            raise InvalidStateError(booking.status, f"Booking is {booking.status} and cannot be paid")
        if booking.payment_timeout is not None and now > booking.payment_timeout:
            self._expire(booking.id)
            raise ExpiredError("Payment window for this booking has expired")
        return None

    # ---------------------------
    # Callbacks
    # ---------------------------
    def confirm(self, order_id: str, payment_id: str, signature: str,
                booking_id: Optional[int] = None) -> Booking:
        if not order_id or not payment_id:
            raise ValidationError("order_id and payment_id are required")
        if not verify_signature(order_id, payment_id, signature, self.gateway.signature_secret):
            logger.warning("Rejected payment callback with bad signature for order %s", order_id)
            raise AuthenticityError("Payment signature verification failed")

        booking_id = self._resolve_booking_id(order_id, booking_id)
        with self.session_factory() as db:
            booking = self._load(db, booking_id)
        if booking.gateway_order_id and booking.gateway_order_id != order_id:
            raise ValidationError("Order does not belong to this booking")
        done = self._check_payable(booking, payment_id, self.clock())
        if done is not None:
            logger.info("Booking %s already confirmed by payment %s", booking_id, payment_id)
            return done

        payment = self.gateway.fetch_payment(payment_id)
        if payment.get("status") not in SUCCESSFUL_PAYMENT_STATUSES:
            raise PaymentNotSuccessfulError(f"Payment status is {payment.get('status')}")
        if payment.get("order_id") and payment["order_id"] != order_id:
            raise ValidationError("Payment does not belong to this order")

        now = self.clock()
        paid = to_money(payment.get("amount") or booking.advance_amount)
        remaining = max(to_money(booking.total_amount) - paid, Decimal("0.00"))
        with self.session_factory.begin() as db:
            result = db.execute(
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    Booking.status == PENDING,
                    Booking.payment_timeout >= now,
                )
                .values(
                    status=CONFIRMED,
                    payment_status=PAYMENT_COMPLETED if remaining == 0 else PARTIALLY_PAID,
                    amount_paid=paid,
                    remaining_amount=remaining,
                    gateway_payment_id=payment_id,
                    gateway_signature=signature,
                    payment_date=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1

        if not applied:
            # lost a race with another confirmation, the sweeper or a cancellation
            with self.session_factory() as db:
                booking = self._load(db, booking_id)
            done = self._check_payable(booking, payment_id, now)
            if done is not None:
                return done
            raise InvalidStateError(booking.status, "Booking changed while confirming payment")

        with self.session_factory() as db:
            booking = self._load(db, booking_id)
        logger.info("Booking %s confirmed, paid %s %s", booking_id, paid, self.currency)
        notify_passengers(
            self.notifier, booking.passengers,
            lambda p: (
                f"Hi {p.name}, booking #{booking_id} is confirmed. Seat {p.seat_number}. "
                f"Paid {paid} {self.currency}, {remaining} {self.currency} due at boarding."
            ),
        )
        return booking

    def fail_payment(self, order_id: str, booking_id: Optional[int] = None,
                     reason: Optional[str] = None) -> Booking:
        booking_id = self._resolve_booking_id(order_id, booking_id)
        with self.session_factory.begin() as db:
            released = schedule_store.release_booking(
                db, booking_id, [PENDING], ABANDONED, payment_status=PAYMENT_FAILED, now=self.clock()
            )
        if released:
            logger.info("Payment failed for booking %s (%s), seats released", booking_id, reason or "no reason")
        with self.session_factory() as db:
            return self._load(db, booking_id)
