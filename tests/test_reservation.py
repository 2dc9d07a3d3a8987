import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from ridebooking.cancellation import cancel_booking
from ridebooking.errors import (
    CapacityError, GatewayError, InactiveScheduleError, NotFoundError, SeatConflictError, ValidationError
)
from ridebooking.models import Booking, BookingPassenger, Schedule
from ridebooking.reservation import ReservationEngine

from conftest import ADMIN_ID, RecordingNotifier, booked_seats, inventory_consistent, passengers, seat_state


def _reserve(reservations, schedule, seats, user_id="user-1", n=None):
    route_id, car_id, schedule_id = schedule
    return reservations.reserve(schedule_id, seats, passengers(len(seats) if n is None else n),
                                car_id, route_id, user_id)


def _booking_count(session_factory):
    with session_factory() as db:
        return db.scalar(select(func.count(Booking.id)))


def test_reserve_holds_seats_and_opens_payment_order(reservations, session_factory, schedule, gateway, clock):
    booking = _reserve(reservations, schedule, ["A1", "A2", "A3"])

    state = seat_state(session_factory, schedule[2])
    assert state["available_seats"] == 7
    assert booked_seats(session_factory, schedule[2]) == ["A1", "A2", "A3"]

    assert booking.status == "pending"
    assert booking.payment_status == "pending"
    assert booking.selected_seats == ["A1", "A2", "A3"]
    assert booking.total_amount == Decimal("1500.00")
    assert booking.advance_amount == Decimal("600.00")
    assert booking.remaining_amount == Decimal("900.00")
    assert booking.payment_timeout == clock.now + timedelta(minutes=15)

    order = gateway.orders[booking.gateway_order_id]
    assert order["amount"] == Decimal("600.00")
    assert order["notes"] == {"booking_id": str(booking.id)}


def test_overlapping_reservation_conflicts_without_mutation(reservations, session_factory, schedule):
    _reserve(reservations, schedule, ["A1", "A2", "A3"])
    with pytest.raises(SeatConflictError) as exc:
        _reserve(reservations, schedule, ["A2", "A3"], user_id="user-2")
    assert exc.value.seats == ["A2", "A3"]
    assert seat_state(session_factory, schedule[2])["available_seats"] == 7
    assert _booking_count(session_factory) == 1


def test_passenger_seat_mismatch_is_validation_error(reservations, session_factory, schedule):
    with pytest.raises(ValidationError):
        _reserve(reservations, schedule, ["A1", "A2"], n=1)
    with pytest.raises(ValidationError):
        _reserve(reservations, schedule, ["A1", "A1"])
    with pytest.raises(ValidationError):
        _reserve(reservations, schedule, [])
    assert seat_state(session_factory, schedule[2])["available_seats"] == 10
    assert _booking_count(session_factory) == 0


def test_unknown_schedule_and_seat(reservations, schedule):
    route_id, car_id, schedule_id = schedule
    with pytest.raises(NotFoundError):
        reservations.reserve(9999, ["A1"], passengers(1), car_id, route_id, "user-1")
    with pytest.raises(ValidationError):
        _reserve(reservations, schedule, ["Z1"])


def test_inactive_schedule_rejected(reservations, session_factory, schedule):
    with session_factory.begin() as db:
        db.execute(update(Schedule).where(Schedule.id == schedule[2]).values(status="inactive"))
    with pytest.raises(InactiveScheduleError):
        _reserve(reservations, schedule, ["A1"])


def test_not_enough_seats(reservations, session_factory, schedule):
    _reserve(reservations, schedule, [f"A{i}" for i in range(1, 9)])
    with pytest.raises(CapacityError):
        _reserve(reservations, schedule, ["A9", "A10", "A1"])
    assert seat_state(session_factory, schedule[2])["available_seats"] == 2


def test_gateway_failure_rolls_back_reservation(reservations, session_factory, schedule, gateway, sweeper):
    before = seat_state(session_factory, schedule[2])
    gateway.fail_create = True
    with pytest.raises(GatewayError) as exc:
        _reserve(reservations, schedule, ["A4", "A5"])
    assert exc.value.code == "BAD_REQUEST_ERROR"
    assert seat_state(session_factory, schedule[2]) == before
    assert _booking_count(session_factory) == 0
    with session_factory() as db:
        assert db.scalar(select(func.count(BookingPassenger.id))) == 0
    assert sweeper.next_wakeup() is None


def test_reservation_arms_sweeper(reservations, schedule, sweeper):
    booking = _reserve(reservations, schedule, ["A1"])
    assert sweeper.next_wakeup() == booking.payment_timeout


def test_notifies_each_passenger(reservations, schedule, notifier):
    _reserve(reservations, schedule, ["A1", "A2"])
    assert [contact for contact, _ in notifier.sent] == ["9876543200", "9876543201"]
    assert "A1" in notifier.sent[0][1]


def test_notifier_failure_does_not_fail_reservation(session_factory, gateway, schedule, clock):
    engine = ReservationEngine(session_factory, gateway, notifier=RecordingNotifier(fail=True), clock=clock)
    booking = engine.reserve(schedule[2], ["A1"], passengers(1), schedule[1], schedule[0], "user-1")
    assert booking.status == "pending"


def test_concurrent_reservations_have_one_winner_per_seat(session_factory, gateway, schedule, clock):
    engine = ReservationEngine(session_factory, gateway, clock=clock)
    route_id, car_id, schedule_id = schedule
    attempts = [["A1", "A2"], ["A2", "A3"], ["A3", "A4"], ["A2", "A5"]]
    barrier = threading.Barrier(len(attempts))
    outcomes = []
    lock = threading.Lock()

    def worker(seats):
        barrier.wait()
        try:
            booking = engine.reserve(schedule_id, seats, passengers(len(seats)), car_id, route_id, "user")
            result = ("ok", tuple(booking.selected_seats))
        except SeatConflictError:
            result = ("conflict", tuple(seats))
        except Exception as e:  # surfaced in the assertion below
            result = ("error", repr(e))
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=(s,)) for s in attempts]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not [o for o in outcomes if o[0] == "error"], outcomes
    won = [seat for kind, seats in outcomes if kind == "ok" for seat in seats]
    assert len(won) == len(set(won))
    assert len([o for o in outcomes if o[0] == "ok"]) >= 1

    state = seat_state(session_factory, schedule_id)
    assert sorted(booked_seats(session_factory, schedule_id)) == sorted(won)
    assert state["available_seats"] == 10 - len(won)


def test_failed_order_leaves_seats_alone_once_booking_moved_on(reservations, session_factory, schedule, gateway, clock):
    route_id, car_id, schedule_id = schedule
    seen = {}

    def cancel_then_rebook(notes):
        seen["first"] = int(notes["booking_id"])
        cancel_booking(session_factory, seen["first"], ADMIN_ID, clock=clock)
        gateway.fail_create = False
        seen["second"] = _reserve(reservations, schedule, ["A1"], user_id="user-2")

    gateway.fail_create = True
    gateway.on_create_intent = cancel_then_rebook
    with pytest.raises(GatewayError):
        _reserve(reservations, schedule, ["A1", "A2"])

    assert reservations.get(seen["first"]).status == "cancelled"
    assert seen["second"].status == "pending"
    assert booked_seats(session_factory, schedule_id) == ["A1"]
    assert seat_state(session_factory, schedule_id)["available_seats"] == 9
    assert inventory_consistent(session_factory, schedule_id)


@pytest.mark.parametrize("passenger", [
    {"age": 30, "gender": "male", "phone": "9876543200"},
    {"name": "Asha", "age": "thirty", "gender": "female", "phone": "9876543200"},
    {"name": "Asha", "age": 30, "gender": "unknown", "phone": "9876543200"},
    {"name": "Asha", "age": 30, "gender": "female"},
    "Asha",
])
def test_malformed_passenger_is_validation_error(reservations, session_factory, schedule, passenger):
    route_id, car_id, schedule_id = schedule
    with pytest.raises(ValidationError):
        reservations.reserve(schedule_id, ["A1"], [passenger], car_id, route_id, "user-1")
    assert seat_state(session_factory, schedule_id)["available_seats"] == 10
    assert _booking_count(session_factory) == 0
