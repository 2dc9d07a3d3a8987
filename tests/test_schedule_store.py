from datetime import date, datetime

import pytest
from sqlalchemy import select, update

from ridebooking import schedule_store
from ridebooking.errors import InventoryError, SeatConflictError, ValidationError
from ridebooking.models import Booking, BookingPassenger, PENDING, Schedule, Seat

from conftest import booked_seats, inventory_consistent, make_route, seat_state


def test_new_schedule_has_numbered_free_layout(session_factory, schedule):
    _, _, schedule_id = schedule
    state = seat_state(session_factory, schedule_id)
    assert state["total_seats"] == 10
    assert state["available_seats"] == 10
    assert [s["seat_number"] for s in state["seat_layout"]] == [f"A{i}" for i in range(1, 11)]
    assert not any(s["is_booked"] for s in state["seat_layout"])


def test_reserve_and_release_keep_counter_in_step(session_factory, schedule):
    _, _, schedule_id = schedule
    with session_factory.begin() as db:
        schedule_store.reserve_seats(db, schedule_id, ["A1", "A2", "A3"])
    assert seat_state(session_factory, schedule_id)["available_seats"] == 7
    assert booked_seats(session_factory, schedule_id) == ["A1", "A2", "A3"]
    assert inventory_consistent(session_factory, schedule_id)

    with session_factory.begin() as db:
        assert schedule_store.release_seats(db, schedule_id, ["A2", "A9"]) == 1
    assert seat_state(session_factory, schedule_id)["available_seats"] == 8
    assert booked_seats(session_factory, schedule_id) == ["A1", "A3"]
    assert inventory_consistent(session_factory, schedule_id)


def test_conflicting_reserve_rolls_back_whole_unit(session_factory, schedule):
    _, _, schedule_id = schedule
    with session_factory.begin() as db:
        schedule_store.reserve_seats(db, schedule_id, ["A2"])

    with pytest.raises(SeatConflictError) as exc:
        with session_factory.begin() as db:
            schedule_store.reserve_seats(db, schedule_id, ["A1", "A2"])
    assert exc.value.seats == ["A2"]
    assert booked_seats(session_factory, schedule_id) == ["A2"]
    assert seat_state(session_factory, schedule_id)["available_seats"] == 9


def test_release_booking_is_conditional_on_status(session_factory, schedule):
    route_id, car_id, schedule_id = schedule
    with session_factory.begin() as db:
        schedule_store.reserve_seats(db, schedule_id, ["A4", "A5"])
        booking = Booking(user_id="u1", route_id=route_id, schedule_id=schedule_id, car_id=car_id,
                          total_amount=1000, status=PENDING, passengers=[
                              BookingPassenger(position=i, name="x", age=20, gender="male",
                                               phone="9999999999", seat_number=s)
                              for i, s in enumerate(["A4", "A5"])
                          ])
        db.add(booking)
        db.flush()
        booking_id = booking.id

    with session_factory.begin() as db:
        assert schedule_store.release_booking(db, booking_id, [PENDING], "abandoned", "failed")
    with session_factory.begin() as db:
        assert not schedule_store.release_booking(db, booking_id, [PENDING], "abandoned", "failed")

    assert seat_state(session_factory, schedule_id)["available_seats"] == 10
    with session_factory() as db:
        assert db.get(Booking, booking_id).status == "abandoned"


def test_resize_grows_and_shrinks_without_dropping_booked_seats(session_factory, schedule):
    _, _, schedule_id = schedule
    with session_factory.begin() as db:
        schedule_store.reserve_seats(db, schedule_id, ["A9"])

    with session_factory.begin() as db:
        schedule_store.resize(db, schedule_id, 4)
    state = seat_state(session_factory, schedule_id)
    assert state["total_seats"] == 4
    assert state["available_seats"] == 3
    assert [s["seat_number"] for s in state["seat_layout"]] == ["A1", "A2", "A3", "A9"]
    assert booked_seats(session_factory, schedule_id) == ["A9"]
    assert inventory_consistent(session_factory, schedule_id)

    with session_factory.begin() as db:
        schedule_store.resize(db, schedule_id, 6)
    state = seat_state(session_factory, schedule_id)
    assert [s["seat_number"] for s in state["seat_layout"]] == ["A1", "A2", "A3", "A9", "A10", "A11"]
    assert state["available_seats"] == 5
    assert inventory_consistent(session_factory, schedule_id)


def test_resize_below_booked_is_refused(session_factory, schedule):
    _, _, schedule_id = schedule
    with session_factory.begin() as db:
        schedule_store.reserve_seats(db, schedule_id, ["A1", "A2", "A3"])
    with pytest.raises(ValidationError):
        with session_factory.begin() as db:
            schedule_store.resize(db, schedule_id, 2)
    assert seat_state(session_factory, schedule_id)["total_seats"] == 10


def test_upcoming_schedule_with_booked_seats_cannot_be_deleted(session_factory, schedule):
    _, _, schedule_id = schedule
    with session_factory.begin() as db:
        schedule_store.reserve_seats(db, schedule_id, ["A1"])
    with pytest.raises(ValidationError):
        with session_factory.begin() as db:
            schedule_store.delete_schedule(db, schedule_id, datetime(2026, 10, 19, 12, 0))


def test_deleting_past_schedule_snapshots_bookings(session_factory):
    route_id, car_id, schedule_id = make_route(session_factory, on_date=date(2026, 10, 1), price=450)
    with session_factory.begin() as db:
        schedule_store.reserve_seats(db, schedule_id, ["A1"])
        booking = Booking(user_id="u1", route_id=route_id, schedule_id=schedule_id, car_id=car_id,
                          total_amount=450, status="confirmed", passengers=[
                              BookingPassenger(position=0, name="x", age=20, gender="male",
                                               phone="9999999999", seat_number="A1")
                          ])
        db.add(booking)
        db.flush()
        booking_id = booking.id

    now = datetime(2026, 10, 19, 12, 0)
    with session_factory.begin() as db:
        assert schedule_store.delete_schedule(db, schedule_id, now) == 1

    with session_factory() as db:
        booking = db.get(Booking, booking_id)
        assert booking.schedule_deleted == 1
        assert booking.schedule_deleted_at == now
        assert booking.cached_date == date(2026, 10, 1)
        assert booking.cached_start_time == "09:00"
        assert booking.cached_total_seats == 10
        assert booking.cached_available_seats == 9
        assert float(booking.cached_price_per_seat) == 450.0
        assert db.get(Schedule, schedule_id) is None
        assert db.scalars(select(Seat).where(Seat.schedule_id == schedule_id)).all() == []


def test_release_refuses_to_overflow_the_seat_counter(session_factory, schedule):
    _, _, schedule_id = schedule
    with session_factory.begin() as db:
        schedule_store.reserve_seats(db, schedule_id, ["A1"])
    # counter already says every seat is free while A1 is still flagged booked
    with session_factory.begin() as db:
        db.execute(update(Schedule).where(Schedule.id == schedule_id).values(available_seats=10))

    with pytest.raises(InventoryError) as exc:
        with session_factory.begin() as db:
            schedule_store.release_seats(db, schedule_id, ["A1"])
    assert exc.value.status_code == 409
    assert booked_seats(session_factory, schedule_id) == ["A1"]
    assert seat_state(session_factory, schedule_id)["available_seats"] == 10
