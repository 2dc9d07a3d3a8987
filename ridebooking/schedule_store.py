"""
Schedule seat inventory.

Every function here takes an open Session and must run inside the caller's
transaction; a raised error is expected to roll the whole unit back. Seat
flags and the schedule's available_seats counter are only ever changed with
conditional UPDATE statements whose row counts are checked, so two writers
racing for the same seat cannot both succeed.
"""

import logging
from datetime import date, datetime, time
from typing import Dict, Iterable, List, Sequence, Tuple

from sqlalchemy import select, update, delete, func
from sqlalchemy.orm import Session

from ridebooking.errors import (
    CapacityError, InventoryError, NotFoundError, SeatConflictError, ValidationError
)
from ridebooking.models import ACTIVE, Booking, BookingPassenger, Schedule, Seat

logger = logging.getLogger(__name__)

SEAT_PREFIX = "A"


# ---------------------------
# Reads
# ---------------------------
def parse_start_time(value: str) -> time:
    try:
        return datetime.strptime(value, "%H:%M").time()
    except (TypeError, ValueError):
        raise ValidationError("start_time must be HH:MM")


def departure_at(schedule_date: date, start_time: str) -> datetime:
    return datetime.combine(schedule_date, parse_start_time(start_time))


def count_seats(db: Session, schedule_id: int) -> Dict[str, int]:
    total = db.query(func.count(Seat.id)).filter(Seat.schedule_id == schedule_id).scalar() or 0
    booked = db.query(func.count(Seat.id)).filter(Seat.schedule_id == schedule_id, Seat.is_booked == 1).scalar() or 0
    return {"total": total, "booked": booked, "available": total - booked}


def get_schedule(db: Session, schedule_id: int) -> Schedule:
    schedule = db.get(Schedule, schedule_id)
    if schedule is None:
        raise NotFoundError("Schedule not found")
    return schedule


def get_available_seats(db: Session, schedule_id: int) -> Dict:
    schedule = get_schedule(db, schedule_id)
    return {
        "schedule_id": schedule.id,
        "date": schedule.date,
        "start_time": schedule.start_time,
        "total_seats": schedule.total_seats,
        "available_seats": schedule.available_seats,
        "price_per_seat": schedule.price_per_seat,
        "seat_layout": [{"seat_number": s.seat_number, "is_booked": bool(s.is_booked)} for s in schedule.seats],
    }


def classify_seats(db: Session, schedule_id: int, seat_numbers: Sequence[str],
                   for_update: bool = False) -> Tuple[List[str], List[str]]:
    """Return (booked, unknown) among ``seat_numbers`` for the schedule."""
    q = select(Seat.seat_number, Seat.is_booked).where(
        Seat.schedule_id == schedule_id, Seat.seat_number.in_(list(seat_numbers))
    )
    if for_update:
        q = q.with_for_update()
    rows = {number: flag for number, flag in db.execute(q)}
    booked = [s for s in seat_numbers if rows.get(s) == 1]
    unknown = [s for s in seat_numbers if s not in rows]
    return booked, unknown


# ---------------------------
# Layout construction
# ---------------------------
def seat_number_for(index: int) -> str:
    return f"{SEAT_PREFIX}{index}"


def _seat_index(seat_number: str) -> int:
    try:
        return int(seat_number[len(SEAT_PREFIX):])
    except ValueError:
        return 0


def build_seat_layout(total_seats: int, first_index: int = 1, first_position: int = 0) -> List[Seat]:
    return [
        Seat(position=first_position + i, seat_number=seat_number_for(first_index + i), is_booked=0)
        for i in range(total_seats)
    ]


def new_schedule(route_id: int, schedule_date: date, start_time: str, total_seats: int, price_per_seat) -> Schedule:
    if total_seats < 1:
        raise ValidationError("total_seats must be at least 1")
    parse_start_time(start_time)
    return Schedule(
        route_id=route_id,
        date=schedule_date,
        start_time=start_time,
        total_seats=total_seats,
        available_seats=total_seats,
        price_per_seat=price_per_seat,
        status=ACTIVE,
        version=0,
        seats=build_seat_layout(total_seats),
    )


# ---------------------------
# Atomic inventory operations
# ---------------------------
def reserve_seats(db: Session, schedule_id: int, seat_numbers: Sequence[str]) -> None:
    """
    Mark exactly ``seat_numbers`` booked and take them out of available_seats.
    Raises SeatConflictError / CapacityError when the conditional update does not apply.
    """
    seat_numbers = list(seat_numbers)
    n = len(seat_numbers)
    booked, _ = classify_seats(db, schedule_id, seat_numbers, for_update=True)
    if booked:
        raise SeatConflictError(booked)

    flipped = db.execute(
        update(Seat)
        .where(Seat.schedule_id == schedule_id, Seat.seat_number.in_(seat_numbers), Seat.is_booked == 0)
        .values(is_booked=1)
        .execution_options(synchronize_session=False)
    ).rowcount
    if flipped != n:
        logger.info("Seat update on schedule %s flipped %d of %d seats", schedule_id, flipped, n)
        raise SeatConflictError(seat_numbers, "Seats were booked by another reservation, please pick again")

    result = db.execute(
        update(Schedule)
        .where(Schedule.id == schedule_id, Schedule.status == ACTIVE, Schedule.available_seats >= n)
        .values(available_seats=Schedule.available_seats - n, version=Schedule.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise CapacityError("Not enough seats available")


def release_seats(db: Session, schedule_id: int, seat_numbers: Iterable[str]) -> int:
    """Return booked ``seat_numbers`` to the pool; returns how many were released."""
    seat_numbers = list(seat_numbers)
    if not seat_numbers:
        return 0
    flipped = db.execute(
        update(Seat)
        .where(Seat.schedule_id == schedule_id, Seat.seat_number.in_(seat_numbers), Seat.is_booked == 1)
        .values(is_booked=0)
        .execution_options(synchronize_session=False)
    ).rowcount
    if not flipped:
        return 0
    result = db.execute(
        update(Schedule)
        .where(Schedule.id == schedule_id, Schedule.available_seats + flipped <= Schedule.total_seats)
        .values(available_seats=Schedule.available_seats + flipped, version=Schedule.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InventoryError(f"Seat counter for schedule {schedule_id} would exceed its capacity")
    return flipped


def release_booking(db: Session, booking_id: int, from_statuses: Sequence[str], to_status: str,
                    payment_status: str = None, now: datetime = None) -> bool:
    """
    Move a booking out of one of ``from_statuses`` and release its seats, in the
    caller's transaction. Returns False when the booking was no longer in any of
    those statuses, in which case nothing changes.
    """
    values = {"status": to_status, "updated_at": now or datetime.now()}
    if payment_status:
        values["payment_status"] = payment_status
    result = db.execute(
        update(Booking)
        .where(Booking.id == booking_id, Booking.status.in_(list(from_statuses)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    schedule_id = db.execute(select(Booking.schedule_id).where(Booking.id == booking_id)).scalar_one()
    seats = db.scalars(
        select(BookingPassenger.seat_number).where(BookingPassenger.booking_id == booking_id)
    ).all()
    released = release_seats(db, schedule_id, seats)
    logger.info("Booking %s -> %s, released %d seat(s) on schedule %s", booking_id, to_status, released, schedule_id)
    return True


# ---------------------------
# Administrative edits
# ---------------------------
def resize(db: Session, schedule_id: int, new_total: int) -> Schedule:
    """Change a schedule's capacity; booked seats are never removed."""
    schedule = get_schedule(db, schedule_id)
    if new_total < 1:
        raise ValidationError("total_seats must be at least 1")
    seats = list(schedule.seats)
    booked = sum(1 for s in seats if s.is_booked)
    if new_total < booked:
        raise ValidationError("Cannot reduce total seats below number of booked seats")

    result = db.execute(
        update(Schedule)
        .where(Schedule.id == schedule_id, Schedule.version == schedule.version)
        .values(total_seats=new_total, available_seats=new_total - booked, version=Schedule.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise SeatConflictError([], "Schedule inventory changed concurrently, retry the update")

    if new_total > len(seats):
        next_index = max((_seat_index(s.seat_number) for s in seats), default=0) + 1
        next_position = max((s.position for s in seats), default=-1) + 1
        added = build_seat_layout(new_total - len(seats), next_index, next_position)
        for seat in added:
            seat.schedule_id = schedule_id
        db.add_all(added)
    elif new_total < len(seats):
        surplus = len(seats) - new_total
        drop = [s.id for s in reversed(seats) if not s.is_booked][:surplus]
        removed = db.execute(
            delete(Seat)
            .where(Seat.id.in_(drop), Seat.is_booked == 0)
            .execution_options(synchronize_session=False)
        ).rowcount
        if removed != surplus:
            raise SeatConflictError([], "Schedule inventory changed concurrently, retry the update")

    db.flush()
    db.expire(schedule)
    schedule.seats  # reload inside the unit of work
    return schedule


def delete_schedule(db: Session, schedule_id: int, now: datetime) -> int:
    """
    Delete a schedule. Bookings that reference it keep a snapshot of its
    date, time, seats and price. Returns the number of bookings snapshotted.
    """
    schedule = get_schedule(db, schedule_id)
    booked = count_seats(db, schedule_id)["booked"]
    if booked and departure_at(schedule.date, schedule.start_time) >= now:
        raise ValidationError("Cannot delete schedule with booked seats")

    bookings = db.scalars(select(Booking).where(Booking.schedule_id == schedule_id)).all()
    for b in bookings:
        b.cached_date = schedule.date
        b.cached_start_time = schedule.start_time
        b.cached_total_seats = schedule.total_seats
        b.cached_available_seats = schedule.available_seats
        b.cached_price_per_seat = schedule.price_per_seat
        b.schedule_deleted = 1
        b.schedule_deleted_at = now
    db.delete(schedule)
    db.flush()
    logger.info("Schedule %s deleted, %d booking(s) snapshotted", schedule_id, len(bookings))
    return len(bookings)
