"""
Administration of cars, routes and schedules, plus booking read models.

These functions run on a Session the caller has opened; write operations are
meant to be wrapped in ``with db.begin():`` by the caller.
"""

import logging
from datetime import date, datetime
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ridebooking import schedule_store
from ridebooking.errors import NotFoundError, PermissionDeniedError, ValidationError
from ridebooking.models import ACTIVE, Booking, Car, Route, RouteWaypoint, Schedule
from ridebooking.pricing import to_money

logger = logging.getLogger(__name__)


def _owned_route(db: Session, route_id: int, admin_id: str) -> Route:
    route = db.get(Route, route_id)
    if route is None:
        raise NotFoundError("Route not found")
    if route.admin_id != str(admin_id):
        raise PermissionDeniedError("Route not found or you are not authorized")
    return route


# ---------------------------
# Cars & routes
# ---------------------------
def create_car(db: Session, admin_id: str, make: str, model: str, registration_number: str, seater: int) -> Car:
    car = Car(admin_id=str(admin_id), make=make, model=model,
              registration_number=registration_number, seater=seater, status=ACTIVE)
    db.add(car)
    db.flush()
    return car


def create_route(db: Session, admin_id: str, name: str, car_id: int,
                 start: Dict, end: Dict, waypoints: Optional[List[Dict]] = None) -> Route:
    car = db.get(Car, car_id)
    if car is None:
        raise NotFoundError("Car not found")
    if car.admin_id != str(admin_id):
        raise PermissionDeniedError("Car not found or you are not authorized")
    route = Route(
        name=name,
        car_id=car_id,
        admin_id=str(admin_id),
        start_address=start["address"], start_lat=start.get("lat"), start_lng=start.get("lng"),
        end_address=end["address"], end_lat=end.get("lat"), end_lng=end.get("lng"),
        status=ACTIVE,
        waypoints=[
            RouteWaypoint(position=i, address=w["address"], lat=w.get("lat"), lng=w.get("lng"))
            for i, w in enumerate(waypoints or [])
        ],
    )
    db.add(route)
    db.flush()
    return route


# ---------------------------
# Schedules
# ---------------------------
def create_schedules(db: Session, admin_id: str, route_id: int, dates: List[Dict],
                     total_seats: int, price_per_seat) -> List[Schedule]:
    """
    Create one schedule per {date, start_time} entry, each with a fresh A1..An layout.
    A route gets at most one schedule per date.
    """
    route = _owned_route(db, route_id, admin_id)
    if route.car and total_seats > route.car.seater:
        raise ValidationError(f"total_seats exceeds the car's {route.car.seater} seats")
    if not dates:
        raise ValidationError("Please provide at least one date with a start_time")

    wanted = [d["date"] for d in dates]
    if len(set(wanted)) != len(wanted):
        raise ValidationError("Dates must be distinct")
    existing = db.scalars(
        select(Schedule.date).where(Schedule.route_id == route_id, Schedule.date.in_(wanted))
    ).all()
    if existing:
        raise ValidationError(f"A schedule already exists for date {min(existing).isoformat()}")

    schedules = [
        schedule_store.new_schedule(route_id, d["date"], d["start_time"], total_seats, to_money(price_per_seat))
        for d in dates
    ]
    db.add_all(schedules)
    db.flush()
    logger.info("Created %d schedule(s) for route %s", len(schedules), route_id)
    return schedules


def list_route_schedules(db: Session, route_id: int, on_date: Optional[date] = None) -> List[Schedule]:
    q = select(Schedule).where(Schedule.route_id == route_id)
    if on_date is not None:
        q = q.where(Schedule.date == on_date)
    return list(db.scalars(q.order_by(Schedule.date, Schedule.start_time)).unique().all())


def update_schedule(db: Session, admin_id: str, schedule_id: int, changes: Dict) -> Schedule:
    schedule = schedule_store.get_schedule(db, schedule_id)
    _owned_route(db, schedule.route_id, admin_id)
    if changes.get("start_time") is not None:
        schedule_store.parse_start_time(changes["start_time"])
        schedule.start_time = changes["start_time"]
    if changes.get("price_per_seat") is not None:
        schedule.price_per_seat = to_money(changes["price_per_seat"])
    if changes.get("status") is not None:
        schedule.status = changes["status"]
    db.flush()
    if changes.get("total_seats") is not None and changes["total_seats"] != schedule.total_seats:
        schedule = schedule_store.resize(db, schedule_id, changes["total_seats"])
    return schedule


def delete_schedule(db: Session, admin_id: str, schedule_id: int, now: Optional[datetime] = None) -> int:
    schedule = schedule_store.get_schedule(db, schedule_id)
    _owned_route(db, schedule.route_id, admin_id)
    return schedule_store.delete_schedule(db, schedule_id, now or datetime.now())


# ---------------------------
# Booking read models
# ---------------------------
def user_bookings(db: Session, user_id: str) -> List[Booking]:
    return list(db.scalars(
        select(Booking).where(Booking.user_id == str(user_id)).order_by(Booking.created_at.desc())
    ).all())


def admin_bookings(db: Session, admin_id: str) -> List[Booking]:
    route_ids = select(Route.id).where(Route.admin_id == str(admin_id))
    return list(db.scalars(
        select(Booking).where(Booking.route_id.in_(route_ids)).order_by(Booking.created_at.desc())
    ).all())


def booking_detail(db: Session, booking_id: int, user_id: str) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found")
    if booking.user_id == str(user_id):
        return booking
    route = db.get(Route, booking.route_id)
    if route is None or route.admin_id != str(user_id):
        raise PermissionDeniedError("You do not have permission to view this booking")
    return booking
