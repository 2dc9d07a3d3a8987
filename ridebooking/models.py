from datetime import datetime

from sqlalchemy import (
    Integer, String, Date, DateTime, DECIMAL, Float, ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import mapped_column, relationship

from ridebooking.database import Base

# ---------------------------
# Status vocabularies
# ---------------------------
ACTIVE = "active"
INACTIVE = "inactive"

PENDING = "pending"
CONFIRMED = "confirmed"
CANCELLED = "cancelled"
ABANDONED = "abandoned"
EXPIRED = "expired"
BOOKING_STATUSES = (PENDING, CONFIRMED, CANCELLED, ABANDONED, EXPIRED)

PAYMENT_PENDING = "pending"
PARTIALLY_PAID = "partially_paid"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"


class Car(Base):
    __tablename__ = "cars"
    id = mapped_column(Integer, primary_key=True)
    admin_id = mapped_column(String(64), nullable=False, index=True)
    make = mapped_column(String(50), nullable=False)
    model = mapped_column(String(50), nullable=False)
    registration_number = mapped_column(String(20), nullable=False)
    seater = mapped_column(Integer, nullable=False)
    status = mapped_column(String(10), nullable=False, default=ACTIVE)
    routes = relationship("Route", back_populates="car")


class Route(Base):
    __tablename__ = "routes"
    id = mapped_column(Integer, primary_key=True)
    name = mapped_column(String(100), nullable=False)
    car_id = mapped_column(Integer, ForeignKey("cars.id"), nullable=False)
    admin_id = mapped_column(String(64), nullable=False, index=True)
    start_address = mapped_column(String(255), nullable=False)
    start_lat = mapped_column(Float, nullable=True)
    start_lng = mapped_column(Float, nullable=True)
    end_address = mapped_column(String(255), nullable=False)
    end_lat = mapped_column(Float, nullable=True)
    end_lng = mapped_column(Float, nullable=True)
    status = mapped_column(String(10), nullable=False, default=ACTIVE)
    created_at = mapped_column(DateTime, default=datetime.now)
    car = relationship("Car", back_populates="routes", lazy="joined")
    waypoints = relationship(
        "RouteWaypoint", back_populates="route", lazy="selectin",
        order_by="RouteWaypoint.position", cascade="all, delete-orphan"
    )
    schedules = relationship("Schedule", back_populates="route", cascade="all, delete-orphan")

    def stops(self):
        """Ordered (address, lat, lng) tuples from start through waypoints to end."""
        out = [(self.start_address, self.start_lat, self.start_lng)]
        out.extend((w.address, w.lat, w.lng) for w in self.waypoints)
        out.append((self.end_address, self.end_lat, self.end_lng))
        return out


class RouteWaypoint(Base):
    __tablename__ = "route_waypoints"
    id = mapped_column(Integer, primary_key=True)
    route_id = mapped_column(Integer, ForeignKey("routes.id", ondelete="CASCADE"), nullable=False)
    position = mapped_column(Integer, nullable=False)
    address = mapped_column(String(255), nullable=False)
    lat = mapped_column(Float, nullable=True)
    lng = mapped_column(Float, nullable=True)
    route = relationship("Route", back_populates="waypoints")


class Schedule(Base):
    __tablename__ = "schedules"
    __table_args__ = (Index("ix_schedules_route_date", "route_id", "date"),)
    id = mapped_column(Integer, primary_key=True)
    route_id = mapped_column(Integer, ForeignKey("routes.id"), nullable=False)
    date = mapped_column(Date, nullable=False)
    start_time = mapped_column(String(5), nullable=False)  # HH:MM
    total_seats = mapped_column(Integer, nullable=False)
    available_seats = mapped_column(Integer, nullable=False)
    price_per_seat = mapped_column(DECIMAL(10, 2), nullable=False)
    status = mapped_column(String(10), nullable=False, default=ACTIVE)
    version = mapped_column(Integer, nullable=False, default=0)
    route = relationship("Route", back_populates="schedules", lazy="joined")
    seats = relationship(
        "Seat", back_populates="schedule", lazy="selectin",
        order_by="Seat.position", cascade="all, delete-orphan"
    )


class Seat(Base):
    __tablename__ = "seats"
    __table_args__ = (UniqueConstraint("schedule_id", "seat_number", name="uq_seat_per_schedule"),)
    id = mapped_column(Integer, primary_key=True)
    schedule_id = mapped_column(Integer, ForeignKey("schedules.id", ondelete="CASCADE"), nullable=False)
    position = mapped_column(Integer, nullable=False)
    seat_number = mapped_column(String(10), nullable=False)
    is_booked = mapped_column(Integer, nullable=False, default=0)  # 0/1
    schedule = relationship("Schedule", back_populates="seats")


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (Index("ix_bookings_status_timeout", "status", "payment_timeout"),)
    id = mapped_column(Integer, primary_key=True)
    user_id = mapped_column(String(64), nullable=False, index=True)
    # back-references by id only; a schedule may be deleted after its departure
    route_id = mapped_column(Integer, nullable=False, index=True)
    schedule_id = mapped_column(Integer, nullable=False, index=True)
    car_id = mapped_column(Integer, nullable=False)
    total_amount = mapped_column(DECIMAL(10, 2), nullable=False)
    status = mapped_column(String(20), nullable=False, default=PENDING)
    payment_status = mapped_column(String(20), nullable=False, default=PAYMENT_PENDING)

    advance_amount = mapped_column(DECIMAL(10, 2), nullable=False, default=0)
    remaining_amount = mapped_column(DECIMAL(10, 2), nullable=False, default=0)
    amount_paid = mapped_column(DECIMAL(10, 2), nullable=False, default=0)
    payment_date = mapped_column(DateTime, nullable=True)
    payment_timeout = mapped_column(DateTime, nullable=True)

    gateway_order_id = mapped_column(String(64), nullable=True, unique=True)
    gateway_payment_id = mapped_column(String(64), nullable=True)
    gateway_signature = mapped_column(String(128), nullable=True)

    cached_date = mapped_column(Date, nullable=True)
    cached_start_time = mapped_column(String(5), nullable=True)
    cached_total_seats = mapped_column(Integer, nullable=True)
    cached_available_seats = mapped_column(Integer, nullable=True)
    cached_price_per_seat = mapped_column(DECIMAL(10, 2), nullable=True)
    schedule_deleted = mapped_column(Integer, nullable=False, default=0)  # 0/1
    schedule_deleted_at = mapped_column(DateTime, nullable=True)

    created_at = mapped_column(DateTime, default=datetime.now)
    updated_at = mapped_column(DateTime, default=datetime.now, onupdate=datetime.now)

    passengers = relationship(
        "BookingPassenger", back_populates="booking", lazy="selectin",
        order_by="BookingPassenger.position", cascade="all, delete-orphan"
    )

    @property
    def selected_seats(self):
        return [p.seat_number for p in self.passengers]


class BookingPassenger(Base):
    __tablename__ = "booking_passengers"
    id = mapped_column(Integer, primary_key=True)
    booking_id = mapped_column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    position = mapped_column(Integer, nullable=False)
    name = mapped_column(String(100), nullable=False)
    age = mapped_column(Integer, nullable=False)
    gender = mapped_column(String(10), nullable=False)
    phone = mapped_column(String(15), nullable=False)
    seat_number = mapped_column(String(10), nullable=False)
    booking = relationship("Booking", back_populates="passengers")
