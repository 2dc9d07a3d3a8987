from datetime import date, datetime
from typing import List, Optional, Annotated, Literal

from pydantic import BaseModel, Field

from ridebooking.models import Booking, Schedule


# ---------------------------
# Search
# ---------------------------
class SearchReq(BaseModel):
    from_location: Annotated[str, Field(min_length=1)]
    to_location: Annotated[str, Field(min_length=1)]
    date: date
    passengers: Annotated[int, Field(ge=1)] = 1


class SearchResult(BaseModel):
    route_id: int
    route_name: str
    start_location: str
    end_location: str
    is_direct: bool
    car_id: int
    car_model: str
    registration_number: str
    schedule_id: int
    date: date
    start_time: str
    available_seats: int
    total_seats: int
    base_price_per_seat: float
    price_per_seat: float
    total_price: float


# ---------------------------
# Seats
# ---------------------------
class SeatOut(BaseModel):
    seat_number: str
    is_booked: bool


class SeatLayoutOut(BaseModel):
    schedule_id: int
    date: date
    start_time: str
    total_seats: int
    available_seats: int
    price_per_seat: float
    seat_layout: List[SeatOut]


# ---------------------------
# Bookings & payments
# ---------------------------
class PassengerIn(BaseModel):
    name: Annotated[str, Field(min_length=1, max_length=100)]
    age: Annotated[int, Field(ge=0, le=120)]
    gender: Literal["male", "female", "other"]
    phone: Annotated[str, Field(min_length=7, max_length=15)]


class BookingCreateReq(BaseModel):
    route_id: int
    schedule_id: int
    car_id: int
    passengers: List[PassengerIn]
    selected_seats: List[str]


class PaymentVerifyReq(BaseModel):
    order_id: str
    payment_id: str
    signature: str
    booking_id: Optional[int] = None


class PaymentFailureReq(BaseModel):
    order_id: str
    booking_id: Optional[int] = None
    reason: Optional[str] = None


class PassengerOut(BaseModel):
    name: str
    age: int
    gender: str
    phone: str
    seat_number: str


class BookingResponse(BaseModel):
    booking_id: int
    user_id: str
    route_id: int
    schedule_id: int
    car_id: int
    passengers: List[PassengerOut]
    selected_seats: List[str]
    total_amount: float
    advance_amount: float
    remaining_amount: float
    amount_paid: float
    status: str
    payment_status: str
    gateway_order_id: Optional[str]
    gateway_payment_id: Optional[str]
    payment_timeout: Optional[datetime]
    payment_date: Optional[datetime]
    schedule_deleted: bool
    created_at: Optional[datetime]


def booking_out(b: Booking) -> BookingResponse:
    return BookingResponse(
        booking_id=b.id,
        user_id=b.user_id,
        route_id=b.route_id,
        schedule_id=b.schedule_id,
        car_id=b.car_id,
        passengers=[
            PassengerOut(name=p.name, age=p.age, gender=p.gender, phone=p.phone, seat_number=p.seat_number)
            for p in b.passengers
        ],
        selected_seats=b.selected_seats,
        total_amount=float(b.total_amount),
        advance_amount=float(b.advance_amount),
        remaining_amount=float(b.remaining_amount),
        amount_paid=float(b.amount_paid or 0),
        status=b.status,
        payment_status=b.payment_status,
        gateway_order_id=b.gateway_order_id,
        gateway_payment_id=b.gateway_payment_id,
        payment_timeout=b.payment_timeout,
        payment_date=b.payment_date,
        schedule_deleted=bool(b.schedule_deleted),
        created_at=b.created_at,
    )


class SweepResult(BaseModel):
    released: int
    booking_ids: List[int]


# ---------------------------
# Administration
# ---------------------------
class CarCreateReq(BaseModel):
    make: str
    model: str
    registration_number: str
    seater: Annotated[int, Field(ge=1)]


class CarOut(BaseModel):
    car_id: int
    make: str
    model: str
    registration_number: str
    seater: int
    status: str


class LocationIn(BaseModel):
    address: Annotated[str, Field(min_length=1)]
    lat: Optional[float] = None
    lng: Optional[float] = None


class RouteCreateReq(BaseModel):
    name: str
    car_id: int
    start_location: LocationIn
    end_location: LocationIn
    waypoints: List[LocationIn] = []


class RouteOut(BaseModel):
    route_id: int
    name: str
    car_id: int
    start_location: str
    end_location: str
    waypoints: List[str]
    status: str


class ScheduleDateIn(BaseModel):
    date: date
    start_time: Annotated[str, Field(pattern=r"^\d{2}:\d{2}$")]


class ScheduleCreateReq(BaseModel):
    dates: Annotated[List[ScheduleDateIn], Field(min_length=1)]
    total_seats: Annotated[int, Field(ge=1)]
    price_per_seat: Annotated[float, Field(gt=0)]


class ScheduleUpdateReq(BaseModel):
    price_per_seat: Optional[Annotated[float, Field(gt=0)]] = None
    status: Optional[Literal["active", "inactive"]] = None
    start_time: Optional[Annotated[str, Field(pattern=r"^\d{2}:\d{2}$")]] = None
    total_seats: Optional[Annotated[int, Field(ge=1)]] = None


class ScheduleOut(BaseModel):
    schedule_id: int
    route_id: int
    date: date
    start_time: str
    total_seats: int
    available_seats: int
    price_per_seat: float
    status: str


def schedule_out(s: Schedule) -> ScheduleOut:
    return ScheduleOut(
        schedule_id=s.id,
        route_id=s.route_id,
        date=s.date,
        start_time=s.start_time,
        total_seats=s.total_seats,
        available_seats=s.available_seats,
        price_per_seat=float(s.price_per_seat),
        status=s.status,
    )
