import itertools
import threading
from datetime import date, datetime
from decimal import Decimal

import pytest

from ridebooking import admin
from ridebooking.database import build_engine, build_session_factory, create_tables
from ridebooking.errors import GatewayError
from ridebooking.gateway import PaymentGateway, expected_signature
from ridebooking.models import Schedule
from ridebooking.notifier import Notifier
from ridebooking.reconciliation import PaymentReconciler
from ridebooking.reservation import ReservationEngine
from ridebooking.routing import RoutingClient, RoutingError
from ridebooking.schedule_store import count_seats, get_available_seats
from ridebooking.sweeper import AbandonmentSweeper

SECRET = "test_secret"
ADMIN_ID = "admin-1"
TRAVEL_DATE = date(2026, 10, 20)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeGateway(PaymentGateway):
    signature_secret = SECRET

    def __init__(self):
        self.orders = {}
        self.payments = {}
        self.fail_create = False
        # one-shot callbacks that let a test interleave another operation mid-call
        self.on_create_intent = None
        self.on_fetch_payment = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _fire(self, name, *args):
        hook = getattr(self, name)
        if hook is not None:
            setattr(self, name, None)
            hook(*args)

    def create_intent(self, amount, currency, reference, notes=None):
        fail = self.fail_create
        self._fire("on_create_intent", dict(notes or {}))
        if fail:
            raise GatewayError("Payment gateway order creation failed", code="BAD_REQUEST_ERROR",
                               description="Authentication failed")
        with self._lock:
            order_id = f"order_{next(self._ids)}"
        self.orders[order_id] = {"id": order_id, "status": "created", "amount": Decimal(amount),
                                 "currency": currency, "receipt": reference, "notes": dict(notes or {})}
        return order_id

    def capture(self, order_id, payment_id, status="captured", amount=None):
        self.payments[payment_id] = {
            "status": status,
            "amount": Decimal(amount) if amount is not None else self.orders[order_id]["amount"],
            "order_id": order_id,
        }
        return expected_signature(order_id, payment_id, SECRET)

    def fetch_payment(self, payment_id):
        self._fire("on_fetch_payment", payment_id)
        if payment_id not in self.payments:
            raise GatewayError("Payment gateway payment lookup failed", code="BAD_REQUEST_ERROR",
                               description="The id provided does not exist")
        return dict(self.payments[payment_id])

    def fetch_order(self, order_id):
        if order_id not in self.orders:
            raise GatewayError("Payment gateway order lookup failed", code="BAD_REQUEST_ERROR")
        order = self.orders[order_id]
        return {"id": order_id, "status": order["status"], "notes": dict(order["notes"])}


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    def send(self, contact, message):
        if self.fail:
            raise ConnectionError("relay unreachable")
        self.sent.append((contact, message))


class FakeRouter(RoutingClient):
    def __init__(self, distances=None, geocodes=None, fail=False):
        self.distances = distances or {}
        self.geocodes = geocodes or {}
        self.fail = fail
        self.calls = 0

    def geocode(self, address):
        self.calls += 1
        if self.fail or address not in self.geocodes:
            raise RoutingError(f"Location not found: {address!r}")
        return self.geocodes[address]

    def distance(self, a, b):
        self.calls += 1
        if self.fail:
            raise RoutingError("service unavailable")
        return self.distances[(a, b)]


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 19, 12, 0))


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'rides.db'}")
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def sweeper(session_factory, clock):
    return AbandonmentSweeper(session_factory, interval_seconds=60, clock=clock)


@pytest.fixture
def reservations(session_factory, gateway, notifier, sweeper, clock):
    return ReservationEngine(session_factory, gateway, notifier=notifier, sweeper=sweeper, clock=clock)


@pytest.fixture
def reconciler(session_factory, gateway, notifier, clock):
    return PaymentReconciler(session_factory, gateway, notifier=notifier, clock=clock)


def make_route(session_factory, start="Mumbai", end="Pune", waypoints=None, seats=10, price=500,
               on_date=TRAVEL_DATE, start_time="09:00", admin_id=ADMIN_ID, name=None):
    """Create a car, a route and one schedule; returns (route_id, car_id, schedule_id)."""
    def loc(value):
        return value if isinstance(value, dict) else {"address": value}

    with session_factory.begin() as db:
        car = admin.create_car(db, admin_id, "Toyota", "Innova", "MH12AB1234", max(seats, 12))
        route = admin.create_route(db, admin_id, name or f"{start} - {end}", car.id, loc(start), loc(end),
                                   [loc(w) for w in waypoints or []])
        schedules = admin.create_schedules(db, admin_id, route.id,
                                           [{"date": on_date, "start_time": start_time}], seats, price)
        return route.id, car.id, schedules[0].id


@pytest.fixture
def schedule(session_factory):
    return make_route(session_factory)


def seat_state(session_factory, schedule_id):
    with session_factory() as db:
        return get_available_seats(db, schedule_id)


def booked_seats(session_factory, schedule_id):
    layout = seat_state(session_factory, schedule_id)["seat_layout"]
    return [s["seat_number"] for s in layout if s["is_booked"]]


def passengers(n):
    return [
        {"name": f"Passenger {i}", "age": 30 + i, "gender": "female" if i % 2 else "male", "phone": f"98765432{i:02d}"}
        for i in range(n)
    ]


def inventory_consistent(session_factory, schedule_id):
    """available_seats matches the unbooked seat rows and stays within total_seats."""
    with session_factory() as db:
        schedule = db.get(Schedule, schedule_id)
        counts = count_seats(db, schedule_id)
        return (
            0 <= schedule.available_seats <= schedule.total_seats
            and schedule.available_seats == counts["available"]
            and schedule.total_seats == counts["total"]
        )
