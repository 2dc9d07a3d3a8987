"""
 - app.py

HTTP surface of the ride booking service:
- Search scheduled rides between two places (direct or via waypoints, pro-rated fares)
- Reserve seats: booking is created 'pending' with seats held and a payment order
  opened for the advance; payment verification confirms it
- Unpaid bookings are abandoned by a background sweeper and their seats released
- Admins manage cars, routes and dated schedules and can cancel bookings

Identity comes from trusted upstream headers (X-User-Id, X-User-Role).
Run with: uvicorn ridebooking.app:create_app --factory
"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from datetime import date, datetime
from typing import Annotated, Callable, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ridebooking import admin
from ridebooking.cancellation import cancel_booking
from ridebooking.config import Settings
from ridebooking.database import build_engine, build_session_factory, create_tables
from ridebooking.errors import BookingError
from ridebooking.gateway import PaymentGateway, RazorpayGateway
from ridebooking.notifier import LogNotifier, Notifier, WebhookNotifier
from ridebooking.reconciliation import PaymentReconciler
from ridebooking.reservation import ReservationEngine
from ridebooking.routing import OpenRouteServiceClient, RoutingClient
from ridebooking.schedule_store import get_available_seats
from ridebooking.schemas import (
    BookingCreateReq, BookingResponse, CarCreateReq, CarOut, PaymentFailureReq, PaymentVerifyReq,
    RouteCreateReq, RouteOut, ScheduleCreateReq, ScheduleOut, ScheduleUpdateReq, SearchReq,
    SearchResult, SeatLayoutOut, SweepResult, booking_out, schedule_out
)
from ridebooking.search import search_availability
from ridebooking.sweeper import AbandonmentSweeper

logger = logging.getLogger(__name__)

ADMIN_ROLES = ("admin", "owner")


# ---------------------------
# Dependencies
# ---------------------------
def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_current_user(x_user_id: Annotated[Optional[str], Header()] = None,
                     x_user_role: Annotated[Optional[str], Header()] = None) -> dict:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return {"user_id": x_user_id, "role": (x_user_role or "user").lower()}


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user["role"] not in ADMIN_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return user


def _car_out(car) -> CarOut:
    return CarOut(car_id=car.id, make=car.make, model=car.model,
                  registration_number=car.registration_number, seater=car.seater, status=car.status)


def _route_out(route) -> RouteOut:
    return RouteOut(route_id=route.id, name=route.name, car_id=route.car_id,
                    start_location=route.start_address, end_location=route.end_address,
                    waypoints=[w.address for w in route.waypoints], status=route.status)


# ---------------------------
# Application factory
# ---------------------------
def create_app(settings: Optional[Settings] = None,
               gateway: Optional[PaymentGateway] = None,
               notifier: Optional[Notifier] = None,
               router: Optional[RoutingClient] = None,
               clock: Callable[[], datetime] = datetime.now) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    gateway = gateway or RazorpayGateway(settings.razorpay_key_id, settings.razorpay_key_secret)
    if notifier is None:
        notifier = WebhookNotifier(settings.notify_webhook_url) if settings.notify_webhook_url else LogNotifier()
    if router is None and settings.openroute_api_key:
        router = OpenRouteServiceClient(settings.openroute_api_key)

    sweeper = AbandonmentSweeper(session_factory, settings.sweep_interval_seconds, clock=clock)
    reservations = ReservationEngine(
        session_factory, gateway, notifier=notifier, sweeper=sweeper,
        currency=settings.payment_currency,
        payment_timeout_minutes=settings.payment_timeout_minutes,
        advance_percent=settings.advance_percent,
        clock=clock,
    )
    reconciler = PaymentReconciler(session_factory, gateway, notifier=notifier,
                                   currency=settings.payment_currency, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        create_tables(engine)
        logger.info("Tables created (if not existing)")
        task = None
        if settings.sweep_interval_seconds > 0:
            task = asyncio.create_task(sweeper.run())
        yield
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        engine.dispose()
        logger.info("Application shutdown")

    app = FastAPI(title="Ride Booking Service", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.gateway = gateway
    app.state.notifier = notifier
    app.state.router = router
    app.state.sweeper = sweeper
    app.state.reservations = reservations
    app.state.reconciler = reconciler

    @app.exception_handler(BookingError)
    async def _booking_error(request: Request, exc: BookingError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": exc.kind, **exc.extra()},
        )

    # ---------------------------
    # Search & seats (public)
    # ---------------------------
    @app.get("/", include_in_schema=False)
    def _health():
        return {"status": "ok", "time": clock().isoformat()}

    @app.post("/search", response_model=List[SearchResult])
    def search(req: SearchReq, db: Session = Depends(get_db)):
        return search_availability(db, req.from_location, req.to_location, req.date,
                                   req.passengers, router=router, now=clock())

    @app.get("/schedules/{schedule_id}/seats", response_model=SeatLayoutOut)
    def available_seats(schedule_id: int, db: Session = Depends(get_db)):
        return SeatLayoutOut(**get_available_seats(db, schedule_id))

    # ---------------------------
    # Booking workflow (authenticated)
    # ---------------------------
    @app.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
    def create_booking(req: BookingCreateReq, user: dict = Depends(get_current_user)):
        booking = reservations.reserve(
            schedule_id=req.schedule_id,
            selected_seats=req.selected_seats,
            passengers=[p.model_dump() for p in req.passengers],
            car_id=req.car_id,
            route_id=req.route_id,
            user_id=user["user_id"],
        )
        return booking_out(booking)

    @app.get("/bookings/me", response_model=List[BookingResponse])
    def my_bookings(user: dict = Depends(get_current_user), db: Session = Depends(get_db)):
        return [booking_out(b) for b in admin.user_bookings(db, user["user_id"])]

    @app.get("/bookings/admin", response_model=List[BookingResponse])
    def route_bookings(user: dict = Depends(require_admin), db: Session = Depends(get_db)):
        return [booking_out(b) for b in admin.admin_bookings(db, user["user_id"])]

    @app.get("/bookings/{booking_id}", response_model=BookingResponse)
    def get_booking(booking_id: int, user: dict = Depends(get_current_user), db: Session = Depends(get_db)):
        return booking_out(admin.booking_detail(db, booking_id, user["user_id"]))

    @app.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
    def cancel(booking_id: int, user: dict = Depends(require_admin)):
        booking = cancel_booking(session_factory, booking_id, user["user_id"], notifier=notifier, clock=clock)
        return booking_out(booking)

    @app.post("/payments/verify", response_model=BookingResponse)
    def verify_payment(req: PaymentVerifyReq):
        booking = reconciler.confirm(req.order_id, req.payment_id, req.signature, booking_id=req.booking_id)
        return booking_out(booking)

    @app.post("/payments/failure", response_model=BookingResponse)
    def payment_failure(req: PaymentFailureReq):
        booking = reconciler.fail_payment(req.order_id, booking_id=req.booking_id, reason=req.reason)
        return booking_out(booking)

    @app.post("/admin/sweep", response_model=SweepResult)
    def sweep(user: dict = Depends(require_admin)):
        released = sweeper.sweep_abandoned()
        return SweepResult(released=len(released), booking_ids=released)

    # ---------------------------
    # Administration
    # ---------------------------
    @app.post("/cars", response_model=CarOut, status_code=status.HTTP_201_CREATED)
    def create_car(req: CarCreateReq, user: dict = Depends(require_admin), db: Session = Depends(get_db)):
        with db.begin():
            car = admin.create_car(db, user["user_id"], **req.model_dump())
            return _car_out(car)

    @app.post("/routes", response_model=RouteOut, status_code=status.HTTP_201_CREATED)
    def create_route(req: RouteCreateReq, user: dict = Depends(require_admin), db: Session = Depends(get_db)):
        with db.begin():
            route = admin.create_route(
                db, user["user_id"], req.name, req.car_id,
                start=req.start_location.model_dump(),
                end=req.end_location.model_dump(),
                waypoints=[w.model_dump() for w in req.waypoints],
            )
            return _route_out(route)

    @app.post("/routes/{route_id}/schedules", response_model=List[ScheduleOut],
              status_code=status.HTTP_201_CREATED)
    def create_schedules(route_id: int, req: ScheduleCreateReq, user: dict = Depends(require_admin),
                         db: Session = Depends(get_db)):
        with db.begin():
            schedules = admin.create_schedules(
                db, user["user_id"], route_id, [d.model_dump() for d in req.dates],
                req.total_seats, req.price_per_seat,
            )
            return [schedule_out(s) for s in schedules]

    @app.get("/routes/{route_id}/schedules", response_model=List[ScheduleOut])
    def route_schedules(route_id: int, on_date: Optional[date] = Query(None, alias="date"),
                        db: Session = Depends(get_db)):
        return [schedule_out(s) for s in admin.list_route_schedules(db, route_id, on_date)]

    @app.patch("/schedules/{schedule_id}", response_model=ScheduleOut)
    def update_schedule(schedule_id: int, req: ScheduleUpdateReq, user: dict = Depends(require_admin),
                        db: Session = Depends(get_db)):
        with db.begin():
            schedule = admin.update_schedule(db, user["user_id"], schedule_id, req.model_dump(exclude_none=True))
            return schedule_out(schedule)

    @app.delete("/schedules/{schedule_id}")
    def delete_schedule(schedule_id: int, user: dict = Depends(require_admin), db: Session = Depends(get_db)):
        with db.begin():
            snapshotted = admin.delete_schedule(db, user["user_id"], schedule_id, now=clock())
        return {"message": f"Schedule {schedule_id} deleted", "bookings_snapshotted": snapshotted}

    return app
