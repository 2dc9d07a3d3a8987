import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from ridebooking.models import ACTIVE, Route, Schedule
from ridebooking.pricing import haversine_m, prorate_fare, to_money
from ridebooking.routing import Coordinates, RoutingClient
from ridebooking.schedule_store import departure_at
from ridebooking.schemas import SearchResult
from ridebooking.errors import ValidationError

logger = logging.getLogger(__name__)


# ---------------------------
# Location matching
# ---------------------------
def _norm(value: str) -> str:
    return " ".join((value or "").lower().split())


def _city(value: str) -> str:
    return _norm(value).split(",")[0].strip()


def location_matches(query: str, address: str) -> bool:
    q, a = _norm(query), _norm(address)
    if not q or not a:
        return False
    return q == a or q in a or _city(q) == _city(a)


def match_route(route: Route, origin: str, destination: str) -> Optional[Tuple[bool, int, int]]:
    """
    Return (is_direct, origin_index, destination_index) over the route's ordered
    stops, or None when the route does not carry a traveller from origin to destination.
    """
    stops = route.stops()
    last = len(stops) - 1
    if location_matches(origin, stops[0][0]) and location_matches(destination, stops[last][0]):
        return True, 0, last
    for i in range(last):
        if not location_matches(origin, stops[i][0]):
            continue
        for j in range(i + 1, last + 1):
            if (i, j) == (0, last):
                continue
            if location_matches(destination, stops[j][0]):
                return False, i, j
    return None


# ---------------------------
# Segment pricing
# ---------------------------
class SegmentPricer:
    """
    Pro-rates waypoint fares by distance. The routing collaborator is optional;
    when it fails, straight-line distances are used, and when no coordinates can
    be had at all the undiscounted fare is charged.
    """

    def __init__(self, router: Optional[RoutingClient] = None):
        self.router = router
        self._geocoded: Dict[str, Optional[Coordinates]] = {}

    def coordinates(self, address: str, lat: Optional[float], lng: Optional[float]) -> Optional[Coordinates]:
        if lat is not None and lng is not None:
            return lat, lng
        if self.router is None:
            return None
        if address not in self._geocoded:
            try:
                self._geocoded[address] = self.router.geocode(address)
            except Exception as e:
                logger.warning("Geocoding %r failed, no coordinates: %s", address, e)
                self._geocoded[address] = None
        return self._geocoded[address]

    def distance(self, a: Coordinates, b: Coordinates) -> float:
        if self.router is not None:
            try:
                return self.router.distance(a, b)
            except Exception as e:
                logger.warning("Routing distance failed, using great-circle estimate: %s", e)
        return haversine_m(a[0], a[1], b[0], b[1])

    def fare(self, route: Route, origin_index: int, destination_index: int, price_per_seat) -> Decimal:
        stops = route.stops()
        coords = [self.coordinates(*stop) for stop in stops]
        start, end = coords[0], coords[-1]
        seg_from, seg_to = coords[origin_index], coords[destination_index]
        if None in (start, end, seg_from, seg_to):
            return to_money(price_per_seat)
        full = self.distance(start, end)
        segment = self.distance(seg_from, seg_to)
        return prorate_fare(price_per_seat, segment, full)


# ---------------------------
# Availability search
# ---------------------------
def search_availability(db: Session, origin: str, destination: str, on_date: date, passengers: int = 1,
                        router: Optional[RoutingClient] = None, now: Optional[datetime] = None) -> List[SearchResult]:
    """
    Active schedules on ``on_date`` with room for ``passengers`` on active routes
    linking origin to destination. When searching today, departures that already
    left are dropped.
    Direct routes come first, then waypoint routes; each tier by total price.
    """
    if not origin or not destination:
        raise ValidationError("Please provide from_location, to_location and date")
    if passengers < 1:
        raise ValidationError("passengers must be at least 1")
    now = now or datetime.now()

    rows = db.execute(
        select(Schedule, Route)
        .join(Route, Schedule.route_id == Route.id)
        .where(
            Route.status == ACTIVE,
            Schedule.status == ACTIVE,
            Schedule.date == on_date,
            Schedule.available_seats >= passengers,
        )
    ).unique().all()

    pricer = SegmentPricer(router)
    matches: Dict[int, Optional[Tuple[bool, int, int]]] = {}
    fares: Dict[Tuple[int, Decimal], Decimal] = {}
    out = []
    for schedule, route in rows:
        if route.id not in matches:
            matches[route.id] = match_route(route, origin, destination)
        match = matches[route.id]
        if match is None:
            continue
        if schedule.date == now.date() and departure_at(schedule.date, schedule.start_time) <= now:
            continue
        is_direct, i, j = match
        base = to_money(schedule.price_per_seat)
        if is_direct:
            price = base
        else:
            key = (route.id, base)
            if key not in fares:
                fares[key] = pricer.fare(route, i, j, base)
            price = fares[key]
        total = price * passengers
        out.append(SearchResult(
            route_id=route.id,
            route_name=route.name,
            start_location=route.start_address,
            end_location=route.end_address,
            is_direct=is_direct,
            car_id=route.car_id,
            car_model=route.car.model if route.car else "",
            registration_number=route.car.registration_number if route.car else "",
            schedule_id=schedule.id,
            date=schedule.date,
            start_time=schedule.start_time,
            available_seats=schedule.available_seats,
            total_seats=schedule.total_seats,
            base_price_per_seat=float(base),
            price_per_seat=float(price),
            total_price=float(total),
        ))
    out.sort(key=lambda r: (not r.is_direct, r.total_price))
    logger.debug("Search %s -> %s on %s: %d result(s)", origin, destination, on_date, len(out))
    return out
