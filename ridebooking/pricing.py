import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Tuple

# ---------------------------
# Amount helpers
# ---------------------------
EARTH_RADIUS_M = 6371000.0


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


def total_amount(passenger_count: int, price_per_seat) -> Decimal:
    return to_money(Decimal(passenger_count) * Decimal(str(price_per_seat)))


def split_amount(total, advance_percent: int = 40) -> Tuple[Decimal, Decimal]:
    """Split ``total`` into (advance, remaining); advance is rounded half-up to a whole unit."""
    total_dec = Decimal(str(total))
    advance = (total_dec * Decimal(advance_percent) / Decimal(100)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    advance = min(advance, total_dec)
    remaining = total_dec - advance
    return to_money(advance), to_money(remaining)


# ---------------------------
# Segment fares
# ---------------------------
def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lng = math.radians(lng2 - lng1)
    a = math.sin(delta_lat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lng / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def prorate_fare(price_per_seat, segment_distance: float, full_distance: float) -> Decimal:
    """
    Scale a per-seat fare by the travelled share of the route, rounded up to a whole unit.
    The result never exceeds the full fare.
    """
    base = Decimal(str(price_per_seat))
    if not full_distance or full_distance <= 0 or segment_distance is None or segment_distance <= 0:
        return to_money(base)
    share = Decimal(str(segment_distance)) / Decimal(str(full_distance))
    fare = Decimal(math.ceil(base * share))
    return to_money(min(fare, base))
