"""
Routing / geocoding collaborator.

Availability search asks it for coordinates of route stops that have none
stored and for driving distances between two points. Every failure is
raised as RoutingError so callers can fall back to great-circle estimates.
"""

import logging
from typing import Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

Coordinates = Tuple[float, float]  # (lat, lng)

ORS_BASE_URL = "https://api.openrouteservice.org"


class RoutingError(Exception):
    pass


class RoutingClient:
    def geocode(self, address: str) -> Coordinates:
        raise NotImplementedError

    def distance(self, a: Coordinates, b: Coordinates) -> float:
        """Driving distance in meters."""
        raise NotImplementedError


class OpenRouteServiceClient(RoutingClient):
    def __init__(self, api_key: str, client: Optional[httpx.Client] = None,
                 base_url: str = ORS_BASE_URL, timeout: float = 10.0):
        self.api_key = api_key
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def geocode(self, address: str) -> Coordinates:
        try:
            resp = self.client.get(
                "/geocode/search",
                params={"api_key": self.api_key, "text": address, "size": 1},
            )
            resp.raise_for_status()
            features = resp.json().get("features") or []
        except (httpx.HTTPError, ValueError) as e:
            raise RoutingError(f"Geocoding failed for {address!r}: {e}") from e
        if not features:
            raise RoutingError(f"Location not found: {address!r}")
        lng, lat = features[0]["geometry"]["coordinates"][:2]
        return float(lat), float(lng)

    def distance(self, a: Coordinates, b: Coordinates) -> float:
        # ORS expects [lng, lat] pairs
        payload = {"coordinates": [[a[1], a[0]], [b[1], b[0]]]}
        try:
            resp = self.client.post(
                "/v2/directions/driving-car",
                json=payload,
                headers={"Authorization": self.api_key},
            )
            resp.raise_for_status()
            return float(resp.json()["routes"][0]["summary"]["distance"])
        except (httpx.HTTPError, ValueError, KeyError, IndexError) as e:
            raise RoutingError(f"Distance lookup failed: {e}") from e

    def close(self) -> None:
        self.client.close()
