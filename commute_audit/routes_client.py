"""OpenRouteService directions client and the sequential routing batch."""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests

from . import config
from .errors import ConfigurationError
from .http import RESPONSE_ERRORS, HttpClient, RateLimiter, RequestMetrics
from .models import BatchSummary, GeocodedTrip, GeoPoint, RouteResult

logger = logging.getLogger(__name__)


class NoRouteFound(ValueError):
    pass


def build_ors_http_client(
    api_key: Optional[str],
    kind: str,
    min_interval: float,
    retry_max: int = 0,
    metrics: Optional[RequestMetrics] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> HttpClient:
    """HTTP client for OpenRouteService; refuses to build without a key."""
    key = (api_key or "").strip()
    if not key:
        raise ConfigurationError(
            f"Missing OpenRouteService API key (set {config.ORS_API_KEY_ENV})"
        )
    return HttpClient(
        retry_max=retry_max,
        backoff_base=config.ORS_BACKOFF_SECONDS,
        headers={
            "Authorization": key,
            "Accept": "application/json, application/geo+json; charset=utf-8",
        },
        rate_limiter=RateLimiter(min_interval, sleep=sleep),
        metrics=metrics,
        kind=kind,
        sleep=sleep,
    )


@dataclass(frozen=True)
class RouteLeg:
    distance_km: float
    duration_min: int
    polyline: Optional[str]


@dataclass
class RouteBatchResult:
    routes: List[RouteResult] = field(default_factory=list)
    summary: BatchSummary = field(default_factory=lambda: BatchSummary(stage="route"))


class RoutingEngine:
    def __init__(
        self,
        http_client: HttpClient,
        profile: Optional[str] = None,
        search_radius_m: Optional[int] = None,
    ) -> None:
        self.http = http_client
        self.profile = profile or config.ROUTING_PROFILE
        self.search_radius_m = (
            config.ROUTING_SEARCH_RADIUS_M if search_radius_m is None else search_radius_m
        )

    @classmethod
    def from_config(
        cls,
        api_key: Optional[str],
        metrics: Optional[RequestMetrics] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "RoutingEngine":
        http_client = build_ors_http_client(
            api_key,
            kind="routes",
            min_interval=config.ROUTING_MIN_INTERVAL_SECONDS,
            retry_max=config.ROUTING_RETRY_MAX,
            metrics=metrics,
            sleep=sleep,
        )
        return cls(http_client)

    @property
    def url(self) -> str:
        return f"{config.ORS_DIRECTIONS_URL}/{self.profile}/json"

    def compute_route(self, origin: GeoPoint, destination: GeoPoint) -> RouteLeg:
        """Single directions call; raises on any failure."""
        body = build_directions_body(origin, destination, self.search_radius_m)
        response = self.http.post_json(self.url, body)
        return parse_directions_response(response)

    def route_trip(self, trip: GeocodedTrip) -> RouteResult:
        try:
            leg = self.compute_route(trip.start_point, trip.end_point)
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            message = f"API Error: {status}" if status is not None else str(exc)
            return RouteResult(trip=trip, status="error", error=message)
        except RESPONSE_ERRORS as exc:
            return RouteResult(trip=trip, status="error", error=str(exc) or type(exc).__name__)
        return RouteResult(
            trip=trip,
            status="success",
            distance_km=leg.distance_km,
            duration_min=leg.duration_min,
            polyline=leg.polyline,
        )

    def route_trips(
        self, trips: Sequence[GeocodedTrip], progress: Optional[Any] = None
    ) -> RouteBatchResult:
        """Route every trip in order; one result per trip, failures included."""
        result = RouteBatchResult()
        if progress is not None:
            progress.set_stage("route", total_estimate=len(trips))
        for trip in trips:
            route = self.route_trip(trip)
            if route.ok:
                logger.info("Route %s: %s km", trip.id, route.distance_km)
            else:
                logger.error("Route %s failed: %s", trip.id, route.error)
            result.routes.append(route)
            if progress is not None:
                progress.advance(ok=route.ok)

        succeeded = sum(1 for r in result.routes if r.ok)
        result.summary = BatchSummary(
            stage="route",
            total=len(trips),
            succeeded=succeeded,
            failed=len(result.routes) - succeeded,
        )
        logger.info("Routing complete: %s", result.summary.tally())
        return result


def build_directions_body(
    origin: GeoPoint, destination: GeoPoint, search_radius_m: int
) -> Dict[str, Any]:
    return {
        "coordinates": [origin.lon_lat(), destination.lon_lat()],
        "radiuses": [search_radius_m, search_radius_m],
        "instructions": False,
        "geometry": True,
        "elevation": False,
    }


def parse_directions_response(response: Any) -> RouteLeg:
    routes = response.get("routes") if isinstance(response, dict) else None
    if not isinstance(routes, list) or not routes or not isinstance(routes[0], dict):
        raise NoRouteFound("No route found")
    route = routes[0]
    summary = route.get("summary")
    if summary is None:
        summary = {}
    if not isinstance(summary, dict):
        raise NoRouteFound("Malformed route summary")
    # Zero-valued fields are omitted by the service.
    try:
        distance_m = float(summary.get("distance") or 0.0)
        duration_s = float(summary.get("duration") or 0.0)
    except (TypeError, ValueError):
        raise NoRouteFound("Malformed route summary") from None
    geometry = route.get("geometry")
    return RouteLeg(
        distance_km=round(distance_m / 1000.0, 2),
        duration_min=_round_half_up(duration_s / 60.0),
        polyline=geometry if isinstance(geometry, str) else None,
    )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))
