"""Typed records passed between pipeline stages."""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple


@dataclass(frozen=True)
class AddressPair:
    employee_address: str
    employer_address: str


@dataclass(frozen=True)
class GeoPoint:
    """A WGS84 coordinate and the geocoding provider that produced it."""

    lat: float
    lon: float
    source: str

    def __post_init__(self) -> None:
        if not -90.0 <= self.lat <= 90.0:
            raise ValueError(f"Latitude out of range: {self.lat}")
        if not -180.0 <= self.lon <= 180.0:
            raise ValueError(f"Longitude out of range: {self.lon}")

    @property
    def key(self) -> Tuple[float, float]:
        return (self.lat, self.lon)

    def lon_lat(self) -> List[float]:
        return [self.lon, self.lat]


@dataclass(frozen=True)
class GeocodeFailure:
    address: str
    reason: str


@dataclass(frozen=True)
class GeocodedTrip:
    id: str
    start_point: GeoPoint
    end_point: GeoPoint
    employee_address: str
    employer_address: str
    group_letter: str = ""
    ordinal: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "start_lat": self.start_point.lat,
            "start_lon": self.start_point.lon,
            "end_lat": self.end_point.lat,
            "end_lon": self.end_point.lon,
            "employee_address": self.employee_address,
            "employer_address": self.employer_address,
        }


@dataclass(frozen=True)
class RouteResult:
    trip: GeocodedTrip
    status: str
    distance_km: Optional[float] = None
    duration_min: Optional[int] = None
    polyline: Optional[str] = None
    error: Optional[str] = None

    @property
    def id(self) -> str:
        return self.trip.id

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, Any]:
        out = self.trip.to_dict()
        out.update(
            {
                "status": self.status,
                "distance_km": self.distance_km,
                "duration_min": self.duration_min,
                "polyline": self.polyline,
                "error": self.error,
            }
        )
        return out


@dataclass(frozen=True)
class IsochronePolygon:
    geometry: Dict[str, Any]
    range_km: float
    center_address: str
    properties: Dict[str, Any] = field(default_factory=dict)

    def to_feature(self) -> Dict[str, Any]:
        props = dict(self.properties)
        props.update({"range_km": self.range_km, "center": self.center_address})
        return {"type": "Feature", "properties": props, "geometry": self.geometry}


@dataclass(frozen=True)
class BatchSummary:
    stage: str
    total: int = 0
    succeeded: int = 0
    failed: int = 0

    def tally(self) -> str:
        return f"{self.succeeded} of {self.total} succeeded"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
        }


@dataclass(frozen=True)
class StageTransition:
    """A request to merge ``data`` into the run state and enter ``next``."""

    data: Mapping[str, Any]
    next: str


@dataclass(frozen=True)
class PipelineRunState:
    current_stage: str = "csv"
    raw_data: Optional[List[List[str]]] = None
    address_pairs: Optional[List[AddressPair]] = None
    geocoded_trips: Optional[List[GeocodedTrip]] = None
    geocode_failures: Optional[List[GeocodeFailure]] = None
    routes: Optional[List[RouteResult]] = None
    isochrones: Optional[List[IsochronePolygon]] = None
    geocode_summary: Optional[BatchSummary] = None
    route_summary: Optional[BatchSummary] = None
    isochrone_summary: Optional[BatchSummary] = None

    def merge(self, data: Mapping[str, Any], current_stage: str) -> "PipelineRunState":
        """Shallow merge: fields not named in ``data`` keep their values."""
        known = {f.name for f in dataclasses.fields(self)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown state fields: {', '.join(sorted(unknown))}")
        updates = dict(data)
        updates["current_stage"] = current_stage
        return dataclasses.replace(self, **updates)
