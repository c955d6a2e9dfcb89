"""Reachability polygons around distinct destinations."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from . import config
from .http import RESPONSE_ERRORS, HttpClient, RequestMetrics
from .models import BatchSummary, GeocodedTrip, GeoPoint, IsochronePolygon
from .routes_client import build_ors_http_client

logger = logging.getLogger(__name__)

Destination = Union[GeoPoint, Tuple[GeoPoint, str]]


@dataclass
class IsochroneBatchResult:
    polygons: List[IsochronePolygon] = field(default_factory=list)
    summary: BatchSummary = field(default_factory=lambda: BatchSummary(stage="isochrones"))


class IsochroneGenerator:
    def __init__(
        self,
        http_client: HttpClient,
        thresholds_km: Optional[Sequence[float]] = None,
        profile: Optional[str] = None,
    ) -> None:
        self.http = http_client
        self.thresholds_km = tuple(
            config.ISOCHRONE_THRESHOLDS_KM if thresholds_km is None else thresholds_km
        )
        self.profile = profile or config.ISOCHRONE_PROFILE

    @classmethod
    def from_config(
        cls,
        api_key: Optional[str],
        thresholds_km: Optional[Sequence[float]] = None,
        metrics: Optional[RequestMetrics] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "IsochroneGenerator":
        http_client = build_ors_http_client(
            api_key,
            kind="isochrones",
            min_interval=config.ISOCHRONE_MIN_INTERVAL_SECONDS,
            retry_max=config.ISOCHRONE_RETRY_MAX,
            metrics=metrics,
            sleep=sleep,
        )
        return cls(http_client, thresholds_km=thresholds_km)

    @property
    def url(self) -> str:
        return f"{config.ORS_ISOCHRONES_URL}/{self.profile}"

    def generate_isochrone(
        self, center: GeoPoint, range_km: float, center_address: str = ""
    ) -> Optional[IsochronePolygon]:
        """One polygon request; None when the call fails or returns nothing."""
        body = build_isochrone_body(center, range_km)
        try:
            response = self.http.post_json(self.url, body)
            feature = parse_isochrone_response(response)
        except RESPONSE_ERRORS as exc:
            logger.error("Isochrone %skm for %r failed: %s", range_km, center_address, exc)
            return None
        if feature is None:
            logger.warning("Isochrone %skm for %r: empty response", range_km, center_address)
            return None
        properties = feature.get("properties")
        return IsochronePolygon(
            geometry=feature["geometry"],
            range_km=range_km,
            center_address=center_address,
            properties=dict(properties) if isinstance(properties, dict) else {},
        )

    def generate_isochrones(
        self,
        destinations: Iterable[Destination],
        thresholds_km: Optional[Sequence[float]] = None,
        progress: Optional[Any] = None,
    ) -> IsochroneBatchResult:
        """Polygons for each distinct destination coordinate and threshold.

        Destinations sharing a coordinate are requested once, under the
        address seen first.
        """
        thresholds = tuple(self.thresholds_km if thresholds_km is None else thresholds_km)
        unique = dedupe_destinations(destinations)
        total = len(unique) * len(thresholds)
        result = IsochroneBatchResult()
        if progress is not None:
            progress.set_stage("isochrones", total_estimate=total)

        for point, address in unique:
            logger.info("Isochrones for site %r", address)
            for km in thresholds:
                polygon = self.generate_isochrone(point, km, address)
                if polygon is not None:
                    result.polygons.append(polygon)
                if progress is not None:
                    progress.advance(ok=polygon is not None)

        result.summary = BatchSummary(
            stage="isochrones",
            total=total,
            succeeded=len(result.polygons),
            failed=total - len(result.polygons),
        )
        logger.info("Isochrones complete: %s", result.summary.tally())
        return result

    def generate_for_trips(
        self, trips: Sequence[GeocodedTrip], progress: Optional[Any] = None
    ) -> IsochroneBatchResult:
        return self.generate_isochrones(
            ((trip.end_point, trip.employer_address) for trip in trips), progress=progress
        )


def dedupe_destinations(destinations: Iterable[Destination]) -> List[Tuple[GeoPoint, str]]:
    """Unique destinations by coordinate; bare points get an empty address."""
    seen = set()
    unique: List[Tuple[GeoPoint, str]] = []
    for item in destinations:
        point, address = (item, "") if isinstance(item, GeoPoint) else item
        if point.key in seen:
            continue
        seen.add(point.key)
        unique.append((point, address))
    return unique


def build_isochrone_body(center: GeoPoint, range_km: float) -> Dict[str, Any]:
    return {
        "locations": [center.lon_lat()],
        "range": [range_km * 1000],
        "range_type": "distance",
        "smoothing": config.ISOCHRONE_SMOOTHING,
        "attributes": ["area"],
    }


def parse_isochrone_response(response: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(response, dict):
        return None
    features = response.get("features")
    if not isinstance(features, list) or not features:
        return None
    feature = features[0]
    if not isinstance(feature, dict) or not isinstance(feature.get("geometry"), dict):
        return None
    return feature


def sort_by_range_desc(polygons: Iterable[IsochronePolygon]) -> List[IsochronePolygon]:
    """Largest ranges first, so smaller polygons draw on top."""
    return sorted(polygons, key=lambda p: p.range_km, reverse=True)
