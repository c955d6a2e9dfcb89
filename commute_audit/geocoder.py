"""Address geocoding with provider fallback, retry and an in-run cache."""
from __future__ import annotations

import logging
import string
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from . import config
from .cache import GeocodeCache, GeocodeOutcome
from .errors import ConfigurationError
from .http import RESPONSE_ERRORS, HttpClient, RateLimiter, RequestMetrics
from .models import AddressPair, BatchSummary, GeocodedTrip, GeocodeFailure, GeoPoint

logger = logging.getLogger(__name__)

TRIP_ID_PREFIX = "employé "


class GeocodingProvider:
    """One external address-to-coordinate service.

    ``search`` returns None for a definitive empty answer and raises a
    ``requests`` exception when the service itself fails.
    """

    name = "provider"

    def __init__(self, http_client: HttpClient) -> None:
        self.http = http_client

    def search(self, address: str) -> Optional[GeoPoint]:
        raise NotImplementedError


class BanProvider(GeocodingProvider):
    name = "ban"

    def search(self, address: str) -> Optional[GeoPoint]:
        response = self.http.get_json(config.BAN_SEARCH_URL, build_ban_params(address))
        return parse_ban_response(response)


class NominatimProvider(GeocodingProvider):
    name = "nominatim"

    def search(self, address: str) -> Optional[GeoPoint]:
        response = self.http.get_json(config.NOMINATIM_SEARCH_URL, build_nominatim_params(address))
        return parse_nominatim_response(response)


PROVIDERS: Dict[str, Callable[[HttpClient], GeocodingProvider]] = {
    "ban": BanProvider,
    "nominatim": NominatimProvider,
}


def build_ban_params(address: str) -> Dict[str, Any]:
    return {"q": address, "limit": 1}


def build_nominatim_params(address: str) -> Dict[str, Any]:
    return {"format": "json", "q": f"{address}{config.NOMINATIM_COUNTRY_SUFFIX}", "limit": 1}


# Adapters for provider response shapes

def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_ban_response(response: Any) -> Optional[GeoPoint]:
    if not isinstance(response, dict):
        return None
    features = response.get("features")
    if not isinstance(features, list) or not features:
        return None
    feature = features[0]
    if not isinstance(feature, dict):
        return None
    geometry = feature.get("geometry")
    if not isinstance(geometry, dict):
        return None
    coords = geometry.get("coordinates")
    if not isinstance(coords, list) or len(coords) < 2:
        return None
    lon, lat = _to_float(coords[0]), _to_float(coords[1])
    if lat is None or lon is None:
        return None
    return GeoPoint(lat=lat, lon=lon, source=BanProvider.name)


def parse_nominatim_response(response: Any) -> Optional[GeoPoint]:
    if not isinstance(response, list) or not response:
        return None
    first = response[0]
    if not isinstance(first, dict):
        return None
    lat, lon = _to_float(first.get("lat")), _to_float(first.get("lon"))
    if lat is None or lon is None:
        return None
    return GeoPoint(lat=lat, lon=lon, source=NominatimProvider.name)


@dataclass
class ProviderStats:
    succeeded: int = 0
    failed: int = 0


class GeocodingResolver:
    """Resolve addresses through providers in priority order.

    Each distinct address string reaches the providers at most once per
    resolver; failures are cached as well as successes.
    """

    def __init__(
        self,
        providers: Sequence[GeocodingProvider],
        cache: Optional[GeocodeCache] = None,
        fallback_delay: Optional[float] = None,
        metrics: Optional[RequestMetrics] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not providers:
            raise ConfigurationError("At least one geocoding provider is required")
        self.providers = list(providers)
        self.cache = cache if cache is not None else GeocodeCache()
        self.fallback_delay = (
            config.GEOCODING_FALLBACK_DELAY_SECONDS if fallback_delay is None else fallback_delay
        )
        self.metrics = metrics
        self._sleep = sleep
        self.provider_stats: Dict[str, ProviderStats] = {p.name: ProviderStats() for p in self.providers}

    def resolve(self, address: str) -> GeocodeOutcome:
        cached = self.cache.get(address)
        if cached is not None:
            if self.metrics is not None:
                self.metrics.inc_cache_hit("geocode")
            return cached
        outcome = self._resolve_uncached(address)
        self.cache.set(address, outcome)
        return outcome

    def reset(self) -> None:
        self.cache.clear()
        self.provider_stats = {p.name: ProviderStats() for p in self.providers}

    def _resolve_uncached(self, address: str) -> GeocodeOutcome:
        reasons: List[str] = []
        for index, provider in enumerate(self.providers):
            if index > 0 and self.fallback_delay > 0:
                self._sleep(self.fallback_delay)
            stats = self.provider_stats[provider.name]
            try:
                point = provider.search(address)
            except RESPONSE_ERRORS as exc:
                stats.failed += 1
                reasons.append(f"{provider.name}: {exc}")
                logger.warning("Geocoder %s failed for %r: %s", provider.name, address, exc)
                continue
            if point is None:
                stats.failed += 1
                reasons.append(f"{provider.name}: no result")
                logger.info("Geocoder %s found nothing for %r", provider.name, address)
                continue
            stats.succeeded += 1
            return point
        return GeocodeFailure(address=address, reason="; ".join(reasons))


def build_resolver(
    provider_order: Optional[Sequence[str]] = None,
    metrics: Optional[RequestMetrics] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> GeocodingResolver:
    """Wire providers to one paced, retrying HTTP client."""
    order = list(provider_order or config.GEOCODING_PROVIDER_ORDER)
    unknown = [name for name in order if name not in PROVIDERS]
    if unknown:
        raise ConfigurationError(f"Unknown geocoding provider(s): {', '.join(unknown)}")
    http_client = HttpClient(
        retry_max=config.GEOCODING_RETRY_MAX,
        backoff_base=config.GEOCODING_BACKOFF_SECONDS,
        headers={"User-Agent": config.nominatim_user_agent(), "Accept": "application/json"},
        rate_limiter=RateLimiter(config.GEOCODING_MIN_INTERVAL_SECONDS, sleep=sleep),
        metrics=metrics,
        kind="geocode",
        sleep=sleep,
    )
    providers = [PROVIDERS[name](http_client) for name in order]
    return GeocodingResolver(providers, metrics=metrics, sleep=sleep)


def group_letter(index: int) -> str:
    """0 -> 'a', 25 -> 'z', 26 -> 'aa', like spreadsheet columns."""
    letters = string.ascii_lowercase
    out = ""
    index += 1
    while index > 0:
        index, rem = divmod(index - 1, 26)
        out = letters[rem] + out
    return out


@dataclass
class _EmployerGroup:
    letter: str
    point: GeoPoint
    count: int = 0


@dataclass
class GeocodeBatchResult:
    trips: List[GeocodedTrip] = field(default_factory=list)
    failures: List[GeocodeFailure] = field(default_factory=list)
    summary: BatchSummary = field(default_factory=lambda: BatchSummary(stage="geo"))


def geocode_pairs(
    pairs: Sequence[AddressPair],
    resolver: GeocodingResolver,
    progress: Optional[Any] = None,
) -> GeocodeBatchResult:
    """Geocode every pair in input order and assign trip ids.

    A pair is kept only when both of its addresses resolve. Employer groups
    get letters in order of their first kept trip; ordinals count kept trips
    within a group.
    """
    result = GeocodeBatchResult()
    groups: Dict[str, _EmployerGroup] = {}
    if progress is not None:
        progress.set_stage("geo", total_estimate=len(pairs))

    for pair in pairs:
        employee = resolver.resolve(pair.employee_address)
        if isinstance(employee, GeocodeFailure):
            result.failures.append(employee)
            _advance(progress, ok=False)
            continue

        site = pair.employer_address
        group = groups.get(site)
        if group is None:
            employer = resolver.resolve(site)
            if isinstance(employer, GeocodeFailure):
                result.failures.append(employer)
                _advance(progress, ok=False)
                continue
            group = _EmployerGroup(letter=group_letter(len(groups)), point=employer)
            groups[site] = group

        group.count += 1
        result.trips.append(
            GeocodedTrip(
                id=f"{TRIP_ID_PREFIX}{group.letter}{group.count}",
                start_point=employee,
                end_point=group.point,
                employee_address=pair.employee_address,
                employer_address=site,
                group_letter=group.letter,
                ordinal=group.count,
            )
        )
        _advance(progress, ok=True)

    result.summary = BatchSummary(
        stage="geo",
        total=len(pairs),
        succeeded=len(result.trips),
        failed=len(pairs) - len(result.trips),
    )
    logger.info("Geocoding complete: %s", result.summary.tally())
    return result


def _advance(progress: Optional[Any], ok: bool) -> None:
    if progress is not None:
        progress.advance(ok=ok)
