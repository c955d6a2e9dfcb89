"""Project configuration.

Loads pipeline parameters from pipeline_config.json when available,
falling back to sensible defaults. Keep API request shapes centralized here.
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

_REPO_ROOT = Path(__file__).resolve().parent.parent

# --- API endpoints ---

BAN_SEARCH_URL = "https://api-adresse.data.gouv.fr/search/"
NOMINATIM_SEARCH_URL = "https://nominatim.openstreetmap.org/search"
ORS_DIRECTIONS_URL = "https://api.openrouteservice.org/v2/directions"
ORS_ISOCHRONES_URL = "https://api.openrouteservice.org/v2/isochrones"

# --- Credentials (environment) ---

ORS_API_KEY_ENV = "ORS_API_KEY"
NOMINATIM_USER_AGENT_ENV = "NOMINATIM_USER_AGENT"
NOMINATIM_USER_AGENT = "commute-audit/0.1"

# --- Geocoding ---

GEOCODING_PROVIDER_ORDER: List[str] = ["ban", "nominatim"]
GEOCODING_MIN_INTERVAL_SECONDS = 1.2
GEOCODING_FALLBACK_DELAY_SECONDS = 0.5
GEOCODING_RETRY_MAX = 2
GEOCODING_BACKOFF_SECONDS = 1.5
NOMINATIM_COUNTRY_SUFFIX = ", France"

# --- Routing ---

ROUTING_PROFILE = "cycling-regular"
ROUTING_SEARCH_RADIUS_M = 300
ROUTING_MIN_INTERVAL_SECONDS = 1.7
ROUTING_RETRY_MAX = 0
ORS_BACKOFF_SECONDS = 1.5

# --- Isochrones ---

ISOCHRONE_THRESHOLDS_KM: Tuple[float, ...] = (2, 5, 10, 13)
ISOCHRONE_PROFILE = ROUTING_PROFILE
ISOCHRONE_MIN_INTERVAL_SECONDS = 1.0
ISOCHRONE_RETRY_MAX = 0
ISOCHRONE_SMOOTHING = 0.9

# --- HTTP ---

HTTP_TIMEOUT_SECONDS = 15
HTTP_BACKOFF_MAX = 8.0

# --- Analytics ---

DISTANCE_BUCKETS_KM: List[Tuple[str, Optional[float]]] = [
    ("0-2 km", 2.0),
    ("2-5 km", 5.0),
    ("5-10 km", 10.0),
    ("10+ km", None),
]
DURATION_BUCKETS_MIN: List[Tuple[str, Optional[float]]] = [
    ("0-10 min", 10.0),
    ("10-15 min", 15.0),
    ("15-20 min", 20.0),
    ("20+ min", None),
]
EBIKE_DURATION_FACTOR = 0.75

# --- Outputs ---

OUTPUT_DIR = "out"
PROGRESS_LOG_EVERY = 10
PROGRESS_WRITE_INTERVAL_SECONDS = 2.0


def ors_api_key() -> str:
    return (os.environ.get(ORS_API_KEY_ENV) or "").strip()


def nominatim_user_agent() -> str:
    return (os.environ.get(NOMINATIM_USER_AGENT_ENV) or "").strip() or NOMINATIM_USER_AGENT


def load_pipeline_config(path: Optional[str] = None) -> bool:
    """Load pipeline configuration from a JSON file.

    Updates module-level globals with values from the config file.
    Returns True if config was loaded, False if file not found.
    """
    if path is None:
        path = str(_REPO_ROOT / "pipeline_config.json")

    config_path = Path(path)
    if not config_path.exists():
        return False

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    globals_ref = globals()

    geocoding: Dict[str, Any] = data.get("geocoding", {})
    order = geocoding.get("provider_order")
    if order:
        globals_ref["GEOCODING_PROVIDER_ORDER"] = [str(p).strip().lower() for p in order]
    if "min_interval_seconds" in geocoding:
        globals_ref["GEOCODING_MIN_INTERVAL_SECONDS"] = float(geocoding["min_interval_seconds"])
    if "fallback_delay_seconds" in geocoding:
        globals_ref["GEOCODING_FALLBACK_DELAY_SECONDS"] = float(geocoding["fallback_delay_seconds"])
    if "retry_max" in geocoding:
        globals_ref["GEOCODING_RETRY_MAX"] = int(geocoding["retry_max"])
    if "backoff_seconds" in geocoding:
        globals_ref["GEOCODING_BACKOFF_SECONDS"] = float(geocoding["backoff_seconds"])
    if "country_suffix" in geocoding:
        globals_ref["NOMINATIM_COUNTRY_SUFFIX"] = str(geocoding["country_suffix"])

    routing: Dict[str, Any] = data.get("routing", {})
    if "profile" in routing:
        globals_ref["ROUTING_PROFILE"] = str(routing["profile"])
        globals_ref["ISOCHRONE_PROFILE"] = str(routing["profile"])
    if "search_radius_m" in routing:
        globals_ref["ROUTING_SEARCH_RADIUS_M"] = int(routing["search_radius_m"])
    if "min_interval_seconds" in routing:
        globals_ref["ROUTING_MIN_INTERVAL_SECONDS"] = float(routing["min_interval_seconds"])
    if "backoff_seconds" in routing:
        globals_ref["ORS_BACKOFF_SECONDS"] = float(routing["backoff_seconds"])

    isochrones: Dict[str, Any] = data.get("isochrones", {})
    thresholds = isochrones.get("thresholds_km")
    if thresholds:
        globals_ref["ISOCHRONE_THRESHOLDS_KM"] = tuple(float(t) for t in thresholds)
    if "min_interval_seconds" in isochrones:
        globals_ref["ISOCHRONE_MIN_INTERVAL_SECONDS"] = float(isochrones["min_interval_seconds"])
    if "retry_max" in isochrones:
        globals_ref["ISOCHRONE_RETRY_MAX"] = int(isochrones["retry_max"])
    if "smoothing" in isochrones:
        globals_ref["ISOCHRONE_SMOOTHING"] = float(isochrones["smoothing"])

    http: Dict[str, Any] = data.get("http", {})
    if "timeout_seconds" in http:
        globals_ref["HTTP_TIMEOUT_SECONDS"] = float(http["timeout_seconds"])

    return True
