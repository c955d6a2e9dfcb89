"""HTTP client with retry/backoff, pacing and request metrics."""
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

from . import config

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (429, 500, 502, 503, 504)

# What a call plus response parsing may raise for a single item.
RESPONSE_ERRORS = (requests.RequestException, ValueError, TypeError, KeyError, AttributeError)

_KINDS = ("geocode", "routes", "isochrones")


@dataclass
class RequestMetrics:
    network_geocode: int = 0
    network_routes: int = 0
    network_isochrones: int = 0
    cache_hits_geocode: int = 0
    retries: int = 0

    def inc_network(self, kind: str) -> None:
        if kind not in _KINDS:
            raise ValueError(f"Unknown request kind: {kind}")
        attr = f"network_{kind}"
        setattr(self, attr, getattr(self, attr) + 1)

    def inc_cache_hit(self, kind: str) -> None:
        if kind != "geocode":
            raise ValueError(f"Unknown cache kind: {kind}")
        self.cache_hits_geocode += 1

    def inc_retry(self) -> None:
        self.retries += 1

    def to_dict(self) -> Dict[str, int]:
        return {
            "network_geocode": self.network_geocode,
            "network_routes": self.network_routes,
            "network_isochrones": self.network_isochrones,
            "cache_hits_geocode": self.cache_hits_geocode,
            "retries": self.retries,
        }


class RateLimiter:
    """Fixed-interval scheduler: consecutive calls start at least
    ``min_interval`` seconds apart."""

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.min_interval = float(min_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_ts: Optional[float] = None

    def wait(self) -> float:
        """Block until the next call may start; return the seconds waited."""
        with self._lock:
            now = self._clock()
            waited = 0.0
            if self._next_ts is not None and now < self._next_ts:
                waited = self._next_ts - now
                self._sleep(waited)
                now = self._clock()
            start = now if self._next_ts is None else max(self._next_ts, now)
            self._next_ts = start + self.min_interval
            return waited


class HttpClient:
    def __init__(
        self,
        timeout: Optional[float] = None,
        retry_max: int = 0,
        backoff_base: float = 0.5,
        backoff_max: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
        rate_limiter: Optional[RateLimiter] = None,
        metrics: Optional[RequestMetrics] = None,
        kind: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout = config.HTTP_TIMEOUT_SECONDS if timeout is None else timeout
        self.retry_max = max(0, int(retry_max))
        self.backoff_base = backoff_base
        self.backoff_max = config.HTTP_BACKOFF_MAX if backoff_max is None else backoff_max
        self.headers = dict(headers or {})
        self.rate_limiter = rate_limiter
        self.metrics = metrics
        self.kind = kind
        self._sleep = sleep
        self.session = requests.Session()

    def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self._request("GET", url, params=params)

    def post_json(self, url: str, body: Dict[str, Any]) -> Any:
        headers = {"Content-Type": "application/json; charset=utf-8"}
        return self._request("POST", url, body=body, extra_headers=headers)

    def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        headers = dict(self.headers)
        if extra_headers:
            headers.update(extra_headers)
        attempts = self.retry_max + 1

        for attempt in range(1, attempts + 1):
            if self.rate_limiter is not None:
                self.rate_limiter.wait()
            if self.metrics is not None and self.kind:
                self.metrics.inc_network(self.kind)
            try:
                if method == "GET":
                    resp = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
                else:
                    resp = self.session.post(
                        url, data=json.dumps(body), headers=headers, timeout=self.timeout
                    )
            except requests.RequestException as exc:
                if attempt >= attempts:
                    raise
                logger.warning("%s from %s (attempt %s)", type(exc).__name__, url, attempt)
                self._before_retry(attempt)
                continue

            status = resp.status_code
            if 200 <= status < 300:
                try:
                    return resp.json()
                except ValueError:
                    logger.error("Non-JSON response from %s", url)
                    raise

            if status in RETRYABLE_STATUSES:
                logger.warning("HTTP %s from %s (attempt %s)", status, url, attempt)
                if attempt >= attempts:
                    _raise_for_status(resp)
                self._before_retry(attempt, resp)
                continue

            # Non-retryable
            logger.error("HTTP %s from %s", status, url)
            _raise_for_status(resp)

        raise RuntimeError("Unexpected HTTP retry loop exit")

    def _before_retry(self, attempt: int, resp: Optional[requests.Response] = None) -> None:
        if self.metrics is not None:
            self.metrics.inc_retry()
        if resp is None or not self._sleep_retry_after(resp):
            self._sleep_backoff(attempt)

    def _sleep_backoff(self, attempt: int) -> None:
        delay = min(self.backoff_base * attempt, self.backoff_max)
        if delay > 0:
            self._sleep(delay)

    def _sleep_retry_after(self, resp: requests.Response) -> bool:
        retry_after = resp.headers.get("Retry-After")
        if not retry_after:
            return False
        try:
            delay = float(retry_after)
        except ValueError:
            return False
        delay = max(0.0, min(delay, self.backoff_max))
        self._sleep(delay)
        return True


def _raise_for_status(resp: requests.Response) -> None:
    resp.raise_for_status()
    raise requests.HTTPError(f"HTTP {resp.status_code}", response=resp)
