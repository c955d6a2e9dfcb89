"""In-run cache of geocoding outcomes, keyed by the exact address string."""
from __future__ import annotations

from typing import Dict, Optional, Union

from .models import GeocodeFailure, GeoPoint

GeocodeOutcome = Union[GeoPoint, GeocodeFailure]


class GeocodeCache:
    """Holds both successes and failures so no address is looked up twice.

    Lives for a single pipeline run; a fresh import starts a fresh cache.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, GeocodeOutcome] = {}

    def __contains__(self, address: str) -> bool:
        return address in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, address: str) -> Optional[GeocodeOutcome]:
        return self._entries.get(address)

    def set(self, address: str, outcome: GeocodeOutcome) -> None:
        self._entries[address] = outcome

    def clear(self) -> None:
        self._entries.clear()
