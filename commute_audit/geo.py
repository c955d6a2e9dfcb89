"""Geospatial helpers."""
from __future__ import annotations

from typing import List, Optional

import polyline

POLYLINE_PRECISION = 5


def decode_polyline(encoded: Optional[str], precision: int = POLYLINE_PRECISION) -> List[List[float]]:
    """Decode an encoded polyline into GeoJSON-ordered [lon, lat] pairs."""
    if not encoded:
        return []
    return [[lon, lat] for lat, lon in polyline.decode(encoded, precision)]
