"""Output reporting helpers."""
from __future__ import annotations

import csv
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, TextIO

from .geo import decode_polyline
from .isochrones import sort_by_range_desc
from .models import GeocodedTrip, IsochronePolygon, PipelineRunState, RouteResult


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _fsync_dir(path: str) -> None:
    try:
        dir_fd = os.open(path, os.O_DIRECTORY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


@contextmanager
def atomic_writer(
    path: str,
    mode: str = "w",
    encoding: str = "utf-8",
    newline: Optional[str] = None,
) -> Iterator[TextIO]:
    dir_path = os.path.dirname(path) or "."
    base = os.path.basename(path)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{base}.", suffix=".tmp", dir=dir_path)
    try:
        with os.fdopen(fd, mode, encoding=encoding, newline=newline) as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(dir_path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def atomic_write_text(path: str, text: str) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        f.write(text)


def write_json_object(path: str, payload: Dict[str, Any]) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)


def write_summary(path: str, summary_lines: List[str]) -> None:
    atomic_write_text(path, "\n".join(summary_lines))


# --- GeoJSON ---

def feature_collection(features: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    return {"type": "FeatureCollection", "features": list(features)}


def build_points_geojson(trips: Iterable[GeocodedTrip]) -> Dict[str, Any]:
    """Two points per trip: departure (home) and arrival (workplace)."""
    features = []
    for trip in trips:
        features.append(
            {
                "type": "Feature",
                "properties": {"id": trip.id, "type": "dep"},
                "geometry": {"type": "Point", "coordinates": trip.start_point.lon_lat()},
            }
        )
        features.append(
            {
                "type": "Feature",
                "properties": {"id": trip.id, "type": "arr"},
                "geometry": {"type": "Point", "coordinates": trip.end_point.lon_lat()},
            }
        )
    return feature_collection(features)


def build_lines_geojson(routes: Iterable[RouteResult]) -> Dict[str, Any]:
    features = []
    for route in routes:
        if not route.ok or not route.polyline:
            continue
        features.append(
            {
                "type": "Feature",
                "properties": {"id": route.id, "dist": route.distance_km},
                "geometry": {"type": "LineString", "coordinates": decode_polyline(route.polyline)},
            }
        )
    return feature_collection(features)


def build_isochrones_geojson(
    polygons: Iterable[IsochronePolygon], range_km: Optional[float] = None
) -> Dict[str, Any]:
    selected = [p for p in polygons if range_km is None or p.range_km == range_km]
    return feature_collection(p.to_feature() for p in sort_by_range_desc(selected))


# --- Tabular ---

ANALYSIS_FIELDNAMES = [
    "id",
    "start_lat",
    "start_lon",
    "end_lat",
    "end_lon",
    "distance_km",
    "duration_minutes",
    "status",
    "error",
]


def build_analysis_rows(routes: Iterable[RouteResult]) -> List[Dict[str, Any]]:
    rows = []
    for route in routes:
        data = route.to_dict()
        data["duration_minutes"] = data.pop("duration_min")
        rows.append({name: "" if data.get(name) is None else data[name] for name in ANALYSIS_FIELDNAMES})
    return rows


def write_analysis_csv(path: str, routes: Iterable[RouteResult]) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=ANALYSIS_FIELDNAMES)
        writer.writeheader()
        for row in build_analysis_rows(routes):
            writer.writerow(row)


class MapExporter:
    """Map-stage collaborator: writes GeoJSON layers, the analysis CSV and
    a text summary into ``output_dir``."""

    def __init__(
        self,
        output_dir: str,
        summary_renderer: Optional[Any] = None,
        isochrone_layers_km: Optional[Sequence[float]] = None,
    ) -> None:
        self.output_dir = output_dir
        self.summary_renderer = summary_renderer
        self.isochrone_layers_km = isochrone_layers_km
        self.written: List[str] = []

    def __call__(self, state: PipelineRunState) -> None:
        ensure_dir(self.output_dir)
        out = Path(self.output_dir)
        trips = state.geocoded_trips or []
        routes = state.routes or []
        isochrones = state.isochrones or []

        self._write_json(out / "points.geojson", build_points_geojson(trips))
        self._write_json(out / "routes.geojson", build_lines_geojson(routes))
        self._write_json(out / "isochrones.geojson", build_isochrones_geojson(isochrones))
        layers = self.isochrone_layers_km
        if layers is None:
            layers = sorted({p.range_km for p in isochrones})
        for km in layers:
            name = f"isochrones_{_format_km(km)}km.geojson"
            self._write_json(out / name, build_isochrones_geojson(isochrones, range_km=km))

        analysis_path = str(out / "analysis.csv")
        write_analysis_csv(analysis_path, routes)
        self.written.append(analysis_path)

        if self.summary_renderer is not None:
            summary_path = str(out / "summary.txt")
            write_summary(summary_path, self.summary_renderer(state))
            self.written.append(summary_path)

    def _write_json(self, path: Path, payload: Dict[str, Any]) -> None:
        write_json_object(str(path), payload)
        self.written.append(str(path))


def _format_km(km: float) -> str:
    return str(int(km)) if float(km).is_integer() else str(km)


class ProgressReporter:
    def __init__(
        self,
        output_path: Optional[str],
        log_every: int = 10,
        write_interval_seconds: float = 2.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.output_path = output_path
        self.log_every = max(1, int(log_every)) if log_every else 0
        self.write_interval_seconds = float(write_interval_seconds)
        self.logger = logger or logging.getLogger(__name__)
        self.step = "csv"
        self.step_index = 0
        self.step_total = 0
        self.stage = "init"
        self.processed_count = 0
        self.succeeded = 0
        self.failed = 0
        self.total_estimate: Optional[int] = None
        self._next_log = self.log_every if self.log_every else 0
        self._last_write = 0.0

    def set_step(self, step: str, index: int, total: int) -> None:
        """Pipeline-level indicator: step ``index`` (1-based) of ``total``."""
        self.step = step
        self.step_index = index
        self.step_total = total
        self.logger.info("Step %s of %s: %s", index, total, step)
        self._write_if_due(force=True)

    def set_stage(self, stage: str, total_estimate: Optional[int] = None) -> None:
        self.stage = stage
        self.processed_count = 0
        self.succeeded = 0
        self.failed = 0
        self.total_estimate = total_estimate
        self._next_log = self.log_every if self.log_every else 0
        self._write_if_due(force=True)

    def advance(self, count: int = 1, ok: bool = True) -> None:
        if count <= 0:
            return
        self.processed_count += count
        if ok:
            self.succeeded += count
        else:
            self.failed += count
        if self.log_every and self.processed_count >= self._next_log:
            if self.total_estimate is None:
                self.logger.info(
                    "Progress: stage=%s processed=%s succeeded=%s failed=%s",
                    self.stage,
                    self.processed_count,
                    self.succeeded,
                    self.failed,
                )
            else:
                self.logger.info(
                    "Progress: stage=%s processed=%s/%s succeeded=%s failed=%s",
                    self.stage,
                    self.processed_count,
                    self.total_estimate,
                    self.succeeded,
                    self.failed,
                )
            self._next_log += self.log_every
        self._write_if_due()

    def flush(self) -> None:
        self._write_if_due(force=True)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "step_index": self.step_index,
            "step_total": self.step_total,
            "stage": self.stage,
            "processed_count": self.processed_count,
            "total_estimate": self.total_estimate,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "timestamp": utc_now_iso(),
        }

    def _write_if_due(self, force: bool = False) -> None:
        if not self.output_path:
            return
        now = time.monotonic()
        if not force and (now - self._last_write) < self.write_interval_seconds:
            return
        with atomic_writer(self.output_path, mode="w", encoding="utf-8") as f:
            json.dump(self.snapshot(), f, ensure_ascii=False, indent=2)
        self._last_write = now
