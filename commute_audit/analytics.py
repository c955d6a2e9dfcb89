"""Distance and duration breakdowns of the routed commutes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import config
from .models import PipelineRunState, RouteResult

Buckets = Sequence[Tuple[str, Optional[float]]]


@dataclass
class Breakdown:
    counts: Dict[str, int]
    percentages: Dict[str, float]
    total: int

    def share_up_to(self, labels: Iterable[str]) -> float:
        return sum(self.percentages.get(label, 0.0) for label in labels)


def _bucket_label(value: float, buckets: Buckets) -> str:
    for label, upper in buckets:
        if upper is None or value <= upper:
            return label
    return buckets[-1][0]


def categorize(values: Sequence[float], buckets: Buckets) -> Breakdown:
    counts = {label: 0 for label, _ in buckets}
    for value in values:
        counts[_bucket_label(value, buckets)] += 1
    total = len(values)
    percentages = {
        label: (count / total) * 100 if total > 0 else 0.0 for label, count in counts.items()
    }
    return Breakdown(counts=counts, percentages=percentages, total=total)


def distance_breakdown(routes: Iterable[RouteResult]) -> Breakdown:
    values = [float(r.distance_km) for r in routes if r.ok and r.distance_km is not None]
    return categorize(values, config.DISTANCE_BUCKETS_KM)


def duration_breakdown(routes: Iterable[RouteResult], ebike: bool = False) -> Breakdown:
    factor = config.EBIKE_DURATION_FACTOR if ebike else 1.0
    values = [
        float(r.duration_min) * factor for r in routes if r.ok and r.duration_min is not None
    ]
    return categorize(values, config.DURATION_BUCKETS_MIN)


def render_summary(state: PipelineRunState) -> List[str]:
    routes = state.routes or []
    lines = []
    for summary in (state.geocode_summary, state.route_summary, state.isochrone_summary):
        if summary is not None:
            lines.append(f"{summary.stage}: {summary.tally()} ({summary.failed} failed)")

    failures = state.geocode_failures or []
    if failures:
        lines.append("Geocoding failures:")
        for failure in failures:
            lines.append(f"  - {failure.address}: {failure.reason}")

    errors = [r for r in routes if not r.ok]
    if errors:
        lines.append("Routing errors:")
        for route in errors:
            lines.append(f"  - {route.id}: {route.error}")

    distances = distance_breakdown(routes)
    labels = [label for label, _ in config.DISTANCE_BUCKETS_KM]
    lines.append(f"Distance breakdown ({distances.total} routes):")
    for label in labels:
        lines.append(
            f"  {label}: {distances.counts[label]} ({distances.percentages[label]:.1f}%)"
        )
    under_5 = distances.share_up_to(labels[:2])
    under_10 = distances.share_up_to(labels[:3])
    lines.append(f"Within 5 km: {under_5:.1f}%  Within 10 km: {under_10:.1f}%")

    for title, ebike in (("Duration (bike)", False), ("Duration (e-bike)", True)):
        durations = duration_breakdown(routes, ebike=ebike)
        lines.append(f"{title}:")
        for label, _ in config.DURATION_BUCKETS_MIN:
            lines.append(
                f"  {label}: {durations.counts[label]} ({durations.percentages[label]:.1f}%)"
            )
    return lines
