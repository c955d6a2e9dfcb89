"""Pipeline orchestration.

Four stages run strictly in order: csv -> geo -> route -> map. Each stage
returns a StageTransition carrying the data it produced; the orchestrator
merges that data into the run state, enters the next stage and only then
updates the progress indicator.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, List, Optional, Sequence

from .errors import InputError, InvalidTransitionError
from .geocoder import GeocodingResolver, geocode_pairs
from .isochrones import IsochroneGenerator
from .models import PipelineRunState, StageTransition
from .normalizer import normalize_rows, read_csv_rows
from .reporting import ProgressReporter
from .routes_client import RoutingEngine

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    CSV = "csv"
    GEO = "geo"
    ROUTE = "route"
    MAP = "map"


STAGES_ORDER: List[Stage] = [Stage.CSV, Stage.GEO, Stage.ROUTE, Stage.MAP]

# Former standalone stages that now resolve to a canonical one.
STAGE_ALIASES = {"settings": Stage.MAP}

Renderer = Callable[[PipelineRunState], None]


def resolve_stage(stage_id: str) -> Stage:
    """Map a stage id (``geo``, ``step-geo``, ``settings`` ...) to a Stage.

    Raises ValueError for ids that match nothing.
    """
    key = str(stage_id).strip().lower()
    if key.startswith("step-"):
        key = key[len("step-"):]
    if key in STAGE_ALIASES:
        return STAGE_ALIASES[key]
    return Stage(key)


class PipelineOrchestrator:
    def __init__(
        self,
        resolver_factory: Callable[[], GeocodingResolver],
        routing_factory: Callable[[], RoutingEngine],
        isochrone_factory: Callable[[], IsochroneGenerator],
        renderers: Sequence[Renderer] = (),
        progress: Optional[ProgressReporter] = None,
    ) -> None:
        self.resolver_factory = resolver_factory
        self.routing_factory = routing_factory
        self.isochrone_factory = isochrone_factory
        self.renderers = list(renderers)
        self.progress = progress
        self.state = PipelineRunState()
        self.visited: List[Stage] = [Stage.CSV]

    def reset(self) -> None:
        """Drop all run state; the next run starts from the csv stage."""
        self.state = PipelineRunState()
        self.visited = [Stage.CSV]

    def run_csv(self, path: str) -> PipelineRunState:
        return self.start(read_csv_rows(path))

    def start(self, rows: Sequence[Sequence[str]]) -> PipelineRunState:
        """Normalize ``rows`` and drive the pipeline as far as it can go."""
        self.reset()
        raw = [list(row) for row in rows]
        pairs = normalize_rows(raw)
        if not pairs:
            raise InputError("No valid address rows in input")
        logger.info("Parsed %s address pairs from %s rows", len(pairs), len(raw))
        self.dispatch(
            StageTransition(data={"raw_data": raw, "address_pairs": pairs}, next=Stage.GEO.value)
        )
        return self.state

    def dispatch(self, transition: StageTransition) -> None:
        pending: Optional[StageTransition] = transition
        while pending is not None:
            pending = self._apply(pending)

    def _apply(self, transition: StageTransition) -> Optional[StageTransition]:
        target = self._validate_target(transition.next)
        logger.info("Transition to stage: %s", target.value)
        self.state = self.state.merge(transition.data, current_stage=target.value)
        self.visited.append(target)
        followup = self._enter(target)
        self._update_progress(target)
        return followup

    def _validate_target(self, requested: str) -> Stage:
        """Only the next stage is allowed; unknown ids raise instead of being remapped."""
        current = self.state.current_stage
        try:
            target = resolve_stage(requested)
        except ValueError:
            raise InvalidTransitionError(current, str(requested)) from None
        current_index = STAGES_ORDER.index(Stage(current))
        if STAGES_ORDER.index(target) != current_index + 1:
            raise InvalidTransitionError(current, target.value)
        return target

    def _enter(self, stage: Stage) -> Optional[StageTransition]:
        if stage is Stage.GEO:
            return self._enter_geo()
        if stage is Stage.ROUTE:
            return self._enter_route()
        if stage is Stage.MAP:
            self._enter_map()
        return None

    def _enter_geo(self) -> Optional[StageTransition]:
        pairs = self.state.address_pairs
        if not pairs:
            logger.warning("Geo stage entered without address pairs; nothing to do")
            return None
        resolver = self.resolver_factory()
        result = geocode_pairs(pairs, resolver, progress=self.progress)
        return StageTransition(
            data={
                "geocoded_trips": result.trips,
                "geocode_failures": result.failures,
                "geocode_summary": result.summary,
            },
            next=Stage.ROUTE.value,
        )

    def _enter_route(self) -> Optional[StageTransition]:
        trips = self.state.geocoded_trips
        if not trips:
            logger.warning("Route stage entered without geocoded trips; nothing to do")
            return None
        # Both services are configured before the first call goes out.
        engine = self.routing_factory()
        generator = self.isochrone_factory()
        routes = engine.route_trips(trips, progress=self.progress)
        isochrones = generator.generate_for_trips(trips, progress=self.progress)
        return StageTransition(
            data={
                "routes": routes.routes,
                "route_summary": routes.summary,
                "isochrones": isochrones.polygons,
                "isochrone_summary": isochrones.summary,
            },
            next=Stage.MAP.value,
        )

    def _enter_map(self) -> None:
        if not self.state.routes:
            logger.warning("Map stage entered without routes; nothing to render")
            return
        for renderer in self.renderers:
            renderer(self.state)

    def _update_progress(self, stage: Stage) -> None:
        if self.progress is None:
            return
        self.progress.set_step(stage.value, STAGES_ORDER.index(stage) + 1, len(STAGES_ORDER))
