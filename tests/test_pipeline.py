import pytest

from commute_audit.errors import ConfigurationError, InputError, InvalidTransitionError
from commute_audit.geocoder import GeocodingProvider, GeocodingResolver
from commute_audit.isochrones import IsochroneBatchResult
from commute_audit.models import (
    BatchSummary,
    GeoPoint,
    IsochronePolygon,
    PipelineRunState,
    RouteResult,
    StageTransition,
)
from commute_audit.pipeline import PipelineOrchestrator, Stage, resolve_stage
from commute_audit.routes_client import RouteBatchResult


class FakeProvider(GeocodingProvider):
    name = "fake"

    def __init__(self, points):
        super().__init__(http_client=None)
        self.points = points
        self.calls = []

    def search(self, address):
        self.calls.append(address)
        return self.points.get(address)


class FakeRoutingEngine:
    def __init__(self, failing_ids=()):
        self.failing_ids = set(failing_ids)
        self.routed = []

    def route_trips(self, trips, progress=None):
        routes = []
        for trip in trips:
            self.routed.append(trip.id)
            if trip.id in self.failing_ids:
                routes.append(RouteResult(trip=trip, status="error", error="API Error: 500"))
            else:
                routes.append(
                    RouteResult(trip=trip, status="success", distance_km=3.2, duration_min=12, polyline="")
                )
        ok = sum(1 for r in routes if r.ok)
        return RouteBatchResult(
            routes=routes,
            summary=BatchSummary(stage="route", total=len(trips), succeeded=ok, failed=len(trips) - ok),
        )


class FakeIsochroneGenerator:
    def generate_for_trips(self, trips, progress=None):
        polygon = IsochronePolygon(
            geometry={"type": "Polygon", "coordinates": []}, range_km=2, center_address="Site X"
        )
        return IsochroneBatchResult(
            polygons=[polygon], summary=BatchSummary(stage="isochrones", total=1, succeeded=1)
        )


class RecordingProgress:
    def __init__(self):
        self.events = []

    def set_step(self, step, index, total):
        self.events.append(("step", step, index, total))

    def set_stage(self, stage, total_estimate=None):
        self.events.append(("stage", stage))

    def advance(self, count=1, ok=True):
        pass


POINTS = {
    "1 Rue A Paris 75001": GeoPoint(48.86, 2.34, "fake"),
    "2 Rue B Paris 75002": GeoPoint(48.87, 2.35, "fake"),
    "Lyon Acme": GeoPoint(45.76, 4.83, "fake"),
}

ROWS = [
    ["1 Rue A", "Paris", "75001", "Acme;Lyon"],
    ["2 Rue B", "Paris", "75002", "Acme;Lyon"],
    ["", "", "", ""],
]


def make_orchestrator(routing=None, progress=None, routing_factory=None):
    rendered = []
    resolvers = []
    engine = routing or FakeRoutingEngine()

    def resolver_factory():
        resolver = GeocodingResolver([FakeProvider(POINTS)], fallback_delay=0, sleep=lambda s: None)
        resolvers.append(resolver)
        return resolver

    orchestrator = PipelineOrchestrator(
        resolver_factory=resolver_factory,
        routing_factory=routing_factory or (lambda: engine),
        isochrone_factory=FakeIsochroneGenerator,
        renderers=[rendered.append],
        progress=progress,
    )
    return orchestrator, rendered, resolvers


def test_full_run_reaches_map_and_renders_once():
    orchestrator, rendered, _ = make_orchestrator()

    state = orchestrator.start(ROWS)

    assert state.current_stage == "map"
    assert orchestrator.visited == [Stage.CSV, Stage.GEO, Stage.ROUTE, Stage.MAP]
    assert [t.id for t in state.geocoded_trips] == ["employé a1", "employé a2"]
    assert len(state.routes) == 2
    assert len(state.isochrones) == 1
    assert rendered == [state]


def test_earlier_stage_data_survives_later_merges():
    orchestrator, _, _ = make_orchestrator()

    state = orchestrator.start(ROWS)

    assert state.raw_data == ROWS
    assert [p.employee_address for p in state.address_pairs] == [
        "1 Rue A Paris 75001",
        "2 Rue B Paris 75002",
    ]
    assert state.address_pairs[0].employer_address == "Lyon Acme"
    assert state.geocode_summary.tally() == "2 of 2 succeeded"


def test_route_errors_do_not_stop_the_run():
    orchestrator, rendered, _ = make_orchestrator(routing=FakeRoutingEngine({"employé a1"}))

    state = orchestrator.start(ROWS)

    assert state.current_stage == "map"
    assert [r.status for r in state.routes] == ["error", "success"]
    assert len(rendered) == 1


def test_progress_updates_after_each_stage_is_entered():
    progress = RecordingProgress()
    orchestrator, _, _ = make_orchestrator(progress=progress)

    orchestrator.start(ROWS)

    steps = [e for e in progress.events if e[0] == "step"]
    assert steps == [("step", "geo", 2, 4), ("step", "route", 3, 4), ("step", "map", 4, 4)]
    assert progress.events.index(("stage", "geo")) < progress.events.index(("step", "geo", 2, 4))


def test_rows_without_addresses_are_rejected():
    orchestrator, rendered, resolvers = make_orchestrator()

    with pytest.raises(InputError):
        orchestrator.start([["", "", "", ""], [" ", "", "", "Acme;Lyon"]])

    assert resolvers == []
    assert rendered == []
    assert orchestrator.state.current_stage == "csv"


def test_missing_routing_configuration_stops_at_route():
    def no_key():
        raise ConfigurationError("Missing OpenRouteService API key (set ORS_API_KEY)")

    orchestrator, rendered, _ = make_orchestrator(routing_factory=no_key)

    with pytest.raises(ConfigurationError):
        orchestrator.start(ROWS)

    assert orchestrator.state.current_stage == "route"
    assert len(orchestrator.state.geocoded_trips) == 2
    assert orchestrator.state.routes is None
    assert rendered == []


def test_settings_alias_enters_map():
    orchestrator, rendered, _ = make_orchestrator()
    orchestrator.start(ROWS)
    routes = orchestrator.state.routes
    orchestrator.state = PipelineRunState(current_stage="route", routes=routes)

    orchestrator.dispatch(StageTransition(data={}, next="settings"))

    assert orchestrator.state.current_stage == "map"
    assert len(rendered) == 2


def test_backward_transition_is_rejected():
    orchestrator, _, _ = make_orchestrator()
    orchestrator.state = PipelineRunState(current_stage="route")

    with pytest.raises(InvalidTransitionError):
        orchestrator.dispatch(StageTransition(data={}, next="geo"))
    assert orchestrator.state.current_stage == "route"


def test_skipping_a_stage_is_rejected():
    orchestrator, _, _ = make_orchestrator()

    with pytest.raises(InvalidTransitionError):
        orchestrator.dispatch(StageTransition(data={}, next="route"))
    with pytest.raises(InvalidTransitionError):
        orchestrator.dispatch(StageTransition(data={}, next="bogus"))


def test_entering_geo_without_pairs_is_a_no_op():
    orchestrator, _, resolvers = make_orchestrator()

    orchestrator.dispatch(StageTransition(data={"address_pairs": []}, next="step-geo"))

    assert orchestrator.state.current_stage == "geo"
    assert resolvers == []
    assert orchestrator.state.geocoded_trips is None


def test_entering_map_without_routes_renders_nothing():
    orchestrator, rendered, _ = make_orchestrator()
    orchestrator.state = PipelineRunState(current_stage="route")

    orchestrator.dispatch(StageTransition(data={}, next="map"))

    assert orchestrator.state.current_stage == "map"
    assert rendered == []


def test_each_run_gets_a_fresh_resolver():
    orchestrator, _, resolvers = make_orchestrator()

    orchestrator.start(ROWS)
    orchestrator.start(ROWS)

    assert len(resolvers) == 2
    assert resolvers[0] is not resolvers[1]
    assert orchestrator.visited == [Stage.CSV, Stage.GEO, Stage.ROUTE, Stage.MAP]


def test_run_csv_reads_file(tmp_path):
    path = tmp_path / "input.csv"
    path.write_text(
        "adresse,ville,cp,site\n1 Rue A,Paris,75001,Acme;Lyon\n", encoding="utf-8"
    )
    orchestrator, _, _ = make_orchestrator()

    state = orchestrator.run_csv(str(path))

    assert [t.id for t in state.geocoded_trips] == ["employé a1"]


def test_resolve_stage():
    assert resolve_stage("geo") is Stage.GEO
    assert resolve_stage("step-route") is Stage.ROUTE
    assert resolve_stage("settings") is Stage.MAP
    assert resolve_stage("Step-Settings") is Stage.MAP
    with pytest.raises(ValueError):
        resolve_stage("export")


def test_merge_rejects_unknown_fields():
    with pytest.raises(ValueError):
        PipelineRunState().merge({"nope": 1}, current_stage="geo")


def test_unknown_stage_is_not_remapped():
    orchestrator, rendered, _ = make_orchestrator()
    orchestrator.state = PipelineRunState(current_stage="route", routes=[])

    with pytest.raises(InvalidTransitionError) as excinfo:
        orchestrator.dispatch(StageTransition(data={}, next="export"))

    assert excinfo.value.current == "route"
    assert excinfo.value.requested == "export"
    assert orchestrator.state.current_stage == "route"
    assert rendered == []
