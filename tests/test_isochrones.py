import json

import pytest
import requests

from commute_audit import config
from commute_audit.http import HttpClient
from commute_audit.isochrones import (
    IsochroneGenerator,
    build_isochrone_body,
    dedupe_destinations,
    sort_by_range_desc,
)
from commute_audit.models import GeocodedTrip, GeoPoint, IsochronePolygon


class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self._payload = payload
        self.status_code = status_code
        self.headers = {}

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}", response=self)


class FakeSession:
    """Answers with a polygon unless the requested range is in ``fail_ranges_m``."""

    def __init__(self, fail_ranges_m=()):
        self.fail_ranges_m = set(fail_ranges_m)
        self.calls = []

    def post(self, url, data=None, headers=None, timeout=None):
        body = json.loads(data)
        self.calls.append({"url": url, "body": body})
        if body["range"][0] in self.fail_ranges_m:
            return FakeResponse(status_code=500)
        lon, lat = body["locations"][0]
        return FakeResponse(
            {
                "type": "FeatureCollection",
                "features": [
                    {
                        "type": "Feature",
                        "properties": {"value": body["range"][0], "area": 12.5},
                        "geometry": {"type": "Polygon", "coordinates": [[[lon, lat], [lon, lat]]]},
                    }
                ],
            }
        )


def make_generator(session, thresholds_km=(2, 5, 10)):
    client = HttpClient(timeout=1, retry_max=0, sleep=lambda s: None)
    client.session = session
    return IsochroneGenerator(client, thresholds_km=thresholds_km)


SITE_X = GeoPoint(48.80, 2.30, "ban")
SITE_Y = GeoPoint(45.70, 4.80, "ban")


def make_trip(index, end_point, employer):
    return GeocodedTrip(
        id=f"employé {index}",
        start_point=GeoPoint(48.0, 2.0, "ban"),
        end_point=end_point,
        employee_address="home",
        employer_address=employer,
    )


def test_one_request_per_distinct_destination_and_threshold():
    session = FakeSession()
    generator = make_generator(session)
    trips = [
        make_trip(1, SITE_X, "Site X"),
        make_trip(2, SITE_Y, "Site Y"),
        make_trip(3, SITE_X, "Site X bis"),
    ]

    result = generator.generate_for_trips(trips)

    assert len(session.calls) == 6
    assert len(result.polygons) == 6
    assert {p.range_km for p in result.polygons} == {2, 5, 10}
    assert {p.center_address for p in result.polygons} == {"Site X", "Site Y"}
    assert result.summary.tally() == "6 of 6 succeeded"


def test_failed_requests_are_dropped():
    session = FakeSession(fail_ranges_m={5000})
    generator = make_generator(session)

    result = generator.generate_isochrones([(SITE_X, "Site X"), (SITE_Y, "Site Y")])

    assert len(session.calls) == 6
    assert sorted(p.range_km for p in result.polygons) == [2, 2, 10, 10]
    assert result.summary.total == 6
    assert result.summary.failed == 2


def test_empty_feature_collection_counts_as_failure():
    class EmptySession(FakeSession):
        def post(self, url, data=None, headers=None, timeout=None):
            self.calls.append(url)
            return FakeResponse({"type": "FeatureCollection", "features": []})

    generator = make_generator(EmptySession(), thresholds_km=(2,))

    assert generator.generate_isochrone(SITE_X, 2, "Site X") is None


@pytest.mark.parametrize(
    "payload",
    [
        {"features": ["oops"]},
        {"features": "none"},
        {"features": [{"geometry": "Polygon"}]},
        ["features"],
    ],
)
def test_malformed_polygon_is_dropped_without_stopping_the_batch(payload):
    class MixedSession(FakeSession):
        def post(self, url, data=None, headers=None, timeout=None):
            if json.loads(data)["range"][0] == 5000:
                self.calls.append(url)
                return FakeResponse(payload)
            return super().post(url, data=data, headers=headers, timeout=timeout)

    session = MixedSession()
    generator = make_generator(session)

    result = generator.generate_isochrones([(SITE_X, "Site X")])

    assert len(session.calls) == 3
    assert sorted(p.range_km for p in result.polygons) == [2, 10]
    assert result.summary.failed == 1


def test_non_dict_properties_are_ignored():
    class OddPropertiesSession(FakeSession):
        def post(self, url, data=None, headers=None, timeout=None):
            self.calls.append(url)
            return FakeResponse(
                {"features": [{"properties": "x", "geometry": {"type": "Polygon", "coordinates": []}}]}
            )

    generator = make_generator(OddPropertiesSession(), thresholds_km=(2,))

    polygon = generator.generate_isochrone(SITE_X, 2, "Site X")

    assert polygon.properties == {}


def test_request_shape():
    session = FakeSession()
    generator = make_generator(session, thresholds_km=(13,))

    polygon = generator.generate_isochrone(SITE_X, 13, "Site X")

    call = session.calls[0]
    assert call["url"] == f"{config.ORS_ISOCHRONES_URL}/cycling-regular"
    assert call["body"]["locations"] == [[2.30, 48.80]]
    assert call["body"]["range"] == [13000]
    assert call["body"]["range_type"] == "distance"
    feature = polygon.to_feature()
    assert feature["properties"]["range_km"] == 13
    assert feature["properties"]["center"] == "Site X"
    assert feature["properties"]["area"] == 12.5


def test_default_thresholds():
    body = build_isochrone_body(SITE_X, 2)
    assert body["range"] == [2000]
    assert body["smoothing"] == config.ISOCHRONE_SMOOTHING
    assert tuple(config.ISOCHRONE_THRESHOLDS_KM) == (2, 5, 10, 13)


def test_dedupe_keeps_first_address():
    unique = dedupe_destinations([(SITE_X, "first"), (SITE_Y, "y"), (SITE_X, "second")])
    assert unique == [(SITE_X, "first"), (SITE_Y, "y")]


def test_bare_points_are_accepted():
    session = FakeSession()
    generator = make_generator(session, thresholds_km=(2, 5))

    result = generator.generate_isochrones([SITE_X, SITE_X, SITE_Y])

    assert len(session.calls) == 4
    assert {p.center_address for p in result.polygons} == {""}


def test_sort_by_range_desc():
    polygons = [
        IsochronePolygon(geometry={}, range_km=km, center_address="x") for km in (5, 13, 2, 10)
    ]
    assert [p.range_km for p in sort_by_range_desc(polygons)] == [13, 10, 5, 2]
