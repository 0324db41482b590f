import math
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from route_catalog import Route, Stop
from route_projector import (
    clamp_speed_kmh,
    eta_minutes,
    interpolate_along_polyline,
    polyline_length_km,
    project,
    remaining_distance_km,
    travel_minutes,
)

# one kilometre of latitude on a 6371 km sphere
KM_LAT = 180.0 / (math.pi * 6371.0)
BASE = (28.6000, 77.2000)


def _north(km):
    return (BASE[0] + km * KM_LAT, BASE[1])


def _straight_route():
    stops = [Stop(f"S{i}", f"Stop {i}", *_north(float(i))) for i in range(4)]
    return Route.build("LINE", "Straight line", stops, [_north(0.0), _north(3.0)])


def _bent_route():
    polyline = [(28.6315, 77.2167), (28.6258, 77.2350), (28.6822, 77.2244), (28.6894, 77.2100)]
    stops = [Stop(f"S{i}", f"Stop {i}", lat, lng) for i, (lat, lng) in enumerate(polyline)]
    return Route.build("R1", "Bent", stops, polyline)


def test_projection_on_vertex_matches_cumulative_length():
    route = _bent_route()
    for i, vertex in enumerate(route.polyline):
        proj = project(route.polyline, vertex)
        assert proj.distance_from_start_km == pytest.approx(route.cum[i] / 1000.0, abs=1e-9)
        assert proj.offset_m == pytest.approx(0.0, abs=1e-6)


def test_projection_is_clamped_to_segment_ends():
    route = _straight_route()
    before = project(route.polyline, _north(-0.5))
    after = project(route.polyline, _north(4.0))
    assert before.distance_from_start_km == pytest.approx(0.0)
    assert after.distance_from_start_km == pytest.approx(route.length_km)


def test_projection_of_off_route_point_snaps_perpendicular():
    route = _straight_route()
    point = (_north(1.5)[0], BASE[1] + 0.001)  # ~98 m east of the line
    proj = project(route.polyline, point)
    assert proj.distance_from_start_km == pytest.approx(1.5, abs=0.01)
    assert proj.lng == pytest.approx(BASE[1])
    assert proj.offset_m == pytest.approx(97.7, abs=1.0)


def test_projection_distance_is_monotonic_along_route():
    route = _bent_route()
    samples = [interpolate_along_polyline(route.polyline, i / 20.0) for i in range(21)]
    distances = [project(route.polyline, p).distance_from_start_km for p in samples]
    assert distances == sorted(distances)
    assert distances[-1] == pytest.approx(polyline_length_km(route.polyline), abs=1e-6)


def test_projection_degenerate_polylines():
    assert project([], (1.0, 2.0)).distance_from_start_km == 0.0
    single = project([(1.0, 2.0)], (1.0, 2.0))
    assert single.distance_from_start_km == 0.0
    assert single.offset_m == 0.0
    # zero-length segment must not produce NaN
    repeated = project([(1.0, 2.0), (1.0, 2.0)], (1.1, 2.0))
    assert math.isfinite(repeated.distance_from_start_km)
    assert math.isfinite(repeated.offset_m)


def test_eta_from_one_km_to_two_km_at_thirty_kmh():
    route = _straight_route()
    assert eta_minutes(route, _north(1.0), _north(2.0), 30.0) == pytest.approx(2.0, abs=0.05)


def test_eta_when_target_is_behind_is_arrival_eta():
    route = _straight_route()
    assert remaining_distance_km(route, _north(2.0), _north(1.0)) == 0.0
    assert eta_minutes(route, _north(2.0), _north(1.0), 30.0) == 0.5


def test_travel_minutes_is_monotonic_in_distance():
    distances = [0.0, 0.01, 0.029, 0.03, 0.05, 0.1, 0.5, 1.0, 2.0, 10.0]
    etas = [travel_minutes(d, 30.0) for d in distances]
    assert etas == sorted(etas)
    assert all(e >= 0 for e in etas)


def test_travel_minutes_is_monotonic_in_speed():
    speeds = [0.5, 5.0, 10.0, 20.0, 30.0, 45.0, 60.0, 120.0]
    etas = [travel_minutes(3.0, s) for s in speeds]
    assert etas == sorted(etas, reverse=True)


@pytest.mark.parametrize("distance", [float("nan"), float("inf"), -1.0])
def test_travel_minutes_degenerate_distance_is_zero(distance):
    assert travel_minutes(distance, 30.0) == 0.0


def test_travel_minutes_arrived_is_half_a_minute():
    assert travel_minutes(0.0, 30.0) == 0.5
    assert travel_minutes(0.02, 30.0) == 0.5


def test_speed_is_clamped_to_bus_range():
    assert clamp_speed_kmh(1.0) == 5.0
    assert clamp_speed_kmh(200.0) == 60.0
    assert clamp_speed_kmh(None) == 25.0
    assert clamp_speed_kmh(float("nan")) == 25.0
    # 6 km at the 60 km/h ceiling
    assert travel_minutes(6.0, 500.0) == 6.0


def test_interpolate_endpoints_and_midpoint():
    polyline = [_north(0.0), _north(2.0)]
    assert interpolate_along_polyline(polyline, 0.0) == polyline[0]
    assert interpolate_along_polyline(polyline, 1.0) == pytest.approx(polyline[1])
    mid = interpolate_along_polyline(polyline, 0.5)
    assert mid[0] == pytest.approx(_north(1.0)[0])
    assert interpolate_along_polyline(polyline, 7.0) == pytest.approx(polyline[1])
