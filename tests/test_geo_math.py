import math
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from geo_math import (
    bearing_between,
    cumulative_distance,
    haversine,
    haversine_km,
    project_to_local_meters,
)


def test_haversine_zero_for_identical_points():
    assert haversine((28.63, 77.22), (28.63, 77.22)) == 0.0


def test_haversine_one_degree_of_latitude():
    # ~111.2 km per degree on a 6371 km sphere
    assert haversine_km((0.0, 0.0), (1.0, 0.0)) == pytest.approx(111.19, abs=0.01)


def test_haversine_antipodal_points_are_finite():
    d = haversine((0.0, 0.0), (0.0, 180.0))
    assert math.isfinite(d)
    assert d == pytest.approx(math.pi * 6371000.0, rel=1e-9)


def test_local_projection_distances_match_haversine_at_city_scale():
    a = (28.6300, 77.2200)
    b = (28.6309, 77.2209)
    ax, ay = project_to_local_meters(a[0], a[1], a[0])
    bx, by = project_to_local_meters(b[0], b[1], a[0])
    planar = math.hypot(bx - ax, by - ay)
    assert planar == pytest.approx(haversine(a, b), rel=1e-3)


@pytest.mark.parametrize(
    "dest, expected",
    [
        ((1.0, 0.0), 0.0),
        ((0.0, 1.0), 90.0),
        ((-1.0, 0.0), 180.0),
        ((0.0, -1.0), 270.0),
    ],
)
def test_bearing_cardinal_directions(dest, expected):
    assert bearing_between((0.0, 0.0), dest) == pytest.approx(expected, abs=1e-6)


def test_bearing_identical_points_is_zero_and_in_range():
    assert bearing_between((28.6, 77.2), (28.6, 77.2)) == 0.0
    assert 0.0 <= bearing_between((28.6, 77.2), (28.5999999, 77.2)) < 360.0


def test_cumulative_distance_handles_repeated_vertex():
    cum, total = cumulative_distance([(0.0, 0.0), (0.0, 0.0), (1.0, 0.0)])
    assert cum[0] == 0.0
    assert cum[1] == 0.0
    assert total == pytest.approx(cum[2])
    assert not any(math.isnan(c) for c in cum)
