import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from services.zones import ZONE_TABLE, describe_zones, find_zone, zone_cost


@pytest.mark.parametrize(
    "distance, expected_zone, expected_cost",
    [
        (0, 1, 0.00),
        (50, 1, 0.00),
        (50.01, 2, 2.50),
        (150, 2, 2.50),
        (300, 3, 5.00),
        (600, 4, 7.50),
        (1000, 5, 10.00),
        (1400, 6, 12.50),
        (1800, 7, 15.00),
        (1800.01, 8, 17.50),
        (12000, 8, 17.50),
    ],
)
def test_bucket_upper_bounds_are_inclusive(distance, expected_zone, expected_cost):
    rule = find_zone(distance)
    assert rule.zone == expected_zone
    assert zone_cost(distance) == expected_cost


def test_zero_distance_is_local_and_free():
    rule = find_zone(0.0)
    assert rule.name == "Zone 1 (Local)"
    assert rule.surcharge == 0.0


def test_zone_cost_is_constant_within_a_bucket():
    for rule in ZONE_TABLE[:-1]:
        low = rule.min_distance + 0.01
        high = rule.max_distance
        assert zone_cost(low) == zone_cost((low + high) / 2) == zone_cost(high)


def test_every_distance_falls_in_exactly_one_bucket():
    for tenths in range(0, 25000, 7):
        distance = tenths / 10
        matches = [rule for rule in ZONE_TABLE if rule.contains(distance)]
        assert len(matches) == 1
        assert matches[0] is find_zone(distance)


def test_table_is_ordered_and_ends_unbounded():
    uppers = [rule.max_distance for rule in ZONE_TABLE]
    assert uppers[-1] is None
    assert uppers[:-1] == sorted(uppers[:-1])
    assert ZONE_TABLE[0].min_distance == 0
    for previous, current in zip(ZONE_TABLE, ZONE_TABLE[1:]):
        assert current.min_distance == previous.max_distance


def test_negative_distance_is_rejected():
    with pytest.raises(ValueError):
        find_zone(-1)


def test_describe_zones_serializes_table():
    zones = describe_zones()
    assert len(zones) == 8
    assert zones[0] == {
        "zone": 1,
        "name": "Zone 1 (Local)",
        "minDistance": 0.0,
        "maxDistance": 50.0,
        "cost": 0.0,
    }
    assert zones[-1]["name"] == "Zone 8 (Cross-Country)"
    assert zones[-1]["maxDistance"] is None
