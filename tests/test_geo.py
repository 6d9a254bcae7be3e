import pytest

from fieldwork.domain.geo import (
    Coordinates, bounding_box, distance_km, distance_meters, distance_miles, is_within_radius,
)

from tests.conftest import AUSTIN, NEAR_AUSTIN, SAN_ANTONIO


def test_same_point_is_zero():
    assert distance_miles(*AUSTIN, *AUSTIN) == 0
    assert distance_meters(*AUSTIN, *AUSTIN) == 0


def test_austin_to_san_antonio():
    miles = distance_miles(*AUSTIN, *SAN_ANTONIO)
    assert 70 < miles < 77
    assert distance_km(*AUSTIN, *SAN_ANTONIO) == pytest.approx(miles * 6371 / 3959, rel=1e-9)


def test_distance_is_symmetric():
    assert distance_miles(*AUSTIN, *SAN_ANTONIO) == pytest.approx(distance_miles(*SAN_ANTONIO, *AUSTIN))


def test_within_radius():
    center = Coordinates(*AUSTIN)
    assert is_within_radius(center, Coordinates(*NEAR_AUSTIN), 25)
    assert not is_within_radius(center, Coordinates(*SAN_ANTONIO), 25)
    assert is_within_radius(center, Coordinates(*SAN_ANTONIO), 80)


def test_bounding_box_contains_points_in_radius():
    center = Coordinates(*AUSTIN)
    box = bounding_box(center, 25)

    assert box.contains(center)
    assert box.contains(Coordinates(*NEAR_AUSTIN))
    assert not box.contains(Coordinates(*SAN_ANTONIO))
    assert box.max_lat - box.min_lat == pytest.approx(2 * 25 / 69)
