"""
Tests for haversine distance and coordinate validation.
"""
import math

import pytest

from modules.errors import InvalidCoordinate, ValidationError
from modules.geo_distance import (
    haversine_distance_m,
    is_valid_coordinates,
    is_within_distance,
    validate_coordinates,
)


class TestHaversineDistance:

    def test_zero_for_identical_points(self):
        assert haversine_distance_m(28.6139, 77.2090, 28.6139, 77.2090) == 0.0

    def test_symmetric(self):
        a = (40.7128, -74.0060)
        b = (34.0522, -118.2437)
        assert haversine_distance_m(*a, *b) == pytest.approx(haversine_distance_m(*b, *a))

    def test_one_degree_of_longitude_at_equator(self):
        distance = haversine_distance_m(0, 0, 0, 1)
        assert distance == pytest.approx(111195, rel=0.01)

    def test_antipodal_points_do_not_overflow(self):
        distance = haversine_distance_m(0, 0, 0, 180)
        assert distance == pytest.approx(math.pi * 6371000.0, rel=1e-6)

    def test_accepts_numeric_strings(self):
        assert haversine_distance_m("0", "0", "0", "1") == pytest.approx(111195, rel=0.01)

    @pytest.mark.parametrize("lat,lng", [
        (91, 0),
        (-90.0001, 0),
        (0, 180.5),
        (float("nan"), 0),
        (0, float("inf")),
        ("north", 0),
        (None, 0),
        (True, 0),
    ])
    def test_rejects_malformed_input(self, lat, lng):
        with pytest.raises(InvalidCoordinate):
            haversine_distance_m(lat, lng, 0, 0)


class TestCoordinateValidation:

    def test_invalid_coordinate_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            validate_coordinates(100, 0)

    def test_returns_floats(self):
        assert validate_coordinates("12.5", -3) == (12.5, -3.0)

    def test_boundaries_are_valid(self):
        assert is_valid_coordinates(90, 180)
        assert is_valid_coordinates(-90, -180)

    def test_none_is_invalid(self):
        assert not is_valid_coordinates(None, 10)


class TestThreshold:

    def test_within_distance_is_inclusive(self):
        distance = haversine_distance_m(0, 0, 0, 0.0001)
        assert is_within_distance(0, 0, 0, 0.0001, distance)
        assert not is_within_distance(0, 0, 0, 0.0001, distance - 0.01)

    def test_strict_and_standard_ceilings(self):
        # ~15 m north of the origin point
        lat2 = 28.6139 + 15 / 111195
        assert is_within_distance(28.6139, 77.2090, lat2, 77.2090, 20)
        assert is_within_distance(28.6139, 77.2090, lat2, 77.2090, 100)
        assert not is_within_distance(28.6139, 77.2090, lat2, 77.2090, 10)
