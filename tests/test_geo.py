import math

import pytest

from gamemode.geo import LatLng, coerce_latlng, distance_m, is_within_radius

USER = LatLng(1.2815, 103.8440)


def test_distance_is_zero_for_same_point():
    assert distance_m(USER, USER) == 0


def test_distance_is_symmetric():
    other = LatLng(1.2900, 103.8500)
    assert distance_m(USER, other) == pytest.approx(distance_m(other, USER))


def test_nearby_marker_is_within_default_radius():
    marker = LatLng(1.28151, 103.84401)
    assert distance_m(USER, marker) < 2.0
    assert is_within_radius(USER, marker, 20)


def test_far_marker_is_outside_radius():
    marker = LatLng(1.2900, 103.8500)
    assert 1100 < distance_m(USER, marker) < 1250
    assert not is_within_radius(USER, marker, 20)


def test_radius_boundary_is_inclusive():
    marker = LatLng(1.2816, 103.8440)
    exact = distance_m(USER, marker)
    assert is_within_radius(USER, marker, exact)


def test_one_degree_of_latitude_is_about_111km():
    assert distance_m(LatLng(0, 0), LatLng(1, 0)) == pytest.approx(111195, rel=1e-3)


def test_antipodal_points_do_not_blow_up():
    result = distance_m(LatLng(0, 0), LatLng(0, 180))
    assert math.isfinite(result)
    assert result == pytest.approx(math.pi * 6371000, rel=1e-6)


def test_coerce_latlng_accepts_strings():
    assert coerce_latlng("1.2815", "103.844") == LatLng(1.2815, 103.844)


@pytest.mark.parametrize("lat,lng", [("91", "0"), ("0", "181"), ("abc", "0"), ("nan", "0")])
def test_coerce_latlng_rejects_bad_values(lat, lng):
    with pytest.raises(ValueError):
        coerce_latlng(lat, lng)
