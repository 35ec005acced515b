"""Unit tests for the geometry helpers."""

from __future__ import annotations

import pytest

from incidents.core.geo import Bounds, degree_offsets, haversine_m


def test_half_span_scales_longitude_by_latitude():
    equator = Bounds(min_lat=0.0, max_lat=0.0, min_lon=10.0, max_lon=11.0)
    north = Bounds(min_lat=60.0, max_lat=60.0, min_lon=10.0, max_lon=11.0)

    assert equator.half_span_m() == pytest.approx(55_500.0)
    assert north.half_span_m() == pytest.approx(27_750.0, rel=1e-3)


def test_half_span_agrees_with_haversine_at_high_latitude():
    box = Bounds(min_lat=60.0, max_lat=60.0, min_lon=10.0, max_lon=10.2)

    width_m = haversine_m(60.0, 10.0, 60.0, 10.2)

    assert box.half_span_m() * 2 == pytest.approx(width_m, rel=0.01)


def test_half_span_uses_latitude_side_when_larger():
    box = Bounds(min_lat=59.0, max_lat=61.0, min_lon=10.0, max_lon=11.0)

    assert box.half_span_m() == pytest.approx(111_000.0)


def test_expanded_point_spans_the_requested_distance():
    box = Bounds.of_point(60.0, 10.0).expanded(5_000.0, 60.0)

    assert box.contains(60.0, 10.09)
    assert box.half_span_m() == pytest.approx(5_000.0, rel=1e-3)


def test_degree_offsets_rejects_negative_distance():
    with pytest.raises(ValueError):
        degree_offsets(-1.0, 0.0)
