"""
Unit tests for distance ranking: haversine, radius filter, exclusions, tie order.
"""

import pytest

from app.domain.dispatch.ranking import Candidate, haversine_km, rank_candidates


def test_haversine_one_degree_of_latitude() -> None:
    assert haversine_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.195, abs=0.01)


def test_haversine_same_point_is_zero() -> None:
    assert haversine_km(12.97, 77.59, 12.97, 77.59) == 0.0


def test_rank_orders_by_distance_and_applies_radius() -> None:
    candidates = [
        Candidate(id=1, latitude=0.03, longitude=0.0),
        Candidate(id=2, latitude=0.01, longitude=0.0),
        Candidate(id=3, latitude=0.5, longitude=0.0),  # ~55 km
        Candidate(id=4, latitude=0.02, longitude=0.0),
    ]

    ranked = rank_candidates(0.0, 0.0, candidates, radius_km=10)

    assert [c.id for c in ranked] == [2, 4, 1]
    assert ranked[0].distance_km == pytest.approx(1.112, abs=0.001)


def test_rank_keeps_input_order_for_equal_distances() -> None:
    candidates = [
        Candidate(id=7, latitude=0.01, longitude=0.0),
        Candidate(id=3, latitude=-0.01, longitude=0.0),
        Candidate(id=5, latitude=0.01, longitude=0.0),
    ]

    ranked = rank_candidates(0.0, 0.0, candidates, radius_km=5)

    assert [c.id for c in ranked] == [7, 3, 5]


def test_rank_skips_excluded_and_unknown_locations() -> None:
    candidates = [
        Candidate(id=1, latitude=0.01, longitude=0.0),
        Candidate(id=2, latitude=None, longitude=0.0),
        Candidate(id=3, latitude=0.02, longitude=None),
        Candidate(id=4, latitude=0.02, longitude=0.0),
    ]

    ranked = rank_candidates(0.0, 0.0, candidates, radius_km=5, exclude_ids=[1])

    assert [c.id for c in ranked] == [4]


def test_radius_boundary_is_inclusive() -> None:
    distance = haversine_km(0.0, 0.0, 0.05, 0.0)
    candidates = [Candidate(id=1, latitude=0.05, longitude=0.0)]

    assert rank_candidates(0.0, 0.0, candidates, radius_km=distance)
    assert not rank_candidates(0.0, 0.0, candidates, radius_km=distance - 0.001)


def test_empty_pool() -> None:
    assert rank_candidates(0.0, 0.0, [], radius_km=10) == []
