"""
Tests for the Hyperbolic Space Index
====================================
Geometry helpers (distance, projection, Einstein midpoint) and the index
contract: insert/remove/nearest/within_radius and batch replacement.
"""

import math

import numpy as np
import pytest

from hypermnemo.core.exceptions import (
    DuplicateIdError,
    InvariantViolationError,
    NotFoundError,
    ValidationError,
)
from hypermnemo.core.hyperbolic_index import (
    HyperbolicIndex,
    einstein_midpoint,
    pairwise_distances,
    poincare_distance,
    poincare_distances,
    project_to_ball,
    validate_point,
)

DIM = 4


def random_ball_points(n: int, dim: int = DIM, seed: int = 7, max_norm: float = 0.9) -> np.ndarray:
    rng = np.random.default_rng(seed)
    points = rng.standard_normal((n, dim))
    points /= np.linalg.norm(points, axis=1, keepdims=True)
    return points * rng.uniform(0.0, max_norm, size=(n, 1))


def axis_point(r: float, axis: int = 0, dim: int = DIM) -> np.ndarray:
    p = np.zeros(dim)
    p[axis] = r
    return p


class TestPoincareDistance:

    def test_identical_points_have_zero_distance(self):
        p = axis_point(0.5)
        assert poincare_distance(p, p) == 0.0

    def test_distance_from_origin_matches_closed_form(self):
        for r in (0.1, 0.5, 0.9, 0.99):
            d = poincare_distance(np.zeros(DIM), axis_point(r))
            assert d == pytest.approx(2 * math.atanh(r), rel=1e-9)

    def test_symmetric_and_positive(self):
        pts = random_ball_points(6)
        for i in range(6):
            for j in range(6):
                if i == j:
                    continue
                d_ij = poincare_distance(pts[i], pts[j])
                assert d_ij > 0
                assert d_ij == pytest.approx(poincare_distance(pts[j], pts[i]))

    def test_triangle_inequality(self):
        pts = random_ball_points(8, seed=11)
        for a in pts:
            for b in pts:
                for c in pts:
                    assert poincare_distance(a, c) <= (
                        poincare_distance(a, b) + poincare_distance(b, c) + 1e-9
                    )

    def test_distances_grow_towards_boundary(self):
        # Same Euclidean gap, much larger hyperbolic gap near the sphere
        near_centre = poincare_distance(axis_point(0.0), axis_point(0.05))
        near_edge = poincare_distance(axis_point(0.9), axis_point(0.95))
        assert near_edge > 5 * near_centre

    def test_vectorised_matches_scalar(self):
        pts = random_ball_points(5)
        query = pts[0]
        vec = poincare_distances(query, pts)
        for i, p in enumerate(pts):
            assert vec[i] == pytest.approx(poincare_distance(query, p), abs=1e-12)

    def test_pairwise_is_symmetric_with_zero_diagonal(self):
        dist = pairwise_distances(random_ball_points(5))
        assert np.allclose(dist, dist.T)
        assert np.all(np.diag(dist) == 0.0)

    def test_point_on_sphere_is_rejected(self):
        with pytest.raises(InvariantViolationError):
            poincare_distance(axis_point(1.0), axis_point(0.2))


class TestProjectionAndMidpoint:

    def test_project_leaves_inner_points_alone(self):
        p = axis_point(0.3)
        assert np.array_equal(project_to_ball(p), p)

    def test_project_pulls_outer_points_inside(self):
        projected = project_to_ball(np.array([3.0, 4.0, 0.0, 0.0]), max_norm=0.99)
        assert np.linalg.norm(projected) == pytest.approx(0.99)
        # Direction preserved
        assert projected[0] / projected[1] == pytest.approx(0.75)

    def test_midpoint_of_single_point_is_the_point(self):
        p = np.array([[0.2, -0.4, 0.1, 0.3]])
        assert np.allclose(einstein_midpoint(p, [1.0]), p[0])

    def test_midpoint_of_opposite_points_is_origin(self):
        p = axis_point(0.6)
        mid = einstein_midpoint(np.stack([p, -p]), [1.0, 1.0])
        assert np.allclose(mid, np.zeros(DIM), atol=1e-12)

    def test_midpoint_leans_towards_heavier_point(self):
        a, b = axis_point(0.5), axis_point(-0.5)
        mid = einstein_midpoint(np.stack([a, b]), [0.9, 0.1])
        assert poincare_distance(mid, a) < poincare_distance(mid, b)

    def test_midpoint_stays_in_ball(self):
        pts = random_ball_points(10, max_norm=0.99999)
        mid = einstein_midpoint(pts, np.ones(10))
        assert np.linalg.norm(mid) < 1.0

    def test_midpoint_rejects_bad_weights(self):
        pts = random_ball_points(2)
        with pytest.raises(ValidationError):
            einstein_midpoint(pts, [0.0, 0.0])
        with pytest.raises(ValidationError):
            einstein_midpoint(pts, [1.0])
        with pytest.raises(ValidationError):
            einstein_midpoint(pts, [1.0, -1.0])


class TestValidatePoint:

    @pytest.mark.parametrize("bad", [
        [0.1, 0.2],                       # wrong dimension
        [float("nan"), 0.0, 0.0, 0.0],    # non-finite
        [1.0, 0.0, 0.0, 0.0],             # on the sphere
        [0.8, 0.8, 0.0, 0.0],             # outside
    ])
    def test_invalid_points(self, bad):
        with pytest.raises(InvariantViolationError):
            validate_point(bad, DIM)

    def test_valid_point_is_float64(self):
        arr = validate_point([0, 0, 0.5, 0], DIM)
        assert arr.dtype == np.float64


class TestHyperbolicIndex:

    @pytest.fixture
    def index(self):
        return HyperbolicIndex(dimension=DIM)

    def test_insert_and_get(self, index):
        index.insert("a", axis_point(0.3))
        assert "a" in index
        assert len(index) == 1
        assert np.array_equal(index.get("a"), axis_point(0.3))

    def test_get_returns_copy(self, index):
        index.insert("a", axis_point(0.3))
        p = index.get("a")
        p[0] = 0.0
        assert index.get("a")[0] == 0.3

    def test_duplicate_insert_fails(self, index):
        index.insert("a", axis_point(0.3))
        with pytest.raises(DuplicateIdError):
            index.insert("a", axis_point(0.1))
        assert len(index) == 1

    def test_invalid_point_leaves_index_unchanged(self, index):
        index.insert("a", axis_point(0.3))
        with pytest.raises(InvariantViolationError):
            index.insert("b", axis_point(1.5))
        assert index.ids() == ["a"]

    def test_remove(self, index):
        index.insert("a", axis_point(0.3))
        index.insert("b", axis_point(0.4))
        index.remove("a")
        assert index.ids() == ["b"]
        with pytest.raises(NotFoundError):
            index.remove("a")
        with pytest.raises(NotFoundError):
            index.get("a")

    def test_nearest_orders_by_distance(self, index):
        index.insert("far", axis_point(0.9))
        index.insert("near", axis_point(0.1))
        index.insert("mid", axis_point(0.5))
        result = index.nearest(np.zeros(DIM), k=2)
        assert [eid for eid, _ in result] == ["near", "mid"]
        assert result[0][1] <= result[1][1]

    def test_nearest_ties_follow_insertion_order(self, index):
        index.insert("first", axis_point(0.4, axis=1))
        index.insert("second", axis_point(0.4, axis=1))
        index.insert("third", axis_point(-0.4, axis=1))
        ids = [eid for eid, _ in index.nearest(np.zeros(DIM))]
        assert ids == ["first", "second", "third"]

    def test_nearest_without_k_ranks_everything(self, index):
        for i, p in enumerate(random_ball_points(6)):
            index.insert(f"p{i}", p)
        assert len(index.nearest(np.zeros(DIM))) == 6
        assert index.nearest(np.zeros(DIM), k=0) == []

    def test_nearest_on_empty_index(self, index):
        assert index.nearest(np.zeros(DIM), k=3) == []

    def test_within_radius(self, index):
        index.insert("in", axis_point(0.1))
        index.insert("out", axis_point(0.9))
        result = index.within_radius(np.zeros(DIM), 1.0)
        assert [eid for eid, _ in result] == ["in"]
        with pytest.raises(ValidationError):
            index.within_radius(np.zeros(DIM), -1.0)

    def test_distance_between_ids(self, index):
        index.insert("o", np.zeros(DIM))
        index.insert("x", axis_point(0.5))
        assert index.distance("o", "x") == pytest.approx(2 * math.atanh(0.5))

    def test_capacity_bound(self):
        index = HyperbolicIndex(dimension=DIM, max_entries=1)
        index.insert("a", axis_point(0.1))
        with pytest.raises(ValidationError):
            index.insert("b", axis_point(0.2))

    def test_replace_is_atomic(self, index):
        index.insert("a", axis_point(0.1))
        index.insert("b", axis_point(0.2))
        with pytest.raises(InvariantViolationError):
            index.replace([("c", axis_point(0.3)), ("d", axis_point(2.0))], ["a"])
        with pytest.raises(NotFoundError):
            index.replace([("c", axis_point(0.3))], ["missing"])
        with pytest.raises(DuplicateIdError):
            index.replace([("b", axis_point(0.3))], [])
        assert index.ids() == ["a", "b"]

        index.replace([("c", axis_point(0.3))], ["a"])
        assert index.ids() == ["b", "c"]
        index.verify()

    def test_replace_may_readd_removed_id(self, index):
        index.insert("a", axis_point(0.1))
        index.replace([("a", axis_point(0.6))], ["a"])
        assert index.get("a")[0] == pytest.approx(0.6)

    def test_clear(self, index):
        index.insert("a", axis_point(0.1))
        index.clear()
        assert len(index) == 0
        index.verify()

    def test_rejects_tiny_dimension(self):
        with pytest.raises(ValidationError):
            HyperbolicIndex(dimension=1)
