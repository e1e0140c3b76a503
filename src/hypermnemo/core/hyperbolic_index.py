"""
Hyperbolic Space Index
======================
Exact nearest-neighbour and radius search over points in the Poincaré ball.

All identity addresses and memory embeddings live in one index. Distances
are the exact Poincaré-ball geodesic distance

    d(u, v) = arccosh(1 + 2‖u−v‖² / ((1−‖u‖²)(1−‖v‖²)))

computed for the whole stored matrix in one vectorised numpy pass. There is
no approximate search: consolidation depends on exact neighbour selection and
the expected population is thousands of points, so a linear scan is enough.

Ordering guarantees:
  - ``nearest`` returns ascending distance, ties broken by insertion order.
  - Removing a point keeps the relative order of the remaining points.

Usage:
    index = HyperbolicIndex(dimension=64)
    index.insert("mem-1", point)
    for entry_id, dist in index.nearest(query, k=5):
        ...
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from .exceptions import (
    DuplicateIdError,
    InvariantViolationError,
    NotFoundError,
    ValidationError,
)

# Keeps arccosh arguments and denominators away from catastrophic rounding.
_EPS = 1e-15


# ------------------------------------------------------------------ #
#  Geometry helpers                                                   #
# ------------------------------------------------------------------ #

def poincare_distance(u: np.ndarray, v: np.ndarray) -> float:
    """Exact hyperbolic distance between two points of the open unit ball."""
    u = np.asarray(u, dtype=np.float64)
    v = np.asarray(v, dtype=np.float64)
    diff_sq = float(np.dot(u - v, u - v))
    if diff_sq == 0.0:
        return 0.0
    denom = (1.0 - float(np.dot(u, u))) * (1.0 - float(np.dot(v, v)))
    if denom <= 0.0:
        raise InvariantViolationError("open_ball", "point lies on or outside the unit sphere")
    argument = 1.0 + 2.0 * diff_sq / max(denom, _EPS)
    return float(np.arccosh(argument))


def poincare_distances(point: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Vectorised distances from ``point`` to every row of ``matrix``."""
    if matrix.shape[0] == 0:
        return np.empty(0, dtype=np.float64)
    point = np.asarray(point, dtype=np.float64)
    diff_sq = np.sum((matrix - point) ** 2, axis=1)
    denom = (1.0 - np.sum(matrix ** 2, axis=1)) * (1.0 - float(np.dot(point, point)))
    argument = 1.0 + 2.0 * diff_sq / np.maximum(denom, _EPS)
    dists = np.arccosh(np.maximum(argument, 1.0))
    dists[diff_sq == 0.0] = 0.0
    return dists


def pairwise_distances(matrix: np.ndarray) -> np.ndarray:
    """Symmetric (N, N) distance matrix with an exact zero diagonal."""
    n = matrix.shape[0]
    dist = np.zeros((n, n), dtype=np.float64)
    for i in range(n):
        dist[i] = poincare_distances(matrix[i], matrix)
    # Enforce exact symmetry against floating point drift
    dist = np.minimum(dist, dist.T)
    np.fill_diagonal(dist, 0.0)
    return dist


def project_to_ball(vector: np.ndarray, max_norm: float = 1.0 - 1e-5) -> np.ndarray:
    """Scale ``vector`` back inside the ball if its norm reaches ``max_norm``."""
    vector = np.asarray(vector, dtype=np.float64)
    norm = float(np.linalg.norm(vector))
    if norm >= max_norm:
        return vector * (max_norm / norm)
    return vector


def einstein_midpoint(
    points: np.ndarray, weights: Sequence[float], max_norm: float = 1.0 - 1e-5
) -> np.ndarray:
    """
    Weighted hyperbolic centroid of Poincaré points.

    Points are mapped to the Klein model, averaged with Lorentz-factor
    weights, mapped back, and finally renormalised inside the ball.
    """
    points = np.asarray(points, dtype=np.float64)
    w = np.asarray(weights, dtype=np.float64)
    if points.ndim != 2 or points.shape[0] != w.shape[0]:
        raise ValidationError("weights", "one weight per point is required")
    if np.any(w < 0) or float(w.sum()) <= 0.0:
        raise ValidationError("weights", "weights must be non-negative with a positive sum")

    sq = np.sum(points ** 2, axis=1)
    klein = 2.0 * points / (1.0 + sq)[:, None]
    klein_sq = np.minimum(np.sum(klein ** 2, axis=1), 1.0 - _EPS)
    gamma = 1.0 / np.sqrt(1.0 - klein_sq)

    coeff = w * gamma
    mid_klein = (coeff[:, None] * klein).sum(axis=0) / coeff.sum()
    mid_sq = min(float(np.dot(mid_klein, mid_klein)), 1.0 - _EPS)
    mid = mid_klein / (1.0 + np.sqrt(1.0 - mid_sq))
    return project_to_ball(mid, max_norm)


def validate_point(point, dimension: int, label: str = "point") -> np.ndarray:
    """Coerce to a float64 vector and check it is a valid open-ball point."""
    try:
        arr = np.asarray(point, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InvariantViolationError("embedding_shape", f"{label} is not numeric: {exc}")
    if arr.shape != (dimension,):
        raise InvariantViolationError(
            "embedding_shape",
            f"{label} has shape {arr.shape}, expected ({dimension},)",
        )
    if not np.all(np.isfinite(arr)):
        raise InvariantViolationError("embedding_finite", f"{label} has non-finite coordinates")
    if float(np.dot(arr, arr)) >= 1.0:
        raise InvariantViolationError("open_ball", f"{label} norm must be < 1")
    return arr


# ------------------------------------------------------------------ #
#  Index                                                              #
# ------------------------------------------------------------------ #

class HyperbolicIndex:
    """
    Exact Poincaré-ball index keyed by string id.

    Rows of ``_matrix`` stay in insertion order; ``_ids[i]`` names row i.
    """

    def __init__(self, dimension: int, max_entries: int = 0):
        if dimension < 2:
            raise ValidationError("dimension", "must be at least 2", dimension)
        self.dimension = dimension
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._ids: List[str] = []
        self._rows: Dict[str, int] = {}
        self._matrix = np.empty((0, dimension), dtype=np.float64)

    # ---- Introspection ------------------------------------------- #

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._rows

    def ids(self) -> List[str]:
        return list(self._ids)

    def get(self, entry_id: str) -> np.ndarray:
        row = self._rows.get(entry_id)
        if row is None:
            raise NotFoundError("IndexEntry", entry_id)
        return self._matrix[row].copy()

    # ---- Mutation ------------------------------------------------ #

    def insert(self, entry_id: str, point) -> None:
        """Add a point. Fails with DuplicateIdError if the id is present."""
        arr = validate_point(point, self.dimension, f"point for '{entry_id}'")
        with self._lock:
            if entry_id in self._rows:
                raise DuplicateIdError("IndexEntry", entry_id)
            if self.max_entries and len(self._ids) >= self.max_entries:
                raise ValidationError(
                    "index", f"capacity of {self.max_entries} entries reached", entry_id
                )
            self._rows[entry_id] = len(self._ids)
            self._ids.append(entry_id)
            self._matrix = np.vstack([self._matrix, arr[None, :]])

    def remove(self, entry_id: str) -> None:
        """Remove a point. Fails with NotFoundError if the id is absent."""
        with self._lock:
            row = self._rows.get(entry_id)
            if row is None:
                raise NotFoundError("IndexEntry", entry_id)
            self._matrix = np.delete(self._matrix, row, axis=0)
            del self._ids[row]
            self._rows = {eid: i for i, eid in enumerate(self._ids)}

    def replace(self, additions: Iterable[Tuple[str, np.ndarray]], removals: Iterable[str]) -> None:
        """
        Apply a batch of insertions and removals as one step.

        Every point and id is checked before the arrays change, so a failing
        batch leaves the index exactly as it was.
        """
        additions = [
            (eid, validate_point(p, self.dimension, f"point for '{eid}'"))
            for eid, p in additions
        ]
        removals = list(removals)
        with self._lock:
            removal_set = set(removals)
            missing = [eid for eid in removal_set if eid not in self._rows]
            if missing:
                raise NotFoundError("IndexEntry", missing[0])
            added_ids = [eid for eid, _ in additions]
            for eid in added_ids:
                if (eid in self._rows and eid not in removal_set) or added_ids.count(eid) > 1:
                    raise DuplicateIdError("IndexEntry", eid)

            keep = [i for i, eid in enumerate(self._ids) if eid not in removal_set]
            new_ids = [self._ids[i] for i in keep] + added_ids
            if self.max_entries and len(new_ids) > self.max_entries:
                raise ValidationError("index", f"capacity of {self.max_entries} entries reached")
            parts = [self._matrix[keep]]
            if additions:
                parts.append(np.stack([p for _, p in additions]))
            self._matrix = np.vstack(parts)
            self._ids = new_ids
            self._rows = {eid: i for i, eid in enumerate(self._ids)}

    def clear(self) -> None:
        with self._lock:
            self._ids = []
            self._rows = {}
            self._matrix = np.empty((0, self.dimension), dtype=np.float64)

    # ---- Queries ------------------------------------------------- #

    def _snapshot(self) -> Tuple[List[str], np.ndarray]:
        with self._lock:
            return list(self._ids), self._matrix

    def nearest(self, point, k: Optional[int] = None) -> List[Tuple[str, float]]:
        """
        The k closest points as (id, distance), ascending.

        ``k=None`` ranks every stored point. Ties keep insertion order.
        """
        query = validate_point(point, self.dimension, "query point")
        if k is not None and k < 0:
            raise ValidationError("k", "must be non-negative", k)
        ids, matrix = self._snapshot()
        dists = poincare_distances(query, matrix)
        order = np.argsort(dists, kind="stable")
        if k is not None:
            order = order[:k]
        return [(ids[i], float(dists[i])) for i in order]

    def within_radius(self, point, radius: float) -> List[Tuple[str, float]]:
        """All points at distance <= radius, ascending."""
        if radius < 0:
            raise ValidationError("radius", "must be non-negative", radius)
        query = validate_point(point, self.dimension, "query point")
        ids, matrix = self._snapshot()
        dists = poincare_distances(query, matrix)
        order = np.argsort(dists, kind="stable")
        return [(ids[i], float(dists[i])) for i in order if dists[i] <= radius]

    def distance(self, a_id: str, b_id: str) -> float:
        return poincare_distance(self.get(a_id), self.get(b_id))

    def verify(self) -> None:
        """Check the id map and matrix agree; raises InvariantViolationError."""
        ids, matrix = self._snapshot()
        if matrix.shape != (len(ids), self.dimension):
            raise InvariantViolationError(
                "index_shape", f"matrix {matrix.shape} does not match {len(ids)} ids"
            )
        if len(set(ids)) != len(ids):
            raise InvariantViolationError("index_ids", "duplicate ids in index")
        if matrix.shape[0] and float(np.max(np.sum(matrix ** 2, axis=1))) >= 1.0:
            raise InvariantViolationError("open_ball", "stored point outside the ball")
        logger.debug(f"HyperbolicIndex verified: {len(ids)} points, dim={self.dimension}")
