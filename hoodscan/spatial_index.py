"""
Exact k-nearest-neighbor index over 2D cell coordinates.
"""

import numbers
from typing import List, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree

from .cells import check_coordinates
from .errors import InvalidK

# Relative tolerance for treating the k-th and (k+1)-th distances as a tie.
TIE_TOLERANCE = 1e-12


def check_k(k, n_points: int) -> int:
    """Validate a neighbor count against the number of points."""
    if isinstance(k, bool) or not isinstance(k, numbers.Integral):
        raise InvalidK(f"k must be an integer, got {k!r}")
    k = int(k)
    if k <= 0:
        raise InvalidK(f"k must be positive, got {k}")
    if k >= n_points:
        raise InvalidK(
            f"k={k} requires at least {k + 1} cells, dataset has {n_points}"
        )
    return k


class SpatialIndex:
    """
    Balanced k-d tree answering exact k-nearest-neighbor queries.

    Each query excludes the queried point itself. Neighbors are ordered by
    ascending distance, with equal distances ordered by ascending original
    index, so results are reproducible regardless of tree layout.

    The index never changes after construction and can be queried from
    several threads at once.
    """

    def __init__(self, coordinates, leafsize: int = 16):
        coords = check_coordinates(coordinates).copy()
        coords.flags.writeable = False
        self._coordinates = coords
        self._tree = cKDTree(coords, leafsize=leafsize, balanced_tree=True)

    @property
    def n_points(self) -> int:
        return self._coordinates.shape[0]

    def k_nearest(self, point_id: int, k: int) -> List[Tuple[int, float]]:
        """Ordered (neighbor_id, distance) pairs for one point."""
        indices, distances = self.query([point_id], k)
        return [(int(i), float(d)) for i, d in zip(indices[0], distances[0])]

    def query(self, point_ids: Sequence[int], k: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        k nearest other points for a batch of points.

        Parameters:
        -----------
        point_ids : sequence of int
            Positions of the query points in the indexed coordinate array
        k : int
            Number of neighbors, 0 < k < N

        Returns:
        --------
        indices : np.ndarray, shape (len(point_ids), k)
        distances : np.ndarray, shape (len(point_ids), k)
        """
        k = check_k(k, self.n_points)
        point_ids = np.asarray(point_ids, dtype=np.intp).reshape(-1)
        if point_ids.size and (point_ids.min() < 0 or point_ids.max() >= self.n_points):
            raise IndexError(f"Point ids must lie in [0, {self.n_points})")
        if point_ids.size == 0:
            return np.empty((0, k), dtype=np.intp), np.empty((0, k), dtype=np.float64)

        # One spare candidate for the point itself, one to detect boundary ties.
        n_candidates = min(k + 2, self.n_points)
        _, candidates = self._tree.query(self._coordinates[point_ids], k=n_candidates)
        candidates = np.asarray(candidates).reshape(len(point_ids), n_candidates)

        indices = np.empty((len(point_ids), k), dtype=np.intp)
        distances = np.empty((len(point_ids), k), dtype=np.float64)
        for row, point_id in enumerate(point_ids):
            others = candidates[row][candidates[row] != point_id][:k + 1]
            ranked, ranked_distances = self._rank(point_id, others)

            if len(ranked) > k:
                kth = ranked_distances[k - 1]
                if ranked_distances[k] - kth <= TIE_TOLERANCE * max(1.0, kth):
                    ranked, ranked_distances = self._rank(point_id, self._within(point_id, kth))

            indices[row] = ranked[:k]
            distances[row] = ranked_distances[:k]
        return indices, distances

    def _rank(self, point_id: int, others: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        others = np.asarray(others, dtype=np.intp)
        delta = self._coordinates[others] - self._coordinates[point_id]
        dist = np.hypot(delta[:, 0], delta[:, 1])
        order = np.lexsort((others, dist))
        return others[order], dist[order]

    def _within(self, point_id: int, radius: float) -> np.ndarray:
        # Slightly widened so points tied with the k-th neighbor are never lost.
        radius = radius * (1.0 + 1e-9) + 1e-12
        found = np.asarray(
            self._tree.query_ball_point(self._coordinates[point_id], r=radius),
            dtype=np.intp
        )
        return found[found != point_id]
