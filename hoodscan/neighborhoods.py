"""
k-nearest spatial neighbors for every cell.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.sparse import csr_matrix

from .batching import map_batches
from .cells import CellTable
from .spatial_index import SpatialIndex, check_k


@dataclass(frozen=True)
class NeighborSets:
    """
    Neighbor sets of all cells, one row per cell in input order.

    `indices[i]` holds the positions of cell i's k nearest other cells,
    ascending by distance; `distances[i]` the matching distances.
    """
    cell_ids: pd.Index
    indices: np.ndarray
    distances: np.ndarray

    @property
    def k(self) -> int:
        return self.indices.shape[1]

    @property
    def n_cells(self) -> int:
        return self.indices.shape[0]

    def neighbors_of(self, cell_id) -> List[Tuple[str, float]]:
        """Ordered (neighbor id, distance) pairs of one cell."""
        i = self.cell_ids.get_loc(str(cell_id))
        return [(self.cell_ids[j], float(d))
                for j, d in zip(self.indices[i], self.distances[i])]

    def to_sparse(self) -> Tuple[csr_matrix, csr_matrix]:
        """
        Connectivity and distance matrices (N x N, CSR).

        Same layout as squidpy's `obsp['spatial_connectivities']` and
        `obsp['spatial_distances']`, so the neighbor graph can be stored on
        an AnnData object next to other spatial graphs.
        """
        n, k = self.indices.shape
        rows = np.repeat(np.arange(n), k)
        cols = self.indices.reshape(-1)
        connectivities = csr_matrix((np.ones(n * k), (rows, cols)), shape=(n, n))
        distances = csr_matrix((self.distances.reshape(-1), (rows, cols)), shape=(n, n))
        return connectivities, distances


class NeighborhoodFinder:
    """
    Finds the k nearest other cells of every cell with one dataset-wide k.

    Parameters:
    -----------
    k : int
        Number of neighbors per cell, 0 < k < number of cells
    n_workers : int, default=1
        Worker threads for the batched queries
    batch_size : int, default=2048
        Cells per worker task
    """

    def __init__(self, k: int, n_workers: int = 1, batch_size: int = 2048):
        self.k = k
        self.n_workers = n_workers
        self.batch_size = batch_size

    def find(self, cells: CellTable, index: Optional[SpatialIndex] = None) -> NeighborSets:
        """
        Query the spatial index for every cell.

        A prebuilt index over `cells.coordinates` may be passed to share it
        between runs with different k. Raises MissingCoordinates for
        non-finite coordinates and InvalidK for k out of range.
        """
        k = check_k(self.k, cells.n_cells)
        if index is None:
            index = SpatialIndex(cells.coordinates)
        elif index.n_points != cells.n_cells:
            raise ValueError(
                f"Spatial index covers {index.n_points} points, table has {cells.n_cells} cells"
            )

        print(f"Finding {k} nearest neighbors for {cells.n_cells} cells...")

        blocks = map_batches(
            lambda batch: index.query(batch, k),
            cells.n_cells,
            n_workers=self.n_workers,
            batch_size=self.batch_size,
            desc="Neighbor queries"
        )
        indices = np.vstack([block[0] for block in blocks])
        distances = np.vstack([block[1] for block in blocks])
        indices.flags.writeable = False
        distances.flags.writeable = False

        print(f"  - Mean neighbor distance: {distances.mean():.2f}")
        print(f"  - Max k-th neighbor distance: {distances[:, -1].max():.2f}")

        return NeighborSets(cells.cell_ids, indices, distances)
