"""
Neighborhood probability estimation.

Each neighbor of a cell gets a weight that decreases with its distance; the
weights are summed per neighbor type and normalized, giving the probability
that the cell's neighborhood "is" each type. The distance kernel is a
swappable policy (see KERNELS).
"""

import warnings
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .batching import map_batches
from .cells import CellTable, encode_labels
from .errors import DegenerateNeighborhood
from .neighborhoods import NeighborSets


class DistanceKernel:
    """
    Maps neighbor distances to (log) weights.

    Subclasses implement `log_weights`; weights only matter up to a constant
    factor per cell because each row is normalized afterwards.
    """
    name = 'base'

    def fit(self, distances: np.ndarray) -> 'DistanceKernel':
        """Return a kernel with any data-derived parameters resolved."""
        return self

    def log_weights(self, distances: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def params(self) -> Dict[str, float]:
        return {}


class UniformKernel(DistanceKernel):
    """Every neighbor weighs the same: plain neighborhood composition fractions."""
    name = 'uniform'

    def log_weights(self, distances: np.ndarray) -> np.ndarray:
        return np.zeros_like(np.asarray(distances, dtype=np.float64))


class InverseDistanceKernel(DistanceKernel):
    """Weight (d + offset) ** -power."""
    name = 'inverse'

    def __init__(self, offset: float = 1.0, power: float = 1.0):
        if offset <= 0:
            raise ValueError(f"offset must be positive, got {offset}")
        if power <= 0:
            raise ValueError(f"power must be positive, got {power}")
        self.offset = float(offset)
        self.power = float(power)

    def log_weights(self, distances: np.ndarray) -> np.ndarray:
        return -self.power * np.log(np.asarray(distances, dtype=np.float64) + self.offset)

    def params(self) -> Dict[str, float]:
        return {'offset': self.offset, 'power': self.power}


class GaussianKernel(DistanceKernel):
    """
    Weight exp(-d**2 / tau).

    When tau is not given, `fit` sets it to the median positive squared
    neighbor distance of the dataset (1.0 if every distance is zero).
    """
    name = 'gaussian'

    def __init__(self, tau: Optional[float] = None):
        if tau is not None and tau <= 0:
            raise ValueError(f"tau must be positive, got {tau}")
        self.tau = None if tau is None else float(tau)

    def fit(self, distances: np.ndarray) -> 'GaussianKernel':
        if self.tau is not None:
            return self
        squared = np.square(np.asarray(distances, dtype=np.float64)).reshape(-1)
        positive = squared[squared > 0]
        tau = float(np.median(positive)) if positive.size else 1.0
        return GaussianKernel(tau=tau)

    def log_weights(self, distances: np.ndarray) -> np.ndarray:
        if self.tau is None:
            raise ValueError("GaussianKernel needs tau; call fit() first")
        return -np.square(np.asarray(distances, dtype=np.float64)) / self.tau

    def params(self) -> Dict[str, float]:
        return {'tau': self.tau}


KERNELS = {
    'gaussian': GaussianKernel,
    'inverse': InverseDistanceKernel,
    'uniform': UniformKernel,
}


def get_kernel(kernel: Union[str, DistanceKernel] = 'gaussian', **params) -> DistanceKernel:
    """Resolve a kernel name (see KERNELS) or pass a kernel instance through."""
    if isinstance(kernel, DistanceKernel):
        if params:
            raise ValueError("Kernel parameters cannot be combined with a kernel instance")
        return kernel
    try:
        kernel_class = KERNELS[kernel]
    except KeyError:
        raise ValueError(f"Unknown kernel '{kernel}'. Choose from {sorted(KERNELS)}") from None
    return kernel_class(**params)


@dataclass(frozen=True)
class RowBlock:
    """Probability rows of a contiguous batch of cells."""
    positions: np.ndarray
    probabilities: np.ndarray
    degenerate: np.ndarray


class HoodProbabilityEstimator:
    """
    Converts neighbor sets into probability rows over the type vocabulary.

    Parameters:
    -----------
    vocabulary : sequence of str
        Type names; fixes the column order of every row
    kernel : str or DistanceKernel, default='gaussian'
        Distance weighting policy, see KERNELS
    n_workers : int, default=1
        Worker threads for `estimate`
    batch_size : int, default=2048
        Cells per worker task
    **kernel_params
        Passed to the kernel class when `kernel` is a name
    """

    def __init__(
            self,
            vocabulary: Sequence[str],
            kernel: Union[str, DistanceKernel] = 'gaussian',
            n_workers: int = 1,
            batch_size: int = 2048,
            **kernel_params
    ):
        self.vocabulary = tuple(vocabulary)
        if not self.vocabulary:
            raise ValueError("Vocabulary is empty: no cell has a type label")
        self.kernel = get_kernel(kernel, **kernel_params)
        self.kernel_ = None
        self.n_workers = n_workers
        self.batch_size = batch_size

    def fit(self, distances: np.ndarray) -> 'HoodProbabilityEstimator':
        """Resolve data-derived kernel parameters from neighbor distances."""
        self.kernel_ = self.kernel.fit(distances)
        return self

    def _resolved_kernel(self, distances: np.ndarray) -> DistanceKernel:
        if self.kernel_ is not None:
            return self.kernel_
        return self.kernel.fit(distances)

    def estimate_batch(
            self,
            neighbor_codes: np.ndarray,
            distances: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Probability rows for a batch of neighbor sets.

        Parameters:
        -----------
        neighbor_codes : np.ndarray, shape (m, k)
            Vocabulary position of each neighbor's type, -1 when missing
        distances : np.ndarray, shape (m, k)
            Neighbor distances

        Returns:
        --------
        probabilities : np.ndarray, shape (m, n_types)
        degenerate : np.ndarray of bool, shape (m,)
        """
        codes = np.atleast_2d(np.asarray(neighbor_codes, dtype=np.intp))
        dist = np.atleast_2d(np.asarray(distances, dtype=np.float64))
        if codes.shape != dist.shape:
            raise ValueError(f"Shape mismatch: codes {codes.shape}, distances {dist.shape}")
        if codes.size and codes.max() >= len(self.vocabulary):
            raise ValueError("Neighbor type code outside the vocabulary")

        known = codes >= 0
        log_w = np.where(known, self._resolved_kernel(dist).log_weights(dist), -np.inf)

        # Shift by the best known neighbor so the largest weight per row is 1.
        with np.errstate(invalid='ignore'):
            shift = log_w.max(axis=1, initial=-np.inf)
        degenerate = ~np.isfinite(shift)
        shift[degenerate] = 0.0
        weights = np.exp(log_w - shift[:, None])

        n_rows = codes.shape[0]
        probabilities = np.zeros((n_rows, len(self.vocabulary)), dtype=np.float64)
        rows, cols = np.nonzero(known)
        np.add.at(probabilities, (rows, codes[rows, cols]), weights[rows, cols])

        totals = probabilities.sum(axis=1)
        degenerate |= totals <= 0
        normal = ~degenerate
        probabilities[normal] /= totals[normal, None]
        probabilities[degenerate] = 0.0
        return probabilities, degenerate

    def estimate_row(self, neighbor_labels: Sequence, distances: Sequence[float]) -> Tuple[pd.Series, bool]:
        """
        Probability row for one cell from its neighbors' labels and distances.

        Labels outside the vocabulary raise UnknownType; None marks a missing
        label. Returns the row indexed by vocabulary and the degenerate flag.
        """
        codes = encode_labels(neighbor_labels, self.vocabulary)
        probabilities, degenerate = self.estimate_batch(codes[None, :], np.asarray(distances)[None, :])
        return pd.Series(probabilities[0], index=list(self.vocabulary)), bool(degenerate[0])

    def estimate(self, cells: CellTable, neighbors: NeighborSets) -> list:
        """
        Probability rows for every cell, as RowBlocks in cell order.

        The kernel is fitted on all neighbor distances first so every batch
        uses the same parameters. A label outside the vocabulary raises
        UnknownType before any row is computed.
        """
        if neighbors.n_cells != cells.n_cells:
            raise ValueError(
                f"Neighbor sets cover {neighbors.n_cells} cells, table has {cells.n_cells}"
            )
        codes = cells.type_codes(self.vocabulary)
        self.fit(neighbors.distances)

        params = ', '.join(f'{key}={value:.4g}' for key, value in self.kernel_.params().items())
        print(f"Estimating neighborhood probabilities ({self.kernel_.name} kernel"
              f"{', ' + params if params else ''})...")

        def run_batch(batch: np.ndarray) -> RowBlock:
            neighbor_codes = codes[neighbors.indices[batch]]
            probabilities, degenerate = self.estimate_batch(neighbor_codes, neighbors.distances[batch])
            return RowBlock(batch, probabilities, degenerate)

        blocks = map_batches(
            run_batch,
            cells.n_cells,
            n_workers=self.n_workers,
            batch_size=self.batch_size,
            desc="Probability rows"
        )

        n_degenerate = int(sum(block.degenerate.sum() for block in blocks))
        print(f"  - Rows: {cells.n_cells}, types: {len(self.vocabulary)}")
        if n_degenerate:
            print(f"  - Degenerate neighborhoods: {n_degenerate}")
            warnings.warn(
                f"{n_degenerate} cell(s) have no neighbor with a known type; "
                f"their probability rows are all zero",
                DegenerateNeighborhood,
                stacklevel=2
            )
        return blocks
