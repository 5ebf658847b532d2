"""
Colocalization of cell-type neighborhoods.

Two types colocalize when cells with a high probability of one type in their
neighborhood also tend to have a high probability of the other. The score is
the correlation of the two probability columns across cells.
"""

import warnings
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np
import pandas as pd
from scipy.stats import rankdata

from .aggregation import ProbabilityMatrix
from .errors import UndefinedCorrelation

METHODS = ('pearson', 'spearman')


@dataclass(frozen=True)
class ColocalizationMatrix:
    """
    Symmetric type x type correlation matrix.

    `correlations` has a unit diagonal for every defined type and NaN in the
    row and column of each type listed in `undefined`.
    """
    correlations: pd.DataFrame
    undefined: Tuple[str, ...]
    method: str
    n_cells: int

    def pairs(self) -> pd.DataFrame:
        """Long table of distinct type pairs sorted by correlation, NaN pairs last."""
        types = list(self.correlations.index)
        records: List[dict] = []
        for i, type_i in enumerate(types):
            for type_j in types[i + 1:]:
                records.append({
                    'type_a': type_i,
                    'type_b': type_j,
                    'correlation': self.correlations.loc[type_i, type_j]
                })
        pairs = pd.DataFrame(records, columns=['type_a', 'type_b', 'correlation'])
        return pairs.sort_values('correlation', ascending=False, na_position='last',
                                 kind='mergesort').reset_index(drop=True)


def correlate_columns(values: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Pearson correlation between all column pairs.

    Returns the correlation matrix and a boolean mask of columns with
    non-zero variance. Rows and columns of zero-variance columns are NaN.
    """
    values = np.asarray(values, dtype=np.float64)
    n_rows, n_cols = values.shape
    if n_rows < 2:
        return np.full((n_cols, n_cols), np.nan), np.zeros(n_cols, dtype=bool)

    defined = ~np.all(values == values[0], axis=0)
    centered = values - values.mean(axis=0)
    norms = np.sqrt(np.square(centered).sum(axis=0))
    defined &= norms > 0

    correlations = np.full((n_cols, n_cols), np.nan)
    idx = np.flatnonzero(defined)
    if idx.size:
        unit = centered[:, idx] / norms[idx]
        block = unit.T @ unit
        block = np.clip((block + block.T) / 2.0, -1.0, 1.0)
        np.fill_diagonal(block, 1.0)
        correlations[np.ix_(idx, idx)] = block
    return correlations, defined


class ColocalizationAnalyzer:
    """
    Correlates probability columns across cells.

    Parameters:
    -----------
    method : str, default='pearson'
        'pearson' on probabilities, or 'spearman' on their ranks
    exclude_degenerate : bool, default=True
        Leave out degenerate (all-zero) rows, which are not distributions
    """

    def __init__(self, method: str = 'pearson', exclude_degenerate: bool = True):
        if method not in METHODS:
            raise ValueError(f"Unknown correlation method '{method}'. Choose from {list(METHODS)}")
        self.method = method
        self.exclude_degenerate = exclude_degenerate

    def compute(self, matrix: ProbabilityMatrix) -> ColocalizationMatrix:
        print(f"Computing neighborhood colocalization ({self.method})...")

        values = matrix.values
        if self.exclude_degenerate:
            values = values[~matrix.degenerate.to_numpy()]
        if self.method == 'spearman':
            values = rankdata(values, axis=0)

        correlations, defined = correlate_columns(values)
        vocabulary = list(matrix.vocabulary)
        undefined = tuple(name for name, ok in zip(vocabulary, defined) if not ok)

        if undefined:
            print(f"  - Undefined correlation for: {list(undefined)}")
            warnings.warn(
                f"Zero-variance probability column(s) {list(undefined)}: "
                f"correlations reported as NaN",
                UndefinedCorrelation,
                stacklevel=2
            )

        frame = pd.DataFrame(correlations, index=vocabulary, columns=vocabulary)
        print(f"  ✓ Colocalization matrix: {len(vocabulary)} x {len(vocabulary)} "
              f"from {values.shape[0]} cells")
        return ColocalizationMatrix(frame, undefined, self.method, int(values.shape[0]))
