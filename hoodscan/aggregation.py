"""
Assembly of per-cell probability rows into the probability matrix.
"""

from typing import Dict, Iterable, List, Sequence

import numpy as np
import pandas as pd

from .probability import RowBlock

# Row sums must be 1 within this tolerance (0 for degenerate rows).
ROW_SUM_TOLERANCE = 1e-9


class ProbabilityMatrix:
    """
    Cells x types neighborhood probabilities.

    Rows follow the input cell order, columns the type vocabulary. The
    underlying arrays are read-only; `to_frame` returns a copy.
    """

    def __init__(
            self,
            values: np.ndarray,
            cell_ids: Sequence,
            vocabulary: Sequence[str],
            degenerate: np.ndarray
    ):
        values = np.array(values, dtype=np.float64)
        degenerate = np.array(degenerate, dtype=bool)
        cell_ids = pd.Index([str(cell_id) for cell_id in cell_ids])
        vocabulary = tuple(vocabulary)

        if values.shape != (len(cell_ids), len(vocabulary)):
            raise ValueError(
                f"Matrix shape {values.shape} does not match "
                f"{len(cell_ids)} cells x {len(vocabulary)} types"
            )
        if degenerate.shape != (len(cell_ids),):
            raise ValueError("Degenerate flags must have one entry per cell")

        values.flags.writeable = False
        degenerate.flags.writeable = False
        self._values = values
        self._cell_ids = cell_ids
        self._vocabulary = vocabulary
        self._degenerate = degenerate

    @property
    def values(self) -> np.ndarray:
        return self._values

    @property
    def cell_ids(self) -> pd.Index:
        return self._cell_ids

    @property
    def vocabulary(self) -> tuple:
        return self._vocabulary

    @property
    def degenerate(self) -> pd.Series:
        return pd.Series(self._degenerate, index=self._cell_ids, name='degenerate')

    @property
    def shape(self):
        return self._values.shape

    def row(self, cell_id) -> pd.Series:
        """The probability row of one cell, indexed by type."""
        i = self._cell_ids.get_loc(str(cell_id))
        return pd.Series(self._values[i], index=list(self._vocabulary), name=self._cell_ids[i])

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self._values.copy(), index=self._cell_ids.copy(),
                            columns=list(self._vocabulary))

    def check_rows(self, tolerance: float = ROW_SUM_TOLERANCE) -> None:
        """Raise ValueError unless every row sums to 1 (0 when degenerate)."""
        sums = self._values.sum(axis=1)
        expected = np.where(self._degenerate, 0.0, 1.0)
        bad = np.flatnonzero(np.abs(sums - expected) > tolerance)
        if bad.size:
            raise ValueError(
                f"{bad.size} probability row(s) do not sum to the expected value, "
                f"e.g. cell {self._cell_ids[bad[0]]} sums to {sums[bad[0]]}"
            )


class HoodAggregator:
    """
    Merges RowBlocks from the per-cell workers into one ProbabilityMatrix.

    Parameters:
    -----------
    vocabulary : sequence of str
        Column order; the declared vocabulary, otherwise the alphabetically
        sorted observed labels
    cell_ids : sequence
        Row order, the input dataset order
    """

    def __init__(self, vocabulary: Sequence[str], cell_ids: Sequence):
        self.vocabulary = tuple(vocabulary)
        self.cell_ids = pd.Index([str(cell_id) for cell_id in cell_ids])

    def aggregate(self, blocks: Iterable[RowBlock]) -> ProbabilityMatrix:
        """
        Place every block at its cell positions.

        Raises ValueError if a cell is covered zero or several times, or if a
        block has the wrong number of type columns.
        """
        n_cells, n_types = len(self.cell_ids), len(self.vocabulary)
        values = np.zeros((n_cells, n_types), dtype=np.float64)
        degenerate = np.zeros(n_cells, dtype=bool)
        covered = np.zeros(n_cells, dtype=np.intp)

        for block in blocks:
            if block.probabilities.shape != (len(block.positions), n_types):
                raise ValueError(
                    f"Block of shape {block.probabilities.shape} does not match "
                    f"{len(block.positions)} cells x {n_types} types"
                )
            values[block.positions] = block.probabilities
            degenerate[block.positions] = block.degenerate
            np.add.at(covered, block.positions, 1)

        if not (covered == 1).all():
            missing = int((covered == 0).sum())
            repeated = int((covered > 1).sum())
            raise ValueError(
                f"Row blocks must cover every cell once: {missing} missing, {repeated} repeated"
            )

        matrix = ProbabilityMatrix(values, self.cell_ids, self.vocabulary, degenerate)
        matrix.check_rows()
        print(f"  ✓ Probability matrix shape: {matrix.shape}")
        return matrix


def merge_by_group(matrix: ProbabilityMatrix, groups: Dict[str, Sequence[str]]) -> ProbabilityMatrix:
    """
    Sum probability columns into coarser groups of types.

    Parameters:
    -----------
    matrix : ProbabilityMatrix
        Fine-grained probabilities
    groups : dict
        Group name -> type names it absorbs. Every vocabulary type must
        belong to exactly one group.

    Returns:
    --------
    merged : ProbabilityMatrix
        One column per group, in the order of `groups`; rows still sum to 1
    """
    assigned: List[str] = [name for members in groups.values() for name in members]
    unknown = set(assigned).difference(matrix.vocabulary)
    if unknown:
        raise ValueError(f"Groups reference types not in the vocabulary: {sorted(unknown)}")
    if len(assigned) != len(set(assigned)):
        raise ValueError("A type is assigned to more than one group")
    unassigned = set(matrix.vocabulary).difference(assigned)
    if unassigned:
        raise ValueError(f"Types not assigned to any group: {sorted(unassigned)}")

    position = {name: i for i, name in enumerate(matrix.vocabulary)}
    merged = np.column_stack([
        matrix.values[:, [position[name] for name in members]].sum(axis=1)
        for members in groups.values()
    ])
    return ProbabilityMatrix(merged, matrix.cell_ids, list(groups), matrix.degenerate.to_numpy())
