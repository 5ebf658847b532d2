"""
Cell data model for the neighborhood scan.

A CellTable is fixed at ingestion: identifiers, 2D coordinates and type labels
are validated once and stored read-only, so every later stage can rely on them
without re-checking column names or dtypes.
"""

from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd

from .errors import MissingCoordinates, UnknownType

X_KEY = 'x_centroid'
Y_KEY = 'y_centroid'
CELLTYPE_KEY = 'cell_type'
SPATIAL_KEY = 'spatial'


@dataclass(frozen=True)
class Cell:
    """One cell: stable identifier, position and (possibly missing) type."""
    cell_id: str
    x: float
    y: float
    cell_type: Optional[str]


def check_coordinates(coordinates) -> np.ndarray:
    """
    Validate an (N, 2) coordinate array and return it as float64.

    Raises MissingCoordinates if the array has the wrong shape or any value
    is NaN or infinite.
    """
    try:
        coords = np.asarray(coordinates, dtype=np.float64)
    except (TypeError, ValueError) as error:
        raise MissingCoordinates(f"Coordinates are not numeric: {error}") from error

    if coords.ndim != 2 or coords.shape[1] != 2:
        raise MissingCoordinates(
            f"Expected an (N, 2) coordinate array, got shape {coords.shape}"
        )

    finite = np.isfinite(coords).all(axis=1)
    if not finite.all():
        bad = np.flatnonzero(~finite)
        raise MissingCoordinates(
            f"{len(bad)} cell(s) lack finite coordinates (first rows: {bad[:5].tolist()})"
        )
    return coords


def _normalize_labels(labels: Iterable) -> np.ndarray:
    # Missing labels become None, everything else a string.
    normalized = [None if pd.isna(label) else str(label) for label in labels]
    return np.array(normalized, dtype=object)


class CellTable:
    """
    Immutable table of cells in input order.

    Parameters:
    -----------
    cell_ids : sequence
        Unique cell identifiers
    coordinates : array-like, shape (N, 2)
        Finite spatial coordinates (x, y)
    cell_types : sequence
        Type label per cell; None or NaN marks a missing label
    vocabulary : sequence of str, optional
        Declared set of type names. Its order becomes the column order of
        every probability matrix. When omitted, the alphabetically sorted set
        of observed labels is used.
    """

    def __init__(
            self,
            cell_ids: Sequence,
            coordinates,
            cell_types: Sequence,
            vocabulary: Optional[Sequence[str]] = None
    ):
        cell_ids = pd.Index([str(cell_id) for cell_id in cell_ids])
        coords = check_coordinates(coordinates)
        labels = _normalize_labels(cell_types)

        if not (len(cell_ids) == coords.shape[0] == len(labels)):
            raise ValueError(
                f"Length mismatch: {len(cell_ids)} ids, {coords.shape[0]} coordinates, "
                f"{len(labels)} labels"
            )
        if not cell_ids.is_unique:
            duplicated = cell_ids[cell_ids.duplicated()].unique().tolist()
            raise ValueError(f"Cell identifiers must be unique, duplicated: {duplicated[:5]}")

        observed = {label for label in labels if label is not None}
        if vocabulary is None:
            vocab = tuple(sorted(observed))
        else:
            vocab = tuple(str(name) for name in vocabulary)
            if len(set(vocab)) != len(vocab):
                raise ValueError(f"Vocabulary contains duplicate names: {list(vocab)}")
            unknown = observed.difference(vocab)
            if unknown:
                raise UnknownType(unknown)

        coords.flags.writeable = False
        labels.flags.writeable = False
        self._cell_ids = cell_ids
        self._coordinates = coords
        self._labels = labels
        self._vocabulary = vocab

    @classmethod
    def from_dataframe(
            cls,
            df: pd.DataFrame,
            celltype_key: str = CELLTYPE_KEY,
            x_key: str = X_KEY,
            y_key: str = Y_KEY,
            cell_id_key: Optional[str] = None,
            vocabulary: Optional[Sequence[str]] = None
    ) -> 'CellTable':
        """
        Build a CellTable from a tabular cell export.

        Coordinates come from `x_key` / `y_key`, labels from `celltype_key`.
        Identifiers come from `cell_id_key` when given, otherwise from the
        frame index. A missing coordinate column raises MissingCoordinates;
        a missing type column raises KeyError.
        """
        missing = [key for key in (x_key, y_key) if key not in df.columns]
        if missing:
            raise MissingCoordinates(
                f"Coordinate column(s) {missing} not found. Available columns: {list(df.columns)}"
            )
        if celltype_key not in df.columns:
            raise KeyError(
                f"Cell type column '{celltype_key}' not found. Available columns: {list(df.columns)}"
            )

        cell_ids = df[cell_id_key] if cell_id_key is not None else df.index
        try:
            coords = df[[x_key, y_key]].to_numpy(dtype=np.float64)
        except (TypeError, ValueError) as error:
            raise MissingCoordinates(f"Coordinate columns are not numeric: {error}") from error

        return cls(cell_ids, coords, df[celltype_key].tolist(), vocabulary=vocabulary)

    @classmethod
    def from_anndata(
            cls,
            adata: ad.AnnData,
            celltype_key: str = CELLTYPE_KEY,
            spatial_key: str = SPATIAL_KEY,
            vocabulary: Optional[Sequence[str]] = None
    ) -> 'CellTable':
        """
        Build a CellTable from an AnnData object with `obsm[spatial_key]`
        coordinates and an `obs[celltype_key]` label column.
        """
        if spatial_key not in adata.obsm:
            raise MissingCoordinates(
                f"Spatial key '{spatial_key}' not found in adata.obsm: {list(adata.obsm.keys())}"
            )
        if celltype_key not in adata.obs.columns:
            raise KeyError(
                f"Cell type column '{celltype_key}' not found. "
                f"Available columns: {list(adata.obs.columns)}"
            )

        coords = np.asarray(adata.obsm[spatial_key])[:, :2]
        return cls(
            adata.obs_names,
            coords,
            adata.obs[celltype_key].tolist(),
            vocabulary=vocabulary
        )

    @property
    def cell_ids(self) -> pd.Index:
        return self._cell_ids

    @property
    def coordinates(self) -> np.ndarray:
        return self._coordinates

    @property
    def labels(self) -> np.ndarray:
        return self._labels

    @property
    def vocabulary(self) -> Tuple[str, ...]:
        return self._vocabulary

    @property
    def n_cells(self) -> int:
        return len(self._cell_ids)

    def __len__(self) -> int:
        return self.n_cells

    def __iter__(self) -> Iterator[Cell]:
        for i in range(self.n_cells):
            yield self.cell(i)

    def cell(self, i: int) -> Cell:
        x, y = self._coordinates[i]
        return Cell(self._cell_ids[i], float(x), float(y), self._labels[i])

    def type_codes(self, vocabulary: Optional[Sequence[str]] = None) -> np.ndarray:
        """
        Encode labels as integer positions in the vocabulary.

        Missing labels are encoded as -1. Labels outside the vocabulary raise
        UnknownType.
        """
        vocab = self._vocabulary if vocabulary is None else tuple(vocabulary)
        return encode_labels(self._labels, vocab)

    def type_counts(self) -> pd.Series:
        """Number of cells per vocabulary type (missing labels excluded)."""
        counts = pd.Series(self._labels).value_counts()
        return counts.reindex(list(self._vocabulary), fill_value=0)


def encode_labels(labels: Iterable, vocabulary: Sequence[str]) -> np.ndarray:
    """Map labels to vocabulary positions, -1 for missing, UnknownType otherwise."""
    positions = {name: i for i, name in enumerate(vocabulary)}
    labels = _normalize_labels(labels)
    codes = np.full(len(labels), -1, dtype=np.intp)
    unknown = set()
    for i, label in enumerate(labels):
        if label is None:
            continue
        code = positions.get(label)
        if code is None:
            unknown.add(label)
        else:
            codes[i] = code
    if unknown:
        raise UnknownType(unknown)
    return codes
