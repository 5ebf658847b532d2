"""
Loading cell tables for the neighborhood scan.

Supported inputs:
- CSV / TSV cell exports with one row per cell (coordinates in
  `x_centroid` / `y_centroid` by default)
- AnnData `.h5ad` files with coordinates in `obsm['spatial']`
"""

from pathlib import Path
from typing import List, Optional, Sequence, Union

import anndata as ad
import pandas as pd
import scanpy as sc

from .cells import CELLTYPE_KEY, SPATIAL_KEY, X_KEY, Y_KEY, CellTable

TABLE_SEPARATORS = {'.csv': ',', '.tsv': '\t', '.txt': '\t'}


def read_cell_data(path) -> Union[pd.DataFrame, ad.AnnData]:
    """Read a cell table or AnnData file, chosen by file extension."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")

    suffix = path.suffix.lower()
    if suffix == '.h5ad':
        print(f"Loading AnnData file: {path}")
        adata = sc.read_h5ad(path)
        print(f"  - Loaded {adata.n_obs} cells, {adata.n_vars} genes")
        return adata
    if suffix in TABLE_SEPARATORS:
        print(f"Loading cell table: {path}")
        df = pd.read_csv(path, sep=TABLE_SEPARATORS[suffix])
        print(f"  - Loaded {len(df)} cells, {len(df.columns)} columns")
        return df
    raise ValueError(
        f"Unsupported input format '{suffix}'. Expected .h5ad, {', '.join(TABLE_SEPARATORS)}"
    )


def read_vocabulary(path) -> List[str]:
    """Type names, one per line; blank lines and '#' comments are skipped."""
    with open(path, 'r', encoding='utf-8') as f:
        names = [line.strip() for line in f]
    return [name for name in names if name and not name.startswith('#')]


def to_cell_table(
        data: Union[pd.DataFrame, ad.AnnData],
        celltype_key: str = CELLTYPE_KEY,
        x_key: str = X_KEY,
        y_key: str = Y_KEY,
        spatial_key: str = SPATIAL_KEY,
        cell_id_key: Optional[str] = None,
        vocabulary: Optional[Sequence[str]] = None
) -> CellTable:
    """Validate loaded cell data into a CellTable."""
    if isinstance(data, ad.AnnData):
        cells = CellTable.from_anndata(data, celltype_key=celltype_key,
                                       spatial_key=spatial_key, vocabulary=vocabulary)
    else:
        cells = CellTable.from_dataframe(data, celltype_key=celltype_key, x_key=x_key,
                                         y_key=y_key, cell_id_key=cell_id_key,
                                         vocabulary=vocabulary)

    n_missing = sum(label is None for label in cells.labels)
    print(f"  - Cell types: {len(cells.vocabulary)}")
    if n_missing:
        print(f"  - Cells without a type label: {n_missing}")
    return cells


def load_cell_table(
        path,
        celltype_key: str = CELLTYPE_KEY,
        x_key: str = X_KEY,
        y_key: str = Y_KEY,
        spatial_key: str = SPATIAL_KEY,
        cell_id_key: Optional[str] = None,
        vocabulary: Optional[Sequence[str]] = None
) -> CellTable:
    """Read a cell file and validate it into a CellTable."""
    return to_cell_table(read_cell_data(path), celltype_key=celltype_key, x_key=x_key,
                         y_key=y_key, spatial_key=spatial_key, cell_id_key=cell_id_key,
                         vocabulary=vocabulary)
