import numpy as np
import pandas as pd
import pytest

from hoodscan.cells import CellTable

TISSUE_TYPES = ['Fibroblast', 'Lymphocyte', 'Tumor']


@pytest.fixture
def four_cells():
    """Three cells close together at the origin and one far away."""
    return CellTable(
        ['c0', 'c1', 'c2', 'c3'],
        [[0, 0], [1, 0], [0, 1], [10, 10]],
        ['A', 'A', 'B', 'A']
    )


@pytest.fixture
def tissue_df():
    """
    120 cells in three vertical bands: tumor on the left, lymphocytes in the
    middle, fibroblasts on the right, with a few mixed-in cells and missing
    labels.
    """
    rng = np.random.default_rng(7)
    x = rng.uniform(0, 300, size=120)
    y = rng.uniform(0, 100, size=120)
    cell_type = np.where(x < 100, 'Tumor', np.where(x < 200, 'Lymphocyte', 'Fibroblast'))
    cell_type = cell_type.astype(object)
    flip = rng.choice(120, size=10, replace=False)
    cell_type[flip] = rng.choice(TISSUE_TYPES, size=10)
    cell_type[[3, 50, 97]] = None
    return pd.DataFrame({
        'x_centroid': x,
        'y_centroid': y,
        'cell_type': cell_type,
    }, index=[f'cell_{i}' for i in range(120)])


@pytest.fixture
def tissue_cells(tissue_df):
    return CellTable.from_dataframe(tissue_df)
