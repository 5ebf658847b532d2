import anndata as ad
import numpy as np
import pandas as pd
import pytest

from hoodscan.cells import Cell, CellTable, encode_labels
from hoodscan.errors import MissingCoordinates, UnknownType


def test_vocabulary_defaults_to_sorted_observed_labels():
    cells = CellTable(['a', 'b', 'c'], [[0, 0], [1, 1], [2, 2]], ['T cell', 'B cell', 'T cell'])
    assert cells.vocabulary == ('B cell', 'T cell')


def test_declared_vocabulary_keeps_its_order():
    cells = CellTable(['a', 'b'], [[0, 0], [1, 1]], ['A', 'B'], vocabulary=['B', 'C', 'A'])
    assert cells.vocabulary == ('B', 'C', 'A')
    assert cells.type_codes().tolist() == [2, 0]


def test_label_outside_declared_vocabulary_raises():
    with pytest.raises(UnknownType) as excinfo:
        CellTable(['a', 'b'], [[0, 0], [1, 1]], ['A', 'Unknown'], vocabulary=['A', 'B'])
    assert excinfo.value.labels == ['Unknown']


def test_missing_labels_become_none():
    cells = CellTable(['a', 'b', 'c'], [[0, 0], [1, 1], [2, 2]], ['A', None, np.nan])
    assert cells.labels.tolist() == ['A', None, None]
    assert cells.vocabulary == ('A',)
    assert cells.type_codes().tolist() == [0, -1, -1]


def test_non_finite_coordinates_raise():
    with pytest.raises(MissingCoordinates):
        CellTable(['a', 'b'], [[0, 0], [np.nan, 1]], ['A', 'B'])
    with pytest.raises(MissingCoordinates):
        CellTable(['a', 'b'], [[0, 0], [np.inf, 1]], ['A', 'B'])


def test_wrong_coordinate_shape_raises():
    with pytest.raises(MissingCoordinates):
        CellTable(['a', 'b'], [[0, 0, 0], [1, 1, 1]], ['A', 'B'])


def test_duplicate_ids_raise():
    with pytest.raises(ValueError, match='unique'):
        CellTable(['a', 'a'], [[0, 0], [1, 1]], ['A', 'B'])


def test_length_mismatch_raises():
    with pytest.raises(ValueError, match='Length mismatch'):
        CellTable(['a', 'b'], [[0, 0], [1, 1]], ['A'])


def test_arrays_are_read_only(four_cells):
    with pytest.raises(ValueError):
        four_cells.coordinates[0, 0] = 5.0
    with pytest.raises(ValueError):
        four_cells.labels[0] = 'B'


def test_iteration_yields_cells(four_cells):
    cells = list(four_cells)
    assert len(cells) == 4
    assert cells[3] == Cell('c3', 10.0, 10.0, 'A')


def test_type_counts(four_cells):
    assert four_cells.type_counts().to_dict() == {'A': 3, 'B': 1}


def test_from_dataframe(tissue_df):
    cells = CellTable.from_dataframe(tissue_df)
    assert cells.n_cells == 120
    assert list(cells.cell_ids[:2]) == ['cell_0', 'cell_1']
    assert cells.vocabulary == ('Fibroblast', 'Lymphocyte', 'Tumor')
    np.testing.assert_allclose(cells.coordinates[:, 0], tissue_df['x_centroid'])


def test_from_dataframe_with_id_column():
    df = pd.DataFrame({
        'id': ['x1', 'x2'],
        'x_centroid': [0.0, 1.0],
        'y_centroid': [0.0, 1.0],
        'group': ['A', 'B'],
    })
    cells = CellTable.from_dataframe(df, celltype_key='group', cell_id_key='id')
    assert list(cells.cell_ids) == ['x1', 'x2']


def test_from_dataframe_missing_coordinate_column_raises(tissue_df):
    with pytest.raises(MissingCoordinates, match='y_centroid'):
        CellTable.from_dataframe(tissue_df.drop(columns='y_centroid'))


def test_from_dataframe_missing_type_column_raises(tissue_df):
    with pytest.raises(KeyError):
        CellTable.from_dataframe(tissue_df, celltype_key='celltype')


def test_from_dataframe_nan_coordinate_raises(tissue_df):
    tissue_df.loc['cell_5', 'x_centroid'] = np.nan
    with pytest.raises(MissingCoordinates):
        CellTable.from_dataframe(tissue_df)


def test_from_anndata():
    obs = pd.DataFrame({'cell_type': pd.Categorical(['A', 'B', 'A'])},
                       index=['a', 'b', 'c'])
    adata = ad.AnnData(X=np.zeros((3, 1)), obs=obs)
    adata.obsm['spatial'] = np.array([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0]])
    cells = CellTable.from_anndata(adata)
    assert list(cells.cell_ids) == ['a', 'b', 'c']
    assert cells.labels.tolist() == ['A', 'B', 'A']


def test_from_anndata_without_spatial_raises():
    adata = ad.AnnData(X=np.zeros((2, 1)),
                       obs=pd.DataFrame({'cell_type': ['A', 'B']}, index=['a', 'b']))
    with pytest.raises(MissingCoordinates):
        CellTable.from_anndata(adata)


def test_encode_labels():
    assert encode_labels(['B', None, 'A'], ['A', 'B']).tolist() == [1, -1, 0]
    with pytest.raises(UnknownType):
        encode_labels(['A', 'C'], ['A', 'B'])
