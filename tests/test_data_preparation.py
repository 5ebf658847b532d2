import anndata as ad
import numpy as np
import pandas as pd
import pytest

from hoodscan.data_preparation import load_cell_table, read_cell_data, read_vocabulary
from hoodscan.errors import MissingCoordinates, UnknownType


def test_load_csv(tissue_df, tmp_path):
    path = tmp_path / 'cells.csv'
    tissue_df.rename_axis('cell_id').reset_index().to_csv(path, index=False)
    cells = load_cell_table(path, cell_id_key='cell_id')
    assert cells.n_cells == 120
    assert list(cells.cell_ids[:2]) == ['cell_0', 'cell_1']
    assert cells.vocabulary == ('Fibroblast', 'Lymphocyte', 'Tumor')
    assert cells.labels[3] is None
    np.testing.assert_allclose(cells.coordinates[:, 0], tissue_df['x_centroid'])


def test_load_tsv_with_custom_columns(tmp_path):
    path = tmp_path / 'cells.tsv'
    pd.DataFrame({
        'X': [0.0, 1.0, 2.0],
        'Y': [0.0, 0.0, 1.0],
        'phenotype': ['T', 'B', 'T'],
    }).to_csv(path, sep='\t', index=False)
    cells = load_cell_table(path, celltype_key='phenotype', x_key='X', y_key='Y')
    assert list(cells.cell_ids) == ['0', '1', '2']
    assert cells.vocabulary == ('B', 'T')


def test_load_h5ad(tissue_df, tmp_path):
    labels = tissue_df['cell_type'].fillna('Unlabeled').astype('category')
    adata = ad.AnnData(obs=pd.DataFrame({'cell_type': labels}, index=tissue_df.index))
    adata.obsm['spatial'] = tissue_df[['x_centroid', 'y_centroid']].to_numpy()
    path = tmp_path / 'cells.h5ad'
    adata.write(path)

    loaded = read_cell_data(path)
    assert isinstance(loaded, ad.AnnData)
    cells = load_cell_table(path)
    assert cells.n_cells == 120
    assert 'Unlabeled' in cells.vocabulary
    assert list(cells.cell_ids) == list(tissue_df.index)


def test_missing_coordinate_column(tmp_path):
    path = tmp_path / 'cells.csv'
    pd.DataFrame({'x_centroid': [0.0], 'cell_type': ['A']}).to_csv(path, index=False)
    with pytest.raises(MissingCoordinates):
        load_cell_table(path)


def test_declared_vocabulary(tmp_path, tissue_df):
    vocab_path = tmp_path / 'types.txt'
    vocab_path.write_text('# immune and stroma\nTumor\n\nLymphocyte\n')
    assert read_vocabulary(vocab_path) == ['Tumor', 'Lymphocyte']

    path = tmp_path / 'cells.csv'
    tissue_df.to_csv(path)
    with pytest.raises(UnknownType) as excinfo:
        load_cell_table(path, vocabulary=read_vocabulary(vocab_path))
    assert excinfo.value.labels == ['Fibroblast']


def test_unsupported_format(tmp_path):
    path = tmp_path / 'cells.parquet'
    path.write_bytes(b'')
    with pytest.raises(ValueError, match='Unsupported input format'):
        read_cell_data(path)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_cell_data(tmp_path / 'missing.csv')
