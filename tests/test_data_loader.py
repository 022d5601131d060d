import pytest
import numpy as np
import pandas as pd

from giottoflow.core.data_loader import (create_analysis_object, read_expression_matrix, read_spatial_locations,
                                         load_data, add_cell_metadata, add_feat_metadata)
from giottoflow.exceptions import IntegrityError
from giottoflow.utils.checks import check_integrity, dense


class TestReaders:
    """Plain-text expression and location readers"""

    def test_read_expression_matrix(self, tmp_path, toy_expression):
        path = tmp_path / "expression.txt.gz"
        toy_expression.to_csv(path, sep='\t')
        expr_df = read_expression_matrix(path)
        assert expr_df.shape == (10, 20)
        assert list(expr_df.index[:2]) == ['g0', 'g1']
        np.testing.assert_allclose(expr_df.values, toy_expression.values)

    def test_read_locations_with_ids_and_header(self, tmp_path, toy_locations):
        path = tmp_path / "locations.csv"
        toy_locations.to_csv(path, index=False)
        locs = read_spatial_locations(path)
        assert list(locs.columns) == ['sdimx', 'sdimy']
        assert locs.index[3] == 'c3'
        assert locs.loc['c7', 'sdimx'] == 2.0

    def test_read_locations_positional(self, tmp_path):
        path = tmp_path / "coords.txt"
        path.write_text("0 0 1\n1 0 1\n0 1 1\n")
        locs = read_spatial_locations(path, sep=' ')
        assert list(locs.columns) == ['sdimx', 'sdimy', 'sdimz']
        assert isinstance(locs.index, pd.RangeIndex)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_expression_matrix(tmp_path / "nothing.txt")

    def test_load_giotto_text_directory(self, tmp_path, toy_expression, toy_locations):
        toy_expression.to_csv(tmp_path / "raw_expression.txt", sep='\t')
        toy_locations.to_csv(tmp_path / "cell_locations.txt", sep='\t', index=False)
        adata = load_data(tmp_path, format="giotto_text")
        assert adata.shape == (20, 10)


class TestAnalysisObject:
    """Construction of the AnnData analysis object"""

    def test_layout(self, toy_adata, toy_expression):
        assert toy_adata.shape == (20, 10)
        assert 'raw' in toy_adata.layers
        assert toy_adata.obsm['spatial'].shape == (20, 2)
        assert toy_adata.uns['spatial_dims'] == ['sdimx', 'sdimy']
        assert toy_adata.uns['instructions']['plot_format'] == 'png'
        np.testing.assert_allclose(dense(toy_adata.layers['raw']), toy_expression.values.T)
        assert check_integrity(toy_adata)

    def test_locations_aligned_by_id(self, toy_expression, toy_locations):
        shuffled = toy_locations.iloc[::-1]
        adata = create_analysis_object(toy_expression, shuffled)
        np.testing.assert_allclose(adata.obsm['spatial'][7], [2.0, 1.0])

    def test_location_count_mismatch(self, toy_expression):
        locs = pd.DataFrame({'x': np.arange(5.0), 'y': np.arange(5.0)})
        with pytest.raises(ValueError, match="does not match"):
            create_analysis_object(toy_expression, locs)

    def test_missing_location(self, toy_expression, toy_locations):
        with pytest.raises(ValueError, match="no spatial location"):
            create_analysis_object(toy_expression, toy_locations.iloc[1:])

    def test_add_metadata(self, toy_adata):
        meta = pd.DataFrame({'batch': ['b1'] * 10 + ['b2'] * 10}, index=[f"c{j}" for j in range(20)])
        add_cell_metadata(toy_adata, meta.iloc[::-1])
        assert toy_adata.obs.loc['c0', 'batch'] == 'b1'
        add_feat_metadata(toy_adata, pd.Series(['x'] * 10, index=[f"g{i}" for i in range(10)], name='kind'))
        assert (toy_adata.var['kind'] == 'x').all()

    def test_metadata_with_unknown_ids(self, toy_adata):
        meta = pd.DataFrame({'batch': ['b1']}, index=['not_a_cell'])
        with pytest.raises(IntegrityError):
            add_cell_metadata(toy_adata, meta)

    def test_add_image(self, tmp_path, toy_adata):
        from skimage import io
        from giottoflow.core.data_loader import add_image_data

        path = tmp_path / "tissue.png"
        io.imsave(path, np.zeros((8, 6, 3), dtype=np.uint8), check_contrast=False)
        add_image_data(toy_adata, path, scale_factor=0.5)
        library = toy_adata.uns['spatial']['tissue_image']
        assert library['images']['hires'].shape == (8, 6, 3)
        assert library['scalefactors']['tissue_hires_scalef'] == 0.5

    def test_missing_image(self, tmp_path, toy_adata):
        from giottoflow.core.data_loader import add_image_data

        with pytest.raises(FileNotFoundError):
            add_image_data(toy_adata, tmp_path / "missing.png")
