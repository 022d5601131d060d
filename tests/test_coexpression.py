import pytest
import numpy as np
import pandas as pd

from giottoflow.analysis.coexpression import (detect_spatial_cor_feats, cluster_spatial_cor_feats,
                                              show_spatial_cor_feats, rank_spatial_cor_groups, create_metafeats)
from giottoflow.spatial.neighbors import create_spatial_grid
from giottoflow.exceptions import ConfigurationError
from giottoflow.utils.checks import check_integrity

from conftest import MARKERS


FEATS = [f for t in MARKERS for f in MARKERS[t]]


@pytest.fixture
def cor_adata(processed_adata):
    adata = detect_spatial_cor_feats(processed_adata, method='network', spatial_network_name='kNN_network',
                                     subset_feats=FEATS)
    return cluster_spatial_cor_feats(adata, k=3)


class TestSpatialCorrelation:
    """Spatially smoothed feature correlation"""

    def test_network_method(self, processed_adata):
        adata = detect_spatial_cor_feats(processed_adata, method='network', subset_feats=FEATS)
        spat_cor = adata.uns['spatial_cor']['spat_cor']
        assert spat_cor.shape == (9, 9)
        np.testing.assert_allclose(np.diag(spat_cor.values), 1.0)
        # smoothing strengthens within-type correlation
        expr_cor = adata.uns['spatial_cor']['expr_cor']
        assert spat_cor.loc['markA1', 'markA2'] > expr_cor.loc['markA1', 'markA2']
        assert adata.uns['spatial_cor']['params']['network'] == 'Delaunay_network'

    def test_grid_method(self, processed_adata):
        adata = create_spatial_grid(processed_adata, sdimx_stepsize=3, sdimy_stepsize=3)
        adata = detect_spatial_cor_feats(adata, method='grid', subset_feats=FEATS, min_cells_per_grid=4)
        spat_cor = adata.uns['spatial_cor']['spat_cor']
        assert spat_cor.loc['markA1', 'markA2'] > 0.8
        assert spat_cor.loc['markA1', 'markC1'] < 0

    def test_grid_too_coarse(self, processed_adata):
        adata = create_spatial_grid(processed_adata, sdimx_stepsize=100, sdimy_stepsize=100)
        with pytest.raises(ConfigurationError):
            detect_spatial_cor_feats(adata, method='grid', subset_feats=FEATS)

    def test_requires_network(self, tissue_adata):
        from giottoflow.core.preprocessing import normalize_analysis_object

        adata = normalize_analysis_object(tissue_adata)
        with pytest.raises(ConfigurationError):
            detect_spatial_cor_feats(adata, method='network', subset_feats=FEATS)

    def test_too_few_features(self, processed_adata):
        with pytest.raises(ConfigurationError):
            detect_spatial_cor_feats(processed_adata, subset_feats=['markA1'])

    def test_invalid_smoothing(self, processed_adata):
        with pytest.raises(ConfigurationError):
            detect_spatial_cor_feats(processed_adata, network_smoothing=1.5)


class TestModules:
    """Co-expression modules and metafeatures"""

    def test_modules_match_cell_types(self, cor_adata):
        clusters = cor_adata.uns['spatial_cor']['feat_clusters'].set_index('feat_ID')['clus']
        for t in MARKERS:
            assert clusters[MARKERS[t]].nunique() == 1
        assert clusters.nunique() == 3
        assert cor_adata.var.loc['markA1', 'spatial_cor_module'] == cor_adata.var.loc['markA2', 'spatial_cor_module']

    def test_too_many_modules(self, processed_adata):
        adata = detect_spatial_cor_feats(processed_adata, subset_feats=FEATS)
        with pytest.raises(ConfigurationError):
            cluster_spatial_cor_feats(adata, k=20)

    def test_show(self, cor_adata):
        table = show_spatial_cor_feats(cor_adata, feats=['markB1'])
        assert set(table['feat_ID']) == {'markB1'}
        assert len(table) == 8
        assert {'spat_cor', 'expr_cor', 'cor_diff', 'rank_spat', 'clus', 'variable_clus'} <= set(table.columns)

    def test_rank_groups(self, cor_adata):
        ranking = rank_spatial_cor_groups(cor_adata)
        assert list(ranking['rank']) == [1, 2, 3]
        assert (ranking['nr_feats'] == 3).all()
        assert (ranking['mean_cor'] > 0.5).all()

    def test_metafeats(self, cor_adata):
        adata = create_metafeats(cor_adata)
        scores = adata.obsm['cluster_metagene']
        assert scores.shape == (adata.n_obs, 3)
        assert check_integrity(adata)

    def test_metafeats_custom_modules(self, processed_adata):
        adata = create_metafeats(processed_adata, feat_clusters={'markA1': 1, 'markA2': 1, 'noise1': 2},
                                 name='custom', stat='sum')
        assert list(adata.obsm['custom'].columns) == ['1', '2']

    def test_metafeats_require_clusters(self, processed_adata):
        adata = detect_spatial_cor_feats(processed_adata, subset_feats=FEATS)
        with pytest.raises(ConfigurationError):
            create_metafeats(adata)
