import pytest
import numpy as np
import pandas as pd

from giottoflow.core.preprocessing import (filter_analysis_object, filter_distributions, normalize_analysis_object,
                                           add_statistics, adjust_analysis_object)
from giottoflow.core.feature_selection import calculate_hvf, run_pca
from giottoflow.exceptions import ConfigurationError
from giottoflow.utils.checks import dense


@pytest.fixture
def filtered_toy(toy_adata):
    return filter_analysis_object(toy_adata, expression_threshold=1, feat_det_in_min_cells=2,
                                  min_det_feats_per_cell=2)


class TestFiltering:
    """Detection based filtering"""

    def test_toy_filtering(self, filtered_toy):
        """Rare features and empty observations are removed"""
        assert filtered_toy.shape == (18, 8)
        assert list(filtered_toy.var_names) == [f"g{i}" for i in range(8)]
        assert 'c18' not in filtered_toy.obs_names
        assert 'c19' not in filtered_toy.obs_names

    def test_filtering_is_idempotent(self, filtered_toy):
        again = filter_analysis_object(filtered_toy, expression_threshold=1, feat_det_in_min_cells=2,
                                       min_det_feats_per_cell=2)
        assert again.shape == filtered_toy.shape
        assert list(again.obs_names) == list(filtered_toy.obs_names)
        assert list(again.var_names) == list(filtered_toy.var_names)

    def test_filtering_cascade_reaches_fixed_point(self):
        """Removing an observation can push a feature below its threshold"""
        from giottoflow.core.data_loader import create_analysis_object

        values = pd.DataFrame(
            [[1, 1, 1, 0], [1, 1, 1, 0], [1, 0, 0, 1]],
            index=['f0', 'f1', 'f2'], columns=['o0', 'o1', 'o2', 'o3'],
        )
        locs = pd.DataFrame({'x': [0.0, 1.0, 2.0, 3.0], 'y': [0.0, 0.0, 0.0, 0.0]})
        adata = create_analysis_object(values, locs)
        filtered = filter_analysis_object(adata, expression_threshold=1, feat_det_in_min_cells=2,
                                          min_det_feats_per_cell=2)
        assert list(filtered.obs_names) == ['o0', 'o1', 'o2']
        assert list(filtered.var_names) == ['f0', 'f1']
        again = filter_analysis_object(filtered, expression_threshold=1, feat_det_in_min_cells=2,
                                       min_det_feats_per_cell=2)
        assert again.shape == filtered.shape

    def test_filter_distributions(self, toy_adata):
        dist = filter_distributions(toy_adata)
        assert dist['feats']['g8'] == 1
        assert dist['cells']['c19'] == 0
        assert 'feats_detected_in_cells' in dist['summary']

    def test_missing_layer(self, toy_adata):
        with pytest.raises(ConfigurationError):
            filter_analysis_object(toy_adata, expression_layer='normalized')


class TestNormalization:
    """Library size normalization, log transform and scaling"""

    def test_layers(self, filtered_toy):
        adata = normalize_analysis_object(filtered_toy, scalefactor=6000)
        raw = dense(adata.layers['raw'])
        norm = dense(adata.layers['normalized'])
        expected = np.log2(raw / raw.sum(axis=1, keepdims=True) * 6000 + 1)
        np.testing.assert_allclose(norm, expected, rtol=1e-5)
        np.testing.assert_allclose(dense(adata.X), norm)

        scaled = adata.layers['scaled']
        np.testing.assert_allclose(scaled.mean(axis=1), 0, atol=1e-8)
        assert adata.uns['normalization_params']['logbase'] == 2.0

    def test_statistics(self, filtered_toy):
        adata = add_statistics(normalize_analysis_object(filtered_toy))
        assert (adata.obs['nr_feats'] == 8).all()
        assert (adata.var['perc_cells'] == 100).all()
        assert 'total_counts' in adata.obs

    def test_adjust_requires_covariates(self, filtered_toy):
        adata = normalize_analysis_object(filtered_toy)
        with pytest.raises(ConfigurationError):
            adjust_analysis_object(adata, ['nr_feats'])

    def test_adjust(self, processed_adata):
        adata = add_statistics(processed_adata)
        adata = adjust_analysis_object(adata, 'total_expr')
        assert adata.layers['custom'].shape == adata.shape


class TestFeatureSelection:
    """Highly variable features and PCA"""

    def test_hvf_and_pca(self, processed_adata):
        adata = calculate_hvf(processed_adata, zscore_threshold=0.5, nr_expression_groups=4)
        assert adata.var['hvf'].dtype == bool
        assert 'hvf_score' in adata.var
        adata = run_pca(adata, n_comps=5, feats_to_use=None, seed=1)
        assert adata.obsm['X_pca'].shape == (adata.n_obs, 5)

    def test_pca_is_deterministic(self, processed_adata):
        first = run_pca(processed_adata.copy(), n_comps=5, feats_to_use=None, seed=1).obsm['X_pca']
        second = run_pca(processed_adata.copy(), n_comps=5, feats_to_use=None, seed=1).obsm['X_pca']
        np.testing.assert_allclose(first, second)

    def test_unknown_hvf_method(self, processed_adata):
        with pytest.raises(ValueError):
            calculate_hvf(processed_adata, method='magic')
