import pytest
import numpy as np
import pandas as pd

from giottoflow.pipeline import run_pipeline, STAGES
from giottoflow.config import PIPELINE_STAGES
from giottoflow.exceptions import ConfigurationError
from giottoflow.utils.checks import check_integrity

from conftest import MARKERS, make_tissue


@pytest.fixture
def lr_path(tmp_path, lr_pairs):
    path = tmp_path / "lr_pairs.tsv"
    lr_pairs.to_csv(path, sep='\t', index=False)
    return path


@pytest.fixture
def small_config(tmp_path, lr_path):
    """Settings sized for the synthetic tissue"""
    return {
        'instructions': {'save_dir': str(tmp_path / "figures"), 'save_plot': False},
        'preprocessing': {'feat_det_in_min_cells': 5, 'min_det_feats_per_cell': 5, 'covariates': []},
        'dimension_reduction': {'n_comps': 10, 'run_umap': False},
        'clustering': {'n_neighbors': 10, 'n_pcs': 10, 'resolution': 0.1},
        'differential_expression': {'methods': ['gini'], 'top_n': 3},
        'annotation': {'name': 'annotated', 'marker_sets': MARKERS},
        'spatial_structuring': {'grid_stepsize': 3, 'knn_k': 4, 'knn_max_distance': None},
        'spatial_features': {'methods': ['binspect_kmeans', 'silhouette_rank']},
        'spatial_coexpression': {'n_feats': 9, 'k': 3},
        'domain_inference': {'n_feats': 9, 'k': 3, 'betas': [0, 2]},
        'neighborhood': {'n_perms': 20},
        'cell_communication': {'lr_path': str(lr_path), 'n_perms': 20},
    }


class TestStageOrder:
    """Stage registry"""

    def test_registry_matches_config(self):
        assert [name for name, _ in STAGES] == PIPELINE_STAGES


class TestRunPipeline:
    """Sequencing of the analysis stages"""

    def test_full_run(self, tissue_adata, small_config):
        adata, snapshots = run_pipeline(small_config, adata=tissue_adata, keep_snapshots=True)
        assert adata.uns['pipeline_log']['stages'] == PIPELINE_STAGES
        assert set(snapshots) == set(PIPELINE_STAGES)

        assert 'leiden_clus' in adata.obs
        assert 'annotated' in adata.obs
        assert 'PAGE' in adata.obsm
        assert {'Delaunay_network', 'kNN_network'} <= set(adata.uns['spatial_networks'])
        assert {'binspect_kmeans', 'silhouette_rank'} <= set(adata.uns['spatial_genes'])
        assert 'feat_clusters' in adata.uns['spatial_cor']
        assert 'hmrf_k3_b2' in adata.obs
        assert 'annotated' in adata.uns['cell_proximity']
        assert {'expr_annotated', 'spat_annotated', 'combined'} <= set(adata.uns['cellcom'])
        assert check_integrity(adata)

    def test_snapshots_are_independent(self, tissue_adata, small_config):
        stages = ['preprocessing', 'spatial_structuring']
        adata, snapshots = run_pipeline(small_config, adata=tissue_adata, stages=stages, keep_snapshots=True)
        assert 'spatial_networks' not in snapshots['preprocessing'].uns
        assert 'spatial_networks' in snapshots['spatial_structuring'].uns
        assert 'spatial_networks' not in tissue_adata.uns
        assert 'normalized' not in tissue_adata.layers

    def test_deterministic(self, tissue_adata, small_config):
        """Identical inputs and seeds give identical results"""
        stages = ['preprocessing', 'spatial_structuring', 'neighborhood']
        config = dict(small_config, annotation={'name': 'cell_types'})
        first, _ = run_pipeline(config, adata=tissue_adata, stages=stages)
        second, _ = run_pipeline(config, adata=tissue_adata, stages=stages)
        pd.testing.assert_frame_equal(first.uns['cell_proximity']['cell_types'],
                                      second.uns['cell_proximity']['cell_types'])
        pd.testing.assert_frame_equal(first.uns['interaction_changed_feats']['cell_types'],
                                      second.uns['interaction_changed_feats']['cell_types'])

    def test_missing_upstream_stage(self, tissue_adata, small_config):
        """Spatial stages need the spatial network built upstream"""
        with pytest.raises(ConfigurationError):
            run_pipeline(small_config, adata=tissue_adata, stages=['preprocessing', 'neighborhood'])

    def test_unknown_stage(self, tissue_adata, small_config):
        with pytest.raises(ConfigurationError):
            run_pipeline(small_config, adata=tissue_adata, stages=['preprocessing', 'deconvolution'])

    def test_empty_stage_list_runs_nothing(self, tissue_adata, small_config):
        adata, snapshots = run_pipeline(small_config, adata=tissue_adata, stages=[], keep_snapshots=True)
        assert adata.uns['pipeline_log']['stages'] == []
        assert snapshots == {}
        assert 'normalized' not in adata.layers
        assert 'pipeline_log' not in tissue_adata.uns

    def test_requires_input(self, small_config):
        with pytest.raises(ConfigurationError):
            run_pipeline(small_config, stages=['preprocessing'])

    def test_ingestion_from_files(self, tmp_path, small_config):
        expression, locations, _ = make_tissue(n_cols=6, n_rows=5)
        expression.to_csv(tmp_path / "expression.txt", sep='\t')
        locations.to_csv(tmp_path / "locations.txt", sep='\t', index=False)
        config = dict(small_config, data={'expression_path': str(tmp_path / "expression.txt"),
                                          'locations_path': str(tmp_path / "locations.txt")})
        adata, _ = run_pipeline(config, stages=['ingestion', 'preprocessing'])
        assert adata.n_obs == 30
        assert 'scaled' in adata.layers
        assert adata.uns['instructions']['save_dir'] == small_config['instructions']['save_dir']

    def test_config_file(self, tmp_path, tissue_adata, small_config):
        from giottoflow.config import write_config

        path = write_config(small_config, tmp_path / "config.yaml")
        adata, _ = run_pipeline(path, adata=tissue_adata, stages=['preprocessing'])
        assert adata.uns['filter_params']['feat_det_in_min_cells'] == 5
