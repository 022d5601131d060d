import pytest
import numpy as np
import pandas as pd

from giottoflow.core.data_loader import create_analysis_object
from giottoflow.core.preprocessing import filter_analysis_object
from giottoflow.spatial.neighbors import (create_spatial_grid, create_spatial_network, get_spatial_network,
                                         get_undirected_edges, spatial_network_stats)
from giottoflow.exceptions import ConfigurationError
from giottoflow.utils.checks import check_integrity, require_spatial_network


@pytest.fixture
def outlier_adata():
    """30 observations on a jittered grid plus one far away"""
    rng = np.random.default_rng(3)
    x, y = np.meshgrid(np.arange(6, dtype=float), np.arange(5, dtype=float))
    coords = np.column_stack([x.ravel(), y.ravel()]) + rng.uniform(-0.1, 0.1, size=(30, 2))
    coords = np.vstack([coords, [[40.0, 40.0]]])
    ids = [f"o{i}" for i in range(31)]
    expression = pd.DataFrame(rng.poisson(3, size=(4, 31)), index=['a', 'b', 'c', 'd'], columns=ids)
    locations = pd.DataFrame({'cell_ID': ids, 'sdimx': coords[:, 0], 'sdimy': coords[:, 1]})
    return create_analysis_object(expression, locations)


class TestKNNNetwork:
    """Directed k nearest neighbor networks"""

    def test_out_degree_and_tie_order(self, toy_adata):
        adata = filter_analysis_object(toy_adata, expression_threshold=1, feat_det_in_min_cells=2,
                                       min_det_feats_per_cell=2)
        adata = create_spatial_network(adata, method='knn', k=2)
        name, entry = require_spatial_network(adata)
        assert name == 'kNN_network'
        assert entry['directed'] is True

        dist = adata.obsp['kNN_network_distances']
        assert (np.diff(dist.indptr) == 2).all()

        # c6 sits at (1, 1) with four neighbors at distance 1; the lowest
        # observation indices win the tie
        table = get_spatial_network(adata, 'kNN_network')
        assert sorted(table.loc[table['from'] == 'c6', 'to']) == ['c1', 'c5']
        assert len(table) == 2 * adata.n_obs

    def test_weights(self, processed_adata):
        conn, dist = get_spatial_network(processed_adata, 'kNN_network', output='matrix')
        np.testing.assert_allclose(conn.data, 1 / (1 + dist.data))

    def test_maximum_distance(self, processed_adata):
        adata = create_spatial_network(processed_adata, method='knn', k=8, maximum_distance=1.2, name='short')
        assert adata.obsp['short_distances'].data.max() <= 1.2
        assert adata.uns['spatial_networks']['short']['params']['maximum_distance'] == 1.2

    def test_invalid_k(self, processed_adata):
        with pytest.raises(ConfigurationError):
            create_spatial_network(processed_adata, method='knn', k=0)


class TestDelaunayNetwork:
    """Undirected Delaunay networks"""

    def test_symmetric(self, processed_adata):
        dist = processed_adata.obsp['Delaunay_network_distances']
        assert (abs(dist - dist.T) > 1e-12).nnz == 0
        assert processed_adata.uns['spatial_networks']['Delaunay_network']['directed'] is False

    def test_pruned(self, outlier_adata):
        full = create_spatial_network(outlier_adata.copy(), method='delaunay', delaunay_max_distance=None)
        pruned = create_spatial_network(outlier_adata.copy(), method='delaunay', delaunay_max_distance='auto')
        cutoff = pruned.uns['spatial_networks']['Delaunay_network']['params']['maximum_distance']

        full_dist = full.obsp['Delaunay_network_distances']
        pruned_dist = pruned.obsp['Delaunay_network_distances']
        assert full_dist[30].nnz > 0
        assert pruned_dist[30].nnz == 0
        assert pruned_dist.data.max() <= cutoff
        assert pruned_dist.nnz < full_dist.nnz
        assert (abs(pruned_dist - pruned_dist.T) > 1e-12).nnz == 0

    def test_minimum_k(self, outlier_adata):
        adata = create_spatial_network(outlier_adata, method='delaunay', delaunay_max_distance='auto', minimum_k=1)
        dist = adata.obsp['Delaunay_network_distances']
        assert dist[30].nnz >= 1
        assert (abs(dist - dist.T) > 1e-12).nnz == 0

    def test_undirected_edges(self, processed_adata):
        src, dst = get_undirected_edges(processed_adata, 'Delaunay_network')
        assert (src < dst).all()
        assert len(src) == processed_adata.obsp['Delaunay_network_distances'].nnz // 2

    def test_stats(self, processed_adata):
        stats = spatial_network_stats(processed_adata, 'Delaunay_network').set_index('statistic')
        assert stats.loc['isolated_nodes', 'value'] == 0
        assert stats.loc['mean_degree', 'value'] > 3


class TestNetworkRegistry:
    """Lookup of registered networks"""

    def test_missing_network(self, toy_adata):
        with pytest.raises(ConfigurationError):
            require_spatial_network(toy_adata)

    def test_unknown_name(self, processed_adata):
        with pytest.raises(ConfigurationError):
            get_spatial_network(processed_adata, 'Voronoi_network')

    def test_most_recent_is_default(self, processed_adata):
        name, _ = require_spatial_network(processed_adata)
        assert name == 'Delaunay_network'

    @pytest.mark.parametrize("method", ["knn", "delaunay"])
    def test_rebuild_gives_same_edges(self, processed_adata, method):
        """Building a network twice from the same coordinates gives the same edge set"""
        first = create_spatial_network(processed_adata.copy(), method=method, name='rebuilt', k=4)
        second = create_spatial_network(processed_adata.copy(), method=method, name='rebuilt', k=4)
        first_edges = get_spatial_network(first, 'rebuilt')
        second_edges = get_spatial_network(second, 'rebuilt')
        assert len(first_edges) > 0
        pd.testing.assert_frame_equal(first_edges, second_edges)
        assert (first.obsp['rebuilt_distances'] != second.obsp['rebuilt_distances']).nnz == 0


class TestSpatialGrid:
    """Regular spatial grids"""

    def test_grid(self, processed_adata):
        adata = create_spatial_grid(processed_adata, sdimx_stepsize=5, sdimy_stepsize=5)
        grid = adata.uns['spatial_grids']['spatial_grid']
        assert len(grid) == 9
        assert set(adata.obs['spatial_grid_bin'].astype(str)) <= set(grid['gr_name'])
        assert check_integrity(adata)

    def test_invalid_step(self, processed_adata):
        with pytest.raises(ConfigurationError):
            create_spatial_grid(processed_adata, sdimx_stepsize=0)
