import pytest
import numpy as np
import pandas as pd

from giottoflow.spatial.neighborhood import (cell_proximity_enrichment, find_interaction_changed_feats,
                                             filter_interaction_changed_feats, cell_neighbor_composition)
from giottoflow.spatial.neighbors import compute_neighbor_enrichment
from giottoflow.exceptions import ConfigurationError
from giottoflow.utils.checks import check_integrity


class TestCellProximity:
    """Cell type contact enrichment"""

    def test_homotypic_enrichment(self, processed_adata):
        table = cell_proximity_enrichment(processed_adata, 'cell_types', spatial_network_name='Delaunay_network',
                                          n_perms=100, seed=1)
        indexed = table.set_index('unified_int')
        assert len(table) == 6
        for t in ['A', 'B', 'C']:
            assert indexed.loc[f"{t}--{t}", 'enrichm'] > 0
            assert indexed.loc[f"{t}--{t}", 'p.adj_higher'] < 0.05
        # bands A and C never touch
        assert indexed.loc['A--C', 'original'] == 0
        assert indexed.loc['A--C', 'enrichm'] < 0
        assert set(table['type_int'].head(3)) == {'homo'}
        assert list(table['int_ranking']) == list(range(1, 7))

    def test_counts_cover_every_edge(self, processed_adata):
        table = cell_proximity_enrichment(processed_adata, 'cell_types', spatial_network_name='Delaunay_network',
                                          n_perms=20)
        n_edges = processed_adata.obsp['Delaunay_network_distances'].nnz // 2
        assert table['original'].sum() == n_edges
        np.testing.assert_allclose(table['simulations'].sum(), n_edges)

    def test_deterministic_across_jobs(self, processed_adata):
        """Results depend on the seed only, not on the number of threads"""
        first = cell_proximity_enrichment(processed_adata, 'cell_types', n_perms=50, seed=5, n_jobs=1)
        second = cell_proximity_enrichment(processed_adata, 'cell_types', n_perms=50, seed=5, n_jobs=3)
        pd.testing.assert_frame_equal(first, second)

    def test_stored(self, processed_adata):
        cell_proximity_enrichment(processed_adata, 'cell_types', n_perms=10)
        assert 'cell_types' in processed_adata.uns['cell_proximity']
        assert check_integrity(processed_adata)

    def test_requires_network(self, tissue_adata):
        with pytest.raises(ConfigurationError):
            cell_proximity_enrichment(tissue_adata, 'cell_types', n_perms=10)

    def test_requires_cluster_column(self, processed_adata):
        with pytest.raises(ConfigurationError):
            cell_proximity_enrichment(processed_adata, 'leiden_clus', n_perms=10)

    def test_squidpy_enrichment(self, processed_adata):
        adata = compute_neighbor_enrichment(processed_adata, 'cell_types', spatial_network_name='Delaunay_network',
                                            n_perms=20)
        zscore = adata.uns['cell_types_nhood_enrichment']['zscore']
        assert np.all(np.diag(zscore) > 0)


class TestInteractionChangedFeats:
    """Expression changes of cells touching another cell type"""

    def test_interface_marker(self, processed_adata):
        """Only cell type pairs in contact are tested"""
        table = find_interaction_changed_feats(processed_adata, 'cell_types',
                                               spatial_network_name='Delaunay_network', min_cells=4)
        assert list(table.columns) == ['feats', 'sel', 'other', 'log2fc', 'diff', 'p.value', 'p.adj', 'cell_type',
                                       'int_cell_type', 'nr_select', 'nr_other', 'unif_int']
        assert 'A--C' not in set(table['unif_int'])
        assert {'A--B', 'B--A', 'B--C', 'C--B'} <= set(table['unif_int'])
        assert table['p.adj'].between(0, 1).all()
        assert ((table['nr_select'] >= 4) & (table['nr_other'] >= 4)).all()

    @pytest.mark.parametrize("method", ["t_test", "wilcox"])
    def test_methods(self, processed_adata, method):
        table = find_interaction_changed_feats(processed_adata, 'cell_types', method=method,
                                               selected_feats=['markA1', 'noise1'])
        assert set(table['feats']) == {'markA1', 'noise1'}

    def test_no_valid_pairs(self, processed_adata):
        table = find_interaction_changed_feats(processed_adata, 'cell_types', min_cells=10000)
        assert table.empty
        assert 'unif_int' in table.columns

    def test_filter(self, processed_adata):
        table = find_interaction_changed_feats(processed_adata, 'cell_types')
        up = filter_interaction_changed_feats(table, min_fdr=1, min_spat_diff=0, min_log2_fc=0, direction='up')
        assert (up['log2fc'] > 0).all()
        strict = filter_interaction_changed_feats(table, min_fdr=0.0)
        assert len(strict) <= len(table)
        with pytest.raises(ValueError):
            filter_interaction_changed_feats(table, direction='sideways')

    def test_unknown_method(self, processed_adata):
        with pytest.raises(ValueError):
            find_interaction_changed_feats(processed_adata, 'cell_types', method='anova')


class TestNeighborComposition:
    """Neighbor type counts per observation"""

    def test_counts(self, processed_adata):
        adata = cell_neighbor_composition(processed_adata, 'cell_types', spatial_network_name='Delaunay_network')
        composition = adata.obsm['cell_types_neighbors']
        degree = np.diff(adata.obsp['Delaunay_network_distances'].indptr)
        np.testing.assert_allclose(composition.sum(axis=1).values, degree)
        in_a = (adata.obs['cell_types'] == 'A').values
        assert composition.loc[in_a, 'C'].sum() == 0
        assert check_integrity(adata)

    def test_normalized(self, processed_adata):
        adata = cell_neighbor_composition(processed_adata, 'cell_types', normalize=True, key_added='fractions')
        np.testing.assert_allclose(adata.obsm['fractions'].sum(axis=1).values, 1.0)
