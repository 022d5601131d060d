import pytest
import json
import numpy as np
import pandas as pd
import matplotlib

matplotlib.use('Agg')

from giottoflow.utils.io import save_results, read_results, export_tables
from giottoflow.utils.checks import check_integrity, dense
from giottoflow.exceptions import IntegrityError
from giottoflow.spatial.neighborhood import cell_proximity_enrichment
from giottoflow.spatial.statistics import detect_spatial_genes
from giottoflow.visualization.static import spat_plot, plot_spatial_network, generate_static_figures
from giottoflow.config import create_instructions


@pytest.fixture
def analysed_adata(processed_adata):
    detect_spatial_genes(processed_adata, method='binspect_rank', spatial_network_name='Delaunay_network')
    cell_proximity_enrichment(processed_adata, 'cell_types', n_perms=10)
    return processed_adata


class TestIntegrity:
    """Referential integrity checks"""

    def test_consistent_object(self, analysed_adata):
        assert check_integrity(analysed_adata)

    def test_unknown_feature_in_table(self, analysed_adata):
        table = analysed_adata.uns['spatial_genes']['binspect_rank']
        analysed_adata.uns['spatial_genes']['binspect_rank'] = pd.concat(
            [table, pd.DataFrame({'feats': ['ghost']})], ignore_index=True)
        with pytest.raises(IntegrityError):
            check_integrity(analysed_adata)

    def test_lost_network_matrix(self, analysed_adata):
        del analysed_adata.obsp['kNN_network_distances']
        with pytest.raises(IntegrityError):
            check_integrity(analysed_adata)

    def test_misaligned_obsm_table(self, analysed_adata):
        analysed_adata.obsm['scores'] = pd.DataFrame(
            {'s': np.zeros(analysed_adata.n_obs)}, index=analysed_adata.obs_names)
        assert check_integrity(analysed_adata)
        subset = analysed_adata[:10].copy()
        assert check_integrity(subset)


class TestSaveResults:
    """h5ad and CSV output"""

    def test_h5ad_round_trip(self, tmp_path, analysed_adata):
        paths = save_results(analysed_adata, tmp_path, save_formats=['h5ad'])
        restored = read_results(paths['h5ad'])
        assert restored.shape == analysed_adata.shape
        assert set(restored.uns['spatial_networks']) == set(analysed_adata.uns['spatial_networks'])
        restored_table = restored.uns['cell_proximity']['cell_types']
        table = analysed_adata.uns['cell_proximity']['cell_types']
        assert list(restored_table['unified_int']) == list(table['unified_int'])
        np.testing.assert_allclose(restored_table['PI_value'].values, table['PI_value'].values)

    def test_csv_layout(self, tmp_path, analysed_adata):
        paths = save_results(analysed_adata, tmp_path, save_formats=['csv', 'loom'])
        csv_dir = paths['csv']
        for name in ['expression_matrix.csv', 'observation_metadata.csv', 'variable_metadata.csv',
                     'spatial_coordinates.csv', 'README.txt']:
            assert (csv_dir / name).exists()
        assert (csv_dir / "tables" / "spatial_genes__binspect_rank.csv").exists()
        assert (csv_dir / "tables" / "spatial_network__Delaunay_network.csv").exists()

        manifest = json.loads(paths['manifest'].read_text())
        assert manifest['dataset_shape'] == list(analysed_adata.shape)
        assert 'loom' not in manifest['formats']

        restored = read_results(csv_dir)
        np.testing.assert_allclose(dense(restored.layers['raw']), dense(analysed_adata.layers['raw']), rtol=1e-5)
        np.testing.assert_allclose(restored.obsm['spatial'], analysed_adata.obsm['spatial'])

    def test_export_tables(self, tmp_path, analysed_adata):
        paths = export_tables(analysed_adata, tmp_path)
        table = pd.read_csv(paths['cell_proximity__cell_types'])
        assert len(table) == 6

    def test_read_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_results(tmp_path / "missing.h5ad")


class TestStaticFigures:
    """Figures driven by the instructions"""

    def test_saved_when_requested(self, tmp_path, analysed_adata):
        instructions = create_instructions(save_dir=tmp_path, save_plot=True, return_plot=True)
        fig = spat_plot(analysed_adata, 'cell_types', instructions=instructions, save_name='types')
        assert fig is not None
        assert (tmp_path / "types.png").exists()

    def test_nothing_returned(self, tmp_path, analysed_adata):
        instructions = create_instructions(save_dir=tmp_path, save_plot=False, return_plot=False)
        assert plot_spatial_network(analysed_adata, 'Delaunay_network', instructions=instructions) is None
        assert not list(tmp_path.iterdir())

    def test_generate_static_figures(self, tmp_path, analysed_adata):
        paths = generate_static_figures(analysed_adata, output_dir=tmp_path, annotation_column='cell_types')
        assert 'spat_plot' in paths
        assert 'cell_proximity_cell_types' in paths
        assert 'spatial_network_Delaunay_network' in paths
        for path in paths.values():
            assert path.exists()


class TestCommandLine:
    """Command line entry points"""

    def test_init_config(self, tmp_path):
        from click.testing import CliRunner
        from giottoflow.cli import cli
        from giottoflow.config import read_config, get_parameter_defaults

        path = tmp_path / "config.yaml"
        result = CliRunner().invoke(cli, ['init-config', str(path)])
        assert result.exit_code == 0
        config = read_config(path)
        assert set(config) == set(get_parameter_defaults())
        assert config['clustering']['cluster_key'] == 'leiden_clus'

    def test_run_help_lists_stages(self):
        from click.testing import CliRunner
        from giottoflow.cli import cli

        result = CliRunner().invoke(cli, ['run', '--help'])
        assert result.exit_code == 0
        assert 'spatial_structuring' in result.output
