"""
Basic Spatial Transcriptomics Analysis Workflow

Step by step analysis of a Visium mouse brain section with the giottoflow
package. The expression matrix and spot locations are the plain text files
of the Giotto Visium brain tutorial.
"""

from pathlib import Path

from giottoflow.utils.logging import setup_logging
from giottoflow.config import create_instructions
from giottoflow.core.data_loader import create_analysis_object
from giottoflow.core.preprocessing import (filter_analysis_object, normalize_analysis_object, add_statistics,
                                           adjust_analysis_object)
from giottoflow.core.feature_selection import calculate_hvf, run_pca, run_umap
from giottoflow.spatial.clustering import create_nearest_network, run_clustering
from giottoflow.analysis.markers import find_markers_one_vs_all, get_top_markers
from giottoflow.analysis.annotation import annotate_clusters
from giottoflow.spatial.neighbors import create_spatial_grid, create_spatial_network
from giottoflow.spatial.statistics import detect_spatial_genes, get_spatial_genes
from giottoflow.analysis.coexpression import (detect_spatial_cor_feats, cluster_spatial_cor_feats,
                                              create_metafeats)
from giottoflow.spatial.domains import do_hmrf
from giottoflow.spatial.neighborhood import cell_proximity_enrichment, find_interaction_changed_feats
from giottoflow.analysis.ligrec import (load_lr_pairs, filter_lr_pairs, expr_cell_cellcom, spat_cell_cellcom,
                                        comb_cc_com)
from giottoflow.visualization.static import generate_static_figures
from giottoflow.utils.io import save_results

DATA_DIR = Path("data/visium_brain")

def main():
    # Set up logging
    logger = setup_logging(level="INFO", log_file="giottoflow_basic_workflow.log")
    logger.info("Starting basic spatial transcriptomics analysis workflow")

    output_dir = Path("giottoflow_output")
    figures_dir = output_dir / "figures"
    data_dir = output_dir / "data"
    instructions = create_instructions(save_dir=figures_dir, save_plot=True, return_plot=False)

    # Step 1: Load data
    logger.info("Step 1: Loading data")
    adata = create_analysis_object(DATA_DIR / "expression_matrix.txt.gz", DATA_DIR / "spatial_locs.txt",
                                   instructions=instructions)
    logger.info(f"Loaded dataset with {adata.n_obs} spots and {adata.n_vars} genes")

    # Step 2: Preprocessing
    logger.info("Step 2: Preprocessing")
    adata = filter_analysis_object(adata, expression_threshold=1, feat_det_in_min_cells=50,
                                   min_det_feats_per_cell=1000)
    adata = normalize_analysis_object(adata, scalefactor=6000)
    adata = add_statistics(adata)
    adata = adjust_analysis_object(adata, ['nr_feats'])

    # Step 3: Dimension reduction
    logger.info("Step 3: Dimension reduction")
    adata = calculate_hvf(adata, method='cov_groups')
    adata = run_pca(adata, n_comps=100)
    adata = create_nearest_network(adata, n_neighbors=15, n_pcs=10)
    adata = run_umap(adata)

    # Step 4: Clustering
    logger.info("Step 4: Clustering")
    adata = run_clustering(adata, method='leiden', resolution=0.4, n_iterations=1000)

    # Step 5: Markers and annotation
    logger.info("Step 5: Marker detection")
    markers = find_markers_one_vs_all(adata, 'leiden_clus', method='gini')
    for cluster, feats in get_top_markers(markers, n=5).items():
        logger.info(f"Cluster {cluster}: {', '.join(feats)}")

    # labels of the tutorial clustering; replace them after inspecting the markers
    labels = ['dentate gyrus', 'striatum', 'cortex layer 6', 'hypothalamus', 'cortex layer 2/3',
              'olfactory', 'thalamus', 'choroid plexus', 'hippocampus', 'white matter']
    n_clusters = adata.obs['leiden_clus'].nunique()
    if n_clusters == len(labels):
        adata = annotate_clusters(adata, labels, 'leiden_clus', name='cell_types')
    else:
        logger.warning(f"Found {n_clusters} clusters for {len(labels)} labels. Using the cluster identifiers.")
        adata = annotate_clusters(adata, {c: c for c in adata.obs['leiden_clus'].cat.categories},
                                  'leiden_clus', name='cell_types')

    # Step 6: Spatial networks
    logger.info("Step 6: Spatial grid and networks")
    adata = create_spatial_grid(adata, sdimx_stepsize=400, sdimy_stepsize=400)
    adata = create_spatial_network(adata, method='delaunay', minimum_k=0)
    adata = create_spatial_network(adata, method='knn', k=5, maximum_distance=400)

    # Step 7: Spatial genes
    logger.info("Step 7: Spatial genes")
    adata = detect_spatial_genes(adata, method='binspect_kmeans', spatial_network_name='Delaunay_network')
    adata = detect_spatial_genes(adata, method='silhouette_rank')
    spatial_genes = get_spatial_genes(adata, 'binspect_kmeans', n=500)

    # Step 8: Spatial co-expression modules
    logger.info("Step 8: Spatial co-expression")
    adata = detect_spatial_cor_feats(adata, method='network', spatial_network_name='kNN_network',
                                     subset_feats=spatial_genes)
    adata = cluster_spatial_cor_feats(adata, k=8)
    adata = create_metafeats(adata)

    # Step 9: Spatial domains
    logger.info("Step 9: HMRF domains")
    adata = do_hmrf(adata, spatial_genes[:100], spatial_network_name='Delaunay_network', k=9,
                    betas=(28, 30, 32), seed=100)

    # Step 10: Cell neighborhood
    logger.info("Step 10: Cell proximity and interaction changed genes")
    cell_proximity_enrichment(adata, 'cell_types', spatial_network_name='Delaunay_network', n_perms=1000)
    find_interaction_changed_feats(adata, 'cell_types', spatial_network_name='Delaunay_network')

    # Step 11: Ligand-receptor signaling
    logger.info("Step 11: Cell-cell communication")
    pairs = load_lr_pairs(species='mouse')
    ligands, receptors = filter_lr_pairs(adata, pairs['ligand'], pairs['receptor'])
    expr_table = expr_cell_cellcom(adata, 'cell_types', ligands, receptors, n_perms=500)
    spat_table = spat_cell_cellcom(adata, 'cell_types', ligands, receptors,
                                   spatial_network_name='Delaunay_network', n_perms=500)
    adata.uns['cellcom']['combined'] = comb_cc_com(spat_table, expr_table)

    # Step 12: Figures and results
    logger.info("Step 12: Figures and results")
    generate_static_figures(adata, output_dir=figures_dir, cluster_column='leiden_clus',
                            annotation_column='cell_types')
    save_results(adata, output_dir=data_dir, save_formats=['h5ad', 'csv'], compress=True)

    logger.info(f"Analysis completed successfully. Results saved to {output_dir}")

if __name__ == "__main__":
    main()
