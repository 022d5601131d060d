import logging
from pathlib import Path

from giottoflow.config import (PIPELINE_STAGES, read_config, validate_config, update_config,
                               get_parameter_defaults, create_instructions)
from giottoflow.exceptions import ConfigurationError
from giottoflow.utils.checks import check_integrity
from giottoflow.utils.logging import log_execution_time

logger = logging.getLogger('giottoflow.pipeline')

def _seed(config, section=None):
    if section is not None and config[section].get('seed') is not None:
        return config[section]['seed']
    return config['pipeline']['seed']

def _cell_type_column(adata, config):
    name = config['annotation']['name']
    return name if name in adata.obs else config['clustering']['cluster_key']

def run_ingestion(adata, config):
    from giottoflow.core.data_loader import create_analysis_object, add_image_data

    if adata is not None:
        logger.info("Using the AnnData object passed to the pipeline")
        if adata.uns.get('instructions', None) is None:
            adata.uns['instructions'] = create_instructions(**config['instructions'])
        return adata

    data = config['data']
    adata = create_analysis_object(data['expression_path'], data['locations_path'],
                                   instructions=create_instructions(**config['instructions']),
                                   sep=data.get('sep'))
    if data.get('image_path'):
        adata = add_image_data(adata, data['image_path'])
    return adata

def run_preprocessing(adata, config):
    from giottoflow.core.preprocessing import (filter_analysis_object, normalize_analysis_object,
                                               add_statistics, adjust_analysis_object)

    params = config['preprocessing']
    adata = filter_analysis_object(adata, expression_threshold=params['expression_threshold'],
                                   feat_det_in_min_cells=params['feat_det_in_min_cells'],
                                   min_det_feats_per_cell=params['min_det_feats_per_cell'])
    adata = normalize_analysis_object(adata, scalefactor=params['scalefactor'], log_norm=params['log_norm'],
                                      scale_feats=params['scale_feats'], scale_cells=params['scale_cells'])
    adata = add_statistics(adata)
    if params.get('covariates'):
        adata = adjust_analysis_object(adata, params['covariates'])
    return adata

def run_dimension_reduction(adata, config):
    from giottoflow.core.feature_selection import calculate_hvf, run_pca, run_umap, run_tsne
    from giottoflow.spatial.clustering import create_nearest_network

    params = config['dimension_reduction']
    seed = _seed(config)
    adata = calculate_hvf(adata, method=params['hvf_method'], zscore_threshold=params['zscore_threshold'])
    adata = run_pca(adata, n_comps=params['n_comps'], seed=seed)
    if params.get('run_umap'):
        adata = create_nearest_network(adata, n_neighbors=config['clustering']['n_neighbors'],
                                       n_pcs=config['clustering']['n_pcs'], seed=seed)
        adata = run_umap(adata, seed=seed)
    if params.get('run_tsne'):
        adata = run_tsne(adata, n_pcs=config['clustering']['n_pcs'], seed=seed)
    return adata

def run_clustering_stage(adata, config):
    from giottoflow.spatial.clustering import create_nearest_network, run_clustering

    params = config['clustering']
    seed = _seed(config)
    adata = create_nearest_network(adata, n_neighbors=params['n_neighbors'], n_pcs=params['n_pcs'], seed=seed)
    kwargs = {'seed': seed}
    if params['method'] == 'leiden':
        kwargs['n_iterations'] = params['n_iterations']
    elif params['method'] == 'kmeans':
        kwargs['n_clusters'] = params.get('n_clusters')
    return run_clustering(adata, method=params['method'], resolution=params['resolution'],
                          cluster_key=params['cluster_key'], **kwargs)

def run_differential_expression(adata, config):
    from giottoflow.analysis.markers import find_markers_one_vs_all, get_top_markers

    params = config['differential_expression']
    cluster_key = config['clustering']['cluster_key']
    for method in params['methods']:
        table = find_markers_one_vs_all(adata, cluster_key, method=method)
        for cluster, feats in get_top_markers(table, n=params['top_n']).items():
            logger.info(f"{method} markers of cluster {cluster}: {', '.join(feats)}")
    return adata

def run_annotation(adata, config):
    from giottoflow.analysis.annotation import annotate_clusters, enrichment_annotation
    from giottoflow.utils.checks import require_obs_column

    params = config['annotation']
    cluster_key = config['clustering']['cluster_key']
    labels = params.get('labels') or {}
    if not labels:
        logger.warning("No cluster labels configured; cluster identifiers are used as cell types")
        labels = {c: c for c in require_obs_column(adata, cluster_key).astype(str).unique()}
    adata = annotate_clusters(adata, labels, cluster_key, name=params['name'])
    if params.get('marker_sets'):
        adata = enrichment_annotation(adata, params['marker_sets'])
    return adata

def run_spatial_structuring(adata, config):
    from giottoflow.spatial.neighbors import create_spatial_grid, create_spatial_network

    params = config['spatial_structuring']
    adata = create_spatial_grid(adata, sdimx_stepsize=params['grid_stepsize'],
                                sdimy_stepsize=params['grid_stepsize'])
    if params.get('delaunay', True):
        adata = create_spatial_network(adata, method='delaunay',
                                       delaunay_max_distance=params['delaunay_max_distance'],
                                       minimum_k=params.get('minimum_k', 0))
    if params.get('knn_k'):
        adata = create_spatial_network(adata, method='knn', k=params['knn_k'],
                                       maximum_distance=params.get('knn_max_distance'))
    return adata

def run_spatial_features(adata, config):
    from giottoflow.spatial.statistics import detect_spatial_genes

    params = config['spatial_features']
    network = params.get('network')
    for method in params['methods']:
        if method.startswith('binspect'):
            kwargs = {'spatial_network_name': network}
            if method == 'binspect_rank':
                kwargs['percentage_rank'] = params['percentage_rank']
        elif method == 'silhouette_rank':
            kwargs = {}
            if 'hvf' in adata.var and adata.var['hvf'].sum() > 0:
                kwargs['subset_feats'] = adata.var_names[adata.var['hvf'].values].tolist()
        else:
            kwargs = {'spatial_network_name': network, 'seed': _seed(config)}
        adata = detect_spatial_genes(adata, method=method, **kwargs)
    return adata

def run_spatial_coexpression(adata, config):
    from giottoflow.spatial.statistics import get_spatial_genes
    from giottoflow.analysis.coexpression import (detect_spatial_cor_feats, cluster_spatial_cor_feats,
                                                  rank_spatial_cor_groups, create_metafeats)

    params = config['spatial_coexpression']
    feats = get_spatial_genes(adata, key=params['source'], n=params['n_feats'])
    adata = detect_spatial_cor_feats(adata, method=params['method'], spatial_network_name=params.get('network'),
                                     subset_feats=feats)
    n_feats = adata.uns['spatial_cor']['spat_cor'].shape[0]
    adata = cluster_spatial_cor_feats(adata, k=min(params['k'], n_feats))
    ranking = rank_spatial_cor_groups(adata)
    logger.info(f"Best co-expression module: {ranking['clusters'].iloc[0]} ({ranking['nr_feats'].iloc[0]} features)")
    return create_metafeats(adata)

def run_domain_inference(adata, config):
    from giottoflow.spatial.statistics import get_spatial_genes
    from giottoflow.spatial.domains import do_hmrf

    params = config['domain_inference']
    feats = get_spatial_genes(adata, key=params.get('source', 'binspect_kmeans'), n=params['n_feats'])
    return do_hmrf(adata, feats, spatial_network_name=params.get('network'), k=params['k'],
                   betas=params['betas'], seed=_seed(config, 'domain_inference'))

def run_neighborhood(adata, config):
    from giottoflow.spatial.neighborhood import (cell_proximity_enrichment, find_interaction_changed_feats,
                                                 cell_neighbor_composition)

    params = config['neighborhood']
    cell_types = _cell_type_column(adata, config)
    cell_proximity_enrichment(adata, cell_types, spatial_network_name=params.get('network'),
                              n_perms=params['n_perms'], seed=_seed(config),
                              n_jobs=config['pipeline'].get('n_jobs', 1))
    find_interaction_changed_feats(adata, cell_types, spatial_network_name=params.get('network'),
                                   method=params['icf_method'], min_cells=params['min_cells'])
    return cell_neighbor_composition(adata, cell_types, spatial_network_name=params.get('network'))

def run_cell_communication(adata, config):
    from giottoflow.analysis.ligrec import (load_lr_pairs, filter_lr_pairs, expr_cell_cellcom,
                                            spat_cell_cellcom, comb_cc_com)

    params = config['cell_communication']
    cell_types = _cell_type_column(adata, config)
    n_jobs = config['pipeline'].get('n_jobs', 1)
    pairs = load_lr_pairs(params.get('lr_path'), species=params['species'])
    ligands, receptors = filter_lr_pairs(adata, pairs['ligand'], pairs['receptor'])

    expr_table = expr_cell_cellcom(adata, cell_types, ligands, receptors, n_perms=params['n_perms'],
                                   seed=_seed(config), n_jobs=n_jobs)
    spat_table = spat_cell_cellcom(adata, cell_types, ligands, receptors,
                                   spatial_network_name=params.get('network'), n_perms=params['n_perms'],
                                   min_observations=params['min_observations'], seed=_seed(config), n_jobs=n_jobs)
    adata.uns['cellcom']['combined'] = comb_cc_com(spat_table, expr_table)
    return adata

STAGES = [
    ('ingestion', run_ingestion),
    ('preprocessing', run_preprocessing),
    ('dimension_reduction', run_dimension_reduction),
    ('clustering', run_clustering_stage),
    ('differential_expression', run_differential_expression),
    ('annotation', run_annotation),
    ('spatial_structuring', run_spatial_structuring),
    ('spatial_features', run_spatial_features),
    ('spatial_coexpression', run_spatial_coexpression),
    ('domain_inference', run_domain_inference),
    ('neighborhood', run_neighborhood),
    ('cell_communication', run_cell_communication),
]

def run_pipeline(config, adata=None, stages=None, keep_snapshots=False, figures=False):
    """
    Run the analysis stages in their fixed order

    Every stage works on a copy of the object produced by the previous
    stage and the result is checked for referential integrity before the
    next stage starts. A failing stage is logged and its exception
    re-raised; nothing is retried.

    Parameters
    ----------
    config : dict, str or Path
        Configuration dictionary or file, merged over the defaults
    adata : AnnData, optional
        Object to start from. Required when ingestion is not selected
    stages : list, optional
        Stages to run. Defaults to config['pipeline']['stages']; an empty
        list runs nothing
    keep_snapshots : bool, optional
        Keep the object produced by every stage
    figures : bool, optional
        Draw the standard figures after the last stage

    Returns
    -------
    tuple
        (adata, snapshots) where snapshots maps stage name to the object
        after that stage (empty unless keep_snapshots)
    """
    if isinstance(config, (str, Path)):
        config = read_config(config)
    config = update_config(get_parameter_defaults(), config)
    stages = list(config['pipeline']['stages'] if stages is None else stages)
    unknown = [stage for stage in stages if stage not in PIPELINE_STAGES]
    if unknown:
        raise ConfigurationError(f"Unknown pipeline stages: {unknown}. Known stages: {PIPELINE_STAGES}")
    if adata is None:
        if 'ingestion' not in stages:
            raise ConfigurationError("No AnnData object given and the ingestion stage is not selected")
        validate_config(config)
    if not stages:
        logger.warning("No pipeline stages selected")
        adata = adata.copy()

    logger.info(f"Running pipeline stages: {[name for name, _ in STAGES if name in stages]}")
    pipeline_end = log_execution_time(logger)
    snapshots, timings = {}, {}
    for name, stage in STAGES:
        if name not in stages:
            continue
        logger.info(f"Stage {name} started")
        stage_end = log_execution_time(logger)
        working = adata.copy() if adata is not None else None
        try:
            working = stage(working, config)
            check_integrity(working)
        except Exception as e:
            logger.error(f"Stage {name} failed: {str(e)}", exc_info=True)
            raise
        timings[name] = stage_end(f"Stage {name} completed")
        adata = working
        if keep_snapshots:
            snapshots[name] = adata

    adata.uns['pipeline_log'] = {'stages': list(timings.keys()), 'timings': timings}
    pipeline_end("Pipeline completed")

    if figures:
        from giottoflow.visualization.static import generate_static_figures

        cluster_key = config['clustering']['cluster_key']
        generate_static_figures(adata, cluster_column=cluster_key if cluster_key in adata.obs else None,
                                annotation_column=config['annotation']['name']
                                if config['annotation']['name'] in adata.obs else None)
    return adata, snapshots
