import yaml
import copy
import logging
import os
from pathlib import Path
import json

from giottoflow.exceptions import ConfigurationError

logger = logging.getLogger('giottoflow.config')

PIPELINE_STAGES = [
    'ingestion',
    'preprocessing',
    'dimension_reduction',
    'clustering',
    'differential_expression',
    'annotation',
    'spatial_structuring',
    'spatial_features',
    'spatial_coexpression',
    'domain_inference',
    'neighborhood',
    'cell_communication',
]

def read_config(config_path):
    """
    Read a configuration file in YAML or JSON format

    Parameters
    ----------
    config_path : str or Path
        Path to the configuration file

    Returns
    -------
    dict
        Configuration dictionary
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    suffix = config_path.suffix.lower()

    if suffix == '.yaml' or suffix == '.yml':
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
    elif suffix == '.json':
        with open(config_path, 'r') as f:
            config = json.load(f)
    else:
        raise ValueError(f"Unsupported configuration file format: {suffix}")

    return config or {}

def validate_config(config):
    """
    Validate a configuration dictionary

    Parameters
    ----------
    config : dict
        Configuration dictionary

    Returns
    -------
    bool
        True if configuration is valid

    Raises
    ------
    ConfigurationError
        If configuration is invalid
    """
    if 'data' not in config:
        raise ConfigurationError("Missing required configuration section: data")
    for param in ['expression_path', 'locations_path']:
        if not config['data'].get(param):
            raise ConfigurationError(f"Missing required parameter '{param}' in data section")

    stages = config.get('pipeline', {}).get('stages')
    if stages is not None:
        unknown = [stage for stage in stages if stage not in PIPELINE_STAGES]
        if unknown:
            raise ConfigurationError(f"Unknown pipeline stages: {unknown}. Known stages: {PIPELINE_STAGES}")

    return True

def update_config(config, overrides):
    """
    Update a configuration dictionary with override values

    Parameters
    ----------
    config : dict
        Original configuration dictionary
    overrides : dict
        Dictionary with override values

    Returns
    -------
    dict
        Updated configuration dictionary
    """
    updated_config = copy.deepcopy(config)
    def _update_dict(d, u):
        for k, v in u.items():
            if isinstance(v, dict) and k in d and isinstance(d[k], dict):
                d[k] = _update_dict(d[k], v)
            else:
                d[k] = copy.deepcopy(v)
        return d

    return _update_dict(updated_config, overrides or {})

def write_config(config, output_path):
    """
    Write a configuration dictionary to a file

    Parameters
    ----------
    config : dict
        Configuration dictionary
    output_path : str or Path
        Path to write the configuration file

    Returns
    -------
    Path
        Path to the written configuration file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    suffix = output_path.suffix.lower()

    if suffix == '.yaml' or suffix == '.yml':
        with open(output_path, 'w') as f:
            yaml.dump(config, f, default_flow_style=False, sort_keys=False)
    elif suffix == '.json':
        with open(output_path, 'w') as f:
            json.dump(config, f, indent=2)
    else:
        raise ValueError(f"Unsupported configuration file format: {suffix}")

    return output_path

def create_instructions(save_dir=None, save_plot=False, show_plot=False, return_plot=True,
                        plot_format='png', dpi=300, figsize=(8, 6)):
    """
    Create the instructions object consulted by every stage that draws

    Parameters
    ----------
    save_dir : str or Path, optional
        Directory for saved figures. Defaults to the current working directory
    save_plot : bool, optional
        Write every generated figure to `save_dir`
    show_plot : bool, optional
        Display every generated figure interactively
    return_plot : bool, optional
        Return the figure object from plotting functions
    plot_format : str, optional
        File format of saved figures
    dpi : int, optional
        Resolution of saved figures
    figsize : tuple, optional
        Default figure size in inches

    Returns
    -------
    dict
        Instructions dictionary
    """
    if save_dir is None:
        save_dir = os.getcwd()
    if plot_format not in ('png', 'pdf', 'svg', 'jpg'):
        raise ConfigurationError(f"Unsupported plot format: {plot_format}")
    return {
        'save_dir': str(save_dir),
        'save_plot': bool(save_plot),
        'show_plot': bool(show_plot),
        'return_plot': bool(return_plot),
        'plot_format': plot_format,
        'dpi': int(dpi),
        'figsize': [float(figsize[0]), float(figsize[1])],
    }

def get_instruction(source, key):
    """
    Read one instruction from an instructions dict or from adata.uns['instructions']
    """
    if hasattr(source, 'uns'):
        instructions = source.uns.get('instructions', None) or create_instructions()
    else:
        instructions = source
    if key not in instructions:
        raise ConfigurationError(f"Unknown instruction: {key}")
    return instructions[key]

def change_instructions(adata, **params):
    """
    Change one or more instructions stored on the AnnData object

    Returns
    -------
    adata : AnnData
        The AnnData object with updated instructions
    """
    current = dict(adata.uns.get('instructions', None) or create_instructions())
    unknown = [k for k in params if k not in current]
    if unknown:
        raise ConfigurationError(f"Unknown instructions: {unknown}")
    current.update(params)
    adata.uns['instructions'] = create_instructions(**current)
    return adata

def get_parameter_defaults():
    """
    Get default parameter values for all pipeline components

    The values follow the mouse brain Visium tutorial; they are example
    settings, not validated defaults for every dataset.

    Returns
    -------
    dict
        Dictionary with default parameter values
    """
    defaults = {
        'data': {
            'expression_path': '',
            'locations_path': '',
            'image_path': None,
            'sep': None,
        },
        'instructions': {
            'save_dir': 'giottoflow_results/figures',
            'save_plot': True,
            'show_plot': False,
            'return_plot': False,
        },
        'pipeline': {
            'stages': list(PIPELINE_STAGES),
            'seed': 1234,
            'n_jobs': 1,
        },
        'preprocessing': {
            'expression_threshold': 1,
            'feat_det_in_min_cells': 50,
            'min_det_feats_per_cell': 1000,
            'scalefactor': 6000,
            'log_norm': True,
            'scale_feats': True,
            'scale_cells': True,
            'covariates': ['nr_feats'],
        },
        'dimension_reduction': {
            'hvf_method': 'cov_groups',
            'zscore_threshold': 1.5,
            'n_comps': 100,
            'run_umap': True,
            'run_tsne': False,
        },
        'clustering': {
            'method': 'leiden',
            'n_neighbors': 15,
            'n_pcs': 10,
            'resolution': 0.4,
            'n_iterations': 1000,
            'cluster_key': 'leiden_clus',
        },
        'differential_expression': {
            'methods': ['gini', 'wilcoxon'],
            'top_n': 5,
        },
        'annotation': {
            'labels': {},
            'name': 'cell_types',
            'marker_sets': {},
        },
        'spatial_structuring': {
            'grid_stepsize': 400,
            'delaunay': True,
            'delaunay_max_distance': 'auto',
            'knn_k': 5,
            'knn_max_distance': 400,
        },
        'spatial_features': {
            'methods': ['binspect_kmeans', 'binspect_rank', 'silhouette_rank'],
            'network': 'Delaunay_network',
            'percentage_rank': 30,
        },
        'spatial_coexpression': {
            'method': 'network',
            'network': 'kNN_network',
            'n_feats': 500,
            'k': 8,
            'source': 'binspect_kmeans',
        },
        'domain_inference': {
            'n_feats': 100,
            'k': 9,
            'betas': [28, 30, 32],
            'network': 'Delaunay_network',
            'source': 'binspect_kmeans',
            'seed': 100,
        },
        'neighborhood': {
            'network': 'Delaunay_network',
            'n_perms': 1000,
            'icf_method': 't_test',
            'min_cells': 4,
        },
        'cell_communication': {
            'species': 'mouse',
            'lr_path': None,
            'network': 'Delaunay_network',
            'n_perms': 500,
            'min_observations': 2,
        },
        'output': {
            'output_dir': 'giottoflow_results',
            'save_adata': True,
            'save_formats': ['h5ad', 'csv'],
        },
    }

    return defaults

def get_parameter_descriptions():
    """
    Get descriptions of the main configurable parameters

    Returns
    -------
    dict
        Dictionary with parameter descriptions
    """
    descriptions = {
        'data': {
            'expression_path': 'Feature x observation expression matrix (plain text, optionally compressed)',
            'locations_path': 'Spatial coordinates, one row per observation, 2-3 numeric columns',
            'image_path': 'Optional tissue image',
            'sep': 'Column separator; inferred when null',
        },
        'instructions': {
            'save_dir': 'Directory for generated figures',
            'save_plot': 'Whether to save generated figures',
            'show_plot': 'Whether to display figures interactively',
            'return_plot': 'Whether plotting functions return the figure',
        },
        'pipeline': {
            'stages': 'Stages to run; they always run in the fixed pipeline order',
            'seed': 'Seed used by every randomised stage',
        },
        'preprocessing': {
            'expression_threshold': 'Minimum value for a feature to count as detected',
            'feat_det_in_min_cells': 'Minimum number of observations a feature must be detected in',
            'min_det_feats_per_cell': 'Minimum number of detected features per observation',
            'scalefactor': 'Library size after normalization',
            'covariates': 'Observation columns regressed out into the custom layer',
        },
        'dimension_reduction': {
            'hvf_method': 'Highly variable feature method (cov_groups, seurat, cell_ranger, seurat_v3)',
            'n_comps': 'Number of principal components',
        },
        'clustering': {
            'method': 'Clustering method (leiden, louvain, kmeans)',
            'resolution': 'Resolution parameter for community detection',
            'cluster_key': 'Observation column receiving the clusters',
        },
        'differential_expression': {
            'methods': 'Marker detection methods (gini, wilcoxon, t-test, logreg)',
            'top_n': 'Number of top markers per cluster to report',
        },
        'annotation': {
            'labels': 'Mapping of cluster identifiers to cell type names',
        },
        'spatial_structuring': {
            'grid_stepsize': 'Spatial grid bin size',
            'delaunay_max_distance': "Longest Delaunay edge kept ('auto' for the upper whisker)",
            'knn_k': 'Number of neighbours in the kNN spatial network',
        },
        'spatial_features': {
            'methods': 'Spatial feature methods (binspect_kmeans, binspect_rank, silhouette_rank, moran, geary)',
        },
        'spatial_coexpression': {
            'k': 'Number of co-expression modules',
            'source': 'Spatial feature ranking used to pick features',
        },
        'domain_inference': {
            'k': 'Number of HMRF domains',
            'betas': 'Spatial smoothness values to fit',
        },
        'neighborhood': {
            'n_perms': 'Number of label permutations for proximity enrichment',
        },
        'cell_communication': {
            'species': 'Bundled ligand/receptor table to use (human, mouse)',
            'lr_path': 'Custom ligand/receptor table overriding the bundled one',
            'n_perms': 'Number of permutations for communication scores',
        },
        'output': {
            'output_dir': 'Directory for saved results',
            'save_formats': 'Formats for saved results (h5ad, csv)',
        },
    }

    return descriptions
