import logging
import numpy as np
import pandas as pd

from giottoflow.exceptions import ConfigurationError, IntegrityError

logger = logging.getLogger('giottoflow.utils.checks')

# result tables under adata.uns[<key>][<name>] that carry identifier columns
RESULT_TABLE_KEYS = ['markers', 'spatial_genes', 'cell_proximity', 'interaction_changed_feats', 'cellcom']


def require_layer(adata, layer):
    """
    Return the matrix stored under `layer`, or adata.X for layer=None / 'X'

    Raises
    ------
    ConfigurationError
        If the layer has not been computed yet
    """
    if layer is None or layer == 'X':
        return adata.X
    if layer not in adata.layers:
        logger.error(f"Expression layer '{layer}' not found. Available: {list(adata.layers.keys())}")
        raise ConfigurationError(
            f"Expression layer '{layer}' not found. Run the stage that creates it first."
        )
    return adata.layers[layer]


def require_obs_column(adata, column):
    if column not in adata.obs:
        logger.error(f"Column {column} not found in adata.obs")
        raise ConfigurationError(f"Column {column} not found in adata.obs. Run clustering or annotation first.")
    return adata.obs[column]


def require_obsm(adata, key):
    if key not in adata.obsm:
        logger.error(f"Representation {key} not found in adata.obsm")
        raise ConfigurationError(f"Representation {key} not found in adata.obsm")
    return adata.obsm[key]


def require_spatial_network(adata, name=None):
    """
    Resolve a registered spatial network

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    name : str, optional
        Name of the network. If None, the most recently created network is used

    Returns
    -------
    tuple
        (name, registry entry)

    Raises
    ------
    ConfigurationError
        If no spatial network (or not the requested one) has been created
    """
    networks = adata.uns.get('spatial_networks', {})
    if len(networks) == 0:
        logger.error("No spatial network found. Run create_spatial_network first.")
        raise ConfigurationError("No spatial network found. Run create_spatial_network first.")
    if name is None:
        name = list(networks.keys())[-1]
        logger.info(f"Using spatial network {name}")
    if name not in networks:
        logger.error(f"Spatial network {name} not found. Available: {list(networks.keys())}")
        raise ConfigurationError(f"Spatial network {name} not found. Run create_spatial_network first.")
    entry = networks[name]
    if entry['connectivities_key'] not in adata.obsp or entry['distances_key'] not in adata.obsp:
        raise ConfigurationError(f"Spatial network {name} is registered but its matrices are missing")
    return name, entry


def dense(X):
    """Dense float ndarray view of a (possibly sparse) matrix"""
    if hasattr(X, 'toarray'):
        X = X.toarray()
    return np.asarray(X, dtype=float)


def _iter_result_tables(adata):
    for key in RESULT_TABLE_KEYS:
        tables = adata.uns.get(key, {})
        if not isinstance(tables, dict):
            continue
        for name, table in tables.items():
            if isinstance(table, pd.DataFrame):
                yield f"{key}/{name}", table


def check_integrity(adata):
    """
    Check that every metadata column, embedding, graph and result table
    references only identifiers present in the expression layers

    Parameters
    ----------
    adata : AnnData
        The AnnData object

    Returns
    -------
    bool
        True if the object is consistent

    Raises
    ------
    IntegrityError
        On the first violation found
    """
    if not adata.obs_names.is_unique:
        raise IntegrityError("Observation identifiers are not unique")
    if not adata.var_names.is_unique:
        raise IntegrityError("Feature identifiers are not unique")

    for key, value in adata.obsm.items():
        if value.shape[0] != adata.n_obs:
            raise IntegrityError(f"obsm['{key}'] has {value.shape[0]} rows for {adata.n_obs} observations")
        if isinstance(value, pd.DataFrame) and not value.index.equals(adata.obs_names):
            raise IntegrityError(f"obsm['{key}'] is not indexed by the current observations")

    for key, value in adata.obsp.items():
        if value.shape != (adata.n_obs, adata.n_obs):
            raise IntegrityError(f"obsp['{key}'] has shape {value.shape} for {adata.n_obs} observations")

    for name, entry in adata.uns.get('spatial_networks', {}).items():
        for mkey in (entry['connectivities_key'], entry['distances_key']):
            if mkey not in adata.obsp:
                raise IntegrityError(f"Spatial network {name} lost its matrix {mkey}")

    for name, grid in adata.uns.get('spatial_grids', {}).items():
        column = f"{name}_bin"
        if column in adata.obs:
            unknown = set(adata.obs[column].astype(str)) - set(grid['gr_name'].astype(str))
            if unknown:
                raise IntegrityError(f"Observations assigned to unknown grid bins of {name}: {sorted(unknown)[:5]}")

    obs_ids = set(adata.obs_names)
    var_ids = set(adata.var_names)
    for label, table in _iter_result_tables(adata):
        if 'cell_ID' in table.columns:
            missing = set(table['cell_ID'].astype(str)) - obs_ids
            if missing:
                raise IntegrityError(f"Table {label} references unknown observations: {sorted(missing)[:5]}")
        if 'feats' in table.columns:
            missing = set(table['feats'].astype(str)) - var_ids
            if missing:
                raise IntegrityError(f"Table {label} references unknown features: {sorted(missing)[:5]}")

    return True
