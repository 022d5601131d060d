import numpy as np
import pandas as pd
import logging

from giottoflow.exceptions import ConfigurationError
from giottoflow.utils.checks import require_layer, require_obs_column, dense

logger = logging.getLogger('giottoflow.analysis.annotation')

def _sorted_clusters(values):
    return sorted(set(values), key=lambda c: (len(c), c))

def annotate_clusters(adata, annotation, cluster_column, name='cell_types'):
    """
    Map cluster identifiers to readable labels

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    annotation : dict or list
        Cluster to label mapping, or labels in the order of the sorted
        cluster identifiers ("1", "2", ..., "10")
    cluster_column : str
        Observation column with the cluster assignments
    name : str, optional
        Observation column receiving the labels

    Returns
    -------
    adata : AnnData
        The AnnData object with the categorical column adata.obs[name]
    """
    clusters = require_obs_column(adata, cluster_column).astype(str)
    present = _sorted_clusters(clusters.values)

    if isinstance(annotation, dict):
        mapping = {str(k): str(v) for k, v in annotation.items()}
    else:
        annotation = list(annotation)
        if len(annotation) != len(present):
            logger.error(f"{len(annotation)} labels given for {len(present)} clusters")
            raise ConfigurationError(f"{len(annotation)} labels given for {len(present)} clusters in {cluster_column}")
        mapping = dict(zip(present, [str(a) for a in annotation]))

    missing = [c for c in present if c not in mapping]
    if missing:
        logger.error(f"Clusters without a label: {missing}")
        raise ConfigurationError(f"Clusters without a label in {cluster_column}: {missing}")

    labels = clusters.map(mapping)
    categories = list(dict.fromkeys(mapping[c] for c in present))
    adata.obs[name] = pd.Categorical(labels.values, categories=categories)
    logger.info(f"Annotated {len(present)} clusters of {cluster_column} into {len(categories)} labels in adata.obs['{name}']")
    return adata

def remove_annotation(adata, name):
    """Drop an annotation column, with a warning when it does not exist"""
    if name in adata.obs:
        del adata.obs[name]
        logger.info(f"Removed annotation {name}")
    else:
        logger.warning(f"Annotation {name} not found")
    return adata

def enrichment_annotation(adata, marker_sets, expression_layer='normalized', name='PAGE', min_overlap=2):
    """
    Score every observation for sets of marker features

    Parametric analysis of gene set enrichment: features are expressed as
    fold changes against their mean over all observations, and the mean
    fold change of each marker set is turned into a z-score against the
    distribution of all features in the observation.

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    marker_sets : dict
        Set name to list of features
    expression_layer : str, optional
        Layer with log-normalized values
    name : str, optional
        Key in adata.obsm for the scores
    min_overlap : int, optional
        Sets with fewer features present are skipped

    Returns
    -------
    adata : AnnData
        The AnnData object with a DataFrame of z-scores in adata.obsm[name]
        and the best scoring set in adata.obs[f"{name}_label"]
    """
    X = dense(require_layer(adata, expression_layer))
    fold_change = X - X.mean(axis=0)
    cell_mean = fold_change.mean(axis=1)
    cell_sd = fold_change.std(axis=1, ddof=1) if adata.n_vars > 1 else np.ones(adata.n_obs)
    cell_sd[cell_sd == 0] = 1

    scores = {}
    for set_name, feats in marker_sets.items():
        idx = [adata.var_names.get_loc(f) for f in feats if f in adata.var_names]
        if len(idx) < min_overlap:
            logger.warning(f"Skipping marker set {set_name}: {len(idx)} features present")
            continue
        set_mean = fold_change[:, idx].mean(axis=1)
        scores[set_name] = (set_mean - cell_mean) * np.sqrt(len(idx)) / cell_sd

    if not scores:
        logger.error("No marker set has enough features in the data")
        raise ConfigurationError("No marker set has enough features in the data")

    table = pd.DataFrame(scores, index=adata.obs_names)
    adata.obsm[name] = table
    adata.obs[f"{name}_label"] = pd.Categorical(table.idxmax(axis=1).values, categories=list(table.columns))
    logger.info(f"Enrichment scores of {table.shape[1]} marker sets stored in adata.obsm['{name}']")
    return adata
