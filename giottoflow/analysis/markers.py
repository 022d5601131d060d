import scanpy as sc
import numpy as np
import pandas as pd
import logging

from giottoflow.exceptions import ConfigurationError
from giottoflow.utils.checks import require_layer, require_obs_column, dense

logger = logging.getLogger('giottoflow.analysis.markers')

MARKER_METHODS = ['gini', 'wilcoxon', 't-test', 'logreg']
MARKER_COLUMNS = ['cluster', 'feats', 'score', 'logfc', 'pval', 'pval_adj', 'ranking']

def gini_coefficient(values):
    """
    Gini coefficient of every row of a non-negative matrix

    Rows summing to zero get 0.
    """
    values = np.sort(np.clip(np.asarray(values, dtype=float), 0, None), axis=1)
    n = values.shape[1]
    weights = 2 * np.arange(1, n + 1) - n - 1
    totals = values.sum(axis=1)
    with np.errstate(invalid='ignore', divide='ignore'):
        gini = (values * weights).sum(axis=1) / (n * totals)
    return np.where(totals > 0, gini, 0.0)

def _gini_markers(X, labels, clusters, feats, detection_threshold, min_expr_gini_score,
                  min_det_gini_score, min_feats):
    means = np.vstack([X[labels == c].mean(axis=0) for c in clusters])
    detection = np.vstack([(X[labels == c] > detection_threshold).mean(axis=0) for c in clusters])
    expr_gini = gini_coefficient(means.T)
    det_gini = gini_coefficient(detection.T)

    # cluster rank of every feature scaled so the highest cluster gets 1
    n_clusters = len(clusters)
    expr_rank = pd.DataFrame(means).rank(axis=0, method='max').values / n_clusters
    det_rank = pd.DataFrame(detection).rank(axis=0, method='max').values / n_clusters

    tables = []
    for ci, cluster in enumerate(clusters):
        in_cluster = labels == cluster
        rest = X[~in_cluster].mean(axis=0) if (~in_cluster).any() else np.zeros(X.shape[1])
        score = expr_gini * expr_rank[ci] * det_gini * det_rank[ci]
        table = pd.DataFrame({
            'cluster': str(cluster),
            'feats': feats,
            'score': score,
            'logfc': means[ci] - rest,
            'pval': np.nan,
            'pval_adj': np.nan,
            'expression_gini': expr_gini,
            'detection_gini': det_gini,
        }).sort_values(['score', 'feats'], ascending=[False, True]).reset_index(drop=True)
        table['ranking'] = np.arange(1, len(table) + 1)
        passes = (
            (table['expression_gini'] >= min_expr_gini_score)
            & (table['detection_gini'] >= min_det_gini_score)
            & (expr_rank[ci][feats.get_indexer(table['feats'])] == 1)
        )
        tables.append(table[passes | (table['ranking'] <= min_feats)])
    return pd.concat(tables, ignore_index=True)

def _scanpy_markers(X, labels, feats, obs_names, groupby, method):
    tmp = sc.AnnData(X=X, obs=pd.DataFrame({groupby: pd.Categorical(labels)}, index=obs_names),
                     var=pd.DataFrame(index=feats))
    sc.tl.rank_genes_groups(tmp, groupby=groupby, method=method, use_raw=False, pts=False)
    result = sc.get.rank_genes_groups_df(tmp, group=None)
    if 'group' not in result:
        result.insert(0, 'group', tmp.obs[groupby].cat.categories[0])
    table = pd.DataFrame({
        'cluster': result['group'].astype(str).values,
        'feats': result['names'].astype(str).values,
        'score': result['scores'].values,
        'logfc': result['logfoldchanges'].values if 'logfoldchanges' in result else np.nan,
        'pval': result['pvals'].values if 'pvals' in result else np.nan,
        'pval_adj': result['pvals_adj'].values if 'pvals_adj' in result else np.nan,
    })
    table['ranking'] = table.groupby('cluster').cumcount() + 1
    return table

def find_markers_one_vs_all(adata, cluster_column, method='wilcoxon', expression_layer='normalized',
                            min_feats=10, detection_threshold=0, min_expr_gini_score=0.2,
                            min_det_gini_score=0.2, key_added=None):
    """
    Rank features by their specificity to every cluster

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    cluster_column : str
        Observation column with the cluster assignments
    method : str, optional
        'gini', 'wilcoxon', 't-test' or 'logreg'. The last three run
        scanpy's rank_genes_groups
    expression_layer : str, optional
        Layer with normalized values
    min_feats : int, optional
        For 'gini', features kept per cluster even when they fail the Gini
        thresholds
    detection_threshold : float, optional
        Values above this threshold count as detected ('gini')
    min_expr_gini_score, min_det_gini_score : float, optional
        Gini thresholds on expression and detection ('gini')
    key_added : str, optional
        Name of the table. Defaults to f"{method}_{cluster_column}"

    Returns
    -------
    pandas.DataFrame
        Columns cluster, feats, score, logfc, pval, pval_adj, ranking; also
        stored in adata.uns['markers'][key_added]
    """
    if method not in MARKER_METHODS:
        raise ValueError(f"Unsupported marker method: {method}. Options: {MARKER_METHODS}")
    labels = require_obs_column(adata, cluster_column).astype(str).values
    clusters = sorted(set(labels), key=lambda c: (len(c), c))
    if len(clusters) < 2:
        logger.error(f"Column {cluster_column} has a single cluster")
        raise ConfigurationError(f"Marker detection needs at least two clusters in {cluster_column}")
    X = dense(require_layer(adata, expression_layer))
    logger.info(f"Finding markers for {len(clusters)} clusters of {cluster_column} with {method}")

    if method == 'gini':
        table = _gini_markers(X, labels, clusters, adata.var_names, detection_threshold,
                              min_expr_gini_score, min_det_gini_score, min_feats)
    else:
        table = _scanpy_markers(X, labels, adata.var_names, adata.obs_names, cluster_column, method)

    extra = [c for c in table.columns if c not in MARKER_COLUMNS]
    table = table[MARKER_COLUMNS + extra].reset_index(drop=True)
    key = key_added or f"{method}_{cluster_column}"
    adata.uns.setdefault('markers', {})[key] = table
    logger.info(f"Stored {len(table)} marker rows in adata.uns['markers']['{key}']")
    return table

def get_top_markers(table, n=5):
    """
    Top `n` markers of every cluster

    Returns
    -------
    dict
        Cluster to list of features, in ranking order
    """
    table = table.sort_values(['cluster', 'ranking'])
    return {cluster: group['feats'].head(n).tolist() for cluster, group in table.groupby('cluster', sort=False)}
