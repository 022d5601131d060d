import numpy as np
import pandas as pd
import logging
from scipy import sparse
from scipy.cluster.hierarchy import linkage, fcluster
from scipy.spatial.distance import squareform

from giottoflow.exceptions import ConfigurationError
from giottoflow.utils.checks import require_layer, require_obs_column, require_spatial_network, dense

logger = logging.getLogger('giottoflow.analysis.coexpression')

def _correlate(M, cor_method):
    if cor_method == 'spearman':
        M = pd.DataFrame(M).rank(axis=0).values
    elif cor_method != 'pearson':
        raise ValueError(f"Unsupported correlation method: {cor_method}")
    return np.corrcoef(M, rowvar=False)

def _smooth_over_network(adata, X, network_name, directed, network_smoothing):
    conn = adata.obsp[f"{network_name}_connectivities"]
    adjacency = conn.tocsr().copy() if directed else (conn + conn.T).tocsr()
    adjacency.data[:] = 1
    adjacency.eliminate_zeros()
    degree = np.asarray(adjacency.sum(axis=1)).ravel()
    neighbor_mean = sparse.diags(1 / np.maximum(degree, 1)) @ adjacency @ X
    # isolated observations keep their own values
    neighbor_mean[degree == 0] = X[degree == 0]
    return (1 - network_smoothing) * X + network_smoothing * neighbor_mean

def _average_over_grid(adata, X, grid_name, min_cells_per_grid):
    bins = require_obs_column(adata, f"{grid_name}_bin").astype(str).values
    frame = pd.DataFrame(X).groupby(bins)
    sizes = frame.size()
    means = frame.mean()[sizes >= min_cells_per_grid]
    if len(means) < 3:
        raise ConfigurationError(
            f"Only {len(means)} grid bins hold {min_cells_per_grid} or more observations; use a coarser grid"
        )
    return means.values

def detect_spatial_cor_feats(adata, method='network', spatial_network_name=None, spatial_grid_name='spatial_grid',
                             subset_feats=None, network_smoothing=0.5, min_cells_per_grid=4,
                             expression_layer='normalized', cor_method='pearson', key_added='spatial_cor'):
    """
    Correlate features after spatial smoothing

    With method='network' every observation is mixed with the mean of its
    spatial neighbors, with method='grid' expression is averaged per grid
    bin. The plain expression correlation is kept alongside for comparison.

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    method : str, optional
        'network' or 'grid'
    spatial_network_name : str, optional
        Registered spatial network for method='network'
    spatial_grid_name : str, optional
        Spatial grid for method='grid'
    subset_feats : list, optional
        Features to correlate. All features when None
    network_smoothing : float, optional
        Weight of the neighbor mean, between 0 and 1
    min_cells_per_grid : int, optional
        Grid bins with fewer observations are ignored
    expression_layer : str, optional
        Layer with normalized values
    cor_method : str, optional
        'pearson' or 'spearman'
    key_added : str, optional
        Key in adata.uns for the results

    Returns
    -------
    adata : AnnData
        The AnnData object with adata.uns[key_added] holding 'spat_cor' and
        'expr_cor' feature x feature DataFrames
    """
    if not 0 <= network_smoothing <= 1:
        raise ConfigurationError(f"network_smoothing must be between 0 and 1, got {network_smoothing}")
    X = dense(require_layer(adata, expression_layer))
    feats = adata.var_names
    if subset_feats is not None:
        mask = adata.var_names.isin(list(subset_feats))
        X, feats = X[:, mask], adata.var_names[mask]
    variable = X.std(axis=0) > 0
    if (~variable).any():
        logger.warning(f"Ignoring {int((~variable).sum())} constant features")
        X, feats = X[:, variable], feats[variable]
    if len(feats) < 2:
        logger.error("Fewer than two variable features to correlate")
        raise ConfigurationError("Fewer than two variable features to correlate")

    if method == 'network':
        network_name, entry = require_spatial_network(adata, spatial_network_name)
        logger.info(f"Smoothing {len(feats)} features over network {network_name}")
        smoothed = _smooth_over_network(adata, X, network_name, entry['directed'], network_smoothing)
        params = {'network': network_name, 'network_smoothing': float(network_smoothing)}
    elif method == 'grid':
        logger.info(f"Averaging {len(feats)} features over grid {spatial_grid_name}")
        smoothed = _average_over_grid(adata, X, spatial_grid_name, min_cells_per_grid)
        params = {'grid': spatial_grid_name, 'min_cells_per_grid': int(min_cells_per_grid)}
    else:
        raise ValueError(f"Unsupported spatial correlation method: {method}")

    spat_cor = np.nan_to_num(_correlate(smoothed, cor_method))
    expr_cor = np.nan_to_num(_correlate(X, cor_method))
    names = feats.astype(str).tolist()
    adata.uns[key_added] = {
        'method': method,
        'cor_method': cor_method,
        'params': params,
        'spat_cor': pd.DataFrame(spat_cor, index=names, columns=names),
        'expr_cor': pd.DataFrame(expr_cor, index=names, columns=names),
    }
    logger.info(f"Spatial correlation of {len(names)} features stored in adata.uns['{key_added}']")
    return adata

def _require_cor(adata, key):
    if key not in adata.uns or 'spat_cor' not in adata.uns[key]:
        logger.error(f"Spatial correlation {key} not found")
        raise ConfigurationError(f"Spatial correlation {key} not found. Run detect_spatial_cor_feats first.")
    return adata.uns[key]

def cluster_spatial_cor_feats(adata, key='spatial_cor', k=10, linkage_method='ward'):
    """
    Group features into co-expression modules

    Hierarchical clustering on 1 - spatial correlation, cut into `k`
    clusters.

    Returns
    -------
    adata : AnnData
        The AnnData object with adata.uns[key]['feat_clusters'] (columns
        feat_ID, clus) and adata.var[f"{key}_module"]
    """
    result = _require_cor(adata, key)
    cor = result['spat_cor']
    n_feats = cor.shape[0]
    if k < 1 or k > n_feats:
        raise ConfigurationError(f"Cannot cut {n_feats} features into {k} modules")

    distance = np.clip(1 - cor.values, 0, 2)
    distance = (distance + distance.T) / 2
    np.fill_diagonal(distance, 0)
    tree = linkage(squareform(distance, checks=False), method=linkage_method)
    modules = fcluster(tree, t=k, criterion='maxclust')

    feat_clusters = pd.DataFrame({'feat_ID': cor.index.astype(str), 'clus': modules.astype(int)})
    result['feat_clusters'] = feat_clusters
    result['k'] = int(k)
    mapping = dict(zip(feat_clusters['feat_ID'], feat_clusters['clus'].astype(str)))
    adata.var[f"{key}_module"] = pd.Categorical(
        adata.var_names.map(lambda f: mapping.get(f, np.nan)),
        categories=sorted(set(mapping.values()), key=int),
    )
    logger.info(f"Clustered {n_feats} features into {len(set(modules))} modules")
    return adata

def show_spatial_cor_feats(adata, key='spatial_cor', feats=None, min_spat_cor=None, min_expr_cor=None,
                           show_top=None):
    """
    Feature pairs with their spatial and expression correlation

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    key : str, optional
        Spatial correlation key
    feats : list, optional
        Restrict to pairs starting at these features
    min_spat_cor, min_expr_cor : float, optional
        Minimum correlations
    show_top : int, optional
        Keep the best `show_top` partners of every feature

    Returns
    -------
    pandas.DataFrame
        Columns feat_ID, variable, spat_cor, expr_cor, cor_diff, rank_spat,
        rank_expr and, once clustered, clus and variable_clus
    """
    result = _require_cor(adata, key)
    spat = result['spat_cor'].copy()
    expr = result['expr_cor']
    spat.index.name, spat.columns.name = 'feat_ID', 'variable'
    table = spat.stack().rename('spat_cor').reset_index()
    table['expr_cor'] = expr.values.ravel()
    table = table[table['feat_ID'] != table['variable']]
    table['cor_diff'] = table['spat_cor'] - table['expr_cor']
    table['rank_spat'] = table.groupby('feat_ID')['spat_cor'].rank(ascending=False, method='first')
    table['rank_expr'] = table.groupby('feat_ID')['expr_cor'].rank(ascending=False, method='first')

    if 'feat_clusters' in result:
        mapping = dict(zip(result['feat_clusters']['feat_ID'], result['feat_clusters']['clus']))
        table['clus'] = table['feat_ID'].map(mapping)
        table['variable_clus'] = table['variable'].map(mapping)
    if feats is not None:
        table = table[table['feat_ID'].isin(list(feats))]
    if min_spat_cor is not None:
        table = table[table['spat_cor'] >= min_spat_cor]
    if min_expr_cor is not None:
        table = table[table['expr_cor'] >= min_expr_cor]
    if show_top is not None:
        table = table[table['rank_spat'] <= show_top]
    return table.sort_values(['feat_ID', 'rank_spat']).reset_index(drop=True)

def rank_spatial_cor_groups(adata, key='spatial_cor'):
    """
    Score co-expression modules on their size and internal correlation

    Returns
    -------
    pandas.DataFrame
        Columns clusters, mean_cor, nr_feats, score, rank; best module first
    """
    result = _require_cor(adata, key)
    if 'feat_clusters' not in result:
        raise ConfigurationError(f"Features of {key} are not clustered. Run cluster_spatial_cor_feats first.")
    cor = result['spat_cor']
    rows = []
    for clus, group in result['feat_clusters'].groupby('clus'):
        sub = cor.loc[group['feat_ID'], group['feat_ID']].values
        n = len(group)
        mean_cor = (sub.sum() - np.trace(sub)) / (n * (n - 1)) if n > 1 else 0.0
        rows.append({'clusters': int(clus), 'mean_cor': mean_cor, 'nr_feats': n, 'score': mean_cor * n})
    table = pd.DataFrame(rows).sort_values(['score', 'clusters'], ascending=[False, True]).reset_index(drop=True)
    table['rank'] = np.arange(1, len(table) + 1)
    return table

def create_metafeats(adata, feat_clusters=None, key='spatial_cor', name='cluster_metagene',
                     expression_layer='normalized', stat='mean'):
    """
    Summarise each feature module into one score per observation

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    feat_clusters : dict, optional
        Feature to module mapping. Taken from adata.uns[key] when None
    key : str, optional
        Spatial correlation key holding the modules
    name : str, optional
        Key in adata.obsm for the scores
    expression_layer : str, optional
        Layer with normalized values
    stat : str, optional
        'mean', 'median' or 'sum'

    Returns
    -------
    adata : AnnData
        The AnnData object with a DataFrame (observations x modules) in
        adata.obsm[name]
    """
    if feat_clusters is None:
        result = _require_cor(adata, key)
        if 'feat_clusters' not in result:
            raise ConfigurationError(f"Features of {key} are not clustered. Run cluster_spatial_cor_feats first.")
        feat_clusters = dict(zip(result['feat_clusters']['feat_ID'], result['feat_clusters']['clus']))
    if stat not in ('mean', 'median', 'sum'):
        raise ValueError(f"Unsupported statistic: {stat}")

    X = dense(require_layer(adata, expression_layer))
    modules = {}
    for feat, clus in feat_clusters.items():
        if feat in adata.var_names:
            modules.setdefault(str(clus), []).append(adata.var_names.get_loc(feat))
    if not modules:
        logger.error("None of the module features are present")
        raise ConfigurationError("None of the module features are present")

    scores = {}
    for clus in sorted(modules, key=lambda c: (len(c), c)):
        values = X[:, modules[clus]]
        scores[clus] = getattr(np, stat)(values, axis=1)
    adata.obsm[name] = pd.DataFrame(scores, index=adata.obs_names)
    logger.info(f"Created {len(scores)} metafeatures in adata.obsm['{name}']")
    return adata
