import squidpy as sq
import numpy as np
import pandas as pd
import logging
from scipy import stats
from statsmodels.stats.multitest import multipletests

from giottoflow.exceptions import ConfigurationError
from giottoflow.utils.checks import require_layer, require_spatial_network, dense
from giottoflow.spatial.neighbors import get_undirected_edges

logger = logging.getLogger('giottoflow.spatial.statistics')

SPATIAL_GENE_METHODS = ['binspect_kmeans', 'binspect_rank', 'silhouette_rank', 'moran', 'geary']

def _select_feats(adata, subset_feats):
    if subset_feats is None:
        return np.arange(adata.n_vars)
    idx = [adata.var_names.get_loc(f) for f in subset_feats if f in adata.var_names]
    if len(idx) == 0:
        logger.error("None of the requested features are present")
        raise ConfigurationError("None of the requested features are present")
    if len(idx) < len(subset_feats):
        logger.warning(f"{len(subset_feats) - len(idx)} requested features not found")
    return np.asarray(idx)

def binarize_kmeans(X, max_iter=100):
    """
    Two-means binarization of every column of X

    Centers start at the column minimum and maximum; the high group is the
    one around the larger center. Constant columns are all low.

    Returns
    -------
    numpy.ndarray
        Boolean matrix of the shape of X
    """
    low = X.min(axis=0).astype(float)
    high = X.max(axis=0).astype(float)
    constant = high == low
    for _ in range(max_iter):
        is_high = np.abs(X - high) < np.abs(X - low)
        n_high = is_high.sum(axis=0)
        n_low = X.shape[0] - n_high
        with np.errstate(invalid='ignore', divide='ignore'):
            new_high = np.where(n_high > 0, (X * is_high).sum(axis=0) / n_high, high)
            new_low = np.where(n_low > 0, (X * ~is_high).sum(axis=0) / n_low, low)
        if np.allclose(new_high, high) and np.allclose(new_low, low):
            break
        high, low = new_high, new_low
    is_high = np.abs(X - high) < np.abs(X - low)
    is_high[:, constant] = False
    return is_high

def binarize_rank(X, percentage_rank=30):
    """
    Flag the top `percentage_rank` percent of every column as high

    Returns
    -------
    numpy.ndarray
        Boolean matrix of the shape of X
    """
    if not 0 < percentage_rank <= 100:
        raise ConfigurationError(f"percentage_rank must be in (0, 100], got {percentage_rank}")
    ranks = pd.DataFrame(-X).rank(axis=0, method='average').values
    is_high = ranks <= X.shape[0] * percentage_rank / 100
    is_high[:, X.max(axis=0) == X.min(axis=0)] = False
    return is_high

def binspect(adata, spatial_network_name=None, bin_method='kmeans', percentage_rank=30,
             expression_layer='normalized', subset_feats=None, chunk_size=500, adjust_method='fdr_bh'):
    """
    Binary spatial extraction of spatially coherent features

    Every feature is binarized (two-means or top-rank), the edges of the
    spatial network are tallied into a 2 x 2 contingency table of
    high/low states at both ends, and a one-sided Fisher exact test asks
    whether high observations neighbor each other more than expected.

    Parameters
    ----------
    adata : AnnData
        The AnnData object with a spatial network
    spatial_network_name : str, optional
        Registered spatial network. The most recent one when None
    bin_method : str, optional
        'kmeans' or 'rank'
    percentage_rank : float, optional
        Percentage of top observations flagged high with bin_method='rank'
    expression_layer : str, optional
        Layer with normalized values
    subset_feats : list, optional
        Features to test. All features when None
    chunk_size : int, optional
        Number of features tallied at once
    adjust_method : str, optional
        Multiple testing correction passed to statsmodels

    Returns
    -------
    pandas.DataFrame
        Columns feats, p.value, estimate, adj.p.value, score, high_expr,
        hh, hl, lh, ll, ranking; sorted by score
    """
    name, _ = require_spatial_network(adata, spatial_network_name)
    feat_idx = _select_feats(adata, subset_feats)
    X = dense(require_layer(adata, expression_layer))[:, feat_idx]
    logger.info(f"Running binSpect ({bin_method}) on {len(feat_idx)} features with network {name}")

    if bin_method == 'kmeans':
        B = binarize_kmeans(X)
    elif bin_method == 'rank':
        B = binarize_rank(X, percentage_rank)
    else:
        raise ValueError(f"Unsupported binarization method: {bin_method}")

    src, dst = get_undirected_edges(adata, name)
    if len(src) == 0:
        raise ConfigurationError(f"Spatial network {name} has no edges")

    counts = np.zeros((4, B.shape[1]), dtype=np.int64)
    for start in range(0, B.shape[1], chunk_size):
        Bs, Bd = B[src, start:start + chunk_size], B[dst, start:start + chunk_size]
        counts[0, start:start + chunk_size] = (Bs & Bd).sum(axis=0)
        counts[1, start:start + chunk_size] = (Bs & ~Bd).sum(axis=0)
        counts[2, start:start + chunk_size] = (~Bs & Bd).sum(axis=0)
        counts[3, start:start + chunk_size] = (~Bs & ~Bd).sum(axis=0)

    pvalues = np.ones(B.shape[1])
    for g in range(B.shape[1]):
        hh, hl, lh, ll = counts[:, g]
        if hh == 0:
            continue
        pvalues[g] = stats.fisher_exact([[hh, hl], [lh, ll]], alternative='greater')[1]
    # Haldane-corrected odds ratio stays finite for empty cells
    estimate = ((counts[0] + 0.5) * (counts[3] + 0.5)) / ((counts[1] + 0.5) * (counts[2] + 0.5))
    adj = multipletests(pvalues, method=adjust_method)[1]
    score = -np.log10(np.maximum(pvalues, 1e-300)) * estimate

    table = pd.DataFrame({
        'feats': adata.var_names[feat_idx].values,
        'p.value': pvalues,
        'estimate': estimate,
        'adj.p.value': adj,
        'score': score,
        'high_expr': B.sum(axis=0),
        'hh': counts[0], 'hl': counts[1], 'lh': counts[2], 'll': counts[3],
    })
    table = table.sort_values(['score', 'p.value', 'feats'], ascending=[False, True, True]).reset_index(drop=True)
    table['ranking'] = np.arange(1, len(table) + 1)
    return table

def silhouette_rank(adata, expression_layer='normalized', examine_top=0.3, subset_feats=None):
    """
    Rank features on how tightly their top-expressing observations cluster in space

    The top `examine_top` fraction of observations of a feature are labeled
    high; the score is the mean silhouette width of those observations in
    physical space.

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    expression_layer : str, optional
        Layer with normalized values
    examine_top : float, optional
        Fraction of observations labeled high
    subset_feats : list, optional
        Features to score. All features when None

    Returns
    -------
    pandas.DataFrame
        Columns feats, score, high_expr, ranking; sorted by score
    """
    from sklearn.metrics import silhouette_samples
    from scipy.spatial.distance import squareform, pdist

    if not 0 < examine_top < 1:
        raise ConfigurationError(f"examine_top must be in (0, 1), got {examine_top}")
    if 'spatial' not in adata.obsm:
        raise ConfigurationError("No spatial coordinates found in adata.obsm['spatial']")
    feat_idx = _select_feats(adata, subset_feats)
    X = dense(require_layer(adata, expression_layer))[:, feat_idx]
    B = binarize_rank(X, examine_top * 100)
    D = squareform(pdist(np.asarray(adata.obsm['spatial'], dtype=float)))
    logger.info(f"Running silhouetteRank on {len(feat_idx)} features")

    scores = np.full(B.shape[1], np.nan)
    for g in range(B.shape[1]):
        labels = B[:, g]
        n_high = labels.sum()
        if n_high < 2 or n_high == len(labels):
            continue
        widths = silhouette_samples(D, labels.astype(int), metric='precomputed')
        scores[g] = widths[labels].mean()

    table = pd.DataFrame({
        'feats': adata.var_names[feat_idx].values,
        'score': scores,
        'high_expr': B.sum(axis=0),
    })
    table = table.sort_values(['score', 'feats'], ascending=[False, True], na_position='last').reset_index(drop=True)
    table['ranking'] = np.arange(1, len(table) + 1)
    return table

def spatial_autocorrelation(adata, spatial_network_name=None, mode='moran', n_perms=None,
                            expression_layer='normalized', subset_feats=None, seed=1234, n_jobs=1):
    """
    Moran's I or Geary's C of every feature with squidpy

    Parameters
    ----------
    adata : AnnData
        The AnnData object with a spatial network
    spatial_network_name : str, optional
        Registered spatial network
    mode : str, optional
        'moran' or 'geary'
    n_perms : int, optional
        Number of permutations. Analytic p-values only when None
    expression_layer : str, optional
        Layer with normalized values
    subset_feats : list, optional
        Features to score
    seed : int, optional
        Random seed
    n_jobs : int, optional
        Number of jobs passed to squidpy

    Returns
    -------
    pandas.DataFrame
        Columns feats, statistic, score, p.value, adj.p.value, ranking
    """
    name, entry = require_spatial_network(adata, spatial_network_name)
    require_layer(adata, expression_layer)
    feat_idx = _select_feats(adata, subset_feats)
    genes = adata.var_names[feat_idx].tolist()
    logger.info(f"Calculating spatial autocorrelation using {mode} on network {name}")

    result = sq.gr.spatial_autocorr(
        adata,
        connectivity_key=entry['connectivities_key'],
        genes=genes,
        mode=mode,
        n_perms=n_perms,
        layer=None if expression_layer == 'X' else expression_layer,
        seed=seed,
        n_jobs=n_jobs,
        show_progress_bar=False,
        copy=True,
    )
    statistic = result['I'] if mode == 'moran' else result['C']
    score = statistic if mode == 'moran' else 1 - statistic
    pcol = 'pval_sim' if n_perms is not None and 'pval_sim' in result else 'pval_norm'
    table = pd.DataFrame({
        'feats': result.index.astype(str),
        'statistic': statistic.values,
        'score': score.values,
        'p.value': result[pcol].values,
        'adj.p.value': result[f"{pcol}_fdr_bh"].values if f"{pcol}_fdr_bh" in result else np.nan,
    })
    table = table.sort_values(['score', 'feats'], ascending=[False, True]).reset_index(drop=True)
    table['ranking'] = np.arange(1, len(table) + 1)
    return table

def detect_spatial_genes(adata, method='binspect_kmeans', key_added=None, **kwargs):
    """
    Detect spatially variable features and store the ranking

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    method : str, optional
        One of 'binspect_kmeans', 'binspect_rank', 'silhouette_rank',
        'moran', 'geary'
    key_added : str, optional
        Name of the ranking. Defaults to the method name
    **kwargs
        Additional parameters for the method

    Returns
    -------
    adata : AnnData
        The AnnData object with the table in adata.uns['spatial_genes'][key]
        and var columns f"{key}_score" and f"{key}_rank"
    """
    key = key_added or method
    if method == 'binspect_kmeans':
        table = binspect(adata, bin_method='kmeans', **kwargs)
    elif method == 'binspect_rank':
        table = binspect(adata, bin_method='rank', **kwargs)
    elif method == 'silhouette_rank':
        table = silhouette_rank(adata, **kwargs)
    elif method in ('moran', 'geary'):
        table = spatial_autocorrelation(adata, mode=method, **kwargs)
    else:
        raise ValueError(f"Unsupported spatial gene method: {method}. Options: {SPATIAL_GENE_METHODS}")

    adata.uns.setdefault('spatial_genes', {})[key] = table
    indexed = table.set_index('feats')
    adata.var[f"{key}_score"] = indexed['score'].reindex(adata.var_names).values
    adata.var[f"{key}_rank"] = indexed['ranking'].reindex(adata.var_names).values

    top = table['feats'].head(5).tolist()
    logger.info(f"Spatial genes detected with {method}; top features: {top}")
    return adata

def get_spatial_genes(adata, key='binspect_kmeans', n=None, max_pval=None):
    """
    Top spatial features of a stored ranking

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    key : str, optional
        Name of the ranking
    n : int, optional
        Number of features to return
    max_pval : float, optional
        Keep features with an adjusted p-value at most this value

    Returns
    -------
    list
        Feature names in ranking order
    """
    tables = adata.uns.get('spatial_genes', {})
    if key not in tables:
        logger.error(f"Spatial gene ranking {key} not found")
        raise ConfigurationError(f"Spatial gene ranking {key} not found. Run detect_spatial_genes first.")
    table = tables[key]
    if max_pval is not None and 'adj.p.value' in table:
        table = table[table['adj.p.value'] <= max_pval]
    feats = table['feats'].tolist()
    return feats[:n] if n is not None else feats
