import scanpy as sc
import numpy as np
import pandas as pd
import logging

from giottoflow.exceptions import ConfigurationError
from giottoflow.utils.checks import require_layer, require_obsm, dense

logger = logging.getLogger('giottoflow.core.feature_selection')

def calculate_hvf(adata, method='cov_groups', expression_layer='normalized',
                  nr_expression_groups=20, zscore_threshold=1.5, expression_threshold=0,
                  n_top_genes=None, key_added='hvf', **kwargs):
    """
    Identify highly variable features

    Parameters
    ----------
    adata : AnnData
        AnnData object
    method : str, optional
        'cov_groups' bins features on mean expression and keeps features whose
        coefficient of variation z-score within their bin exceeds
        `zscore_threshold`. 'seurat', 'cell_ranger' and 'seurat_v3' use
        scanpy's highly_variable_genes
    expression_layer : str, optional
        Layer with normalized values
    nr_expression_groups : int, optional
        Number of mean expression bins for 'cov_groups'
    zscore_threshold : float, optional
        Z-score cut-off for 'cov_groups'
    expression_threshold : float, optional
        Values above this threshold count towards the mean of detected values
    n_top_genes : int, optional
        Number of features to keep for the scanpy flavors
    key_added : str, optional
        Column of adata.var receiving the boolean flag
    **kwargs
        Additional arguments passed to sc.pp.highly_variable_genes

    Returns
    -------
    adata : AnnData
        AnnData object with var[key_added] and var[f"{key_added}_score"]
    """
    logger.info(f"Calculating highly variable features with method {method}")
    X = require_layer(adata, expression_layer)

    if method == 'cov_groups':
        M = dense(X)
        mean_expr = M.mean(axis=0)
        sd_expr = M.std(axis=0, ddof=1) if adata.n_obs > 1 else np.zeros(adata.n_vars)
        with np.errstate(invalid='ignore', divide='ignore'):
            cov = np.where(mean_expr > 0, sd_expr / mean_expr, 0.0)

        detected = M > expression_threshold
        with np.errstate(invalid='ignore', divide='ignore'):
            mean_det = np.where(detected.sum(axis=0) > 0, (M * detected).sum(axis=0) / detected.sum(axis=0), 0.0)

        n_groups = max(1, min(nr_expression_groups, adata.n_vars))
        groups = pd.qcut(pd.Series(mean_det).rank(method='first'), q=n_groups, labels=False)
        table = pd.DataFrame({'cov': cov, 'group': groups.values}, index=adata.var_names)
        group_mean = table.groupby('group')['cov'].transform('mean')
        group_sd = table.groupby('group')['cov'].transform('std').fillna(0)
        zscore = ((table['cov'] - group_mean) / group_sd.replace(0, np.nan)).fillna(0)

        adata.var[f'{key_added}_score'] = zscore.values
        adata.var[key_added] = zscore.values > zscore_threshold
    elif method in ('seurat', 'cell_ranger', 'seurat_v3'):
        layer = 'raw' if method == 'seurat_v3' else expression_layer
        tmp = sc.AnnData(X=require_layer(adata, layer).copy(), var=pd.DataFrame(index=adata.var_names),
                         obs=pd.DataFrame(index=adata.obs_names))
        if n_top_genes is None and method != 'seurat':
            n_top_genes = min(2000, adata.n_vars)
        result = sc.pp.highly_variable_genes(tmp, flavor=method, n_top_genes=n_top_genes, inplace=False, **kwargs)
        result.index = adata.var_names
        score_col = 'dispersions_norm' if 'dispersions_norm' in result else 'variances_norm'
        adata.var[f'{key_added}_score'] = result[score_col].values
        adata.var[key_added] = result['highly_variable'].values
    else:
        raise ValueError(f"Unsupported highly variable feature method: {method}")

    n_hvf = int(adata.var[key_added].sum())
    logger.info(f"Identified {n_hvf} highly variable features")
    return adata

def run_pca(adata, n_comps=100, feats_to_use='hvf', expression_layer='scaled', seed=1234,
            svd_solver='arpack', key_added='X_pca'):
    """
    Run principal component analysis

    Parameters
    ----------
    adata : AnnData
        AnnData object
    n_comps : int, optional
        Number of components; clipped to what the data allows
    feats_to_use : str, list or None, optional
        Name of a boolean var column, an explicit feature list, or None for
        all features
    expression_layer : str, optional
        Layer to decompose
    seed : int, optional
        Random seed
    svd_solver : str, optional
        SVD solver passed to scanpy
    key_added : str, optional
        Key in adata.obsm for the embedding

    Returns
    -------
    adata : AnnData
        AnnData object with the embedding in adata.obsm[key_added]
    """
    X = dense(require_layer(adata, expression_layer))

    if feats_to_use is None:
        mask = np.ones(adata.n_vars, dtype=bool)
    elif isinstance(feats_to_use, str):
        if feats_to_use in adata.var and adata.var[feats_to_use].sum() > 1:
            mask = adata.var[feats_to_use].values.astype(bool)
        else:
            logger.warning(f"No usable '{feats_to_use}' features found. Using all features.")
            mask = np.ones(adata.n_vars, dtype=bool)
    else:
        mask = adata.var_names.isin(list(feats_to_use))
        if mask.sum() < 2:
            raise ConfigurationError("Fewer than two of the requested features are present")

    max_comps = min(adata.n_obs, int(mask.sum())) - 1
    if max_comps < 1:
        raise ConfigurationError(f"Not enough observations or features for PCA (shape {adata.n_obs} x {int(mask.sum())})")
    if n_comps > max_comps:
        logger.warning(f"Reducing number of components from {n_comps} to {max_comps}")
        n_comps = max_comps

    logger.info(f"Running PCA with {n_comps} components on {int(mask.sum())} features")
    tmp = sc.AnnData(X=X[:, mask], obs=pd.DataFrame(index=adata.obs_names),
                     var=pd.DataFrame(index=adata.var_names[mask]))
    sc.pp.pca(tmp, n_comps=n_comps, zero_center=True, svd_solver=svd_solver, random_state=seed)

    adata.obsm[key_added] = tmp.obsm['X_pca']
    loadings = np.zeros((adata.n_vars, n_comps))
    loadings[mask] = tmp.varm['PCs']
    adata.varm['PCs'] = loadings
    adata.uns['pca'] = {
        'variance': tmp.uns['pca']['variance'],
        'variance_ratio': tmp.uns['pca']['variance_ratio'],
        'params': {'n_comps': int(n_comps), 'expression_layer': expression_layer},
    }
    logger.info(f"PCA computed. Results stored in adata.obsm['{key_added}']")
    return adata

def run_umap(adata, neighbors_key='sNN', min_dist=0.01, spread=5, seed=1234, **kwargs):
    """
    Compute a 2-D UMAP embedding from a nearest neighbor network

    Parameters
    ----------
    adata : AnnData
        AnnData object with a network created by create_nearest_network
    neighbors_key : str, optional
        Name of the nearest neighbor network
    min_dist : float, optional
        UMAP min_dist
    spread : float, optional
        UMAP spread
    seed : int, optional
        Random seed
    **kwargs
        Additional arguments passed to sc.tl.umap

    Returns
    -------
    adata : AnnData
        AnnData object with adata.obsm['X_umap']
    """
    if neighbors_key not in adata.uns:
        logger.error(f"Nearest neighbor network {neighbors_key} not found")
        raise ConfigurationError(f"Nearest neighbor network {neighbors_key} not found. Run create_nearest_network first.")
    logger.info("Running UMAP")
    sc.tl.umap(adata, neighbors_key=neighbors_key, min_dist=min_dist, spread=spread,
               random_state=seed, **kwargs)
    return adata

def run_tsne(adata, n_pcs=10, perplexity=30, use_rep='X_pca', seed=1234, **kwargs):
    """
    Compute a 2-D t-SNE embedding

    Returns
    -------
    adata : AnnData
        AnnData object with adata.obsm['X_tsne']
    """
    rep = require_obsm(adata, use_rep)
    n_pcs = min(n_pcs, rep.shape[1])
    max_perplexity = max(1, (adata.n_obs - 1) / 3)
    if perplexity > max_perplexity:
        logger.warning(f"Reducing perplexity from {perplexity} to {max_perplexity:.1f}")
        perplexity = max_perplexity
    logger.info(f"Running t-SNE on {n_pcs} components of {use_rep}")
    sc.tl.tsne(adata, n_pcs=n_pcs, use_rep=use_rep, perplexity=perplexity, random_state=seed, **kwargs)
    return adata
