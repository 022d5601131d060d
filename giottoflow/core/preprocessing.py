import scanpy as sc
import numpy as np
import pandas as pd
import logging
from scipy import sparse

from giottoflow.exceptions import ConfigurationError
from giottoflow.utils.checks import require_layer, dense

logger = logging.getLogger('giottoflow.core.preprocessing')

def _detection_matrix(X, expression_threshold):
    if sparse.issparse(X):
        if expression_threshold <= 0:
            return sparse.csr_matrix(np.asarray(X.toarray() >= expression_threshold))
        return (X >= expression_threshold).tocsr()
    return sparse.csr_matrix(np.asarray(X) >= expression_threshold)

def filter_analysis_object(adata, expression_threshold=1, feat_det_in_min_cells=100,
                           min_det_feats_per_cell=100, expression_layer='raw', max_rounds=100):
    """
    Filter features and observations on detection counts

    A feature is detected in an observation when its value is at least
    `expression_threshold`. Features detected in fewer than
    `feat_det_in_min_cells` observations are removed, then observations with
    fewer than `min_det_feats_per_cell` detected features among the kept
    ones. Removing observations can push features below their threshold, so
    both rules are applied until nothing changes; filtering an already
    filtered object with the same thresholds is a no-op.

    Parameters
    ----------
    adata : AnnData
        The AnnData object to filter
    expression_threshold : float
        Minimum value for a feature to count as detected
    feat_det_in_min_cells : int
        Minimum number of observations a feature must be detected in
    min_det_feats_per_cell : int
        Minimum number of detected features per observation
    expression_layer : str
        Layer used to decide detection
    max_rounds : int
        Safety limit on the number of filtering rounds

    Returns
    -------
    adata : AnnData
        A filtered copy of the AnnData object
    """
    logger.info("Filtering features and observations")
    X = require_layer(adata, expression_layer)
    detected = _detection_matrix(X, expression_threshold)

    keep_feats = np.ones(adata.n_vars, dtype=bool)
    keep_cells = np.ones(adata.n_obs, dtype=bool)
    for round_nr in range(max_rounds):
        sub = detected[keep_cells][:, keep_feats]
        feats_ok = np.asarray(sub.sum(axis=0)).ravel() >= feat_det_in_min_cells
        new_feats = keep_feats.copy()
        new_feats[keep_feats] = feats_ok

        sub = detected[keep_cells][:, new_feats]
        cells_ok = np.asarray(sub.sum(axis=1)).ravel() >= min_det_feats_per_cell
        new_cells = keep_cells.copy()
        new_cells[keep_cells] = cells_ok

        changed = (new_feats != keep_feats).any() or (new_cells != keep_cells).any()
        keep_feats, keep_cells = new_feats, new_cells
        if not changed:
            break
    else:
        logger.warning(f"Filtering did not converge after {max_rounds} rounds")

    logger.info(f"Removed {adata.n_vars - keep_feats.sum()} features detected in less than {feat_det_in_min_cells} observations")
    logger.info(f"Removed {adata.n_obs - keep_cells.sum()} observations with less than {min_det_feats_per_cell} detected features")

    adata = adata[keep_cells, keep_feats].copy()
    adata.uns['filter_params'] = {
        'expression_threshold': float(expression_threshold),
        'feat_det_in_min_cells': int(feat_det_in_min_cells),
        'min_det_feats_per_cell': int(min_det_feats_per_cell),
        'expression_layer': expression_layer,
    }
    logger.info(f"Filtering complete. Final shape: {adata.shape}")
    return adata

def filter_distributions(adata, expression_threshold=1, expression_layer='raw'):
    """
    Detection distributions used to choose filtering thresholds

    Returns
    -------
    dict
        'feats': detections per feature, 'cells': detected features per
        observation, 'summary': quantile table of both
    """
    detected = _detection_matrix(require_layer(adata, expression_layer), expression_threshold)
    feat_det = pd.Series(np.asarray(detected.sum(axis=0)).ravel(), index=adata.var_names, name='nr_cells')
    cell_det = pd.Series(np.asarray(detected.sum(axis=1)).ravel(), index=adata.obs_names, name='nr_feats')
    summary = pd.DataFrame({
        'feats_detected_in_cells': feat_det.describe(percentiles=[0.05, 0.25, 0.5, 0.75, 0.95]),
        'cells_detected_feats': cell_det.describe(percentiles=[0.05, 0.25, 0.5, 0.75, 0.95]),
    })
    return {'feats': feat_det, 'cells': cell_det, 'summary': summary}

def normalize_analysis_object(adata, scalefactor=6000, log_norm=True, log_offset=1, logbase=2,
                              scale_feats=True, scale_cells=True, expression_layer='raw'):
    """
    Normalize and scale the expression values

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    scalefactor : float
        Library size after normalization
    log_norm : bool
        Whether to log-transform after library size normalization
    log_offset : float
        Pseudocount added before the log transform
    logbase : float
        Base of the logarithm
    scale_feats : bool
        Z-score every feature
    scale_cells : bool
        Z-score every observation (after feature scaling)
    expression_layer : str
        Layer holding the raw values

    Returns
    -------
    adata : AnnData
        The AnnData object with layers 'normalized' (also in X) and 'scaled'
    """
    logger.info(f"Normalizing total counts per observation to {scalefactor}")
    raw = require_layer(adata, expression_layer)
    tmp = sc.AnnData(X=raw.copy().astype(np.float64), obs=pd.DataFrame(index=adata.obs_names),
                     var=pd.DataFrame(index=adata.var_names))
    sc.pp.normalize_total(tmp, target_sum=scalefactor)
    norm = tmp.X
    if log_norm:
        logger.info(f"Log{logbase}-transforming with offset {log_offset}")
        norm = dense(norm) if log_offset != 1 else norm
        if sparse.issparse(norm):
            norm = norm.copy()
            norm.data = np.log(norm.data + log_offset) / np.log(logbase)
        else:
            norm = np.log(norm + log_offset) / np.log(logbase)
    adata.layers['normalized'] = sparse.csr_matrix(norm) if sparse.issparse(raw) else dense(norm)
    adata.X = adata.layers['normalized'].copy()

    scaled = dense(norm)
    if scale_feats:
        scaled = _zscore(scaled, axis=0)
    if scale_cells:
        scaled = _zscore(scaled, axis=1)
    adata.layers['scaled'] = scaled
    adata.uns['normalization_params'] = {
        'scalefactor': float(scalefactor),
        'log_norm': bool(log_norm),
        'log_offset': float(log_offset),
        'logbase': float(logbase),
        'scale_feats': bool(scale_feats),
        'scale_cells': bool(scale_cells),
    }
    logger.info(f"Normalization complete. Shape: {adata.shape}")
    return adata

def _zscore(M, axis):
    mean = M.mean(axis=axis, keepdims=True)
    std = M.std(axis=axis, ddof=1, keepdims=True) if M.shape[axis] > 1 else np.ones_like(mean)
    std[std == 0] = 1
    return (M - mean) / std

def add_statistics(adata, expression_layer='normalized', detection_threshold=0):
    """
    Add detection and expression statistics for observations and features

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    expression_layer : str
        Layer to compute statistics on
    detection_threshold : float
        Values above this threshold count as detected

    Returns
    -------
    adata : AnnData
        The AnnData object with obs columns nr_feats, perc_feats, total_expr
        and var columns nr_cells, perc_cells, total_expr, mean_expr,
        mean_expr_det
    """
    logger.info("Calculating statistics")
    X = dense(require_layer(adata, expression_layer))
    detected = X > detection_threshold

    adata.obs['nr_feats'] = detected.sum(axis=1)
    adata.obs['perc_feats'] = adata.obs['nr_feats'] / adata.n_vars * 100
    adata.obs['total_expr'] = X.sum(axis=1)

    nr_cells = detected.sum(axis=0)
    adata.var['nr_cells'] = nr_cells
    adata.var['perc_cells'] = nr_cells / adata.n_obs * 100
    adata.var['total_expr'] = X.sum(axis=0)
    adata.var['mean_expr'] = X.mean(axis=0)
    with np.errstate(invalid='ignore', divide='ignore'):
        mean_det = np.where(nr_cells > 0, (X * detected).sum(axis=0) / nr_cells, 0.0)
    adata.var['mean_expr_det'] = mean_det

    if 'raw' in adata.layers:
        sc.pp.calculate_qc_metrics(adata, layer='raw', percent_top=None, inplace=True)
    return adata

def adjust_analysis_object(adata, covariate_columns, expression_layer='scaled', n_jobs=None):
    """
    Regress out covariates from the data

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    covariate_columns : list or str
        Names of observation columns to regress out
    expression_layer : str
        Layer to adjust
    n_jobs : int, optional
        Number of jobs for parallel processing

    Returns
    -------
    adata : AnnData
        The AnnData object with the adjusted values in layers['custom']
    """
    if isinstance(covariate_columns, str):
        covariate_columns = [covariate_columns]
    missing_covs = [cov for cov in covariate_columns if cov not in adata.obs]
    if missing_covs:
        logger.error(f"Covariates not found in AnnData object: {missing_covs}")
        raise ConfigurationError(f"Covariates not found in AnnData object: {missing_covs}. Run add_statistics first.")
    if len(covariate_columns) == 0:
        raise ConfigurationError("No covariates to regress out")

    logger.info(f"Regressing out covariates: {covariate_columns}")
    tmp = sc.AnnData(X=dense(require_layer(adata, expression_layer)),
                     obs=adata.obs[covariate_columns].copy(),
                     var=pd.DataFrame(index=adata.var_names))
    sc.pp.regress_out(tmp, covariate_columns, n_jobs=n_jobs)
    adata.layers['custom'] = np.asarray(tmp.X)

    return adata
