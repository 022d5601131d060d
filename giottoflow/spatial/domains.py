import numpy as np
import pandas as pd
import logging
from scipy import sparse

from giottoflow.exceptions import ConfigurationError
from giottoflow.utils.checks import require_layer, require_spatial_network, dense
from giottoflow.spatial.clustering import _relabel_by_size

logger = logging.getLogger('giottoflow.spatial.domains')

def hmrf_column(name, k, beta):
    return f"{name}_k{k}_b{beta:g}"

def _neighbor_lists(adata, network_name):
    conn = adata.obsp[f"{network_name}_connectivities"]
    adjacency = (conn + conn.T).tocsr()
    adjacency.data[:] = 1
    adjacency.eliminate_zeros()
    return adjacency.indptr, adjacency.indices

def _emission_energy(X, means, variances):
    """Negative Gaussian log-likelihood (up to a constant), observations x domains"""
    energy = np.empty((X.shape[0], means.shape[0]))
    for c in range(means.shape[0]):
        energy[:, c] = 0.5 * (((X - means[c]) ** 2) / variances[c] + np.log(variances[c])).sum(axis=1)
    return energy

def _update_parameters(X, labels, means, variances, k, min_variance):
    for c in range(k):
        mask = labels == c
        if mask.sum() == 0:
            continue
        means[c] = X[mask].mean(axis=0)
        if mask.sum() > 1:
            variances[c] = np.maximum(X[mask].var(axis=0), min_variance)
    return means, variances

def _fit_hmrf(X, init_labels, indptr, indices, k, beta, max_iter, tolerance, min_variance):
    labels = init_labels.copy()
    global_var = np.maximum(X.var(axis=0), min_variance)
    means = np.zeros((k, X.shape[1]))
    variances = np.tile(global_var, (k, 1))
    means, variances = _update_parameters(X, labels, means, variances, k, min_variance)

    n_iter = 0
    for n_iter in range(1, max_iter + 1):
        old_labels = labels.copy()
        emission = _emission_energy(X, means, variances)
        # Iterated conditional modes, observations visited in index order
        for i in range(X.shape[0]):
            neighbor_labels = labels[indices[indptr[i]:indptr[i + 1]]]
            disagreement = len(neighbor_labels) - np.bincount(neighbor_labels, minlength=k)
            labels[i] = np.argmin(emission[i] + beta * disagreement)
        means, variances = _update_parameters(X, labels, means, variances, k, min_variance)

        changed = np.mean(old_labels != labels)
        logger.debug(f"beta={beta:g} iteration {n_iter}: {changed:.4f} of labels changed")
        if changed <= tolerance:
            break

    emission = _emission_energy(X, means, variances)
    data_energy = emission[np.arange(X.shape[0]), labels].sum()
    row = np.repeat(np.arange(X.shape[0]), np.diff(indptr))
    # Every undirected edge appears twice in the symmetric lists
    prior_energy = beta * np.sum(labels[row] != labels[indices]) / 2
    return labels, float(data_energy + prior_energy), n_iter

def do_hmrf(adata, spatial_genes, spatial_network_name=None, k=10, betas=(0, 2, 5),
            expression_layer='scaled', n_pcs=None, max_iter=100, tolerance=1e-4,
            min_variance=1e-3, seed=100, name='hmrf'):
    """
    Infer spatial domains with a hidden Markov random field

    Observations are modelled with one diagonal Gaussian per domain over the
    selected spatial features and a Potts prior over the spatial network
    that charges `beta` for every neighbor in another domain. Labels start
    from k-means on the features and are refined by iterated conditional
    modes, re-estimating the domain means and variances after each sweep.
    One fit is run per beta.

    Parameters
    ----------
    adata : AnnData
        The AnnData object with a spatial network
    spatial_genes : list
        Features used to fit the model
    spatial_network_name : str, optional
        Registered spatial network. The most recent one when None
    k : int, optional
        Number of domains
    betas : sequence of float, optional
        Smoothness values, one fit per value
    expression_layer : str, optional
        Layer with the values to model
    n_pcs : int, optional
        Fit on this many principal components of the features instead
    max_iter : int, optional
        Maximum number of sweeps per fit
    tolerance : float, optional
        Stop when at most this fraction of labels changes in a sweep
    min_variance : float, optional
        Lower bound of the domain variances
    seed : int, optional
        Random seed of the k-means initialisation
    name : str, optional
        Prefix of the result columns

    Returns
    -------
    adata : AnnData
        The AnnData object with categorical obs columns
        f"{name}_k{k}_b{beta}" and the fit summary in adata.uns['hmrf'][name]
    """
    from sklearn.cluster import KMeans
    from sklearn.decomposition import PCA

    network_name, _ = require_spatial_network(adata, spatial_network_name)
    feats = [f for f in spatial_genes if f in adata.var_names]
    X = dense(require_layer(adata, expression_layer))
    if feats:
        idx = [adata.var_names.get_loc(f) for f in feats]
        keep = X[:, idx].std(axis=0) > 0
        feats = [f for f, ok in zip(feats, keep) if ok]
    if len(feats) < 1:
        logger.error("No valid spatial features for HMRF")
        raise ConfigurationError("No valid spatial features for HMRF. Detect spatial genes first.")
    if k < 1 or k > adata.n_obs:
        raise ConfigurationError(f"Cannot fit {k} domains on {adata.n_obs} observations")
    if len(feats) < len(spatial_genes):
        logger.warning(f"Using {len(feats)} of {len(spatial_genes)} requested features for HMRF")

    X = X[:, [adata.var_names.get_loc(f) for f in feats]]
    if n_pcs is not None:
        n_pcs = min(n_pcs, X.shape[1], X.shape[0] - 1)
        X = PCA(n_components=n_pcs, random_state=seed).fit_transform(X)
        logger.info(f"Fitting HMRF on {n_pcs} principal components")

    logger.info(f"Running HMRF with k={k}, betas={list(betas)} on {X.shape[1]} dimensions, network {network_name}")
    init_labels = KMeans(n_clusters=k, random_state=seed, n_init=10).fit_predict(X)
    indptr, indices = _neighbor_lists(adata, network_name)

    energies, iterations = {}, {}
    for beta in betas:
        labels, energy, n_iter = _fit_hmrf(X, init_labels, indptr, indices, k, float(beta),
                                           max_iter, tolerance, min_variance)
        column = hmrf_column(name, k, beta)
        adata.obs[column] = _relabel_by_size(labels + 1)
        energies[column] = energy
        iterations[column] = int(n_iter)
        logger.info(f"HMRF beta={beta:g}: {adata.obs[column].nunique()} domains after {n_iter} iterations")

    adata.uns.setdefault('hmrf', {})[name] = {
        'k': int(k),
        'betas': [float(b) for b in betas],
        'feats': list(feats),
        'network': network_name,
        'expression_layer': expression_layer,
        'energies': energies,
        'iterations': iterations,
    }
    return adata

def add_hmrf(adata, k, beta, name='hmrf', hmrf_name=None):
    """
    Copy one HMRF result into a named observation column

    Returns
    -------
    adata : AnnData
        The AnnData object with adata.obs[hmrf_name]
    """
    column = hmrf_column(name, k, beta)
    if column not in adata.obs:
        logger.error(f"HMRF result {column} not found")
        raise ConfigurationError(f"HMRF result {column} not found. Run do_hmrf first.")
    hmrf_name = hmrf_name or f"HMRF_k{k}_b{beta:g}"
    adata.obs[hmrf_name] = adata.obs[column].copy()
    return adata
