import scanpy as sc
import numpy as np
import pandas as pd
import logging

from giottoflow.exceptions import ConfigurationError
from giottoflow.utils.checks import require_obsm

logger = logging.getLogger('giottoflow.spatial.clustering')

def create_nearest_network(adata, n_neighbors=15, n_pcs=10, use_rep='X_pca', name='sNN',
                           seed=1234, **kwargs):
    """
    Build a nearest neighbor network in embedding space

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    n_neighbors : int, optional
        Number of neighbors
    n_pcs : int, optional
        Number of leading components of `use_rep` to use
    use_rep : str, optional
        Key in adata.obsm with the embedding
    name : str, optional
        Name of the network (adata.uns[name], adata.obsp[f"{name}_*"])
    seed : int, optional
        Random seed
    **kwargs
        Additional parameters for scanpy.pp.neighbors

    Returns
    -------
    adata : AnnData
        The AnnData object with the network
    """
    rep = require_obsm(adata, use_rep)
    n_pcs = min(n_pcs, rep.shape[1]) if n_pcs is not None else None
    n_neighbors = min(n_neighbors, adata.n_obs - 1)
    if n_neighbors < 2:
        raise ConfigurationError(f"Too few observations ({adata.n_obs}) for a nearest neighbor network")

    logger.info(f"Building nearest neighbor network {name} with {n_neighbors} neighbors")
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, n_pcs=n_pcs, use_rep=use_rep,
                    key_added=name, random_state=seed, **kwargs)
    return adata

def run_clustering(adata, method='leiden', resolution=0.4, cluster_key=None, network_name='sNN', **kwargs):
    """
    Cluster observations on the nearest neighbor network

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    method : str, optional
        Clustering method. Options: "leiden", "louvain", "kmeans"
    resolution : float, optional
        Resolution parameter for community detection
    cluster_key : str, optional
        Key to add to adata.obs for cluster assignments
    network_name : str, optional
        Name of the nearest neighbor network
    **kwargs
        Additional parameters for the clustering method

    Returns
    -------
    adata : AnnData
        The AnnData object with added clustering results
    """
    logger.info(f"Running clustering using {method} method")

    if method == "leiden":
        return do_leiden_cluster(adata, resolution=resolution, network_name=network_name,
                                 name=cluster_key or 'leiden_clus', **kwargs)
    elif method == "louvain":
        return do_louvain_cluster(adata, resolution=resolution, network_name=network_name,
                                  name=cluster_key or 'louvain_clus', **kwargs)
    elif method == "kmeans":
        return do_kmeans(adata, name=cluster_key or 'kmeans', **kwargs)
    raise ValueError(f"Unsupported clustering method: {method}")

def _require_network(adata, network_name):
    if network_name not in adata.uns or f'{network_name}_connectivities' not in adata.obsp:
        logger.error(f"Nearest neighbor network {network_name} not found. Build a network first.")
        raise ConfigurationError(f"Nearest neighbor network {network_name} not found. Run create_nearest_network first.")

def _relabel_by_size(labels):
    """Rename clusters 1..n by decreasing size, ties by first appearance"""
    labels = pd.Series(np.asarray(labels).astype(str))
    sizes = labels.value_counts(sort=False)
    first_seen = {lab: i for i, lab in reversed(list(enumerate(labels)))}
    order = sorted(sizes.index, key=lambda lab: (-sizes[lab], first_seen[lab]))
    mapping = {lab: str(i + 1) for i, lab in enumerate(order)}
    new_labels = labels.map(mapping)
    return pd.Categorical(new_labels, categories=[str(i + 1) for i in range(len(order))])

def do_leiden_cluster(adata, resolution=0.4, n_iterations=1000, network_name='sNN',
                      name='leiden_clus', seed=1234, **kwargs):
    """
    Run Leiden clustering on the data.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix.
    resolution : float, optional
        Resolution parameter for Leiden clustering, by default 0.4
    n_iterations : int, optional
        Number of iterations; -1 runs until convergence
    network_name : str, optional
        Nearest neighbor network to partition
    name : str, optional
        Key to store the cluster assignments in adata.obs
    seed : int, optional
        Random seed
    **kwargs
        Additional arguments to pass to sc.tl.leiden

    Returns
    -------
    adata : AnnData
        Annotated data matrix with clusters "1".."n" ordered by size
    """
    _require_network(adata, network_name)
    logger.info(f"Running Leiden clustering with resolution {resolution}")
    sc.tl.leiden(
        adata,
        resolution=resolution,
        key_added=name,
        neighbors_key=network_name,
        random_state=seed,
        n_iterations=n_iterations,
        flavor='igraph',
        directed=False,
        **kwargs
    )
    adata.obs[name] = _relabel_by_size(adata.obs[name].values)

    logger.info(f"Leiden clustering completed. Found {adata.obs[name].nunique()} clusters")
    return adata

def do_louvain_cluster(adata, resolution=0.4, network_name='sNN', name='louvain_clus', seed=1234, **kwargs):
    """
    Run Louvain clustering

    Louvain is run through igraph's multilevel community detection on the
    nearest neighbor network.

    Returns
    -------
    adata : AnnData
        The AnnData object with added clustering results
    """
    import igraph as ig
    import random

    _require_network(adata, network_name)
    logger.info(f"Running Louvain clustering with resolution {resolution}")
    conn = adata.obsp[f'{network_name}_connectivities'].tocoo()
    keep = conn.row < conn.col
    graph = ig.Graph(n=adata.n_obs, edges=list(zip(conn.row[keep].tolist(), conn.col[keep].tolist())))
    graph.es['weight'] = conn.data[keep].tolist()

    # private generator; igraph goes back to its default, the random module
    ig.set_random_number_generator(random.Random(seed))
    try:
        partition = graph.community_multilevel(weights='weight', resolution=resolution)
    finally:
        ig.set_random_number_generator(random)
    adata.obs[name] = _relabel_by_size(partition.membership)
    logger.info(f"Louvain clustering completed. Found {adata.obs[name].nunique()} clusters")
    return adata

def do_kmeans(adata, n_clusters=None, dim_reduction='X_pca', n_pcs=10, name='kmeans', seed=1234, **kwargs):
    """
    Run K-means clustering

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    n_clusters : int, optional
        Number of clusters to identify
    dim_reduction : str, optional
        Embedding in adata.obsm to cluster
    n_pcs : int, optional
        Number of leading dimensions to use
    name : str, optional
        Key to add to adata.obs for cluster assignments
    seed : int, optional
        Random seed
    **kwargs
        Additional parameters for KMeans

    Returns
    -------
    adata : AnnData
        The AnnData object with added clustering results
    """
    from sklearn.cluster import KMeans

    X = require_obsm(adata, dim_reduction)
    X = np.asarray(X)[:, :n_pcs] if n_pcs is not None else np.asarray(X)
    if n_clusters is None:
        n_clusters = max(2, int(np.sqrt(adata.n_obs / 2)))
        logger.info(f"Using {n_clusters} clusters based on rule of thumb")
    if n_clusters > adata.n_obs:
        raise ConfigurationError(f"Cannot form {n_clusters} clusters from {adata.n_obs} observations")

    logger.info(f"Running K-means clustering with {n_clusters} clusters")
    kmeans = KMeans(n_clusters=n_clusters, random_state=seed, n_init=10, **kwargs)
    adata.obs[name] = _relabel_by_size(kmeans.fit_predict(X))

    return adata
