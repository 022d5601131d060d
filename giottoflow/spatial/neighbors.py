import squidpy as sq
import logging
import numpy as np
import pandas as pd
from scipy import sparse
from scipy.spatial.distance import cdist

from giottoflow.exceptions import ConfigurationError
from giottoflow.utils.checks import require_spatial_network, require_obs_column

logger = logging.getLogger('giottoflow.spatial.neighbors')

def _require_coordinates(adata):
    if 'spatial' not in adata.obsm:
        logger.error("No spatial coordinates found in AnnData object")
        raise ConfigurationError("No spatial coordinates found in adata.obsm['spatial']")
    return np.asarray(adata.obsm['spatial'], dtype=float)

def create_spatial_grid(adata, sdimx_stepsize=400, sdimy_stepsize=400, name='spatial_grid'):
    """
    Bin the tissue into a regular 2-D grid

    Parameters
    ----------
    adata : AnnData
        AnnData object with spatial coordinates
    sdimx_stepsize : float, optional
        Bin width along x
    sdimy_stepsize : float, optional
        Bin height along y
    name : str, optional
        Name of the grid

    Returns
    -------
    adata : AnnData
        AnnData object with the grid table in adata.uns['spatial_grids'][name]
        and the bin of every observation in adata.obs[f"{name}_bin"]
    """
    if sdimx_stepsize <= 0 or sdimy_stepsize <= 0:
        raise ConfigurationError("Grid step sizes must be positive")
    coords = _require_coordinates(adata)
    x_min, y_min = coords[:, 0].min(), coords[:, 1].min()
    x_bins = np.floor((coords[:, 0] - x_min) / sdimx_stepsize).astype(int)
    y_bins = np.floor((coords[:, 1] - y_min) / sdimy_stepsize).astype(int)

    rows = []
    for xb in range(x_bins.max() + 1):
        for yb in range(y_bins.max() + 1):
            rows.append({
                'gr_name': f"gr_{xb + 1}_{yb + 1}",
                'gr_x_loc': xb + 1,
                'gr_y_loc': yb + 1,
                'x_start': x_min + xb * sdimx_stepsize,
                'x_end': x_min + (xb + 1) * sdimx_stepsize,
                'y_start': y_min + yb * sdimy_stepsize,
                'y_end': y_min + (yb + 1) * sdimy_stepsize,
            })
    grid = pd.DataFrame(rows)
    bins = [f"gr_{xb + 1}_{yb + 1}" for xb, yb in zip(x_bins, y_bins)]

    adata.uns.setdefault('spatial_grids', {})[name] = grid
    adata.obs[f"{name}_bin"] = pd.Categorical(bins, categories=grid['gr_name'].tolist())
    logger.info(f"Created spatial grid {name} with {len(grid)} bins, {len(set(bins))} occupied")
    return adata

def _boxplot_upper_whisker(distances):
    q1, q3 = np.percentile(distances, [25, 75])
    return q3 + 1.5 * (q3 - q1)

def _store_network(adata, name, distances, method, directed, params):
    distances = sparse.csr_matrix(distances)
    distances.eliminate_zeros()
    connectivities = distances.copy()
    connectivities.data = 1.0 / (1.0 + connectivities.data)

    adata.obsp[f"{name}_connectivities"] = connectivities
    adata.obsp[f"{name}_distances"] = distances
    networks = adata.uns.setdefault('spatial_networks', {})
    networks.pop(name, None)
    networks[name] = {
        'method': method,
        'directed': bool(directed),
        'connectivities_key': f"{name}_connectivities",
        'distances_key': f"{name}_distances",
        'params': {k: v for k, v in params.items() if v is not None},
    }
    n_edges = distances.nnz if directed else distances.nnz // 2
    logger.info(f"Spatial network {name} created with {n_edges} edges")

def _knn_distances(coords, k, maximum_distance=None, chunk_size=1024):
    """
    Directed kNN distance matrix

    Every node gets up to k out-edges. Equidistant candidates are taken in
    positional order of adata.obs_names, not in sorted ID order, so
    reordering the observations can change which tied neighbor is kept.
    """
    n = coords.shape[0]
    rows, cols, vals = [], [], []
    for start in range(0, n, chunk_size):
        stop = min(start + chunk_size, n)
        d = cdist(coords[start:stop], coords)
        idx = np.arange(start, stop)
        d[idx - start, idx] = np.inf
        order = np.argsort(d, axis=1, kind='stable')[:, :k]
        for local, i in enumerate(idx):
            neighbors = order[local]
            dist = d[local, neighbors]
            if maximum_distance is not None:
                neighbors = neighbors[dist <= maximum_distance]
                dist = dist[dist <= maximum_distance]
            rows.extend([i] * len(neighbors))
            cols.extend(neighbors.tolist())
            vals.extend(dist.tolist())
    # zero distances between coincident points would vanish from a sparse matrix
    vals = np.maximum(np.asarray(vals, dtype=float), np.finfo(float).tiny)
    return sparse.csr_matrix((vals, (rows, cols)), shape=(n, n))

def _delaunay_distances(adata, maximum_distance, minimum_k, name):
    sq.gr.spatial_neighbors(adata, coord_type='generic', delaunay=True, spatial_key='spatial',
                            key_added=f"_{name}_tmp")
    distances = adata.obsp.pop(f"_{name}_tmp_distances").tocsr()
    adata.obsp.pop(f"_{name}_tmp_connectivities")
    adata.uns.pop(f"_{name}_tmp_neighbors", None)

    if distances.nnz == 0:
        return distances, None
    if maximum_distance == 'auto':
        maximum_distance = float(_boxplot_upper_whisker(distances.data))
    if maximum_distance is not None:
        coo = distances.tocoo()
        keep = coo.data <= maximum_distance
        if minimum_k > 0:
            # restore the closest edges of nodes left with fewer than minimum_k
            kept_degree = np.bincount(coo.row[keep], minlength=adata.n_obs)
            for i in np.where(kept_degree < minimum_k)[0]:
                edges = np.where(coo.row == i)[0]
                closest = edges[np.argsort(coo.data[edges], kind='stable')][:minimum_k]
                keep[closest] = True
            # keep the graph symmetric
            kept_pairs = set(zip(coo.row[keep].tolist(), coo.col[keep].tolist()))
            keep = np.array([(r, c) in kept_pairs or (c, r) in kept_pairs for r, c in zip(coo.row, coo.col)])
        distances = sparse.csr_matrix((coo.data[keep], (coo.row[keep], coo.col[keep])), shape=distances.shape)
        logger.info(f"Removed {int((~keep).sum() // 2)} Delaunay edges longer than {maximum_distance:.2f}")
    return distances, maximum_distance

def create_spatial_network(adata, method='delaunay', name=None, k=4, maximum_distance=None,
                           minimum_k=0, delaunay_max_distance='auto', chunk_size=1024):
    """
    Build a spatial adjacency network over the observations

    Parameters
    ----------
    adata : AnnData
        AnnData object with spatial coordinates
    method : str, optional
        'delaunay' (undirected, built by squidpy) or 'knn' (directed)
    name : str, optional
        Name of the network. Defaults to 'Delaunay_network' or 'kNN_network'
    k : int, optional
        Number of neighbors for the kNN network. Ties in distance are
        broken by the position of the observation in the object
    maximum_distance : float, optional
        Longest kNN edge to keep
    minimum_k : int, optional
        Minimum number of Delaunay neighbors kept per observation, even
        beyond `delaunay_max_distance`
    delaunay_max_distance : float, 'auto' or None, optional
        Longest Delaunay edge to keep. 'auto' uses the upper whisker
        (Q3 + 1.5 IQR) of all edge lengths; None keeps every edge
    chunk_size : int, optional
        Rows processed at once when computing kNN distances

    Returns
    -------
    adata : AnnData
        AnnData object with adata.obsp[f"{name}_connectivities"],
        adata.obsp[f"{name}_distances"] and the registry entry in
        adata.uns['spatial_networks'][name]
    """
    coords = _require_coordinates(adata)
    method = method.lower()

    if method == 'delaunay':
        name = name or 'Delaunay_network'
        if adata.n_obs < coords.shape[1] + 2:
            raise ConfigurationError(f"Delaunay triangulation needs at least {coords.shape[1] + 2} observations")
        logger.info(f"Building Delaunay spatial network {name}")
        distances, cutoff = _delaunay_distances(adata, delaunay_max_distance, minimum_k, name)
        _store_network(adata, name, distances, 'delaunay', False,
                       {'maximum_distance': cutoff, 'minimum_k': int(minimum_k)})
    elif method == 'knn':
        name = name or 'kNN_network'
        if k < 1:
            raise ConfigurationError(f"k must be at least 1, got {k}")
        if k > adata.n_obs - 1:
            logger.warning(f"Reducing k from {k} to {adata.n_obs - 1}")
            k = adata.n_obs - 1
        logger.info(f"Building kNN spatial network {name} with k={k}")
        distances = _knn_distances(coords, k, maximum_distance, chunk_size)
        _store_network(adata, name, distances, 'knn', True,
                       {'k': int(k), 'maximum_distance': maximum_distance})
    else:
        raise ValueError(f"Unsupported spatial network method: {method}")

    return adata

def get_spatial_network(adata, name=None, output='table'):
    """
    Return a spatial network as an edge table or as sparse matrices

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    name : str, optional
        Name of the network. The most recent one when None
    output : str, optional
        'table' for a DataFrame with columns from, to, distance, weight;
        'matrix' for a (connectivities, distances) tuple

    Returns
    -------
    pandas.DataFrame or tuple
    """
    name, entry = require_spatial_network(adata, name)
    conn = adata.obsp[entry['connectivities_key']]
    dist = adata.obsp[entry['distances_key']]
    if output == 'matrix':
        return conn, dist
    if output != 'table':
        raise ValueError(f"Unsupported output: {output}")

    coo = sparse.coo_matrix(dist)
    keep = np.ones(coo.nnz, dtype=bool) if entry['directed'] else coo.row < coo.col
    rows, cols = coo.row[keep], coo.col[keep]
    order = np.lexsort((cols, rows))
    rows, cols = rows[order], cols[order]
    table = pd.DataFrame({
        'from': adata.obs_names[rows].values,
        'to': adata.obs_names[cols].values,
        'from_idx': rows,
        'to_idx': cols,
        'distance': np.asarray(coo.data[keep][order], dtype=float),
        'weight': np.asarray(conn[rows, cols]).ravel(),
    })
    return table

def get_undirected_edges(adata, name=None):
    """Unique undirected edges (i < j) of a spatial network as two index arrays"""
    name, entry = require_spatial_network(adata, name)
    dist = sparse.coo_matrix(adata.obsp[entry['distances_key']])
    pairs = np.stack([np.minimum(dist.row, dist.col), np.maximum(dist.row, dist.col)], axis=1)
    pairs = np.unique(pairs[pairs[:, 0] != pairs[:, 1]], axis=0)
    return pairs[:, 0], pairs[:, 1]

def spatial_network_stats(adata, name=None):
    """
    Degree and distance summary of a spatial network

    Returns
    -------
    pandas.DataFrame
        One row per statistic
    """
    name, entry = require_spatial_network(adata, name)
    dist = adata.obsp[entry['distances_key']]
    degree = np.diff(dist.tocsr().indptr)
    lengths = dist.tocsr().data
    stats = {
        'nr_edges': int(dist.nnz if entry['directed'] else dist.nnz // 2),
        'mean_degree': float(degree.mean()),
        'min_degree': int(degree.min()),
        'max_degree': int(degree.max()),
        'isolated_nodes': int((degree == 0).sum()),
        'mean_distance': float(lengths.mean()) if len(lengths) else np.nan,
        'median_distance': float(np.median(lengths)) if len(lengths) else np.nan,
        'max_distance': float(lengths.max()) if len(lengths) else np.nan,
    }
    return pd.DataFrame({'network': name, 'statistic': list(stats.keys()), 'value': list(stats.values())})

def compute_neighbor_enrichment(adata, cluster_key, spatial_network_name=None, n_perms=1000, seed=1234, **kwargs):
    """
    Compute neighborhood enrichment z-scores between clusters with squidpy

    Parameters
    ----------
    adata : AnnData
        The AnnData object with a spatial network
    cluster_key : str
        Key in adata.obs for cluster assignments
    spatial_network_name : str, optional
        Registered spatial network to use
    n_perms : int, optional
        Number of permutations for significance testing
    seed : int, optional
        Random seed
    **kwargs
        Additional parameters for squidpy.gr.nhood_enrichment

    Returns
    -------
    adata : AnnData
        The AnnData object with adata.uns[f"{cluster_key}_nhood_enrichment"]
    """
    name, entry = require_spatial_network(adata, spatial_network_name)
    require_obs_column(adata, cluster_key)
    if not isinstance(adata.obs[cluster_key].dtype, pd.CategoricalDtype):
        adata.obs[cluster_key] = adata.obs[cluster_key].astype('category')
    logger.info(f"Computing neighborhood enrichment for clusters in {cluster_key} on {name}")
    sq.gr.nhood_enrichment(adata, cluster_key=cluster_key, connectivity_key=entry['connectivities_key'],
                           n_perms=n_perms, seed=seed, show_progress_bar=False, **kwargs)
    return adata
