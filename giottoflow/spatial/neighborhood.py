import numpy as np
import pandas as pd
import logging
from scipy import sparse, stats
from statsmodels.stats.multitest import multipletests

from giottoflow.exceptions import ConfigurationError
from giottoflow.utils.checks import require_layer, require_obs_column, require_spatial_network, dense
from giottoflow.utils.parallel import run_permutations
from giottoflow.spatial.neighbors import get_undirected_edges

logger = logging.getLogger('giottoflow.spatial.neighborhood')

def _encode_labels(adata, cluster_column):
    labels = require_obs_column(adata, cluster_column).astype(str).values
    types = sorted(set(labels))
    codes = pd.Categorical(labels, categories=types).codes.astype(np.int64)
    return types, codes

def _symmetric_adjacency(adata, name):
    conn = adata.obsp[f"{name}_connectivities"]
    adjacency = (conn + conn.T).tocsr()
    adjacency.data[:] = 1
    adjacency.eliminate_zeros()
    return adjacency

def _pair_counts(codes, src, dst, n_types):
    a = np.minimum(codes[src], codes[dst])
    b = np.maximum(codes[src], codes[dst])
    return np.bincount(a * n_types + b, minlength=n_types * n_types)

def cell_proximity_enrichment(adata, cluster_column, spatial_network_name=None, n_perms=1000,
                              adjust_method='fdr_bh', seed=1234, n_jobs=1):
    """
    Enrichment or depletion of contacts between cell types

    Every undirected edge of the spatial network is counted for the unordered
    pair of types at its ends ("A--B"). The observed counts are compared with
    counts after shuffling the labels over the observations.

    Parameters
    ----------
    adata : AnnData
        The AnnData object with a spatial network
    cluster_column : str
        Observation column with the cell types
    spatial_network_name : str, optional
        Registered spatial network. The most recent one when None
    n_perms : int, optional
        Number of label permutations
    adjust_method : str, optional
        Multiple testing correction passed to statsmodels
    seed : int, optional
        Random seed
    n_jobs : int, optional
        Number of threads for the permutations

    Returns
    -------
    pandas.DataFrame
        Columns unified_int, type_int, original, simulations, enrichm,
        p_higher_orig, p_lower_orig, p.adj_higher, p.adj_lower, PI_value,
        int_ranking; also stored in adata.uns['cell_proximity'][cluster_column]
    """
    name, _ = require_spatial_network(adata, spatial_network_name)
    types, codes = _encode_labels(adata, cluster_column)
    src, dst = get_undirected_edges(adata, name)
    n_types = len(types)
    logger.info(f"Cell proximity enrichment of {n_types} types over {len(src)} edges of {name} with {n_perms} permutations")

    upper = np.triu_indices(n_types)
    pair_idx = upper[0] * n_types + upper[1]
    original = _pair_counts(codes, src, dst, n_types)[pair_idx]

    def _permute(rng):
        return _pair_counts(rng.permutation(codes), src, dst, n_types)[pair_idx]

    simulated = run_permutations(_permute, n_perms, seed=seed, n_jobs=n_jobs)
    sim_mean = simulated.mean(axis=0)

    p_higher = 1 - (original > simulated).sum(axis=0) / n_perms
    p_lower = 1 - (original < simulated).sum(axis=0) / n_perms
    padj_higher = multipletests(p_higher, method=adjust_method)[1]
    padj_lower = multipletests(p_lower, method=adjust_method)[1]
    enrichm = np.log2((original + 1) / (sim_mean + 1))
    pi_value = np.where(
        p_higher < p_lower,
        -np.log10(padj_higher + 1 / n_perms) * enrichm,
        -np.log10(padj_lower + 1 / n_perms) * enrichm,
    )

    table = pd.DataFrame({
        'unified_int': [f"{types[a]}--{types[b]}" for a, b in zip(*upper)],
        'type_int': ['homo' if a == b else 'hetero' for a, b in zip(*upper)],
        'original': original,
        'simulations': sim_mean,
        'enrichm': enrichm,
        'p_higher_orig': p_higher,
        'p_lower_orig': p_lower,
        'p.adj_higher': padj_higher,
        'p.adj_lower': padj_lower,
        'PI_value': pi_value,
    })
    table = table.sort_values(['PI_value', 'unified_int'], ascending=[False, True]).reset_index(drop=True)
    table['int_ranking'] = np.arange(1, len(table) + 1)

    adata.uns.setdefault('cell_proximity', {})[cluster_column] = table
    n_enriched = int(((table['p.adj_higher'] < 0.05) & (table['enrichm'] > 0)).sum())
    logger.info(f"{n_enriched} of {len(table)} type pairs significantly enriched")
    return table

def find_interaction_changed_feats(adata, cluster_column, spatial_network_name=None, method='t_test',
                                   min_cells=4, expression_layer='normalized', adjust_method='fdr_bh',
                                   selected_feats=None, diff_pseudocount=0.1):
    """
    Features that change in a cell type when it touches another cell type

    For each cell type A and each type B found next to it, the cells of A
    with at least one neighbor of type B are compared with the other cells
    of A.

    Parameters
    ----------
    adata : AnnData
        The AnnData object with a spatial network
    cluster_column : str
        Observation column with the cell types
    spatial_network_name : str, optional
        Registered spatial network
    method : str, optional
        't_test' (Welch) or 'wilcox' (Mann-Whitney U)
    min_cells : int, optional
        Minimum number of cells in both compared groups
    expression_layer : str, optional
        Layer with normalized values
    adjust_method : str, optional
        Multiple testing correction passed to statsmodels
    selected_feats : list, optional
        Features to test. All features when None
    diff_pseudocount : float, optional
        Pseudocount of the log2 fold change

    Returns
    -------
    pandas.DataFrame
        Columns feats, sel, other, log2fc, diff, p.value, p.adj, cell_type,
        int_cell_type, nr_select, nr_other, unif_int; also stored in
        adata.uns['interaction_changed_feats'][cluster_column]
    """
    if method not in ('t_test', 'wilcox'):
        raise ValueError(f"Unsupported test: {method}. Options: 't_test', 'wilcox'")
    name, _ = require_spatial_network(adata, spatial_network_name)
    types, codes = _encode_labels(adata, cluster_column)
    X = dense(require_layer(adata, expression_layer))
    feats = adata.var_names
    if selected_feats is not None:
        mask = adata.var_names.isin(list(selected_feats))
        if mask.sum() == 0:
            raise ConfigurationError("None of the selected features are present")
        X, feats = X[:, mask], adata.var_names[mask]

    adjacency = _symmetric_adjacency(adata, name)
    onehot = sparse.csr_matrix((np.ones(len(codes)), (np.arange(len(codes)), codes)),
                               shape=(len(codes), len(types)))
    touching = (adjacency @ onehot).toarray() > 0
    logger.info(f"Testing {len(feats)} features for interaction changes with {method}")

    tables = []
    for a, cell_type in enumerate(types):
        in_type = codes == a
        for b, int_type in enumerate(types):
            sel = in_type & touching[:, b]
            other = in_type & ~touching[:, b]
            if sel.sum() < min_cells or other.sum() < min_cells:
                continue
            Xs, Xo = X[sel], X[other]
            with np.errstate(invalid='ignore', divide='ignore'):
                if method == 't_test':
                    pvalues = stats.ttest_ind(Xs, Xo, axis=0, equal_var=False).pvalue
                else:
                    pvalues = stats.mannwhitneyu(Xs, Xo, axis=0, alternative='two-sided').pvalue
            sel_mean, other_mean = Xs.mean(axis=0), Xo.mean(axis=0)
            tables.append(pd.DataFrame({
                'feats': feats.values,
                'sel': sel_mean,
                'other': other_mean,
                'log2fc': np.log2((sel_mean + diff_pseudocount) / (other_mean + diff_pseudocount)),
                'diff': sel_mean - other_mean,
                'p.value': np.nan_to_num(pvalues, nan=1.0),
                'cell_type': cell_type,
                'int_cell_type': int_type,
                'nr_select': int(sel.sum()),
                'nr_other': int(other.sum()),
                'unif_int': f"{cell_type}--{int_type}",
            }))

    columns = ['feats', 'sel', 'other', 'log2fc', 'diff', 'p.value', 'p.adj', 'cell_type',
               'int_cell_type', 'nr_select', 'nr_other', 'unif_int']
    if tables:
        table = pd.concat(tables, ignore_index=True)
        table['p.adj'] = multipletests(table['p.value'].values, method=adjust_method)[1]
        table = table[columns].sort_values(['p.adj', 'feats', 'unif_int']).reset_index(drop=True)
    else:
        logger.warning(f"No cell type pair has {min_cells} cells on both sides of the comparison")
        table = pd.DataFrame(columns=columns)

    adata.uns.setdefault('interaction_changed_feats', {})[cluster_column] = table
    logger.info(f"Interaction changed features: {table['unif_int'].nunique()} type pairs tested")
    return table

def filter_interaction_changed_feats(table, min_cells=4, min_fdr=0.1, min_spat_diff=0.2,
                                     min_log2_fc=0.2, direction='both'):
    """
    Keep significant and large interaction changes

    Parameters
    ----------
    table : pandas.DataFrame
        Output of find_interaction_changed_feats
    direction : str, optional
        'both', 'up' or 'down'

    Returns
    -------
    pandas.DataFrame
        Filtered table
    """
    keep = (
        (table['nr_select'] >= min_cells)
        & (table['p.adj'] <= min_fdr)
        & (table['diff'].abs() >= min_spat_diff)
        & (table['log2fc'].abs() >= min_log2_fc)
    )
    if direction == 'up':
        keep &= table['log2fc'] > 0
    elif direction == 'down':
        keep &= table['log2fc'] < 0
    elif direction != 'both':
        raise ValueError(f"Unsupported direction: {direction}")
    return table[keep].reset_index(drop=True)

def cell_neighbor_composition(adata, cluster_column, spatial_network_name=None, key_added=None,
                              normalize=False):
    """
    Count the neighbors of each type around every observation

    Returns
    -------
    adata : AnnData
        The AnnData object with a DataFrame (observations x types) in
        adata.obsm[key_added]
    """
    name, entry = require_spatial_network(adata, spatial_network_name)
    types, codes = _encode_labels(adata, cluster_column)
    if entry.get('directed', False):
        adjacency = adata.obsp[f"{name}_connectivities"].copy().tocsr()
        adjacency.data[:] = 1
    else:
        adjacency = _symmetric_adjacency(adata, name)
    onehot = sparse.csr_matrix((np.ones(len(codes)), (np.arange(len(codes)), codes)),
                               shape=(len(codes), len(types)))
    counts = (adjacency @ onehot).toarray()
    if normalize:
        totals = counts.sum(axis=1, keepdims=True)
        counts = np.divide(counts, totals, out=np.zeros_like(counts), where=totals > 0)

    key_added = key_added or f"{cluster_column}_neighbors"
    adata.obsm[key_added] = pd.DataFrame(counts, index=adata.obs_names, columns=types)
    logger.info(f"Neighbor composition of {len(types)} types stored in adata.obsm['{key_added}']")
    return adata
