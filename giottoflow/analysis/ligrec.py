import numpy as np
import pandas as pd
import logging
from pathlib import Path
from scipy import sparse
from statsmodels.stats.multitest import multipletests

from giottoflow.exceptions import ConfigurationError
from giottoflow.utils.checks import require_layer, require_obs_column, require_spatial_network, dense
from giottoflow.utils.parallel import run_permutations

logger = logging.getLogger('giottoflow.analysis.ligrec')

DATA_DIR = Path(__file__).resolve().parent.parent / 'data_files'

CELLCOM_COLUMNS = ['LR_comb', 'lig_cell_type', 'lig_expr', 'ligand', 'rec_cell_type', 'rec_expr', 'receptor',
                   'LR_expr', 'lig_nr', 'rec_nr', 'rand_expr', 'av_diff', 'log2fc', 'pvalue',
                   'LR_cell_comb', 'p.adj', 'PI']

def load_lr_pairs(path=None, species='mouse', database=None):
    """
    Load a ligand-receptor reference table

    Parameters
    ----------
    path : str, optional
        Delimited file with 'ligand' and 'receptor' columns (otherwise the
        first two columns are used). The bundled table is used when None
    species : str, optional
        'mouse' or 'human', for the bundled table
    database : str, optional
        Keep only pairs of this source database ('CellPhoneDB', 'CellChat')
        of the bundled table

    Returns
    -------
    pandas.DataFrame
        Columns ligand and receptor, one row per unique pair
    """
    if path is None:
        path = DATA_DIR / f"lr_pairs_{species}.tsv"
        if not path.exists():
            raise ConfigurationError(f"No bundled ligand-receptor table for species {species}. Options: mouse, human")
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Ligand-receptor table not found: {path}")

    table = pd.read_csv(path, sep=None, engine='python')
    columns = {c.lower(): c for c in table.columns}
    if 'ligand' in columns and 'receptor' in columns:
        table = table.rename(columns={columns['ligand']: 'ligand', columns['receptor']: 'receptor'})
    elif table.shape[1] >= 2:
        table = table.rename(columns={table.columns[0]: 'ligand', table.columns[1]: 'receptor'})
    else:
        raise ValueError(f"Ligand-receptor table {path} needs at least two columns")
    if database is not None and 'database' in table:
        table = table[table['database'] == database]

    table = table[['ligand', 'receptor']].astype(str).drop_duplicates().reset_index(drop=True)
    logger.info(f"Loaded {len(table)} ligand-receptor pairs from {path}")
    return table

def filter_lr_pairs(adata, ligands, receptors):
    """
    Drop ligand-receptor pairs with a feature absent from the data

    Returns
    -------
    tuple
        (ligands, receptors) lists of the kept pairs
    """
    ligands, receptors = list(ligands), list(receptors)
    if len(ligands) != len(receptors):
        raise ConfigurationError(f"{len(ligands)} ligands given for {len(receptors)} receptors")
    present = set(adata.var_names)
    kept = [(lig, rec) for lig, rec in zip(ligands, receptors) if lig in present and rec in present]
    kept = list(dict.fromkeys(kept))
    if len(kept) < len(ligands):
        logger.info(f"Dropped {len(ligands) - len(kept)} ligand-receptor pairs with features absent from the data")
    if not kept:
        logger.error("No valid ligand-receptor pairs found in the dataset")
        raise ConfigurationError("No valid ligand-receptor pairs found in the dataset")
    return [lig for lig, _ in kept], [rec for _, rec in kept]

def _prepare(adata, cluster_column, ligands, receptors, expression_layer):
    ligands, receptors = filter_lr_pairs(adata, ligands, receptors)
    labels = require_obs_column(adata, cluster_column).astype(str).values
    types = sorted(set(labels))
    codes = pd.Categorical(labels, categories=types).codes.astype(np.int64)
    feats = list(dict.fromkeys(ligands + receptors))
    X = dense(require_layer(adata, expression_layer)[:, [adata.var_names.get_loc(f) for f in feats]])
    position = {f: i for i, f in enumerate(feats)}
    lig_idx = np.array([position[f] for f in ligands])
    rec_idx = np.array([position[f] for f in receptors])
    return ligands, receptors, types, codes, X, lig_idx, rec_idx

def _group_means(X, codes, n_types):
    onehot = sparse.csr_matrix((np.ones(len(codes)), (codes, np.arange(len(codes)))), shape=(n_types, len(codes)))
    sizes = np.asarray(onehot.sum(axis=1)).ravel()
    return (onehot @ X) / np.maximum(sizes, 1)[:, None]

def _score(lr_expr, simulated, n_perms, adjust_method):
    """Permutation statistics shared by the expression and spatial tests"""
    rand_expr = simulated.mean(axis=0)
    log2fc = np.log2((lr_expr + 1) / (rand_expr + 1))
    p_higher = 1 - (lr_expr > simulated).sum(axis=0) / n_perms
    p_lower = 1 - (lr_expr < simulated).sum(axis=0) / n_perms
    pvalue = np.where(log2fc > 0, p_higher, p_lower)
    # one correction over every pair and type combination
    padj = multipletests(pvalue.ravel(), method=adjust_method)[1].reshape(pvalue.shape)
    pi = log2fc * -np.log10(np.maximum(padj, 1 / (n_perms + 1)))
    return {
        'rand_expr': rand_expr,
        'av_diff': lr_expr - rand_expr,
        'log2fc': log2fc,
        'pvalue': pvalue,
        'p.adj': padj,
        'PI': pi,
    }

def _cellcom_table(ligands, receptors, src_types, dst_types, lig_expr, rec_expr, lig_nr, rec_nr, statistics):
    table = pd.DataFrame({
        'LR_comb': [f"{lig}-{rec}" for lig, rec in zip(ligands, receptors)],
        'lig_cell_type': src_types,
        'lig_expr': lig_expr,
        'ligand': ligands,
        'rec_cell_type': dst_types,
        'rec_expr': rec_expr,
        'receptor': receptors,
        'LR_expr': lig_expr + rec_expr,
        'lig_nr': lig_nr,
        'rec_nr': rec_nr,
        'LR_cell_comb': [f"{s}--{t}" for s, t in zip(src_types, dst_types)],
        **statistics,
    })
    table = table[CELLCOM_COLUMNS]
    return table.sort_values(['PI', 'LR_comb', 'LR_cell_comb'], ascending=[False, True, True]).reset_index(drop=True)

def expr_cell_cellcom(adata, cluster_column, ligands, receptors, n_perms=1000, expression_layer='normalized',
                      adjust_method='fdr_bh', seed=1234, n_jobs=1, key_added=None):
    """
    Cell-cell communication scores from expression only

    For every ligand-receptor pair and every ordered pair of cell types the
    mean ligand expression of the sending type and the mean receptor
    expression of the receiving type are summed (LR_expr) and compared
    with the same sum after shuffling the cell type labels.

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    cluster_column : str
        Observation column with the cell types
    ligands, receptors : list
        Paired ligand and receptor features
    n_perms : int, optional
        Number of label permutations
    expression_layer : str, optional
        Layer with normalized values
    adjust_method : str, optional
        Multiple testing correction passed to statsmodels
    seed : int, optional
        Random seed
    n_jobs : int, optional
        Number of threads for the permutations
    key_added : str, optional
        Name of the table. Defaults to f"expr_{cluster_column}"

    Returns
    -------
    pandas.DataFrame
        One row per pair and ordered type combination; also stored in
        adata.uns['cellcom'][key_added]
    """
    ligands, receptors, types, codes, X, lig_idx, rec_idx = _prepare(
        adata, cluster_column, ligands, receptors, expression_layer)
    n_types = len(types)
    logger.info(f"Expression based communication: {len(ligands)} pairs, {n_types} cell types, {n_perms} permutations")

    def _lr_expr(group_means):
        # pairs x source x target
        return group_means[:, lig_idx].T[:, :, None] + group_means[:, rec_idx].T[:, None, :]

    means = _group_means(X, codes, n_types)
    lr_expr = _lr_expr(means)
    simulated = run_permutations(lambda rng: _lr_expr(_group_means(X, rng.permutation(codes), n_types)),
                                 n_perms, seed=seed, n_jobs=n_jobs)
    statistics = {k: v.ravel() for k, v in _score(lr_expr, simulated, n_perms, adjust_method).items()}

    n_pairs = len(ligands)
    pair, src, dst = np.meshgrid(np.arange(n_pairs), np.arange(n_types), np.arange(n_types), indexing='ij')
    pair, src, dst = pair.ravel(), src.ravel(), dst.ravel()
    sizes = np.bincount(codes, minlength=n_types)
    table = _cellcom_table(
        [ligands[p] for p in pair], [receptors[p] for p in pair],
        [types[s] for s in src], [types[t] for t in dst],
        means[src, lig_idx[pair]], means[dst, rec_idx[pair]],
        sizes[src], sizes[dst], statistics,
    )

    key = key_added or f"expr_{cluster_column}"
    adata.uns.setdefault('cellcom', {})[key] = table
    logger.info(f"Stored {len(table)} expression communication scores in adata.uns['cellcom']['{key}']")
    return table

def _interacting_cells(adata, network_name, codes, n_types):
    conn = adata.obsp[f"{network_name}_connectivities"]
    adjacency = (conn + conn.T).tocsr()
    adjacency.data[:] = 1
    onehot = sparse.csr_matrix((np.ones(len(codes)), (np.arange(len(codes)), codes)), shape=(len(codes), n_types))
    return (adjacency @ onehot).toarray() > 0

def spat_cell_cellcom(adata, cluster_column, ligands, receptors, spatial_network_name=None, n_perms=1000,
                      min_observations=2, expression_layer='normalized', adjust_method='fdr_bh', seed=1234,
                      n_jobs=1, key_added=None):
    """
    Cell-cell communication scores restricted to cells in contact

    For an ordered type pair (A, B) only the cells of A touching a cell of
    B and the cells of B touching a cell of A are used. The random baseline
    draws subsets of the same sizes from all cells of A and of B.

    Parameters
    ----------
    adata : AnnData
        The AnnData object with a spatial network
    cluster_column : str
        Observation column with the cell types
    ligands, receptors : list
        Paired ligand and receptor features
    spatial_network_name : str, optional
        Registered spatial network. The most recent one when None
    n_perms : int, optional
        Number of random subsets
    min_observations : int, optional
        Type pairs with fewer interacting cells on either side are skipped
    expression_layer : str, optional
        Layer with normalized values
    adjust_method : str, optional
        Multiple testing correction passed to statsmodels
    seed : int, optional
        Random seed
    n_jobs : int, optional
        Number of threads for the permutations
    key_added : str, optional
        Name of the table. Defaults to f"spat_{cluster_column}"

    Returns
    -------
    pandas.DataFrame
        One row per pair and interacting ordered type combination; also
        stored in adata.uns['cellcom'][key_added]
    """
    network_name, _ = require_spatial_network(adata, spatial_network_name)
    ligands, receptors, types, codes, X, lig_idx, rec_idx = _prepare(
        adata, cluster_column, ligands, receptors, expression_layer)
    n_types = len(types)
    touching = _interacting_cells(adata, network_name, codes, n_types)

    combos = []
    for s in range(n_types):
        for t in range(n_types):
            sel_s = np.where((codes == s) & touching[:, t])[0]
            sel_t = np.where((codes == t) & touching[:, s])[0]
            if len(sel_s) >= min_observations and len(sel_t) >= min_observations:
                combos.append((s, t, sel_s, sel_t))
    if not combos:
        logger.error(f"No cell type pair has {min_observations} interacting cells")
        raise ConfigurationError(f"No cell type pair has {min_observations} interacting cells in {network_name}")
    logger.info(f"Spatial communication: {len(ligands)} pairs, {len(combos)} interacting type pairs, {n_perms} permutations")

    members = [np.where(codes == c)[0] for c in range(n_types)]
    lig_mean = np.array([X[sel_s][:, lig_idx].mean(axis=0) for _, _, sel_s, _ in combos])
    rec_mean = np.array([X[sel_t][:, rec_idx].mean(axis=0) for _, _, _, sel_t in combos])
    lr_expr = lig_mean + rec_mean

    def _random_subsets(rng):
        values = np.empty((len(combos), len(ligands)))
        for n, (s, t, sel_s, sel_t) in enumerate(combos):
            rand_s = rng.choice(members[s], size=len(sel_s), replace=False)
            rand_t = rng.choice(members[t], size=len(sel_t), replace=False)
            values[n] = X[rand_s][:, lig_idx].mean(axis=0) + X[rand_t][:, rec_idx].mean(axis=0)
        return values

    simulated = run_permutations(_random_subsets, n_perms, seed=seed, n_jobs=n_jobs)
    # combos x pairs -> pairs x combos, matching the row order below
    statistics = {k: v.T.ravel() for k, v in _score(lr_expr, simulated, n_perms, adjust_method).items()}

    pair = np.repeat(np.arange(len(ligands)), len(combos))
    combo = np.tile(np.arange(len(combos)), len(ligands))
    table = _cellcom_table(
        [ligands[p] for p in pair], [receptors[p] for p in pair],
        [types[combos[c][0]] for c in combo], [types[combos[c][1]] for c in combo],
        lig_mean[combo, pair], rec_mean[combo, pair],
        np.array([len(combos[c][2]) for c in combo]), np.array([len(combos[c][3]) for c in combo]),
        statistics,
    )

    key = key_added or f"spat_{cluster_column}"
    adata.uns.setdefault('cellcom', {})[key] = table
    logger.info(f"Stored {len(table)} spatial communication scores in adata.uns['cellcom']['{key}']")
    return table

def comb_cc_com(spatial_table, expression_table, min_lig_nr=3, min_rec_nr=3, min_padj_value=1,
                min_log2fc=0, min_av_diff=0):
    """
    Compare spatial and expression communication scores

    The spatial table is filtered, then joined with the expression table
    on the ligand-receptor and cell type combinations. Columns present in
    both tables get the suffixes '_spat' and '_expr'.

    Returns
    -------
    pandas.DataFrame
        Joined table with LR_spat_rank and LR_expr_rank (rank of PI within
        each input table, 1 = highest)
    """
    spatial_table = spatial_table.copy()
    expression_table = expression_table.copy()
    spatial_table['LR_spat_rank'] = spatial_table['PI'].rank(ascending=False, method='first').astype(int)
    expression_table['LR_expr_rank'] = expression_table['PI'].rank(ascending=False, method='first').astype(int)

    keep = (
        (spatial_table['lig_nr'] >= min_lig_nr)
        & (spatial_table['rec_nr'] >= min_rec_nr)
        & (spatial_table['p.adj'] <= min_padj_value)
        & (spatial_table['log2fc'].abs() >= min_log2fc)
        & (spatial_table['av_diff'].abs() >= min_av_diff)
    )
    spatial_table = spatial_table[keep]

    keys = ['LR_comb', 'LR_cell_comb', 'lig_cell_type', 'rec_cell_type', 'ligand', 'receptor']
    combined = spatial_table.merge(expression_table, on=keys, how='inner', suffixes=('_spat', '_expr'))
    combined['rank_diff'] = combined['LR_expr_rank'] - combined['LR_spat_rank']
    logger.info(f"Combined {len(combined)} communication scores")
    return combined.sort_values(['LR_spat_rank', 'LR_comb']).reset_index(drop=True)
