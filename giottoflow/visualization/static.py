import scanpy as sc
import squidpy as sq
import numpy as np
import pandas as pd
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import seaborn as sns
import logging
from pathlib import Path

from giottoflow.config import create_instructions
from giottoflow.exceptions import ConfigurationError
from giottoflow.utils.checks import require_layer, require_obsm, require_spatial_network, dense

logger = logging.getLogger('giottoflow.visualization.static')

def _resolve_instructions(adata=None, instructions=None):
    if instructions is not None:
        return instructions
    if adata is not None and adata.uns.get('instructions', None) is not None:
        return adata.uns['instructions']
    return create_instructions()

def _figure_path(instructions, save_name):
    return Path(instructions['save_dir']) / f"{save_name}.{instructions['plot_format']}"

def _finalize(fig, instructions, save_name):
    """
    Save, show, return or close a figure as the instructions say

    Returns
    -------
    matplotlib.figure.Figure or None
        The figure when return_plot is set
    """
    if instructions['save_plot']:
        fig_path = _figure_path(instructions, save_name)
        fig_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(fig_path, dpi=int(instructions['dpi']), bbox_inches='tight')
        logger.info(f"Saved figure to {fig_path}")
    if instructions['show_plot']:
        plt.show()
    if instructions['return_plot']:
        return fig
    plt.close(fig)
    return None

def _figsize(instructions):
    return tuple(float(v) for v in instructions['figsize'])

def _scatter(ax, coords, values, title, point_size, cmap='viridis'):
    if isinstance(values, pd.Series) and isinstance(values.dtype, pd.CategoricalDtype):
        palette = sns.color_palette('tab20', n_colors=max(len(values.cat.categories), 1))
        for color, category in zip(palette, values.cat.categories):
            mask = (values == category).values
            ax.scatter(coords[mask, 0], coords[mask, 1], s=point_size, color=color, label=str(category))
        ax.legend(bbox_to_anchor=(1.02, 1), loc='upper left', fontsize=8, frameon=False, markerscale=2)
    else:
        points = ax.scatter(coords[:, 0], coords[:, 1], c=np.asarray(values, dtype=float), s=point_size, cmap=cmap)
        plt.colorbar(points, ax=ax, shrink=0.7)
    ax.set_title(title)
    ax.set_aspect('equal')
    ax.set_xticks([])
    ax.set_yticks([])

def spat_plot(adata, cell_color=None, point_size=None, instructions=None, save_name=None, **kwargs):
    """
    Plot observations at their spatial coordinates

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    cell_color : str, optional
        Observation column or feature to color by
    point_size : float, optional
        Marker size passed to squidpy
    instructions : dict, optional
        Plot instructions. Taken from adata.uns['instructions'] when None
    save_name : str, optional
        File name without extension
    **kwargs
        Additional parameters for squidpy.pl.spatial_scatter

    Returns
    -------
    matplotlib.figure.Figure or None
    """
    instructions = _resolve_instructions(adata, instructions)
    require_obsm(adata, 'spatial')
    fig, ax = plt.subplots(figsize=_figsize(instructions))
    sq.pl.spatial_scatter(adata, color=cell_color, shape=None, size=point_size, ax=ax, **kwargs)
    ax.set_title(cell_color or 'spatial')
    return _finalize(fig, instructions, save_name or f"spat_plot_{cell_color or 'locations'}")

def dim_plot(adata, dim_reduction='umap', cell_color=None, instructions=None, save_name=None, **kwargs):
    """
    Plot a 2-D embedding (umap, tsne or pca)

    Returns
    -------
    matplotlib.figure.Figure or None
    """
    instructions = _resolve_instructions(adata, instructions)
    require_obsm(adata, f"X_{dim_reduction}")
    fig, ax = plt.subplots(figsize=_figsize(instructions))
    sc.pl.embedding(adata, basis=dim_reduction, color=cell_color, ax=ax, show=False, **kwargs)
    return _finalize(fig, instructions, save_name or f"dim_plot_{dim_reduction}_{cell_color or 'cells'}")

def spat_dim_plot(adata, cell_color, dim_reduction='umap', point_size=None, instructions=None, save_name=None):
    """
    Embedding and spatial plot side by side, colored the same way

    Returns
    -------
    matplotlib.figure.Figure or None
    """
    instructions = _resolve_instructions(adata, instructions)
    require_obsm(adata, f"X_{dim_reduction}")
    coords = np.asarray(require_obsm(adata, 'spatial'), dtype=float)
    width, height = _figsize(instructions)
    fig, axes = plt.subplots(1, 2, figsize=(width * 2, height))
    sc.pl.embedding(adata, basis=dim_reduction, color=cell_color, ax=axes[0], show=False, legend_loc=None)
    values = adata.obs[cell_color] if cell_color in adata.obs else \
        dense(adata[:, cell_color].X).ravel()
    _scatter(axes[1], coords, values, cell_color, point_size or 10)
    plt.tight_layout()
    return _finalize(fig, instructions, save_name or f"spat_dim_plot_{cell_color}")

def spat_feat_plot(adata, feats, expression_layer='normalized', point_size=10, ncols=4, instructions=None,
                   save_name=None):
    """
    Spatial expression of one or more features

    Returns
    -------
    matplotlib.figure.Figure or None
    """
    instructions = _resolve_instructions(adata, instructions)
    coords = np.asarray(require_obsm(adata, 'spatial'), dtype=float)
    feats = [f for f in feats if f in adata.var_names]
    if not feats:
        raise ConfigurationError("None of the features to plot are present")
    X = require_layer(adata, expression_layer)
    ncols = min(ncols, len(feats))
    nrows = int(np.ceil(len(feats) / ncols))
    width, height = _figsize(instructions)
    fig, axes = plt.subplots(nrows, ncols, figsize=(width / 2 * ncols, height / 2 * nrows), squeeze=False)
    for ax, feat in zip(axes.ravel(), feats):
        values = dense(X[:, adata.var_names.get_loc(feat)]).ravel()
        _scatter(ax, coords, values, feat, point_size)
    for ax in axes.ravel()[len(feats):]:
        ax.axis('off')
    plt.tight_layout()
    return _finalize(fig, instructions, save_name or f"spat_feat_plot_{feats[0]}")

def plot_spatial_network(adata, spatial_network_name=None, cell_color=None, point_size=None,
                         instructions=None, save_name=None, **kwargs):
    """
    Draw the edges of a spatial network over the observations

    Returns
    -------
    matplotlib.figure.Figure or None
    """
    instructions = _resolve_instructions(adata, instructions)
    name, entry = require_spatial_network(adata, spatial_network_name)
    fig, ax = plt.subplots(figsize=_figsize(instructions))
    sq.pl.spatial_scatter(adata, color=cell_color, shape=None, size=point_size,
                          connectivity_key=entry['connectivities_key'], ax=ax, **kwargs)
    ax.set_title(name)
    return _finalize(fig, instructions, save_name or f"spatial_network_{name}")

def plot_marker_heatmap(adata, table, cluster_column, n=5, expression_layer='normalized', instructions=None,
                        save_name=None):
    """
    Scaled mean expression of the top markers of every cluster

    Returns
    -------
    matplotlib.figure.Figure or None
    """
    from giottoflow.analysis.markers import get_top_markers

    instructions = _resolve_instructions(adata, instructions)
    top = get_top_markers(table, n=n)
    feats = list(dict.fromkeys(f for cluster in top for f in top[cluster]))
    X = dense(require_layer(adata, expression_layer)[:, [adata.var_names.get_loc(f) for f in feats]])
    means = pd.DataFrame(X, columns=feats).groupby(adata.obs[cluster_column].astype(str).values).mean()
    means = means.loc[sorted(means.index, key=lambda c: (len(c), c))]
    zscores = (means - means.mean()) / means.std(ddof=0).replace(0, 1)

    width, height = _figsize(instructions)
    fig, ax = plt.subplots(figsize=(max(width, len(feats) * 0.3), height))
    sns.heatmap(zscores, cmap='RdBu_r', center=0, ax=ax, cbar_kws={'label': 'z-score'})
    ax.set_xlabel('Feature')
    ax.set_ylabel(cluster_column)
    plt.tight_layout()
    return _finalize(fig, instructions, save_name or f"marker_heatmap_{cluster_column}")

def plot_cor_heatmap(adata, key='spatial_cor', instructions=None, save_name=None):
    """
    Spatial correlation heatmap with features ordered by module

    Returns
    -------
    matplotlib.figure.Figure or None
    """
    instructions = _resolve_instructions(adata, instructions)
    if key not in adata.uns or 'spat_cor' not in adata.uns[key]:
        raise ConfigurationError(f"Spatial correlation {key} not found. Run detect_spatial_cor_feats first.")
    cor = adata.uns[key]['spat_cor']
    if 'feat_clusters' in adata.uns[key]:
        order = adata.uns[key]['feat_clusters'].sort_values(['clus', 'feat_ID'])['feat_ID'].tolist()
        cor = cor.loc[order, order]
    fig, ax = plt.subplots(figsize=_figsize(instructions))
    sns.heatmap(cor, cmap='RdBu_r', vmin=-1, vmax=1, xticklabels=False, yticklabels=False, ax=ax)
    ax.set_title(f"Spatial co-expression ({cor.shape[0]} features)")
    return _finalize(fig, instructions, save_name or f"cor_heatmap_{key}")

def plot_metafeats(adata, name='cluster_metagene', modules=None, point_size=10, ncols=4, instructions=None,
                   save_name=None):
    """
    Spatial plot of metafeature scores

    Returns
    -------
    matplotlib.figure.Figure or None
    """
    instructions = _resolve_instructions(adata, instructions)
    scores = require_obsm(adata, name)
    coords = np.asarray(require_obsm(adata, 'spatial'), dtype=float)
    modules = list(scores.columns) if modules is None else [str(m) for m in modules]
    ncols = min(ncols, len(modules))
    nrows = int(np.ceil(len(modules) / ncols))
    width, height = _figsize(instructions)
    fig, axes = plt.subplots(nrows, ncols, figsize=(width / 2 * ncols, height / 2 * nrows), squeeze=False)
    for ax, module in zip(axes.ravel(), modules):
        _scatter(ax, coords, scores[module].values, f"module {module}", point_size, cmap='magma')
    for ax in axes.ravel()[len(modules):]:
        ax.axis('off')
    plt.tight_layout()
    return _finalize(fig, instructions, save_name or f"metafeats_{name}")

def cell_proximity_barplot(table, min_orig_ints=5, min_sim_ints=5, p_val=0.05, instructions=None,
                           save_name='cell_proximity_barplot'):
    """
    Enrichment of every cell type pair, significant pairs highlighted

    Returns
    -------
    matplotlib.figure.Figure or None
    """
    instructions = _resolve_instructions(instructions=instructions)
    table = table[(table['original'] >= min_orig_ints) | (table['simulations'] >= min_sim_ints)]
    table = table.sort_values('enrichm')
    significant = (table['p.adj_higher'] <= p_val) | (table['p.adj_lower'] <= p_val)
    colors = np.where(~significant, 'lightgrey', np.where(table['enrichm'] > 0, 'firebrick', 'steelblue'))

    width, height = _figsize(instructions)
    fig, ax = plt.subplots(figsize=(width, max(height, len(table) * 0.25)))
    ax.barh(table['unified_int'], table['enrichm'], color=colors)
    ax.axvline(0, color='black', linewidth=0.8)
    ax.set_xlabel('log2 enrichment')
    ax.set_title('Cell proximity enrichment')
    plt.tight_layout()
    return _finalize(fig, instructions, save_name)

def plot_interaction_changed_feats(table, n=20, instructions=None, save_name='interaction_changed_feats'):
    """
    Largest fold changes of interaction changed features

    Returns
    -------
    matplotlib.figure.Figure or None
    """
    instructions = _resolve_instructions(instructions=instructions)
    if len(table) == 0:
        raise ConfigurationError("No interaction changed features to plot")
    top = table.reindex(table['log2fc'].abs().sort_values(ascending=False).index).head(n)
    labels = top['feats'] + ' (' + top['unif_int'] + ')'

    width, height = _figsize(instructions)
    fig, ax = plt.subplots(figsize=(width, max(height, len(top) * 0.3)))
    sns.barplot(x=top['log2fc'].values, y=labels.values, hue=top['cell_type'].values, dodge=False, ax=ax)
    ax.axvline(0, color='black', linewidth=0.8)
    ax.set_xlabel('log2 fold change')
    plt.tight_layout()
    return _finalize(fig, instructions, save_name)

def plot_cellcom_comparison(combined, n=50, instructions=None, save_name='cellcom_comparison'):
    """
    Spatial against expression-only communication scores

    Returns
    -------
    matplotlib.figure.Figure or None
    """
    instructions = _resolve_instructions(instructions=instructions)
    fig, ax = plt.subplots(figsize=_figsize(instructions))
    sns.scatterplot(data=combined, x='log2fc_expr', y='log2fc_spat', hue='p.adj_spat', size='lig_nr_spat',
                    palette='viridis_r', ax=ax)
    for _, row in combined.head(min(n, 10)).iterrows():
        ax.annotate(f"{row['LR_comb']} {row['LR_cell_comb']}", (row['log2fc_expr'], row['log2fc_spat']),
                    fontsize=6)
    limit = np.nanmax(np.abs(combined[['log2fc_expr', 'log2fc_spat']].values)) if len(combined) else 1
    ax.plot([-limit, limit], [-limit, limit], linestyle='--', color='grey', linewidth=0.8)
    ax.set_xlabel('log2fc expression only')
    ax.set_ylabel('log2fc spatial')
    return _finalize(fig, instructions, save_name)

def generate_static_figures(adata, output_dir=None, cluster_column=None, annotation_column=None):
    """
    Draw the standard figures of every result present on the AnnData object

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    output_dir : str or Path, optional
        Directory for the figures. Defaults to the save_dir instruction
    cluster_column : str, optional
        Cluster column used for embedding and marker plots
    annotation_column : str, optional
        Cell type column used for spatial plots

    Returns
    -------
    dict
        Figure name to file path
    """
    plt.ioff()
    instructions = dict(_resolve_instructions(adata))
    if output_dir is not None:
        instructions['save_dir'] = str(output_dir)
    instructions.update(save_plot=True, show_plot=False, return_plot=False)
    logger.info(f"Saving figures to {Path(instructions['save_dir']).absolute()}")

    jobs = [('spat_plot', lambda: spat_plot(adata, annotation_column or cluster_column,
                                            instructions=instructions, save_name='spat_plot'))]
    if 'X_umap' in adata.obsm and cluster_column is not None:
        jobs.append(('dim_plot', lambda: dim_plot(adata, 'umap', cluster_column, instructions=instructions,
                                                  save_name='dim_plot')))
        jobs.append(('spat_dim_plot', lambda: spat_dim_plot(adata, cluster_column, instructions=instructions,
                                                            save_name='spat_dim_plot')))
    for name in adata.uns.get('spatial_networks', {}):
        jobs.append((f"spatial_network_{name}", lambda name=name: plot_spatial_network(
            adata, name, instructions=instructions, save_name=f"spatial_network_{name}")))
    for key, table in adata.uns.get('markers', {}).items():
        if cluster_column is not None:
            jobs.append((f"marker_heatmap_{key}", lambda key=key, table=table: plot_marker_heatmap(
                adata, table, cluster_column, instructions=instructions, save_name=f"marker_heatmap_{key}")))
    for key, table in adata.uns.get('spatial_genes', {}).items():
        jobs.append((f"spatial_genes_{key}", lambda key=key, table=table: spat_feat_plot(
            adata, table['feats'].head(4).tolist(), instructions=instructions, save_name=f"spatial_genes_{key}")))
    if 'spatial_cor' in adata.uns:
        jobs.append(('cor_heatmap', lambda: plot_cor_heatmap(adata, instructions=instructions,
                                                             save_name='cor_heatmap')))
    if 'cluster_metagene' in adata.obsm:
        jobs.append(('metafeats', lambda: plot_metafeats(adata, instructions=instructions, save_name='metafeats')))
    for key in adata.uns.get('hmrf', {}):
        for column in adata.uns['hmrf'][key]['energies']:
            jobs.append((column, lambda column=column: spat_plot(adata, column, instructions=instructions,
                                                                 save_name=column)))
    for key, table in adata.uns.get('cell_proximity', {}).items():
        jobs.append((f"cell_proximity_{key}", lambda key=key, table=table: cell_proximity_barplot(
            table, instructions=instructions, save_name=f"cell_proximity_{key}")))
    for key, table in adata.uns.get('interaction_changed_feats', {}).items():
        if len(table):
            jobs.append((f"icf_{key}", lambda key=key, table=table: plot_interaction_changed_feats(
                table, instructions=instructions, save_name=f"icf_{key}")))
    if 'combined' in adata.uns.get('cellcom', {}) and len(adata.uns['cellcom']['combined']):
        jobs.append(('cellcom_comparison', lambda: plot_cellcom_comparison(
            adata.uns['cellcom']['combined'], instructions=instructions, save_name='cellcom_comparison')))

    figure_paths = {}
    for name, job in jobs:
        try:
            job()
            figure_paths[name] = _figure_path(instructions, name)
        except Exception as e:
            logger.error(f"Error generating figure {name}: {str(e)}")
    logger.info(f"Generated {len(figure_paths)} of {len(jobs)} figures")
    return figure_paths
