import scanpy as sc
import anndata as ad
import numpy as np
import pandas as pd
import json
import logging
import datetime
from pathlib import Path

from giottoflow.utils.checks import RESULT_TABLE_KEYS, dense

logger = logging.getLogger('giottoflow.utils.io')

VALID_FORMATS = ['h5ad', 'csv']

def export_tables(adata, output_dir):
    """
    Write every result table stored on the AnnData object as CSV

    Tables under adata.uns[<kind>][<name>] are written to
    `<kind>__<name>.csv`, spatial correlations and HMRF summaries alongside.

    Returns
    -------
    dict
        Table name to file path
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    paths = {}
    for kind in RESULT_TABLE_KEYS:
        for name, table in adata.uns.get(kind, {}).items():
            if isinstance(table, pd.DataFrame):
                path = output_dir / f"{kind}__{name}.csv"
                table.to_csv(path, index=False)
                paths[f"{kind}__{name}"] = path

    cor = adata.uns.get('spatial_cor', {})
    for part in ('spat_cor', 'expr_cor'):
        if part in cor:
            path = output_dir / f"spatial_cor__{part}.csv"
            cor[part].to_csv(path)
            paths[f"spatial_cor__{part}"] = path
    if 'feat_clusters' in cor:
        path = output_dir / "spatial_cor__feat_clusters.csv"
        cor['feat_clusters'].to_csv(path, index=False)
        paths['spatial_cor__feat_clusters'] = path

    for name, summary in adata.uns.get('hmrf', {}).items():
        path = output_dir / f"hmrf__{name}.csv"
        pd.DataFrame({
            'column': list(summary['energies'].keys()),
            'energy': list(summary['energies'].values()),
            'iterations': [summary['iterations'][c] for c in summary['energies']],
        }).to_csv(path, index=False)
        paths[f"hmrf__{name}"] = path

    for name, entry in adata.uns.get('spatial_networks', {}).items():
        from giottoflow.spatial.neighbors import get_spatial_network

        path = output_dir / f"spatial_network__{name}.csv"
        get_spatial_network(adata, name).to_csv(path, index=False)
        paths[f"spatial_network__{name}"] = path

    logger.info(f"Exported {len(paths)} tables to {output_dir}")
    return paths

def _write_csv_layout(adata, csv_dir):
    csv_dir.mkdir(parents=True, exist_ok=True)
    expr_df = pd.DataFrame(dense(adata.layers['raw'] if 'raw' in adata.layers else adata.X),
                           index=adata.obs_names, columns=adata.var_names)
    expr_df.T.to_csv(csv_dir / "expression_matrix.csv")
    adata.obs.to_csv(csv_dir / "observation_metadata.csv")
    adata.var.to_csv(csv_dir / "variable_metadata.csv")
    if 'spatial' in adata.obsm:
        dims = list(adata.uns.get('spatial_dims', ['sdimx', 'sdimy', 'sdimz']))[:adata.obsm['spatial'].shape[1]]
        coords_df = pd.DataFrame(adata.obsm['spatial'], index=adata.obs_names, columns=dims)
        coords_df.index.name = 'cell_ID'
        coords_df.to_csv(csv_dir / "spatial_coordinates.csv")
    export_tables(adata, csv_dir / "tables")

    with open(csv_dir / "README.txt", 'w') as f:
        f.write("giottoflow analysis results\n")
        f.write(f"Generated on: {datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n\n")
        f.write("Files:\n")
        f.write("- expression_matrix.csv: raw expression matrix (features x observations)\n")
        f.write("- observation_metadata.csv: metadata for observations\n")
        f.write("- variable_metadata.csv: metadata for features\n")
        if 'spatial' in adata.obsm:
            f.write("- spatial_coordinates.csv: spatial coordinates of observations\n")
        f.write("- tables/: result tables\n")

def save_results(adata, output_dir, save_formats=('h5ad', 'csv'), compress=True, prefix='giottoflow_results'):
    """
    Save analysis results

    Parameters
    ----------
    adata : AnnData
        AnnData object with analysis results
    output_dir : str or Path
        Directory to save results
    save_formats : sequence, optional
        Formats to save. Options: 'h5ad', 'csv'
    compress : bool, optional
        Whether to gzip the h5ad file
    prefix : str, optional
        File name prefix

    Returns
    -------
    dict
        Dictionary with paths to saved files
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    for fmt in save_formats:
        if fmt not in VALID_FORMATS:
            logger.warning(f"Unsupported save format: {fmt}. Skipping.")
    save_formats = [fmt for fmt in save_formats if fmt in VALID_FORMATS]

    timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    saved_paths = {}
    for fmt in save_formats:
        if fmt == 'h5ad':
            file_path = output_dir / f"{prefix}_{timestamp}.h5ad"
            adata.write_h5ad(file_path, compression='gzip' if compress else None)
            saved_paths['h5ad'] = file_path
            logger.info(f"Saved AnnData object to {file_path}")
        elif fmt == 'csv':
            csv_dir = output_dir / f"{prefix}_csv_{timestamp}"
            _write_csv_layout(adata, csv_dir)
            saved_paths['csv'] = csv_dir
            logger.info(f"Saved CSV files to {csv_dir}")

    manifest_path = output_dir / f"{prefix}_manifest_{timestamp}.json"
    manifest = {
        'timestamp': timestamp,
        'formats': {fmt: str(path) for fmt, path in saved_paths.items()},
        'dataset_shape': list(adata.shape),
        'layers': list(adata.layers.keys()),
        'obs_columns': list(adata.obs.columns),
        'var_columns': list(adata.var.columns),
        'obsm_keys': list(adata.obsm.keys()),
        'obsp_keys': list(adata.obsp.keys()),
        'uns_keys': list(adata.uns.keys()),
        'spatial_networks': list(adata.uns.get('spatial_networks', {}).keys()),
        'stages': list(adata.uns.get('pipeline_log', {}).get('stages', [])),
    }
    with open(manifest_path, 'w') as f:
        json.dump(manifest, f, indent=2)
    saved_paths['manifest'] = manifest_path
    logger.info(f"Created manifest file at {manifest_path}")

    return saved_paths

def read_results(input_path, format=None):
    """
    Read analysis results written by save_results

    Parameters
    ----------
    input_path : str or Path
        h5ad file or CSV directory
    format : str, optional
        'h5ad' or 'csv'. Inferred from the path when None

    Returns
    -------
    adata : AnnData
        AnnData object with loaded results
    """
    input_path = Path(input_path)
    if not input_path.exists():
        raise FileNotFoundError(f"Input path not found: {input_path}")
    if format is None:
        format = 'csv' if input_path.is_dir() else input_path.suffix.lower().lstrip('.')

    if format == 'h5ad':
        adata = sc.read_h5ad(input_path)
    elif format == 'csv':
        expr_df = pd.read_csv(input_path / "expression_matrix.csv", index_col=0).T
        obs = pd.read_csv(input_path / "observation_metadata.csv", index_col=0)
        var = pd.read_csv(input_path / "variable_metadata.csv", index_col=0)
        obs.index = obs.index.astype(str)
        var.index = var.index.astype(str)
        expr_df.index = expr_df.index.astype(str)
        adata = ad.AnnData(X=expr_df.loc[obs.index, var.index].values.astype(np.float32), obs=obs, var=var)
        adata.layers['raw'] = adata.X.copy()
        coords_path = input_path / "spatial_coordinates.csv"
        if coords_path.exists():
            coords = pd.read_csv(coords_path, index_col=0)
            coords.index = coords.index.astype(str)
            adata.obsm['spatial'] = coords.loc[adata.obs_names].values.astype(float)
            adata.uns['spatial_dims'] = list(coords.columns)
    else:
        raise ValueError(f"Unsupported input format: {format}")

    logger.info(f"Read results with shape {adata.shape} from {input_path}")
    return adata
