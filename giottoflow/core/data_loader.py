import anndata as ad
import pandas as pd
import numpy as np
import logging
from pathlib import Path
from scipy import sparse

from giottoflow.config import create_instructions
from giottoflow.exceptions import IntegrityError

logger = logging.getLogger('giottoflow.core.data_loader')

SPATIAL_DIMS = ['sdimx', 'sdimy', 'sdimz']

def load_data(input_path, format="giotto_text", **kwargs):
    """
    Load data from various formats into an AnnData object

    Parameters
    ----------
    input_path : str
        Path to the input data
    format : str
        Format of the input data
        Supported formats: giotto_text (directory holding an expression
        matrix and a locations file), anndata
    **kwargs : dict
        Additional arguments to pass to the reader function

    Returns
    -------
    adata : AnnData
        AnnData object containing the loaded data
    """
    logger.info(f"Loading data from {input_path} (format: {format})")

    if format == "giotto_text":
        path = Path(input_path)
        expression = kwargs.pop('expression_file', None)
        locations = kwargs.pop('locations_file', None)
        if expression is None:
            expression = _find_file(path, ['expression', 'counts', 'matrix'])
        if locations is None:
            locations = _find_file(path, ['locations', 'coordinates', 'spatial', 'coord'])
        adata = create_analysis_object(path / expression, path / locations, **kwargs)
    elif format == "anndata":
        adata = ad.read_h5ad(input_path)
        if 'spatial' not in adata.obsm:
            logger.warning("No spatial coordinates found in adata.obsm['spatial']")
    else:
        raise ValueError(f"Unsupported data format: {format}")

    return adata

def _find_file(directory, keywords):
    if not directory.is_dir():
        raise FileNotFoundError(f"Input directory not found: {directory}")
    for candidate in sorted(directory.iterdir()):
        if candidate.is_file() and any(k in candidate.name.lower() for k in keywords):
            return candidate.name
    raise FileNotFoundError(f"No file matching {keywords} found in {directory}")

def read_expression_matrix(path, sep=None, transpose=False):
    """
    Read a plain-text feature x observation expression matrix

    The first column holds the feature identifiers and the header the
    observation identifiers. Compressed files (.gz, .bz2, .zip, .xz) are
    decompressed on the fly.

    Parameters
    ----------
    path : str or Path
        Path to the matrix file
    sep : str, optional
        Column separator. If None, it is inferred
    transpose : bool, optional
        Set to True when the file holds observations as rows

    Returns
    -------
    pandas.DataFrame
        Features as rows, observations as columns
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Expression matrix file not found: {path}")

    if sep is None:
        expr_df = pd.read_csv(path, sep=None, engine='python', index_col=0, compression='infer')
    else:
        expr_df = pd.read_csv(path, sep=sep, index_col=0, compression='infer')
    if transpose:
        expr_df = expr_df.T

    non_numeric = [col for col in expr_df.columns if not pd.api.types.is_numeric_dtype(expr_df[col])]
    if non_numeric:
        raise ValueError(f"Expression matrix contains non-numeric columns: {non_numeric[:5]}")

    expr_df.index = expr_df.index.astype(str)
    expr_df.columns = expr_df.columns.astype(str)
    logger.info(f"Read expression matrix with {expr_df.shape[0]} features and {expr_df.shape[1]} observations")
    return expr_df

def read_spatial_locations(path, sep=None):
    """
    Read a plain-text spatial coordinate table

    One row per observation with 2 or 3 numeric columns. An optional leading
    non-numeric column holds the observation identifiers and an optional
    header row is skipped.

    Parameters
    ----------
    path : str or Path
        Path to the coordinates file
    sep : str, optional
        Column separator. If None, it is inferred

    Returns
    -------
    pandas.DataFrame
        Columns sdimx, sdimy (and sdimz), indexed by observation ID when the
        file provides them, otherwise by position
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Spatial locations file not found: {path}")

    if sep is None:
        raw = pd.read_csv(path, sep=None, engine='python', header=None, compression='infer', dtype=str)
    else:
        raw = pd.read_csv(path, sep=sep, header=None, compression='infer', dtype=str)

    return _parse_locations(raw)

def _parse_locations(raw):
    raw = raw.dropna(axis=1, how='all')
    numeric = raw.apply(pd.to_numeric, errors='coerce')
    if numeric.iloc[0].isna().all() or (numeric.shape[1] > 1 and numeric.iloc[0, 1:].isna().all()):
        raw = raw.iloc[1:].reset_index(drop=True)
        numeric = numeric.iloc[1:].reset_index(drop=True)

    ids = None
    if numeric.iloc[:, 0].isna().any():
        ids = raw.iloc[:, 0].astype(str).values
        numeric = numeric.iloc[:, 1:]

    if numeric.isna().any().any():
        raise ValueError("Spatial locations contain non-numeric values")
    if numeric.shape[1] not in (2, 3):
        raise ValueError(f"Spatial locations need 2 or 3 coordinate columns, found {numeric.shape[1]}")

    locs = pd.DataFrame(numeric.values.astype(float), columns=SPATIAL_DIMS[:numeric.shape[1]])
    if ids is not None:
        locs.index = pd.Index(ids, name='cell_ID')
    return locs

def _locations_from_frame(df):
    df = df.copy()
    if 'cell_ID' in df.columns:
        df = df.set_index('cell_ID')
    numeric_cols = [col for col in df.columns if pd.api.types.is_numeric_dtype(df[col])]
    if len(numeric_cols) not in (2, 3):
        raise ValueError(f"Spatial locations need 2 or 3 numeric columns, found {len(numeric_cols)}")
    return pd.DataFrame(df[numeric_cols].values.astype(float),
                        columns=SPATIAL_DIMS[:len(numeric_cols)], index=df.index)

def create_analysis_object(expression, spatial_locs, instructions=None, cell_metadata=None,
                           feat_metadata=None, sep=None, transpose=False):
    """
    Build the AnnData analysis object from an expression matrix and locations

    Parameters
    ----------
    expression : str, Path or pandas.DataFrame
        Feature x observation matrix or a path to it
    spatial_locs : str, Path or pandas.DataFrame
        Spatial coordinates or a path to them
    instructions : dict, optional
        Instructions from create_instructions. Defaults are used when None
    cell_metadata : pandas.DataFrame, optional
        Extra observation metadata indexed by observation ID
    feat_metadata : pandas.DataFrame, optional
        Extra feature metadata indexed by feature ID
    sep : str, optional
        Column separator for text inputs
    transpose : bool, optional
        Whether the expression file holds observations as rows

    Returns
    -------
    adata : AnnData
        Observations x features, raw values in layers['raw'] and X,
        coordinates in obsm['spatial']
    """
    if isinstance(expression, pd.DataFrame):
        expr_df = expression.T if transpose else expression
    else:
        expr_df = read_expression_matrix(expression, sep=sep, transpose=transpose)

    if isinstance(spatial_locs, pd.DataFrame):
        locs = _locations_from_frame(spatial_locs)
    else:
        locs = read_spatial_locations(spatial_locs, sep=sep)

    cell_ids = expr_df.columns.astype(str)
    if not cell_ids.is_unique:
        raise ValueError("Observation identifiers in the expression matrix are not unique")

    if isinstance(locs.index, pd.RangeIndex):
        if len(locs) != len(cell_ids):
            raise ValueError(
                f"Number of spatial locations ({len(locs)}) does not match number of observations ({len(cell_ids)})"
            )
        locs.index = cell_ids
    else:
        locs.index = locs.index.astype(str)
        missing = cell_ids.difference(locs.index)
        if len(missing) > 0:
            raise ValueError(f"{len(missing)} observations have no spatial location, e.g. {list(missing[:5])}")
        locs = locs.loc[cell_ids]

    X = sparse.csr_matrix(expr_df.values.T.astype(np.float32))
    obs = pd.DataFrame(index=pd.Index(cell_ids, name='cell_ID'))
    var = pd.DataFrame(index=pd.Index(expr_df.index.astype(str), name='feat_ID'))
    adata = ad.AnnData(X=X, obs=obs, var=var)
    if not adata.var_names.is_unique:
        logger.warning("Feature names are not unique. Making them unique.")
        adata.var_names_make_unique()

    adata.layers['raw'] = adata.X.copy()
    adata.obsm['spatial'] = locs[[c for c in SPATIAL_DIMS if c in locs.columns]].values
    adata.uns['spatial_dims'] = [c for c in SPATIAL_DIMS if c in locs.columns]
    adata.uns['instructions'] = instructions if instructions is not None else create_instructions()

    if cell_metadata is not None:
        adata = add_cell_metadata(adata, cell_metadata)
    if feat_metadata is not None:
        adata = add_feat_metadata(adata, feat_metadata)

    logger.info(f"Created analysis object with {adata.n_obs} observations and {adata.n_vars} features")
    return adata

def add_cell_metadata(adata, metadata, by_column=False, column_cell_ID=None):
    """
    Add observation metadata columns

    Parameters
    ----------
    adata : AnnData
        The AnnData object
    metadata : pandas.DataFrame or pandas.Series
        Metadata indexed by observation ID, or positionally aligned
    by_column : bool, optional
        Align on the column `column_cell_ID` instead of the index
    column_cell_ID : str, optional
        Column holding observation IDs when by_column is True

    Returns
    -------
    adata : AnnData
        The AnnData object with the new obs columns
    """
    if isinstance(metadata, pd.Series):
        metadata = metadata.to_frame()
    metadata = metadata.copy()

    if by_column:
        if column_cell_ID not in metadata.columns:
            raise ValueError(f"Column {column_cell_ID} not found in metadata")
        metadata = metadata.set_index(column_cell_ID)

    if isinstance(metadata.index, pd.RangeIndex):
        if len(metadata) != adata.n_obs:
            raise IntegrityError(f"Metadata has {len(metadata)} rows for {adata.n_obs} observations")
        metadata.index = adata.obs_names
    else:
        metadata.index = metadata.index.astype(str)
        unknown = metadata.index.difference(adata.obs_names)
        if len(unknown) > 0:
            raise IntegrityError(f"Metadata references unknown observations: {list(unknown[:5])}")
        metadata = metadata.reindex(adata.obs_names)

    for col in metadata.columns:
        adata.obs[col] = metadata[col].values
    logger.info(f"Added observation metadata columns: {list(metadata.columns)}")
    return adata

def add_feat_metadata(adata, metadata):
    """
    Add feature metadata columns indexed by feature ID

    Returns
    -------
    adata : AnnData
        The AnnData object with the new var columns
    """
    if isinstance(metadata, pd.Series):
        metadata = metadata.to_frame()
    metadata = metadata.copy()
    metadata.index = metadata.index.astype(str)
    unknown = metadata.index.difference(adata.var_names)
    if len(unknown) > 0:
        raise IntegrityError(f"Metadata references unknown features: {list(unknown[:5])}")
    metadata = metadata.reindex(adata.var_names)
    for col in metadata.columns:
        adata.var[col] = metadata[col].values
    logger.info(f"Added feature metadata columns: {list(metadata.columns)}")
    return adata

def add_image_data(adata, image_path, library_id=None, scale_factor=1.0):
    """
    Add image data to an AnnData object

    Parameters
    ----------
    adata : AnnData
        AnnData object to add image data to
    image_path : str or Path
        Path to the image file
    library_id : str, optional
        Library ID to use for the image data
    scale_factor : float, optional
        Factor mapping spatial coordinates to image pixels

    Returns
    -------
    adata : AnnData
        AnnData object with added image data
    """
    from skimage import io

    image_path = Path(image_path)
    if not image_path.exists():
        raise FileNotFoundError(f"Image file not found: {image_path}")
    img = io.imread(image_path)
    if 'spatial' not in adata.uns:
        adata.uns['spatial'] = {}

    if library_id is None:
        library_id = "tissue_image"

    library = adata.uns['spatial'].setdefault(library_id, {})
    library.setdefault('images', {})['hires'] = img
    library['scalefactors'] = {
        'tissue_hires_scalef': float(scale_factor),
        'spot_diameter_fullres': 50.0
    }

    logger.info(f"Added image with shape {img.shape} to AnnData object")

    return adata
