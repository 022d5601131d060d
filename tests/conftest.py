import pytest
import numpy as np
import pandas as pd

from giottoflow.core.data_loader import create_analysis_object
from giottoflow.core.preprocessing import filter_analysis_object, normalize_analysis_object
from giottoflow.spatial.neighbors import create_spatial_network


CELL_TYPES = ['A', 'B', 'C']
MARKERS = {t: [f"mark{t}{i}" for i in range(1, 4)] for t in CELL_TYPES}
NOISE = [f"noise{i}" for i in range(1, 11)]


def _jittered_grid(n_cols, n_rows, rng, jitter=0.15):
    x, y = np.meshgrid(np.arange(n_cols, dtype=float), np.arange(n_rows, dtype=float))
    coords = np.column_stack([x.ravel(), y.ravel()])
    return coords + rng.uniform(-jitter, jitter, size=coords.shape)


def make_tissue(n_cols=15, n_rows=12, seed=42):
    """
    Three cell types in vertical bands (A left, B middle, C right) on a
    jittered grid with spacing 1.

    Every type has three marker features (Poisson 20 inside, 1 outside),
    Lig1 is expressed by A, Rec1 by B, and ten noise features are flat.
    """
    rng = np.random.default_rng(seed)
    coords = _jittered_grid(n_cols, n_rows, rng)
    band = np.minimum((np.round(coords[:, 0]).astype(int) * 3) // n_cols, 2)
    types = np.array(CELL_TYPES)[band]
    n_cells = len(types)

    rows = {}
    for t in CELL_TYPES:
        for feat in MARKERS[t]:
            rows[feat] = rng.poisson(np.where(types == t, 20, 1))
    rows['Lig1'] = rng.poisson(np.where(types == 'A', 15, 1))
    rows['Rec1'] = rng.poisson(np.where(types == 'B', 15, 1))
    for feat in NOISE:
        rows[feat] = rng.poisson(5, size=n_cells)

    cell_ids = [f"cell_{i}" for i in range(n_cells)]
    expression = pd.DataFrame(rows, index=cell_ids).T
    locations = pd.DataFrame({'cell_ID': cell_ids, 'sdimx': coords[:, 0], 'sdimy': coords[:, 1]})
    return expression, locations, pd.Series(types, index=cell_ids, name='cell_types')


@pytest.fixture
def toy_expression():
    """
    10 features x 20 observations: g0-g7 detected in c0-c17, g8 and g9
    only in c0, c18 and c19 empty
    """
    rng = np.random.default_rng(7)
    values = np.zeros((10, 20))
    values[:8, :18] = rng.integers(1, 10, size=(8, 18))
    values[8:, 0] = 5
    return pd.DataFrame(values, index=[f"g{i}" for i in range(10)], columns=[f"c{j}" for j in range(20)])


@pytest.fixture
def toy_locations():
    """Regular 5 x 4 grid, observation c{j} at (j % 5, j // 5)"""
    ids = [f"c{j}" for j in range(20)]
    return pd.DataFrame({'cell_ID': ids, 'sdimx': [float(j % 5) for j in range(20)],
                         'sdimy': [float(j // 5) for j in range(20)]})


@pytest.fixture
def toy_adata(toy_expression, toy_locations):
    """Unfiltered analysis object built from the toy matrix"""
    return create_analysis_object(toy_expression, toy_locations)


@pytest.fixture(scope="session")
def _tissue_inputs():
    return make_tissue()


@pytest.fixture
def tissue_adata(_tissue_inputs):
    """Raw synthetic tissue with ground truth cell types in obs['cell_types']"""
    expression, locations, types = _tissue_inputs
    adata = create_analysis_object(expression, locations)
    adata.obs['cell_types'] = pd.Categorical(types.loc[adata.obs_names].values, categories=CELL_TYPES)
    return adata


@pytest.fixture(scope="session")
def _processed_tissue(_tissue_inputs):
    expression, locations, types = _tissue_inputs
    adata = create_analysis_object(expression, locations)
    adata.obs['cell_types'] = pd.Categorical(types.loc[adata.obs_names].values, categories=CELL_TYPES)
    adata = filter_analysis_object(adata, expression_threshold=1, feat_det_in_min_cells=1,
                                   min_det_feats_per_cell=1)
    adata = normalize_analysis_object(adata)
    adata = create_spatial_network(adata, method='knn', k=4)
    adata = create_spatial_network(adata, method='delaunay', delaunay_max_distance='auto')
    return adata


@pytest.fixture
def processed_adata(_processed_tissue):
    """
    Normalized tissue with a Delaunay network ('Delaunay_network', the most
    recent one) and a directed kNN network ('kNN_network', k=4)
    """
    return _processed_tissue.copy()


@pytest.fixture
def lr_pairs():
    """Ligand-receptor table mixing present and absent features"""
    return pd.DataFrame({
        'ligand': ['Lig1', 'markA1', 'Absent1'],
        'receptor': ['Rec1', 'markB1', 'Rec1'],
    })
