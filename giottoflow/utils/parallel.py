import logging
import numpy as np
from typing import Callable, List, Any, Optional
import multiprocessing as mp
from concurrent.futures import ThreadPoolExecutor
from tqdm import tqdm

logger = logging.getLogger('giottoflow.utils.parallel')

def parallelize(func: Callable, items: List[Any], n_jobs: int = -1,
               backend: str = 'threads', show_progress: bool = True,
               **kwargs) -> List[Any]:
    """
    Run a function in parallel over a list of items

    Results are returned in the order of `items`, whatever the backend.

    Parameters
    ----------
    func : callable
        Function to apply to each item
    items : list
        List of items to process
    n_jobs : int, optional
        Number of parallel jobs. -1 means use all available cores
    backend : str, optional
        Backend to use. Options: 'threads', 'serial'
    show_progress : bool, optional
        Whether to show a progress bar
    **kwargs
        Additional arguments to pass to func

    Returns
    -------
    List[Any]
        Results of applying func to each item
    """
    if n_jobs is None or n_jobs <= 0:
        n_jobs = mp.cpu_count()
    n_jobs = max(1, min(n_jobs, len(items)))

    logger.debug(f"Running {len(items)} tasks with {n_jobs} parallel jobs using {backend} backend")

    if backend == 'serial' or n_jobs == 1:
        iterator = tqdm(items, desc="Processing") if show_progress else items
        return [func(item, **kwargs) for item in iterator]

    def _func_wrapper(item):
        return func(item, **kwargs)

    if backend == 'threads':
        with ThreadPoolExecutor(max_workers=n_jobs) as executor:
            if show_progress:
                results = list(tqdm(executor.map(_func_wrapper, items), total=len(items), desc="Processing"))
            else:
                results = list(executor.map(_func_wrapper, items))
    else:
        raise ValueError(f"Unsupported backend: {backend}")

    return results

def split_permutations(n_perms: int, seed: Optional[int], n_chunks: int) -> List[np.ndarray]:
    """
    Derive one independent seed per permutation and split them into chunks

    The seeds only depend on `seed` and `n_perms`, so permutation results do
    not change with the number of jobs.

    Parameters
    ----------
    n_perms : int
        Total number of permutations
    seed : int, optional
        Master seed
    n_chunks : int
        Number of chunks to split the seeds into

    Returns
    -------
    list of numpy.ndarray
        Seed arrays, one per chunk
    """
    seeds = np.random.SeedSequence(seed).generate_state(n_perms)
    n_chunks = max(1, min(n_chunks, n_perms))
    return [chunk for chunk in np.array_split(seeds, n_chunks) if len(chunk) > 0]

def run_permutations(func: Callable, n_perms: int, seed: Optional[int] = None,
                     n_jobs: int = 1, show_progress: bool = False, **kwargs) -> np.ndarray:
    """
    Evaluate `func(rng, **kwargs)` once per permutation and stack the results

    Parameters
    ----------
    func : callable
        Function receiving a numpy Generator and returning an array
    n_perms : int
        Number of permutations
    seed : int, optional
        Master seed
    n_jobs : int, optional
        Number of threads
    show_progress : bool, optional
        Whether to show a progress bar

    Returns
    -------
    numpy.ndarray
        Array of shape (n_perms, ...) in permutation order
    """
    if n_perms <= 0:
        raise ValueError(f"Number of permutations must be positive, got {n_perms}")

    def _run_chunk(chunk_seeds):
        return [func(np.random.default_rng(int(s)), **kwargs) for s in chunk_seeds]

    chunks = split_permutations(n_perms, seed, n_jobs if n_jobs and n_jobs > 0 else mp.cpu_count())
    results = parallelize(_run_chunk, chunks, n_jobs=n_jobs, backend='threads', show_progress=show_progress)
    return np.stack([r for chunk in results for r in chunk])
