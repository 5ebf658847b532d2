"""
Batch worker pool for the per-cell stages.

Cells are split into contiguous batches. Each task returns the block for its
own batch; blocks are handed back in batch order only after every task has
finished, so no caller ever sees a partially filled result.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional, TypeVar

import numpy as np
from tqdm import tqdm

T = TypeVar('T')


def batch_slices(n_items: int, batch_size: int) -> List[slice]:
    """Contiguous slices of at most `batch_size` items covering range(n_items)."""
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    return [slice(start, min(start + batch_size, n_items))
            for start in range(0, n_items, batch_size)]


def map_batches(
        func: Callable[[np.ndarray], T],
        n_items: int,
        n_workers: int = 1,
        batch_size: int = 2048,
        desc: Optional[str] = None,
        progress: bool = True
) -> List[T]:
    """
    Apply `func` to index batches of range(n_items), possibly in parallel.

    Parameters:
    -----------
    func : callable
        Receives an array of item positions, returns the result for that batch
    n_items : int
        Total number of items
    n_workers : int, default=1
        Number of worker threads; 1 runs every batch in the calling thread
    batch_size : int, default=2048
        Items per task
    desc : str, optional
        Progress bar label
    progress : bool, default=True
        Whether to show a tqdm progress bar

    Returns:
    --------
    results : list
        One result per batch, in batch order

    The first exception raised by a task cancels the tasks that have not
    started yet and is re-raised.
    """
    if n_workers <= 0:
        raise ValueError(f"n_workers must be positive, got {n_workers}")
    slices = batch_slices(n_items, batch_size)
    batches = [np.arange(s.start, s.stop) for s in slices]
    disable = not progress or len(batches) <= 1

    if n_workers == 1:
        return [func(batch) for batch in tqdm(batches, desc=desc, disable=disable)]

    results = [None] * len(batches)
    with ThreadPoolExecutor(max_workers=n_workers) as executor:
        futures = {executor.submit(func, batch): i for i, batch in enumerate(batches)}
        try:
            for future in tqdm(as_completed(futures), total=len(futures), desc=desc,
                               disable=disable):
                results[futures[future]] = future.result()
        except BaseException:
            for future in futures:
                future.cancel()
            raise
    return results
