"""Grid-parallel execution over slabs of a voxel grid.

Every voxel pass of the normalisation is a parallel map over the grid
followed by a join: the grid is cut into contiguous slabs along its first
axis, one closure runs per slab, and the caller merges whatever the closures
return once all of them have finished. Closures must only write inside their
own slab.
"""

from concurrent.futures import ThreadPoolExecutor
import os

import numpy as np


def determine_num_threads(num_threads):
    """Return the number of worker threads to use.

    Parameters
    ----------
    num_threads : int or None
        None uses every available CPU. Negative values count back from the
        CPU count, e.g. -1 uses all CPUs and -2 all but one.

    Returns
    -------
    num_threads : int
        Strictly positive thread count.
    """
    if num_threads is not None and not isinstance(num_threads, (int, np.integer)):
        raise TypeError("num_threads must be an int or None")

    if num_threads == 0:
        raise ValueError("num_threads cannot be 0")

    cpu_count = os.cpu_count() or 1
    if num_threads is None:
        return cpu_count
    if num_threads < 0:
        return max(1, cpu_count + 1 + int(num_threads))
    return int(num_threads)


def slab_bounds(size, n_slabs):
    """Split ``range(size)`` into at most ``n_slabs`` contiguous slices."""
    n_slabs = max(1, min(int(n_slabs), int(size)))
    edges = np.linspace(0, size, n_slabs + 1).astype(int)
    return [slice(lo, hi) for lo, hi in zip(edges[:-1], edges[1:]) if hi > lo]


def parallel_slabs(func, size, *, num_threads=None):
    """Run ``func(slab)`` over every slab of the first grid axis.

    Parameters
    ----------
    func : callable
        Called as ``func(slab)`` with a ``slice`` over the first axis.
    size : int
        Length of the first grid axis.
    num_threads : int, optional
        See :func:`determine_num_threads`.

    Returns
    -------
    results : list
        Return values of ``func``, in slab order. Exceptions raised by any
        worker are re-raised here, after the pool has shut down.
    """
    slabs = slab_bounds(size, determine_num_threads(num_threads))
    if len(slabs) <= 1:
        return [func(slab) for slab in slabs]

    with ThreadPoolExecutor(max_workers=len(slabs)) as ex:
        futures = [ex.submit(func, slab) for slab in slabs]
    return [f.result() for f in futures]
