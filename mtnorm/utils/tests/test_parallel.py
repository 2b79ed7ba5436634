"""Tests for mtnorm.utils.parallel."""

import os
import threading

import numpy as np
import pytest

from mtnorm.utils.parallel import determine_num_threads, parallel_slabs, slab_bounds


def test_determine_num_threads():
    cpu_count = os.cpu_count() or 1
    assert determine_num_threads(None) == cpu_count
    assert determine_num_threads(3) == 3
    assert determine_num_threads(np.int64(2)) == 2
    assert determine_num_threads(-1) == cpu_count
    assert determine_num_threads(-cpu_count - 10) == 1

    with pytest.raises(ValueError, match="cannot be 0"):
        determine_num_threads(0)
    with pytest.raises(TypeError):
        determine_num_threads(1.5)


@pytest.mark.parametrize("size, n_slabs", [(10, 3), (7, 7), (3, 8), (1, 4), (100, 1)])
def test_slab_bounds_cover_range(size, n_slabs):
    slabs = slab_bounds(size, n_slabs)
    assert 1 <= len(slabs) <= min(size, n_slabs)
    covered = np.concatenate([np.arange(size)[s] for s in slabs])
    np.testing.assert_array_equal(covered, np.arange(size))
    assert all(s.stop > s.start for s in slabs)


def test_slab_bounds_empty():
    assert slab_bounds(0, 4) == []


def test_parallel_slabs_partial_sums():
    data = np.arange(1000, dtype=float).reshape(10, 10, 10)

    def _partial(slab):
        return data[slab].sum()

    for num_threads in (1, 2, 4, 16):
        partials = parallel_slabs(_partial, data.shape[0], num_threads=num_threads)
        assert sum(partials) == data.sum()


def test_parallel_slabs_results_in_slab_order():
    results = parallel_slabs(lambda slab: slab.start, 12, num_threads=4)
    assert results == sorted(results)
    assert results[0] == 0


def test_parallel_slabs_writes_own_slab():
    out = np.zeros((9, 4))

    def _fill(slab):
        out[slab] = threading.get_ident()

    parallel_slabs(_fill, out.shape[0], num_threads=3)
    assert np.all(out != 0)
    # every row within a slab was written by a single worker
    for slab in slab_bounds(9, 3):
        assert np.unique(out[slab]).size == 1


def test_parallel_slabs_serial_path():
    calls = []
    parallel_slabs(calls.append, 5, num_threads=1)
    assert calls == [slice(0, 5)]


def test_parallel_slabs_propagates_exceptions():
    def _fail(slab):
        if slab.start > 0:
            raise RuntimeError("worker failed")
        return 1

    with pytest.raises(RuntimeError, match="worker failed"):
        parallel_slabs(_fail, 8, num_threads=2)
