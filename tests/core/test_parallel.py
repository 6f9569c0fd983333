"""Tests for the blocking parallel range loop."""

import threading

import numpy as np
import pytest

from trideform.core.parallel import parallel_for, resolve_worker_count, split_ranges


def test_split_ranges_covers_count():
    assert split_ranges(10, 3) == [(0, 3), (3, 6), (6, 9), (9, 10)]
    assert split_ranges(0, 4) == []
    assert split_ranges(3, 0) == [(0, 1), (1, 2), (2, 3)]


def test_resolve_worker_count():
    assert resolve_worker_count(4) == 4
    assert resolve_worker_count(0) == 1
    assert resolve_worker_count(None) >= 1


@pytest.mark.parametrize("max_workers", [1, 2, 8])
def test_parallel_for_visits_every_item_once(max_workers):
    out = np.zeros(1000, dtype=np.int64)

    def job(start, stop):
        out[start:stop] += np.arange(start, stop)

    parallel_for(len(out), job, max_workers=max_workers, batch_size=37)
    np.testing.assert_array_equal(out, np.arange(1000))


def test_parallel_for_default_batch():
    seen = []
    lock = threading.Lock()

    def job(start, stop):
        with lock:
            seen.append((start, stop))

    parallel_for(10, job, max_workers=4)
    assert sorted(seen) == split_ranges(10, 2)


def test_parallel_for_empty_never_calls_job():
    def job(start, stop):
        raise AssertionError("should not run")

    parallel_for(0, job)


@pytest.mark.parametrize("max_workers", [1, 4])
def test_parallel_for_runs_all_ranges_before_raising(max_workers):
    done = []
    lock = threading.Lock()

    def job(start, stop):
        if start == 0:
            raise RuntimeError("boom")
        with lock:
            done.append(start)

    with pytest.raises(RuntimeError, match="boom"):
        parallel_for(8, job, max_workers=max_workers, batch_size=2)
    assert sorted(done) == [2, 4, 6]
