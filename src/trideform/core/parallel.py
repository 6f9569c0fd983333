"""Blocking data-parallel loops over index ranges.

``parallel_for`` splits ``[0, count)`` into contiguous ranges and runs
``job(start, stop)`` for each on a thread pool, returning only when every
range has finished. Jobs must write only to their own slice of the output.
numpy releases the GIL inside its kernels, so vectorized jobs overlap.
"""

import concurrent.futures
import logging
import os
from typing import Callable, Optional

from trideform.constants import DEFAULT_MAX_WORKERS

logger = logging.getLogger(__name__)

RangeJob = Callable[[int, int], None]


def resolve_worker_count(max_workers: Optional[int] = None) -> int:
    if max_workers is None:
        max_workers = DEFAULT_MAX_WORKERS
    if max_workers is None:
        max_workers = os.cpu_count() or 1
    return max(1, int(max_workers))


def split_ranges(count: int, batch_size: int) -> list[tuple[int, int]]:
    """Contiguous ``(start, stop)`` ranges covering ``[0, count)``."""
    batch_size = max(1, int(batch_size))
    return [(start, min(start + batch_size, count)) for start in range(0, count, batch_size)]


def parallel_for(
    count: int,
    job: RangeJob,
    max_workers: Optional[int] = None,
    batch_size: Optional[int] = None,
) -> None:
    """Run ``job`` over ``[0, count)`` in parallel and wait for all ranges.

    Parameters
    ----------
    count : int
        Number of work items.
    job : callable
        ``job(start, stop)`` processes items ``start..stop-1``.
    max_workers : int, optional
        Thread count; defaults to the CPU count.
    batch_size : int, optional
        Items per range; defaults to ``count // max_workers``.

    A started batch is never cancelled: if a range raises, the remaining
    ranges still run and the first error is re-raised afterwards.
    """
    if count <= 0:
        return

    workers = resolve_worker_count(max_workers)
    if batch_size is None:
        batch_size = count // workers
    ranges = split_ranges(count, batch_size)

    if len(ranges) == 1:
        job(*ranges[0])
        return

    errors: list[BaseException] = []
    if workers == 1:
        for start, stop in ranges:
            try:
                job(start, stop)
            except Exception as exc:
                errors.append(exc)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=min(workers, len(ranges))) as executor:
            futures = [executor.submit(job, start, stop) for start, stop in ranges]
            concurrent.futures.wait(futures)
        errors = [f.exception() for f in futures if f.exception() is not None]

    if errors:
        if len(errors) > 1:
            logger.debug("%d of %d ranges failed; raising the first", len(errors), len(ranges))
        raise errors[0]
