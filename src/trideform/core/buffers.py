"""Explicitly released array buffers with two allocation lifetimes.

Large arrays used by shapes, deforms and weight tables are wrapped in a
:class:`Buffer` so their lifetime is visible in the API:

* ``Allocator.PERSISTENT`` buffers live as long as their owner (a shape's
  reference mesh, a deform, a cached weight table).
* ``Allocator.TRANSIENT`` buffers are scoped to a single call and are
  normally used as context managers.

Every buffer must be released exactly once. Touching a released buffer is a
programmer error and raises :class:`ContractViolation`.
"""

import threading
from enum import Enum
from typing import Optional

import numpy as np
from numpy.typing import DTypeLike, NDArray

from trideform.core.errors import ContractViolation


class Allocator(Enum):
    PERSISTENT = "persistent"
    TRANSIENT = "transient"


_live_lock = threading.Lock()
_live_counts: dict[Allocator, int] = {a: 0 for a in Allocator}


def _track(allocator: Allocator, delta: int) -> None:
    with _live_lock:
        _live_counts[allocator] += delta


def live_buffer_count(allocator: Optional[Allocator] = None) -> int:
    """Number of buffers allocated and not yet released."""
    with _live_lock:
        if allocator is None:
            return sum(_live_counts.values())
        return _live_counts[allocator]


class Buffer:
    """Owns one numpy array until :meth:`dispose` is called."""

    __slots__ = ("_data", "_allocator")

    def __init__(self, data: NDArray, allocator: Allocator):
        if not isinstance(allocator, Allocator):
            raise ContractViolation(f"Unknown allocator: {allocator!r}")
        self._data: Optional[NDArray] = data
        self._allocator = allocator
        _track(allocator, 1)

    @property
    def allocator(self) -> Allocator:
        return self._allocator

    @property
    def is_released(self) -> bool:
        return self._data is None

    @property
    def data(self) -> NDArray:
        if self._data is None:
            raise ContractViolation(f"Access to a released {self._allocator.value} buffer")
        return self._data

    def __len__(self) -> int:
        return len(self.data)

    def dispose(self) -> None:
        if self._data is None:
            raise ContractViolation(f"{self._allocator.value.capitalize()} buffer released twice")
        self._data = None
        _track(self._allocator, -1)

    def __enter__(self) -> "Buffer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    def __repr__(self) -> str:
        if self._data is None:
            return f"Buffer({self._allocator.value}, released)"
        return f"Buffer({self._allocator.value}, shape={self._data.shape}, dtype={self._data.dtype})"


def allocate(shape, dtype: DTypeLike, allocator: Allocator, zeroed: bool = False) -> Buffer:
    """Allocate a new buffer. Contents are uninitialized unless ``zeroed``."""
    data = np.zeros(shape, dtype=dtype) if zeroed else np.empty(shape, dtype=dtype)
    return Buffer(data, allocator)


def persistent(shape, dtype: DTypeLike, zeroed: bool = False) -> Buffer:
    return allocate(shape, dtype, Allocator.PERSISTENT, zeroed)


def transient(shape, dtype: DTypeLike, zeroed: bool = False) -> Buffer:
    return allocate(shape, dtype, Allocator.TRANSIENT, zeroed)


def from_array(array, dtype: DTypeLike, allocator: Allocator) -> Buffer:
    """Copy ``array`` into a new buffer of the given lifetime."""
    return Buffer(np.array(array, dtype=dtype, copy=True), allocator)
