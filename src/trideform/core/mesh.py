"""Reference mesh data (no transfer logic)."""

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from trideform.core.errors import ContractViolation


def as_points(values, name: str = "points") -> NDArray[np.float64]:
    """Coerce a flat ``3N`` or ``(N, 3)`` buffer into an ``(N, 3)`` float64 array."""
    arr = np.asarray(values, dtype=np.float64)
    if arr.ndim == 1:
        if arr.size % 3 != 0:
            raise ContractViolation(f"{name} length {arr.size} is not a multiple of 3")
        arr = arr.reshape(-1, 3)
    elif arr.ndim != 2 or arr.shape[1] != 3:
        raise ContractViolation(f"{name} must be flat or (N, 3), got shape {arr.shape}")
    return arr


def as_indices(values) -> NDArray[np.int32]:
    """Coerce a triangle index buffer into a flat int32 array (length multiple of 3)."""
    arr = np.asarray(values)
    if arr.size and not np.issubdtype(arr.dtype, np.integer):
        raise ContractViolation(f"indices must be integers, got {arr.dtype}")
    arr = arr.astype(np.int32).reshape(-1)
    if arr.size % 3 != 0:
        raise ContractViolation(f"Index count {arr.size} is not a multiple of 3")
    return arr


@dataclass(frozen=True)
class ReferenceMesh:
    """Vertex positions plus a flat triangle index buffer.

    vertices: (N, 3) float64
    indices: flat int32, length a multiple of 3
    """
    vertices: NDArray[np.float64]
    indices: NDArray[np.int32]

    def __post_init__(self):
        vertices = as_points(self.vertices, "vertices")
        indices = as_indices(self.indices)
        if indices.size and (indices.min() < 0 or indices.max() >= len(vertices)):
            raise ContractViolation(
                f"Indices reference vertices outside [0, {len(vertices)})"
            )
        object.__setattr__(self, "vertices", vertices)
        object.__setattr__(self, "indices", indices)

    @property
    def vertex_count(self) -> int:
        return len(self.vertices)

    @property
    def index_count(self) -> int:
        return len(self.indices)

    @property
    def triangle_count(self) -> int:
        return len(self.indices) // 3
