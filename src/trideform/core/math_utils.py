"""NumPy-backed math utilities for affine 4x4 transforms.

Vectors are plain numpy arrays. Matrices are 4x4 numpy arrays acting on
column vectors (``m @ [x, y, z, 1]``), so the translation lives in column 3.
Batched variants take stacks of shape ``(N, 4, 4)`` / ``(N, 3)``.
"""

import numpy as np
from numpy.typing import NDArray

# Type aliases
Vec3 = NDArray[np.float64]
Mat4 = NDArray[np.float64]


def mat4_from_basis(u: Vec3, v: Vec3, w: Vec3, origin: Vec3) -> Mat4:
    """Local-to-world matrix with basis columns ``u, v, w`` and translation ``origin``."""
    m = np.eye(4, dtype=np.float64)
    m[:3, 0] = u
    m[:3, 1] = v
    m[:3, 2] = w
    m[:3, 3] = origin
    return m


def transform_point(m: Mat4, p: Vec3) -> Vec3:
    """Transform a point by a 4x4 matrix."""
    v = np.array([p[0], p[1], p[2], 1.0], dtype=np.float64)
    r = m @ v
    return r[:3]


# ── Batch (vectorized) operations ─────────────────────────────────────

def batch_mat4_from_basis(u: NDArray, v: NDArray, w: NDArray, origin: NDArray) -> NDArray:
    """Stack ``(N, 3)`` basis columns and origins into ``(N, 4, 4)`` matrices."""
    N = len(u)
    m = np.zeros((N, 4, 4), dtype=np.float64)
    m[:, :3, 0] = u
    m[:, :3, 1] = v
    m[:, :3, 2] = w
    m[:, :3, 3] = origin
    m[:, 3, 3] = 1.0
    return m


def batch_mat4_inverse(M: NDArray) -> NDArray:
    """Invert ``(N, 4, 4)`` matrices. Singular input raises ``LinAlgError``."""
    return np.linalg.inv(M)


def batch_transform_points(M: NDArray, p: NDArray) -> NDArray:
    """Transform ``(N, 3)`` points, each by its own ``(N, 4, 4)`` matrix."""
    return np.einsum("nij,nj->ni", M[:, :3, :3], p) + M[:, :3, 3]
