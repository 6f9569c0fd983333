"""Read-only triangle queries over a vertex buffer and a flat index buffer.

:class:`MeshTriangles` does not own the arrays it wraps; the caller keeps
them alive (and unmodified) while the view is in use. Every query is pure, so
the view can be shared by concurrent jobs.
"""

from typing import Optional

import numpy as np
from numpy.typing import NDArray

from trideform.constants import FRAME_ERROR_FIX_SCALE
from trideform.core.errors import ContractViolation
from trideform.core.math_utils import Mat4, Vec3, batch_mat4_from_basis, mat4_from_basis
from trideform.core.mesh import as_indices, as_points


class MeshTriangles:
    """Triangle view over ``vertices`` (N, 3) and flat ``indices``."""

    __slots__ = ("count", "_vertices", "_indices")

    def __init__(self, vertices: NDArray, indices: NDArray):
        indices = np.asarray(indices)
        if indices.size % 3 != 0:
            raise ContractViolation("The indices array must have a length that is a multiple of 3")

        self.count = indices.size // 3
        self._vertices = as_points(vertices, "vertices")
        self._indices = as_indices(indices)

    @property
    def vertices(self) -> NDArray[np.float64]:
        return self._vertices

    @property
    def indices(self) -> NDArray[np.int32]:
        return self._indices

    def get_vertices(self, triangle_index: int) -> tuple[Vec3, Vec3, Vec3]:
        base = triangle_index * 3
        return (
            self._vertices[self._indices[base]],
            self._vertices[self._indices[base + 1]],
            self._vertices[self._indices[base + 2]],
        )

    def get_vertex_a(self, triangle_index: int) -> Vec3:
        return self._vertices[self._indices[triangle_index * 3]]

    def get_vertex_b(self, triangle_index: int) -> Vec3:
        return self._vertices[self._indices[triangle_index * 3 + 1]]

    def get_vertex_c(self, triangle_index: int) -> Vec3:
        return self._vertices[self._indices[triangle_index * 3 + 2]]

    def get_local_to_world_matrix(self, triangle_index: int) -> Mat4:
        a, b, c = self.get_vertices(triangle_index)
        return local_to_world_matrix(a, b, c)

    def get_closest_point(self, triangle_index: int, point: Vec3) -> Vec3:
        a, b, c = self.get_vertices(triangle_index)
        return closest_point_on_triangle(np.asarray(point, dtype=np.float64), a, b, c)

    # ── Range queries (used by the parallel jobs) ──────────────────────

    def triangle_vertices(self, start: int = 0, stop: Optional[int] = None) -> tuple[NDArray, NDArray, NDArray]:
        """Corner positions ``(a, b, c)``, each ``(k, 3)``, for triangles ``start..stop-1``."""
        if stop is None:
            stop = self.count
        tris = self._indices[start * 3:stop * 3].reshape(-1, 3)
        return self._vertices[tris[:, 0]], self._vertices[tris[:, 1]], self._vertices[tris[:, 2]]

    def local_to_world_matrices(self, start: int = 0, stop: Optional[int] = None) -> NDArray:
        """``(k, 4, 4)`` triangle frames for triangles ``start..stop-1``."""
        a, b, c = self.triangle_vertices(start, stop)
        return local_to_world_matrices(a, b, c)

    def with_vertices(self, vertices: NDArray) -> "MeshTriangles":
        """Same topology over another point set of the same length."""
        vertices = as_points(vertices, "vertices")
        if len(vertices) != len(self._vertices):
            raise ContractViolation(
                f"Expected {len(self._vertices)} points, got {len(vertices)}"
            )
        return MeshTriangles(vertices, self._indices)


def local_to_world_matrix(a: Vec3, b: Vec3, c: Vec3) -> Mat4:
    """Triangle frame anchored at ``a`` with basis ``(c - a, b - a, w)``.

    ``w`` is the normal direction with length ``sqrt(|cross(u, v)|)``, the
    same units as the edges, so thin triangles keep a well-conditioned frame.
    """
    u = c - a
    v = b - a

    w = np.cross(u * FRAME_ERROR_FIX_SCALE, v * FRAME_ERROR_FIX_SCALE)
    # equivalent to normalize(w) * sqrt(|w|) with the scale removed
    w = w / (FRAME_ERROR_FIX_SCALE * np.sqrt(np.linalg.norm(w)))

    return mat4_from_basis(u, v, w, a)


def local_to_world_matrices(a: NDArray, b: NDArray, c: NDArray) -> NDArray:
    """Vectorized :func:`local_to_world_matrix` over ``(k, 3)`` corners."""
    u = c - a
    v = b - a

    w = np.cross(u * FRAME_ERROR_FIX_SCALE, v * FRAME_ERROR_FIX_SCALE)
    w = w / (FRAME_ERROR_FIX_SCALE * np.sqrt(np.linalg.norm(w, axis=1)))[:, None]

    return batch_mat4_from_basis(u, v, w, a)


def closest_point_on_triangle(point: Vec3, a: Vec3, b: Vec3, c: Vec3) -> Vec3:
    """Closest point on triangle ``abc`` via Voronoi-region tests."""
    ab = b - a
    ac = c - a
    ap = point - a

    d1 = float(np.dot(ab, ap))
    d2 = float(np.dot(ac, ap))
    if d1 <= 0.0 and d2 <= 0.0:
        return a.copy()

    bp = point - b
    d3 = float(np.dot(ab, bp))
    d4 = float(np.dot(ac, bp))
    if d3 >= 0.0 and d4 <= d3:
        return b.copy()

    cp = point - c
    d5 = float(np.dot(ab, cp))
    d6 = float(np.dot(ac, cp))
    if d6 >= 0.0 and d5 <= d6:
        return c.copy()

    vc = d1 * d4 - d3 * d2
    if vc <= 0.0 and d1 >= 0.0 and d3 <= 0.0:
        v = d1 / (d1 - d3)
        return a + v * ab

    vb = d5 * d2 - d1 * d6
    if vb <= 0.0 and d2 >= 0.0 and d6 <= 0.0:
        v = d2 / (d2 - d6)
        return a + v * ac

    va = d3 * d6 - d5 * d4
    if va <= 0.0 and (d4 - d3) >= 0.0 and (d5 - d6) >= 0.0:
        v = (d4 - d3) / ((d4 - d3) + (d5 - d6))
        return b + v * (c - b)

    denom = 1.0 / (va + vb + vc)
    v = vb * denom
    w = vc * denom
    return a + v * ab + w * ac


def _dot(x: NDArray, y: NDArray) -> NDArray:
    return np.einsum("...i,...i->...", x, y)


def closest_points_on_triangles(points: NDArray, a: NDArray, b: NDArray, c: NDArray) -> NDArray:
    """Vectorized :func:`closest_point_on_triangle`.

    All arguments broadcast against each other, e.g. ``points[:, None]``
    (P, 1, 3) against corners (T, 3) gives a (P, T, 3) result. Regions are
    resolved with the same priority as the scalar early exits: vertex A,
    vertex B, vertex C, edge AB, edge AC, edge BC, interior.
    """
    ab = b - a
    ac = c - a
    ap = points - a
    bp = points - b
    cp = points - c

    d1 = _dot(ab, ap)
    d2 = _dot(ac, ap)
    d3 = _dot(ab, bp)
    d4 = _dot(ac, bp)
    d5 = _dot(ab, cp)
    d6 = _dot(ac, cp)

    vc = d1 * d4 - d3 * d2
    vb = d5 * d2 - d1 * d6
    va = d3 * d6 - d5 * d4

    # lowest priority first, each region overrides the ones below it
    with np.errstate(divide="ignore", invalid="ignore"):
        denom = 1.0 / (va + vb + vc)
        result = a + (vb * denom)[..., None] * ab + (vc * denom)[..., None] * ac

        t = (d4 - d3) / ((d4 - d3) + (d5 - d6))
        mask = (va <= 0.0) & ((d4 - d3) >= 0.0) & ((d5 - d6) >= 0.0)
        result = np.where(mask[..., None], b + t[..., None] * (c - b), result)

        t = d2 / (d2 - d6)
        mask = (vb <= 0.0) & (d2 >= 0.0) & (d6 <= 0.0)
        result = np.where(mask[..., None], a + t[..., None] * ac, result)

        t = d1 / (d1 - d3)
        mask = (vc <= 0.0) & (d1 >= 0.0) & (d3 <= 0.0)
        result = np.where(mask[..., None], a + t[..., None] * ab, result)

    result = np.where(((d6 >= 0.0) & (d5 <= d6))[..., None], c, result)
    result = np.where(((d3 >= 0.0) & (d4 <= d3))[..., None], b, result)
    result = np.where(((d1 <= 0.0) & (d2 <= 0.0))[..., None], a, result)
    return result


def squared_distances_to_triangles(points: NDArray, a: NDArray, b: NDArray, c: NDArray) -> NDArray:
    """``(P, T)`` squared distances from ``(P, 3)`` points to ``(T, 3)`` triangles."""
    p = points[:, None, :]
    closest = closest_points_on_triangles(p, a[None], b[None], c[None])
    diff = closest - p
    return _dot(diff, diff)
