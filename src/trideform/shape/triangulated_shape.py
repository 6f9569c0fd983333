"""Triangle-based reference shape: author deforms once, transfer them anywhere.

A :class:`TriangulatedShape` owns a reference mesh and a set of named
deforms. Each deform stores, per reference triangle, the affine delta that
maps the triangle's rest frame to its deformed frame. Transferring a deform
onto an arbitrary point set uses a weights table (points -> weighted
triangles) solved by the shape's :class:`WeightSolver`, so the target never
needs to share the reference topology.

Usage::

    shape = TriangulatedShape("body", BiquadraticSolver())
    shape.initialize(body_vertices, body_indices)
    shape.add_deform("heavy", heavy_body_vertices)
    shirt_deltas = shape.transfer_deform_as_deltas("heavy", shirt_vertices, target_id="shirt")
"""

import logging
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from trideform.core import buffers
from trideform.core.buffers import Allocator, Buffer
from trideform.core.errors import ContractViolation
from trideform.core.math_utils import batch_mat4_inverse
from trideform.core.mesh import ReferenceMesh, as_points
from trideform.core.parallel import parallel_for
from trideform.shape.mesh_triangles import MeshTriangles
from trideform.shape.solvers import WeightSolver
from trideform.shape.weights import TriangulatedShapeWeights

logger = logging.getLogger(__name__)


class TriangulatedShape:
    """Reference mesh + named per-triangle deforms + target weights cache."""

    def __init__(
        self,
        shape_id: str,
        weights_solver: WeightSolver,
        *,
        enable_weights_cache: bool = False,
        max_workers: Optional[int] = None,
    ):
        self.id = shape_id
        self.max_workers = max_workers

        self._initialized = False
        self._disposed = False
        self._enable_weights_cache = enable_weights_cache

        # reference mesh data
        self._reference_vertices: Optional[Buffer] = None
        self._reference_indices: Optional[Buffer] = None
        self._reference_triangles: Optional[MeshTriangles] = None

        self._deform_triangle_deltas: dict[str, Buffer] = {}
        self._weights_cache: dict[str, TriangulatedShapeWeights] = {}

        self._weights_solver: Optional[WeightSolver] = None
        self.weights_solver = weights_solver

    # ── Properties ─────────────────────────────────────────────────────

    @property
    def is_initialized(self) -> bool:
        return self._initialized and not self._disposed

    @property
    def point_count(self) -> int:
        self._ensure_ready()
        return len(self._reference_vertices.data)

    @property
    def index_count(self) -> int:
        self._ensure_ready()
        return len(self._reference_indices.data)

    @property
    def triangle_count(self) -> int:
        self._ensure_ready()
        return self._reference_triangles.count

    @property
    def reference_triangles(self) -> MeshTriangles:
        self._ensure_ready()
        return self._reference_triangles

    @property
    def deform_ids(self) -> list[str]:
        return list(self._deform_triangle_deltas)

    @property
    def cached_target_ids(self) -> list[str]:
        return list(self._weights_cache)

    @property
    def weights_solver(self) -> WeightSolver:
        return self._weights_solver

    @weights_solver.setter
    def weights_solver(self, value: WeightSolver) -> None:
        if value is None:
            raise ContractViolation(f"[{type(self).__name__}] weights solver cannot be None")
        if not isinstance(value, WeightSolver):
            raise ContractViolation(
                f"[{type(self).__name__}] expected a WeightSolver, got {type(value).__name__}"
            )
        if value is self._weights_solver:
            return

        # weights solved with the old strategy must not survive
        self.clear_weights_cache()
        self._weights_solver = value

    @property
    def enable_weights_cache(self) -> bool:
        """Whether weights are cached per target id. Disabling clears the cache."""
        return self._enable_weights_cache

    @enable_weights_cache.setter
    def enable_weights_cache(self, value: bool) -> None:
        if not value:
            self.clear_weights_cache()
        self._enable_weights_cache = bool(value)

    # ── Initialization ─────────────────────────────────────────────────

    def initialize(self, vertices, indices) -> None:
        """Set the reference mesh. Can only be done once."""
        if self._disposed:
            raise ContractViolation(f"[{type(self).__name__}] {self.id!r} is disposed")
        if self._initialized:
            raise ContractViolation(f"[{type(self).__name__}] {self.id!r} already initialized")

        mesh = ReferenceMesh(vertices, indices)
        self._reference_vertices = buffers.from_array(mesh.vertices, np.float64, Allocator.PERSISTENT)
        self._reference_indices = buffers.from_array(mesh.indices, np.int32, Allocator.PERSISTENT)
        self._reference_triangles = MeshTriangles(self._reference_vertices.data, self._reference_indices.data)
        self._initialized = True

        logger.debug("Initialized shape %r: %d points, %d triangles",
                     self.id, mesh.vertex_count, mesh.triangle_count)

    def initialize_from_mesh(self, mesh: ReferenceMesh) -> None:
        self.initialize(mesh.vertices, mesh.indices)

    def get_points(self, out: Optional[NDArray] = None) -> NDArray:
        """Copy of the reference vertices, ``(N, 3)``."""
        self._ensure_ready()
        out = _output_array(out, self.point_count, "points")
        out[:] = self._reference_vertices.data
        return out

    def get_indices(self, out: Optional[NDArray] = None) -> NDArray:
        """Copy of the flat reference index buffer."""
        self._ensure_ready()
        if out is None:
            return self._reference_indices.data.copy()
        if len(out) != self.index_count:
            raise ContractViolation(
                f"[{type(self).__name__}] indices array must have the same length as the index count"
            )
        out[:] = self._reference_indices.data
        return out

    # ── Deforms ────────────────────────────────────────────────────────

    def add_deform(self, deform_id: str, deform_points) -> None:
        """Solve and store the triangle deltas of a fully deformed reference point set.

        Replaces (and releases) any previous deform with the same id.
        """
        triangle_deltas = self.solve_deform_triangle_deltas(deform_points, Allocator.PERSISTENT)
        self._store_deform(deform_id, triangle_deltas)

    def add_deform_deltas(self, deform_id: str, triangle_deltas) -> None:
        """Store precomputed ``(T, 4, 4)`` triangle deltas (e.g. from a saved shape)."""
        self._ensure_ready()
        deltas = np.asarray(triangle_deltas, dtype=np.float64)
        if deltas.ndim == 1 and deltas.size == self.triangle_count * 16:
            deltas = deltas.reshape(-1, 4, 4)
        if deltas.shape != (self.triangle_count, 4, 4):
            raise ContractViolation(
                f"[{type(self).__name__}] deform {deform_id!r} needs {self.triangle_count} 4x4 "
                f"triangle deltas, got shape {deltas.shape}"
            )
        self._store_deform(deform_id, buffers.from_array(deltas, np.float64, Allocator.PERSISTENT))

    def get_deform_deltas(self, deform_id: str) -> NDArray:
        """Copy of a deform's ``(T, 4, 4)`` triangle deltas."""
        return self._get_deform_triangle_deltas(deform_id).copy()

    def remove_deform(self, deform_id: str) -> None:
        triangle_deltas = self._deform_triangle_deltas.pop(deform_id, None)
        if triangle_deltas is not None:
            triangle_deltas.dispose()

    def contains_deform(self, deform_id: str) -> bool:
        return deform_id in self._deform_triangle_deltas

    def clear_deforms(self) -> None:
        for triangle_deltas in self._deform_triangle_deltas.values():
            triangle_deltas.dispose()
        self._deform_triangle_deltas.clear()

    def solve_deform_triangle_deltas(self, deform_points, allocator: Allocator) -> Buffer:
        """Per-triangle ``after @ inverse(before)`` frames, one parallel work item per triangle."""
        self._ensure_ready()
        points = as_points(deform_points, "deform_points")
        if len(points) != self.point_count:
            raise ContractViolation(
                f"[{type(self).__name__}] deform points must match the reference point count "
                f"({self.point_count}), got {len(points)}"
            )

        reference = self._reference_triangles
        deformed = reference.with_vertices(points)
        triangle_deltas = buffers.allocate((reference.count, 4, 4), np.float64, allocator)
        deltas = triangle_deltas.data

        def job(start: int, stop: int) -> None:
            before = reference.local_to_world_matrices(start, stop)
            after = deformed.local_to_world_matrices(start, stop)
            deltas[start:stop] = after @ batch_mat4_inverse(before)

        try:
            parallel_for(reference.count, job, self.max_workers)
        except Exception:
            triangle_deltas.dispose()
            raise
        return triangle_deltas

    # ── Transfer ───────────────────────────────────────────────────────

    def transfer_deform(self, deform_id: str, target_points, target_id: Optional[str] = None, *,
                        weights: Optional[TriangulatedShapeWeights] = None,
                        out: Optional[NDArray] = None) -> NDArray:
        """Deformed positions of ``target_points`` under the named deform.

        ``out`` may be ``target_points`` itself to deform in place.
        """
        triangle_deltas = self._get_deform_triangle_deltas(deform_id)
        return self._transfer(target_points, triangle_deltas, target_id, weights, out, evaluate_deformed_points)

    def transfer_deform_as_deltas(self, deform_id: str, target_points, target_id: Optional[str] = None, *,
                                  weights: Optional[TriangulatedShapeWeights] = None,
                                  out: Optional[NDArray] = None) -> NDArray:
        """Per-point displacement of ``target_points`` under the named deform."""
        triangle_deltas = self._get_deform_triangle_deltas(deform_id)
        return self._transfer(target_points, triangle_deltas, target_id, weights, out, evaluate_point_deltas)

    def transfer_points_deform(self, deform_points, target_points, target_id: Optional[str] = None, *,
                               weights: Optional[TriangulatedShapeWeights] = None,
                               out: Optional[NDArray] = None) -> NDArray:
        """Like :meth:`transfer_deform` for a one-off deformed reference point set."""
        with self.solve_deform_triangle_deltas(deform_points, Allocator.TRANSIENT) as triangle_deltas:
            return self._transfer(target_points, triangle_deltas.data, target_id, weights, out,
                                  evaluate_deformed_points)

    def transfer_points_deform_as_deltas(self, deform_points, target_points, target_id: Optional[str] = None, *,
                                         weights: Optional[TriangulatedShapeWeights] = None,
                                         out: Optional[NDArray] = None) -> NDArray:
        """Like :meth:`transfer_deform_as_deltas` for a one-off deformed reference point set."""
        with self.solve_deform_triangle_deltas(deform_points, Allocator.TRANSIENT) as triangle_deltas:
            return self._transfer(target_points, triangle_deltas.data, target_id, weights, out,
                                  evaluate_point_deltas)

    def _transfer(self, target_points, triangle_deltas: NDArray, target_id: Optional[str],
                  weights: Optional[TriangulatedShapeWeights], out: Optional[NDArray], evaluate) -> NDArray:
        points = as_points(target_points, "target_points")
        if weights is not None:
            return evaluate(points, weights, triangle_deltas, out, self.max_workers)

        weights, dispose_after_use = self._get_or_solve_weights(target_id, points)
        try:
            return evaluate(points, weights, triangle_deltas, out, self.max_workers)
        finally:
            if dispose_after_use:
                weights.dispose()

    # ── Weights ────────────────────────────────────────────────────────

    def solve_weights(self, target_points, allocator: Allocator = Allocator.TRANSIENT) -> TriangulatedShapeWeights:
        self._ensure_ready()
        return self._weights_solver.solve_weights(self._reference_triangles, target_points, allocator,
                                                  self.max_workers)

    def clear_weights_cache(self) -> None:
        for weights in self._weights_cache.values():
            weights.dispose()
        self._weights_cache.clear()

    def pack_weights_cache(self) -> None:
        """Replace every cached table with its packed copy."""
        for target_id, weights in list(self._weights_cache.items()):
            packed = weights.get_packed_copy(Allocator.PERSISTENT)
            weights.dispose()
            self._weights_cache[target_id] = packed
            logger.debug("Packed weights for target %r: %d joints", target_id, packed.capacity)

    def _get_or_solve_weights(self, target_id: Optional[str],
                              points: NDArray) -> tuple[TriangulatedShapeWeights, bool]:
        """Return ``(weights, dispose_after_use)``."""
        if target_id is None or not self._enable_weights_cache:
            return self.solve_weights(points, Allocator.TRANSIENT), True

        weights = self._weights_cache.get(target_id)
        if weights is not None:
            if weights.point_count == len(points):
                logger.debug("Weights cache hit for target %r", target_id)
                return weights, False

            logger.debug("Evicting weights for target %r: point count %d -> %d",
                         target_id, weights.point_count, len(points))
            del self._weights_cache[target_id]
            weights.dispose()

        weights = self.solve_weights(points, Allocator.PERSISTENT)
        self._weights_cache[target_id] = weights
        logger.debug("Cached weights for target %r (%d points)", target_id, len(points))
        return weights, False

    # ── Internals / lifetime ───────────────────────────────────────────

    def _store_deform(self, deform_id: str, triangle_deltas: Buffer) -> None:
        previous = self._deform_triangle_deltas.pop(deform_id, None)
        if previous is not None:
            previous.dispose()
        self._deform_triangle_deltas[deform_id] = triangle_deltas
        logger.debug("Added deform %r to shape %r", deform_id, self.id)

    def _get_deform_triangle_deltas(self, deform_id: str) -> NDArray:
        self._ensure_ready()
        triangle_deltas = self._deform_triangle_deltas.get(deform_id)
        if triangle_deltas is None:
            raise ContractViolation(f"[{type(self).__name__}] unknown deform: {deform_id}")
        return triangle_deltas.data

    def _ensure_ready(self) -> None:
        if self._disposed:
            raise ContractViolation(f"[{type(self).__name__}] {self.id!r} is disposed")
        if not self._initialized:
            raise ContractViolation(f"[{type(self).__name__}] {self.id!r} is not initialized")

    def dispose(self) -> None:
        """Release the reference mesh, every deform and every cached weights table."""
        if self._disposed:
            raise ContractViolation(f"[{type(self).__name__}] {self.id!r} already disposed")

        if self._initialized:
            self._reference_vertices.dispose()
            self._reference_indices.dispose()
        self._reference_vertices = None
        self._reference_indices = None
        self._reference_triangles = None

        self.clear_weights_cache()
        self.clear_deforms()
        self._disposed = True

    def __enter__(self) -> "TriangulatedShape":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    def __repr__(self) -> str:
        if not self.is_initialized:
            state = "disposed" if self._disposed else "uninitialized"
            return f"TriangulatedShape({self.id!r}, {state})"
        return (f"TriangulatedShape({self.id!r}, points={self.point_count}, "
                f"triangles={self.triangle_count}, deforms={len(self._deform_triangle_deltas)})")


# ── Transfer kernels ──────────────────────────────────────────────────

def _output_array(out: Optional[NDArray], count: int, name: str) -> NDArray:
    if out is None:
        return np.empty((count, 3), dtype=np.float64)
    if not isinstance(out, np.ndarray):
        raise ContractViolation(f"{name} output must be a numpy array")
    if out.shape == (count * 3,):
        out = out.reshape(count, 3)
    if out.shape != (count, 3):
        raise ContractViolation(f"{name} output must have shape ({count}, 3), got {out.shape}")
    return out


def _check_weights(points: NDArray, weights: TriangulatedShapeWeights) -> None:
    if weights.point_count != len(points):
        raise ContractViolation(
            f"Weights were solved for {weights.point_count} points, got {len(points)} target points"
        )


def evaluate_deformed_points(target_points, weights: TriangulatedShapeWeights, triangle_deltas: NDArray,
                             out: Optional[NDArray] = None, max_workers: Optional[int] = None) -> NDArray:
    """Absolute deformed positions, one parallel work item per point."""
    points = as_points(target_points, "target_points")
    _check_weights(points, weights)
    out = _output_array(out, len(points), "deformed points")

    def job(start: int, stop: int) -> None:
        out[start:stop] = weights.compute_deformed_points(points, start, stop, triangle_deltas)

    parallel_for(len(points), job, max_workers)
    return out


def evaluate_point_deltas(target_points, weights: TriangulatedShapeWeights, triangle_deltas: NDArray,
                          out: Optional[NDArray] = None, max_workers: Optional[int] = None) -> NDArray:
    """Deformed minus original position per point, one parallel work item per point."""
    points = as_points(target_points, "target_points")
    _check_weights(points, weights)
    out = _output_array(out, len(points), "deltas")

    def job(start: int, stop: int) -> None:
        deformed = weights.compute_deformed_points(points, start, stop, triangle_deltas)
        out[start:stop] = deformed - points[start:stop]

    parallel_for(len(points), job, max_workers)
    return out
