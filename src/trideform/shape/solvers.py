"""Weight solvers: associate arbitrary target points with reference triangles.

Every solver is a small dataclass of parameters and a pure
``solve_weights(reference_triangles, target_points, allocator)``. Solvers
serialize to ``{"type": <tag>, **params}`` so a persisted shape can reselect
the same strategy later (see :func:`solver_from_dict`).

The RBF solvers share one scheme, per target point:

1. Measure the distance from the point to every reference triangle.
2. If a triangle is within ``sticky_distance`` (first in index order), the
   point sticks to it: one joint, weight 1.0.
3. Otherwise every triangle becomes a joint weighted by the kernel, and
   joints whose weight relative to the point's max weight falls below
   ``normalized_weight_threshold`` are dropped.
"""

import dataclasses
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, Optional

import numpy as np
from numpy.typing import NDArray

from trideform.constants import (
    DEFAULT_EXPONENT,
    DEFAULT_GAUSS_WEIGHT_THRESHOLD,
    DEFAULT_STANDARD_DEVIATION,
    DEFAULT_STICKY_DISTANCE,
    DEFAULT_WEIGHT_THRESHOLD,
    SOLVE_CHUNK_ELEMENTS,
)
from trideform.core.buffers import Allocator
from trideform.core.config_loader import load_solver_config
from trideform.core.errors import ContractViolation
from trideform.core.mesh import as_points
from trideform.core.parallel import parallel_for
from trideform.shape.mesh_triangles import MeshTriangles, squared_distances_to_triangles
from trideform.shape.weights import Joint, TriangulatedShapeWeights

logger = logging.getLogger(__name__)

_SOLVER_TYPES: dict[str, type["WeightSolver"]] = {}


def register_solver(cls):
    """Class decorator adding a solver to the tag registry."""
    if not cls.TYPE:
        raise ContractViolation(f"{cls.__name__} has no TYPE tag")
    _SOLVER_TYPES[cls.TYPE] = cls
    return cls


def solver_types() -> list[str]:
    return sorted(_SOLVER_TYPES)


@dataclass
class WeightSolver(ABC):
    """Base class for point-to-triangle weight solvers."""

    TYPE: ClassVar[str] = ""

    sticky_distance: float = DEFAULT_STICKY_DISTANCE
    verbose: bool = False

    def __post_init__(self):
        if self.sticky_distance < 0.0:
            raise ContractViolation(f"sticky_distance must be >= 0, got {self.sticky_distance}")

    def solve_weights(
        self,
        reference_triangles: MeshTriangles,
        target_points,
        allocator: Allocator = Allocator.TRANSIENT,
        max_workers: Optional[int] = None,
    ) -> TriangulatedShapeWeights:
        """Solve joints for every target point, one parallel work item per point."""
        points = as_points(target_points, "target_points")
        triangle_count = reference_triangles.count
        a, b, c = reference_triangles.triangle_vertices()
        sqr_sticky = self.sticky_distance * self.sticky_distance

        weights = TriangulatedShapeWeights(len(points), self.joints_per_point(triangle_count), allocator)
        step = max(1, SOLVE_CHUNK_ELEMENTS // max(1, triangle_count))

        def job(start: int, stop: int) -> None:
            for chunk_start in range(start, stop, step):
                chunk_stop = min(chunk_start + step, stop)
                sqr_distances = squared_distances_to_triangles(points[chunk_start:chunk_stop], a, b, c)
                for row, point_index in enumerate(range(chunk_start, chunk_stop)):
                    distances = sqr_distances[row]
                    if triangle_count == 0:
                        weights.set_joint_count(point_index, 0)
                    elif not _stick(weights, point_index, distances, sqr_sticky):
                        self._solve_point(weights, point_index, distances)

        try:
            parallel_for(len(points), job, max_workers)
        except Exception:
            weights.dispose()
            raise

        if self.verbose:
            logger.info("[%s] solved weights for %d points (%s). Joints -> %s",
                        type(self).__name__, len(points), self._describe(),
                        weights.joint_stats_message())
        return weights

    def joints_per_point(self, triangle_count: int) -> int:
        return triangle_count

    @abstractmethod
    def _solve_point(self, weights: TriangulatedShapeWeights, point_index: int,
                     sqr_distances: NDArray) -> None:
        """Write the joints of one non-sticky point given its squared triangle distances."""

    def _describe(self) -> str:
        params = self.to_dict()
        params.pop("type")
        params.pop("verbose")
        return ", ".join(f"{k}: {v}" for k, v in params.items())

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.TYPE, **dataclasses.asdict(self)}


def _stick(weights: TriangulatedShapeWeights, point_index: int, sqr_distances: NDArray,
           sqr_sticky: float) -> bool:
    """Give the point a single full-weight joint on the first triangle it touches."""
    hits = np.flatnonzero(sqr_distances <= sqr_sticky)
    if hits.size == 0:
        return False
    weights.set_joint(point_index, 0, Joint(int(hits[0]), 1.0))
    weights.set_joint_count(point_index, 1)
    return True


def _check_threshold(threshold: float) -> None:
    if not 0.0 <= threshold <= 1.0:
        raise ContractViolation(f"normalized_weight_threshold must be in [0, 1], got {threshold}")


@register_solver
@dataclass
class BiquadraticSolver(WeightSolver):
    """Inverted biquadratic RBF kernel, ``1 / d^4``.

    Same result as :class:`ExponentialSolver` with an exponent of 4, without
    the ``pow`` call.
    """

    TYPE: ClassVar[str] = "biquadratic"

    normalized_weight_threshold: float = DEFAULT_WEIGHT_THRESHOLD

    def __post_init__(self):
        super().__post_init__()
        _check_threshold(self.normalized_weight_threshold)

    def _solve_point(self, weights, point_index, sqr_distances):
        joint_weights = 1.0 / (sqr_distances * sqr_distances)
        weights.set_joints(point_index, np.arange(len(joint_weights)), joint_weights)
        weights.filter_joints(point_index, len(joint_weights), float(joint_weights.max()),
                              self.normalized_weight_threshold)


@register_solver
@dataclass
class ExponentialSolver(WeightSolver):
    """Inverted exponential RBF kernel, ``d^-exponent``.

    Higher exponents give more localized weights.
    """

    TYPE: ClassVar[str] = "exponential"

    exponent: float = DEFAULT_EXPONENT
    normalized_weight_threshold: float = DEFAULT_WEIGHT_THRESHOLD

    def __post_init__(self):
        super().__post_init__()
        _check_threshold(self.normalized_weight_threshold)
        if self.exponent <= 0.0:
            raise ContractViolation(f"exponent must be > 0, got {self.exponent}")

    def _solve_point(self, weights, point_index, sqr_distances):
        # half exponent so the squared distance can be used directly
        joint_weights = np.power(sqr_distances, -0.5 * self.exponent)
        weights.set_joints(point_index, np.arange(len(joint_weights)), joint_weights)
        weights.filter_joints(point_index, len(joint_weights), float(joint_weights.max()),
                              self.normalized_weight_threshold)


@register_solver
@dataclass
class GaussSolver(WeightSolver):
    """Gaussian kernel over the distance relative to the closest triangle.

    ``r = (d - d_min) / d_min`` and ``w = exp(-r^2 / (2 * sigma^2))``, so the
    closest triangle always weighs 1.0 and a larger standard deviation
    spreads the weights further.
    """

    TYPE: ClassVar[str] = "gauss"

    standard_deviation: float = DEFAULT_STANDARD_DEVIATION
    normalized_weight_threshold: float = DEFAULT_GAUSS_WEIGHT_THRESHOLD

    def __post_init__(self):
        super().__post_init__()
        _check_threshold(self.normalized_weight_threshold)
        if self.standard_deviation <= 0.0:
            raise ContractViolation(f"standard_deviation must be > 0, got {self.standard_deviation}")

    def _solve_point(self, weights, point_index, sqr_distances):
        distances = np.sqrt(sqr_distances)
        min_distance = float(distances.min())

        relative = (distances - min_distance) / min_distance
        # -1 / (2 sigma^2), not -sigma^2 / 2: a larger sigma must widen the falloff
        coefficient = -1.0 / (2.0 * self.standard_deviation * self.standard_deviation)
        joint_weights = np.exp(coefficient * relative * relative)

        # max weight is always 1.0 (the closest triangle)
        weights.set_joints(point_index, np.arange(len(joint_weights)), joint_weights)
        weights.filter_joints(point_index, len(joint_weights), 1.0, self.normalized_weight_threshold)


@register_solver
@dataclass
class NearestTriangleSolver(WeightSolver):
    """Single full-weight joint on the closest triangle (lowest index on ties)."""

    TYPE: ClassVar[str] = "nearest"

    def joints_per_point(self, triangle_count: int) -> int:
        return min(1, triangle_count)

    def _solve_point(self, weights, point_index, sqr_distances):
        weights.set_joint(point_index, 0, Joint(int(np.argmin(sqr_distances)), 1.0))
        weights.set_joint_count(point_index, 1)


def solver_from_dict(data: dict[str, Any]) -> WeightSolver:
    """Rebuild a solver from its ``to_dict`` form."""
    if not isinstance(data, dict) or "type" not in data:
        raise ContractViolation(f"Solver data must be a dict with a 'type' tag, got {data!r}")

    params = dict(data)
    tag = params.pop("type")
    cls = _SOLVER_TYPES.get(tag)
    if cls is None:
        raise ContractViolation(f"Unknown solver type: {tag!r}. Choices: {', '.join(solver_types())}")

    try:
        return cls(**params)
    except TypeError as e:
        raise ContractViolation(f"Invalid parameters for solver {tag!r}: {e}") from e


def load_solver_preset(name: str) -> WeightSolver:
    """Load a solver preset from assets/config/solvers/<name>.json."""
    return solver_from_dict(load_solver_config(name))
