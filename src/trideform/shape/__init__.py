"""Triangulated reference shapes: per-triangle deforms transferred through solved weights."""

from trideform.shape.mesh_triangles import MeshTriangles
from trideform.shape.solvers import (
    BiquadraticSolver,
    ExponentialSolver,
    GaussSolver,
    NearestTriangleSolver,
    WeightSolver,
    load_solver_preset,
    solver_from_dict,
)
from trideform.shape.triangulated_shape import (
    TriangulatedShape,
    evaluate_deformed_points,
    evaluate_point_deltas,
)
from trideform.shape.weights import Joint, TriangulatedShapeWeights

__all__ = [
    "BiquadraticSolver",
    "ExponentialSolver",
    "GaussSolver",
    "Joint",
    "MeshTriangles",
    "NearestTriangleSolver",
    "TriangulatedShape",
    "TriangulatedShapeWeights",
    "WeightSolver",
    "evaluate_deformed_points",
    "evaluate_point_deltas",
    "load_solver_preset",
    "solver_from_dict",
]
