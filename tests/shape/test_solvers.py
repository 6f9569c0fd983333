"""Tests for the point -> triangle weight solvers."""

import numpy as np
import pytest

from trideform.core.buffers import Allocator, live_buffer_count
from trideform.core.errors import ContractViolation
from trideform.shape import solvers
from trideform.shape.mesh_triangles import MeshTriangles
from trideform.shape.solvers import (
    BiquadraticSolver,
    ExponentialSolver,
    GaussSolver,
    NearestTriangleSolver,
    load_solver_preset,
    solver_from_dict,
    solver_types,
)
from trideform.shape.weights import Joint


def _stacked_triangles(heights=(0.0, 4.0)) -> MeshTriangles:
    """Identical right triangles stacked along +Z at the given heights."""
    corners = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
    vertices = np.concatenate([corners + [0.0, 0.0, h] for h in heights])
    return MeshTriangles(vertices, np.arange(len(vertices), dtype=np.int32))


# Point 1 above the lower triangle and 3 below the upper one.
PROBE = np.array([[0.2, 0.2, 1.0]])


def _joints(weights, point_index=0):
    joints = weights.get_joints(point_index)
    return list(joints["triangle"]), list(joints["weight"])


def test_registry_lists_all_solvers():
    assert solver_types() == ["biquadratic", "exponential", "gauss", "nearest"]


def test_sticky_point_gets_single_full_joint():
    tris = _stacked_triangles()
    on_surface = np.array([[0.2, 0.2, 4.0]])
    for solver in (BiquadraticSolver(), ExponentialSolver(), GaussSolver(), NearestTriangleSolver()):
        with solver.solve_weights(tris, on_surface) as weights:
            assert weights.get_joint_count(0) == 1
            assert weights.get_joint(0, 0) == Joint(1, 1.0)


def test_sticky_picks_first_triangle_in_index_order():
    tris = _stacked_triangles(heights=(0.0, 0.0))
    with BiquadraticSolver().solve_weights(tris, PROBE * [1, 1, 0]) as weights:
        assert weights.get_joint(0, 0) == Joint(0, 1.0)


def test_biquadratic_weights():
    tris = _stacked_triangles()
    with BiquadraticSolver(normalized_weight_threshold=0.0).solve_weights(tris, PROBE) as weights:
        triangles, values = _joints(weights)
        assert triangles == [0, 1]
        np.testing.assert_allclose(values, [1.0, 1.0 / 81.0])

    # 1/81 relative to 1.0 is below the default 0.05 threshold
    with BiquadraticSolver().solve_weights(tris, PROBE) as weights:
        assert _joints(weights)[0] == [0]


def test_exponential_matches_biquadratic_at_four():
    tris = _stacked_triangles(heights=(0.0, 2.0, 3.5))
    points = np.array([[0.1, 0.3, 0.5], [0.9, 0.9, 1.7], [-1.0, 0.2, 3.0]])
    with BiquadraticSolver(normalized_weight_threshold=0.0).solve_weights(tris, points) as expected, \
            ExponentialSolver(exponent=4.0, normalized_weight_threshold=0.0).solve_weights(tris, points) as actual:
        for p in range(len(points)):
            np.testing.assert_array_equal(actual.get_joints(p)["triangle"], expected.get_joints(p)["triangle"])
            np.testing.assert_allclose(actual.get_joints(p)["weight"], expected.get_joints(p)["weight"])


def test_exponential_exponent_controls_falloff():
    tris = _stacked_triangles()
    with ExponentialSolver(exponent=2.0, normalized_weight_threshold=0.0).solve_weights(tris, PROBE) as weights:
        np.testing.assert_allclose(_joints(weights)[1], [1.0, 1.0 / 9.0])


def test_gauss_weights():
    tris = _stacked_triangles()
    # r = (3 - 1) / 1 = 2
    with GaussSolver(standard_deviation=1.0, normalized_weight_threshold=0.1).solve_weights(tris, PROBE) as weights:
        triangles, values = _joints(weights)
        assert triangles == [0, 1]
        np.testing.assert_allclose(values, [1.0, np.exp(-2.0)])

    with GaussSolver(standard_deviation=0.5).solve_weights(tris, PROBE) as weights:
        assert _joints(weights)[0] == [0]


def test_gauss_wider_sigma_spreads_weights():
    tris = _stacked_triangles()
    # r = 2, sigma = 2: exp(-r^2 / (2 sigma^2)) = exp(-0.5)
    with GaussSolver(standard_deviation=2.0).solve_weights(tris, PROBE) as weights:
        triangles, values = _joints(weights)
        assert triangles == [0, 1]
        np.testing.assert_allclose(values, [1.0, np.exp(-0.5)])


def test_nearest_solver():
    tris = _stacked_triangles(heights=(0.0, 4.0, 2.5))
    with NearestTriangleSolver().solve_weights(tris, np.array([[0.2, 0.2, 2.0], [0.2, 0.2, -1.0]])) as weights:
        assert weights.capacity == 2
        assert weights.get_joint(0, 0) == Joint(2, 1.0)
        assert weights.get_joint(1, 0) == Joint(0, 1.0)


def test_no_triangles_gives_no_joints():
    tris = MeshTriangles(np.zeros((0, 3)), np.zeros(0, dtype=np.int32))
    with BiquadraticSolver().solve_weights(tris, np.ones((2, 3))) as weights:
        assert weights.calculate_joint_stats() == (0, 0, 0.0)


def test_allocator_is_respected():
    tris = _stacked_triangles()
    with NearestTriangleSolver().solve_weights(tris, PROBE, Allocator.PERSISTENT) as weights:
        assert weights.allocator is Allocator.PERSISTENT


@pytest.mark.parametrize("solver", [BiquadraticSolver(), ExponentialSolver(exponent=6.0), GaussSolver()])
def test_solve_is_independent_of_workers_and_chunking(solver, monkeypatch):
    rng = np.random.default_rng(4)
    tris = MeshTriangles(rng.normal(size=(24, 3)), rng.permutation(24))
    points = rng.normal(size=(50, 3))

    with solver.solve_weights(tris, points, max_workers=1) as expected:
        monkeypatch.setattr(solvers, "SOLVE_CHUNK_ELEMENTS", 16)
        with solver.solve_weights(tris, points, max_workers=4) as actual:
            for p in range(len(points)):
                np.testing.assert_array_equal(actual.get_joints(p)["triangle"], expected.get_joints(p)["triangle"])
                np.testing.assert_allclose(actual.get_joints(p)["weight"], expected.get_joints(p)["weight"])


def test_failed_solve_releases_table(monkeypatch):
    tris = _stacked_triangles()
    solver = BiquadraticSolver()

    def fail(weights, point_index, sqr_distances):
        raise RuntimeError("solver failure")

    monkeypatch.setattr(solver, "_solve_point", fail)
    before = live_buffer_count()
    with pytest.raises(RuntimeError, match="solver failure"):
        solver.solve_weights(tris, PROBE)
    assert live_buffer_count() == before


def test_verbose_logs_joint_stats(caplog):
    tris = _stacked_triangles()
    with caplog.at_level("INFO", logger="trideform.shape.solvers"):
        with BiquadraticSolver(verbose=True).solve_weights(tris, PROBE):
            pass
    assert "BiquadraticSolver" in caplog.text
    assert "Min: 1; Max: 1" in caplog.text


@pytest.mark.parametrize("kwargs", [
    {"sticky_distance": -1.0},
    {"normalized_weight_threshold": 1.5},
    {"normalized_weight_threshold": -0.1},
])
def test_invalid_parameters(kwargs):
    with pytest.raises(ContractViolation):
        BiquadraticSolver(**kwargs)


def test_invalid_kernel_parameters():
    with pytest.raises(ContractViolation):
        ExponentialSolver(exponent=0.0)
    with pytest.raises(ContractViolation):
        GaussSolver(standard_deviation=0.0)


def test_to_dict_roundtrip():
    solver = GaussSolver(standard_deviation=2.0, normalized_weight_threshold=0.2, sticky_distance=0.01)
    data = solver.to_dict()
    assert data["type"] == "gauss"
    assert solver_from_dict(data) == solver


def test_solver_from_dict_errors():
    with pytest.raises(ContractViolation, match="Unknown solver type"):
        solver_from_dict({"type": "cubic"})
    with pytest.raises(ContractViolation, match="Invalid parameters"):
        solver_from_dict({"type": "nearest", "exponent": 2.0})
    with pytest.raises(ContractViolation):
        solver_from_dict({"exponent": 2.0})


def test_load_solver_preset():
    assert isinstance(load_solver_preset("default"), BiquadraticSolver)
    assert isinstance(load_solver_preset("smooth"), GaussSolver)
    sharp = load_solver_preset("sharp")
    assert isinstance(sharp, ExponentialSolver)
    assert sharp.exponent == 6.0
    assert isinstance(load_solver_preset("nearest"), NearestTriangleSolver)
