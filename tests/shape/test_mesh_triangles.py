"""Tests for triangle queries: frames and closest points."""

import numpy as np
import pytest

from trideform.core.errors import ContractViolation
from trideform.core.math_utils import transform_point
from trideform.shape.mesh_triangles import (
    MeshTriangles,
    closest_point_on_triangle,
    closest_points_on_triangles,
    local_to_world_matrix,
    squared_distances_to_triangles,
)

SQUARE_VERTICES = np.array([
    [0.0, 0.0, 0.0],
    [1.0, 0.0, 0.0],
    [1.0, 1.0, 0.0],
    [0.0, 1.0, 0.0],
])
SQUARE_INDICES = np.array([0, 1, 2, 0, 2, 3], dtype=np.int32)


def _rotation_z(angle: float) -> np.ndarray:
    c, s = np.cos(angle), np.sin(angle)
    m = np.eye(4)
    m[:2, :2] = [[c, -s], [s, c]]
    return m


def test_indices_must_be_multiple_of_three():
    with pytest.raises(ContractViolation, match="multiple of 3"):
        MeshTriangles(SQUARE_VERTICES, [0, 1, 2, 3])


def test_vertex_accessors():
    tris = MeshTriangles(SQUARE_VERTICES, SQUARE_INDICES)
    assert tris.count == 2
    np.testing.assert_array_equal(tris.get_vertex_a(1), [0, 0, 0])
    np.testing.assert_array_equal(tris.get_vertex_b(1), [1, 1, 0])
    np.testing.assert_array_equal(tris.get_vertex_c(1), [0, 1, 0])
    a, b, c = tris.triangle_vertices()
    assert a.shape == b.shape == c.shape == (2, 3)


def test_right_triangle_frame_is_identity():
    m = local_to_world_matrix(np.zeros(3), np.array([0.0, 1.0, 0.0]), np.array([1.0, 0.0, 0.0]))
    np.testing.assert_array_almost_equal(m, np.eye(4))


def test_frame_normal_length_is_sqrt_of_area_measure():
    a = np.zeros(3)
    b = np.array([0.0, 2.0, 0.0])
    c = np.array([2.0, 0.0, 0.0])
    m = local_to_world_matrix(a, b, c)
    # |cross(c - a, b - a)| = 4, so the normal axis has length 2
    np.testing.assert_array_almost_equal(m[:3, 2], [0, 0, 2])
    np.testing.assert_array_almost_equal(m[:3, 0], c - a)
    np.testing.assert_array_almost_equal(m[:3, 1], b - a)


def test_tiny_triangle_frame_is_invertible():
    scale = 1e-5
    m = local_to_world_matrix(np.zeros(3), np.array([0.0, scale, 0.0]), np.array([scale, 0.0, 0.0]))
    assert np.isfinite(np.linalg.inv(m)).all()


def test_batched_frames_match_single():
    rng = np.random.default_rng(3)
    tris = MeshTriangles(rng.normal(size=(30, 3)), rng.permutation(30))
    frames = tris.local_to_world_matrices()
    for i in range(tris.count):
        np.testing.assert_array_almost_equal(frames[i], tris.get_local_to_world_matrix(i))
    np.testing.assert_array_almost_equal(tris.local_to_world_matrices(5, 9), frames[5:9])


def test_frames_follow_rigid_rotation():
    rotation = _rotation_z(0.7)
    tris = MeshTriangles(SQUARE_VERTICES, SQUARE_INDICES)
    rotated = tris.with_vertices(np.array([transform_point(rotation, p) for p in SQUARE_VERTICES]))
    for i in range(tris.count):
        np.testing.assert_array_almost_equal(
            rotated.get_local_to_world_matrix(i),
            rotation @ tris.get_local_to_world_matrix(i),
        )


def test_with_vertices_checks_length():
    tris = MeshTriangles(SQUARE_VERTICES, SQUARE_INDICES)
    with pytest.raises(ContractViolation):
        tris.with_vertices(SQUARE_VERTICES[:3])


@pytest.mark.parametrize("point, expected", [
    ((0.25, 0.25, 1.0), (0.25, 0.25, 0.0)),   # interior
    ((-1.0, -1.0, 0.0), (0.0, 0.0, 0.0)),     # vertex a
    ((3.0, -1.0, 0.0), (1.0, 0.0, 0.0)),      # vertex b
    ((-1.0, 3.0, 0.0), (0.0, 1.0, 0.0)),      # vertex c
    ((0.5, -2.0, 0.0), (0.5, 0.0, 0.0)),      # edge ab
    ((-2.0, 0.5, 0.0), (0.0, 0.5, 0.0)),      # edge ac
    ((1.0, 1.0, 0.0), (0.5, 0.5, 0.0)),       # edge bc
])
def test_closest_point_regions(point, expected):
    a = np.array([0.0, 0.0, 0.0])
    b = np.array([1.0, 0.0, 0.0])
    c = np.array([0.0, 1.0, 0.0])
    p = np.array(point)
    np.testing.assert_array_almost_equal(closest_point_on_triangle(p, a, b, c), expected)
    np.testing.assert_array_almost_equal(closest_points_on_triangles(p[None], a, b, c)[0], expected)


def test_vectorized_closest_points_match_scalar():
    rng = np.random.default_rng(7)
    a, b, c = rng.normal(size=(3, 12, 3))
    points = rng.normal(scale=2.0, size=(20, 3))

    closest = closest_points_on_triangles(points[:, None], a[None], b[None], c[None])
    assert closest.shape == (20, 12, 3)
    for i in range(20):
        for t in range(12):
            np.testing.assert_allclose(
                closest[i, t], closest_point_on_triangle(points[i], a[t], b[t], c[t]),
                atol=1e-9,
            )


def test_squared_distances():
    tris = MeshTriangles(SQUARE_VERTICES, SQUARE_INDICES)
    a, b, c = tris.triangle_vertices()
    points = np.array([[0.5, 0.5, 2.0], [2.0, 0.5, 0.0]])
    d = squared_distances_to_triangles(points, a, b, c)
    assert d.shape == (2, 2)
    np.testing.assert_array_almost_equal(d[0], [4.0, 4.0])
    np.testing.assert_array_almost_equal(d[1], [1.0, 1.25])


def test_get_closest_point():
    tris = MeshTriangles(SQUARE_VERTICES, SQUARE_INDICES)
    np.testing.assert_array_almost_equal(tris.get_closest_point(0, [0.9, 0.1, 5.0]), [0.9, 0.1, 0.0])
