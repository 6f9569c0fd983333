"""Flatten / restore a TriangulatedShape as plain JSON-compatible data.

Document layout::

    {
        "format": 1,
        "id": "body",
        "vertices": [x0, y0, z0, x1, ...],          # flat, 3 per point
        "indices": [i0, i1, i2, ...],               # flat, 3 per triangle
        "solver": {"type": "biquadratic", ...},     # see solvers.solver_from_dict
        "deforms": {"heavy": [m00, m01, ...], ...}, # 16 per triangle, row-major
        "enable_weights_cache": false
    }

Weights caches are not persisted; they are re-solved on demand.
"""

import logging
from pathlib import Path
from typing import Any, Optional

import numpy as np

from trideform.constants import SHAPE_FORMAT_VERSION
from trideform.core.config_loader import load_json, save_json
from trideform.core.errors import ContractViolation
from trideform.shape.solvers import solver_from_dict
from trideform.shape.triangulated_shape import TriangulatedShape

logger = logging.getLogger(__name__)

_REQUIRED_KEYS = ("id", "vertices", "indices", "solver", "deforms")


def _number_list(values, field: str, kinds: tuple) -> list:
    """Return ``values`` if it is a list of plain numbers of the given kinds."""
    if not isinstance(values, list):
        raise ContractViolation(f"Shape field {field!r} must be a list, got {type(values).__name__}")
    for value in values:
        if isinstance(value, bool) or not isinstance(value, kinds):
            raise ContractViolation(f"Shape field {field!r} holds a non-numeric value: {value!r}")
    return values


def shape_to_dict(shape: TriangulatedShape) -> dict[str, Any]:
    """Flatten an initialized shape."""
    return {
        "format": SHAPE_FORMAT_VERSION,
        "id": shape.id,
        "vertices": shape.get_points().ravel().tolist(),
        "indices": shape.get_indices().tolist(),
        "solver": shape.weights_solver.to_dict(),
        "deforms": {
            deform_id: shape.get_deform_deltas(deform_id).ravel().tolist()
            for deform_id in shape.deform_ids
        },
        "enable_weights_cache": shape.enable_weights_cache,
    }


def shape_from_dict(data: dict[str, Any], max_workers: Optional[int] = None) -> TriangulatedShape:
    """Rebuild a shape from :func:`shape_to_dict` output."""
    if not isinstance(data, dict):
        raise ContractViolation(f"Shape data must be a dict, got {type(data).__name__}")
    missing = [key for key in _REQUIRED_KEYS if key not in data]
    if missing:
        raise ContractViolation(f"Shape data is missing keys: {', '.join(missing)}")
    version = data.get("format", SHAPE_FORMAT_VERSION)
    if version != SHAPE_FORMAT_VERSION:
        raise ContractViolation(f"Unsupported shape format: {version}")

    if not isinstance(data["id"], str):
        raise ContractViolation(f"Shape id must be a string, got {type(data['id']).__name__}")
    vertices = np.asarray(_number_list(data["vertices"], "vertices", (int, float)), dtype=np.float64)
    indices = np.asarray(_number_list(data["indices"], "indices", (int,)), dtype=np.int64)
    if not isinstance(data["deforms"], dict):
        raise ContractViolation(f"Shape field 'deforms' must be a dict, got {type(data['deforms']).__name__}")
    deforms = {
        deform_id: np.asarray(_number_list(flat, f"deforms.{deform_id}", (int, float)), dtype=np.float64)
        for deform_id, flat in data["deforms"].items()
    }

    shape = TriangulatedShape(
        data["id"],
        solver_from_dict(data["solver"]),
        enable_weights_cache=bool(data.get("enable_weights_cache", False)),
        max_workers=max_workers,
    )
    try:
        shape.initialize(vertices, indices)
        for deform_id, triangle_deltas in deforms.items():
            shape.add_deform_deltas(deform_id, triangle_deltas)
    except Exception:
        shape.dispose()
        raise

    logger.debug("Restored shape %r with %d deforms", shape.id, len(shape.deform_ids))
    return shape


def save_shape(shape: TriangulatedShape, path: Path) -> None:
    """Write a shape as JSON."""
    save_json(Path(path), shape_to_dict(shape))
    logger.info("Saved shape %r to %s", shape.id, path)


def load_shape(path: Path, max_workers: Optional[int] = None) -> TriangulatedShape:
    """Read a shape written by :func:`save_shape`."""
    return shape_from_dict(load_json(Path(path)), max_workers=max_workers)
