"""Wavefront OBJ point sets: positions and triangle indices only."""

from pathlib import Path

import numpy as np
from numpy.typing import NDArray

from trideform.core.errors import ContractViolation
from trideform.core.mesh import as_indices, as_points


def parse_obj(text: str) -> tuple[NDArray[np.float64], NDArray[np.int32]]:
    """Parse a Wavefront OBJ string into vertices and flat triangle indices.

    Only ``v`` and ``f`` lines are read. Faces with more than three corners
    are fan-triangulated. Face indices may be 1-based or negative (relative
    to the vertices read so far); texture/normal references are ignored.

    Parameters
    ----------
    text : str
        The OBJ file contents.

    Returns
    -------
    (vertices, indices)
        ``(N, 3)`` float64 positions and a flat int32 index buffer.
    """
    positions: list[list[float]] = []
    tri_indices: list[int] = []

    for line_number, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        key = parts[0]

        if key == "v" and len(parts) >= 4:
            positions.append([float(parts[1]), float(parts[2]), float(parts[3])])
        elif key == "f":
            face: list[int] = []
            for token in parts[1:]:
                index = int(token.split("/")[0])
                if index < 0:
                    index += len(positions)  # -1 is the last vertex read
                else:
                    index -= 1  # OBJ is 1-based
                if not 0 <= index < len(positions):
                    raise ContractViolation(f"OBJ line {line_number}: vertex index out of range")
                face.append(index)
            if len(face) < 3:
                raise ContractViolation(f"OBJ line {line_number}: face needs at least 3 vertices")
            for k in range(1, len(face) - 1):
                tri_indices.extend([face[0], face[k], face[k + 1]])

    vertices = np.array(positions, dtype=np.float64).reshape(-1, 3)
    indices = np.array(tri_indices, dtype=np.int32)
    return vertices, indices


def format_obj(vertices, indices=None) -> str:
    """Serialize positions (and optional triangles) as OBJ text."""
    vertices = as_points(vertices, "vertices")
    lines = [f"v {x:.9g} {y:.9g} {z:.9g}" for x, y, z in vertices]
    if indices is not None:
        tris = as_indices(indices).reshape(-1, 3) + 1
        lines.extend(f"f {a} {b} {c}" for a, b, c in tris)
    return "\n".join(lines) + "\n"


def load_obj(path) -> tuple[NDArray[np.float64], NDArray[np.int32]]:
    """Load an OBJ file from disk."""
    with open(path, "r") as f:
        text = f.read()
    return parse_obj(text)


def save_obj(path, vertices, indices=None) -> None:
    Path(path).write_text(format_obj(vertices, indices))
