"""JSON config file loading utilities."""

import json
from pathlib import Path
from typing import Any

from trideform.constants import SOLVER_CONFIG_DIR


def load_json(path: Path) -> Any:
    """Load and return parsed JSON from a file."""
    with open(path) as f:
        return json.load(f)


def save_json(path: Path, data: Any) -> None:
    """Write ``data`` as JSON."""
    with open(path, "w") as f:
        json.dump(data, f)


def load_solver_config(name: str) -> Any:
    """Load a weight solver preset from assets/config/solvers/."""
    if not name.endswith(".json"):
        name = f"{name}.json"
    return load_json(SOLVER_CONFIG_DIR / name)
