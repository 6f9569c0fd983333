"""Shared constants and paths for trideform."""

from pathlib import Path

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent.parent
ASSETS_DIR = PROJECT_ROOT / "assets"
CONFIG_DIR = ASSETS_DIR / "config"
SOLVER_CONFIG_DIR = CONFIG_DIR / "solvers"

# Triangle frames
# Edges are scaled by this before the cross product so tiny triangles
# don't collapse to a zero normal axis.
FRAME_ERROR_FIX_SCALE = 1000.0

# Weight solver defaults
DEFAULT_WEIGHT_THRESHOLD = 0.05
DEFAULT_GAUSS_WEIGHT_THRESHOLD = 0.1
DEFAULT_STICKY_DISTANCE = 0.0001
DEFAULT_EXPONENT = 4.0
DEFAULT_STANDARD_DEVIATION = 1.0

# Parallel execution
DEFAULT_MAX_WORKERS = None  # None -> os.cpu_count()
# Upper bound on point/triangle pairs evaluated at once inside a solver job
SOLVE_CHUNK_ELEMENTS = 1 << 18

# Persistence
SHAPE_FORMAT_VERSION = 1
