"""CLI entry point for transferring one deform between OBJ meshes and reporting on it.

Usage::

    # Transfer reference -> deformed onto target with the default preset:
    python -m tools.transfer_report ref.obj deformed.obj target.obj

    # Smooth Gaussian weights, write the result mesh and the shape:
    python -m tools.transfer_report ref.obj deformed.obj target.obj \\
        --preset smooth --output result.obj --save-shape shape.json

    # Machine-readable summary:
    python -m tools.transfer_report ref.obj deformed.obj target.obj --json report.json
"""

from __future__ import annotations

import argparse
import json
import logging
import time
from pathlib import Path

import numpy as np
from scipy.spatial import cKDTree

from trideform.loaders.obj_parser import load_obj, save_obj
from trideform.shape.serialization import save_shape
from trideform.shape.solvers import load_solver_preset
from trideform.shape.triangulated_shape import TriangulatedShape

logger = logging.getLogger(__name__)

DEFORM_ID = "deform"
TARGET_ID = "target"


def _displacement_summary(deltas: np.ndarray) -> dict:
    lengths = np.linalg.norm(deltas, axis=1)
    if len(lengths) == 0:
        return {"mean": 0.0, "max": 0.0, "moved": 0}
    return {
        "mean": float(lengths.mean()),
        "max": float(lengths.max()),
        "moved": int(np.count_nonzero(lengths > 1e-9)),
    }


def _reference_gap(reference_vertices: np.ndarray, target_vertices: np.ndarray) -> dict:
    """Distance from each target point to its nearest reference vertex."""
    if len(reference_vertices) == 0 or len(target_vertices) == 0:
        return {"mean": 0.0, "max": 0.0}
    distances, _ = cKDTree(reference_vertices).query(target_vertices)
    return {"mean": float(distances.mean()), "max": float(distances.max())}


def run_report(
    reference_path: Path,
    deformed_path: Path,
    target_path: Path,
    preset: str = "default",
    output_path: Path | None = None,
    shape_path: Path | None = None,
    max_workers: int | None = None,
) -> dict:
    """Build a shape from the reference mesh, transfer the deform and summarise it."""
    reference_vertices, reference_indices = load_obj(reference_path)
    deformed_vertices, _ = load_obj(deformed_path)
    target_vertices, target_indices = load_obj(target_path)

    solver = load_solver_preset(preset)
    logger.info("Solver: %r", solver)

    with TriangulatedShape(Path(reference_path).stem, solver, max_workers=max_workers) as shape:
        shape.initialize(reference_vertices, reference_indices)
        shape.add_deform(DEFORM_ID, deformed_vertices)

        t0 = time.time()
        with shape.solve_weights(target_vertices) as weights:
            solve_seconds = time.time() - t0
            min_joints, max_joints, avg_joints = weights.calculate_joint_stats()
            logger.info("Joints per point: %s", weights.joint_stats_message())

            t1 = time.time()
            deltas = shape.transfer_deform_as_deltas(DEFORM_ID, target_vertices, weights=weights)
            transfer_seconds = time.time() - t1

        result = target_vertices + deltas
        if output_path:
            save_obj(output_path, result, target_indices)
            logger.info("Deformed target written to %s", output_path)
        if shape_path:
            save_shape(shape, shape_path)

        report = {
            "reference": {"points": shape.point_count, "triangles": shape.triangle_count},
            "target": {"points": len(target_vertices)},
            "solver": solver.to_dict(),
            "joints": {"min": min_joints, "max": max_joints, "average": avg_joints},
            "displacement": _displacement_summary(deltas),
            "reference_gap": _reference_gap(reference_vertices, target_vertices),
            "timing": {"solve": solve_seconds, "transfer": transfer_seconds},
        }
    return report


def format_report(report: dict) -> str:
    joints = report["joints"]
    disp = report["displacement"]
    gap = report["reference_gap"]
    lines = [
        f"Reference: {report['reference']['points']} points, "
        f"{report['reference']['triangles']} triangles",
        f"Target:    {report['target']['points']} points",
        f"Solver:    {report['solver']['type']}",
        f"Joints:    min {joints['min']}, max {joints['max']}, average {joints['average']:.2f}",
        f"Displacement: mean {disp['mean']:.6g}, max {disp['max']:.6g}, {disp['moved']} points moved",
        f"Gap to reference: mean {gap['mean']:.6g}, max {gap['max']:.6g}",
        f"Timing: solve {report['timing']['solve']:.3f}s, transfer {report['timing']['transfer']:.3f}s",
    ]
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Transfer a reference mesh deformation onto a target point set.",
    )
    parser.add_argument("reference", type=Path, help="Reference (rest) OBJ mesh")
    parser.add_argument("deformed", type=Path, help="Deformed reference OBJ (same vertex count)")
    parser.add_argument("target", type=Path, help="Target OBJ whose vertices are deformed")
    parser.add_argument("--preset", default="default",
                        help="Solver preset from assets/config/solvers (default: %(default)s)")
    parser.add_argument("--output", type=Path, default=None, help="Write the deformed target OBJ")
    parser.add_argument("--save-shape", type=Path, default=None, help="Write the shape as JSON")
    parser.add_argument("--json", type=Path, default=None, help="Write the report as JSON")
    parser.add_argument("--workers", type=int, default=None, help="Worker threads (default: CPU count)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=log_level, format="%(levelname)s: %(message)s")

    for path in (args.reference, args.deformed, args.target):
        if not path.is_file():
            parser.error(f"File not found: {path}")
    if args.workers is not None and args.workers < 1:
        parser.error("--workers must be at least 1")

    report = run_report(
        args.reference,
        args.deformed,
        args.target,
        preset=args.preset,
        output_path=args.output,
        shape_path=args.save_shape,
        max_workers=args.workers,
    )
    print(format_report(report))

    if args.json:
        args.json.write_text(json.dumps(report, indent=2))
        print(f"\nReport saved to {args.json}")


if __name__ == "__main__":
    main()
