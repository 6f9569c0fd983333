"""Sparse per-point (triangle, weight) joints used to transfer deformations.

Layout: one shared joint array plus per-point ``offsets`` and ``counts``.
A point's live joints are ``joints[offsets[p]:offsets[p] + counts[p]]``.
Solvers reserve room for every triangle per point, fill it, then prune with
:meth:`TriangulatedShapeWeights.filter_joints`. Long-lived tables can be
compacted with :meth:`TriangulatedShapeWeights.get_packed_copy`.
"""

from typing import NamedTuple

import numpy as np
from numpy.typing import NDArray

from trideform.core import buffers
from trideform.core.buffers import Allocator, Buffer
from trideform.core.math_utils import batch_transform_points, transform_point

JOINT_DTYPE = np.dtype([("triangle", np.int32), ("weight", np.float64)])


class Joint(NamedTuple):
    triangle_index: int
    weight: float


class TriangulatedShapeWeights:
    """Weights table mapping each target point to weighted reference triangles."""

    def __init__(self, point_count: int, joints_per_point: int, allocator: Allocator):
        self.point_count = int(point_count)
        self._allocator = allocator

        self._joints: Buffer = buffers.allocate(self.point_count * joints_per_point, JOINT_DTYPE, allocator)
        self._offsets: Buffer = buffers.from_array(
            np.arange(self.point_count, dtype=np.int64) * joints_per_point, np.int64, allocator,
        )
        self._counts: Buffer = buffers.allocate(self.point_count, np.int64, allocator, zeroed=True)

    @classmethod
    def _from_buffers(cls, point_count: int, joints: Buffer, offsets: Buffer, counts: Buffer,
                      allocator: Allocator) -> "TriangulatedShapeWeights":
        table = cls.__new__(cls)
        table.point_count = point_count
        table._allocator = allocator
        table._joints = joints
        table._offsets = offsets
        table._counts = counts
        return table

    @property
    def allocator(self) -> Allocator:
        return self._allocator

    @property
    def capacity(self) -> int:
        """Number of joint slots allocated (live or not)."""
        return len(self._joints.data)

    # ── Indexed access ─────────────────────────────────────────────────

    def get_joint_count(self, point_index: int) -> int:
        return int(self._counts.data[point_index])

    def set_joint_count(self, point_index: int, count: int) -> None:
        self._counts.data[point_index] = count

    def get_joint(self, point_index: int, joint_index: int) -> Joint:
        record = self._joints.data[self._offsets.data[point_index] + joint_index]
        return Joint(int(record["triangle"]), float(record["weight"]))

    def set_joint(self, point_index: int, joint_index: int, joint: Joint) -> None:
        self._joints.data[self._offsets.data[point_index] + joint_index] = (joint[0], joint[1])

    def get_joints(self, point_index: int) -> NDArray:
        """View of the live joints of a point (structured ``triangle``/``weight``)."""
        offset = self._offsets.data[point_index]
        return self._joints.data[offset:offset + self._counts.data[point_index]]

    def set_joints(self, point_index: int, triangles: NDArray, weights: NDArray) -> None:
        """Write joints into slots ``0..len(triangles)-1`` (count is left untouched)."""
        offset = self._offsets.data[point_index]
        slots = self._joints.data[offset:offset + len(triangles)]
        slots["triangle"] = triangles
        slots["weight"] = weights

    def filter_joints(self, point_index: int, current_count: int, max_weight: float, threshold: float) -> None:
        """Drop joints whose ``weight / max_weight`` is below ``threshold``.

        Survivors are compacted to the front in their original order and the
        point's count is updated. Call this once the point's joints and its
        max weight are known.
        """
        if threshold <= 0.0:
            self.set_joint_count(point_index, current_count)
            return

        offset = self._offsets.data[point_index]
        slots = self._joints.data[offset:offset + current_count]
        keep = slots[slots["weight"] / max_weight >= threshold]
        slots[:len(keep)] = keep

        self.set_joint_count(point_index, len(keep))

    # ── Evaluation ─────────────────────────────────────────────────────

    def compute_deformed_point(self, point: NDArray, point_index: int, triangle_deltas: NDArray) -> NDArray:
        """Weighted sum of the point moved by each joint triangle's delta.

        Weights don't need to sum 1.0; the sum is normalized here.
        """
        deformed = np.zeros(3, dtype=np.float64)
        total_weight = 0.0

        joints = self.get_joints(point_index)
        for triangle, weight in zip(joints["triangle"], joints["weight"]):
            deformed += weight * transform_point(triangle_deltas[triangle], point)
            total_weight += weight

        return deformed / total_weight

    def compute_deformed_points(self, points: NDArray, start: int, stop: int,
                                triangle_deltas: NDArray) -> NDArray:
        """Vectorized :meth:`compute_deformed_point` for points ``start..stop-1``.

        Returns a ``(stop - start, 3)`` array; ``points`` is only read.
        """
        owners, _, slots = _live_slots(self._counts.data[start:stop], self._offsets.data[start:stop])
        joints = self._joints.data[slots]

        weights = joints["weight"]
        moved = batch_transform_points(triangle_deltas[joints["triangle"]], points[start + owners])

        n = stop - start
        deformed = np.zeros((n, 3), dtype=np.float64)
        np.add.at(deformed, owners, weights[:, None] * moved)
        total_weight = np.bincount(owners, weights=weights, minlength=n)

        return deformed / total_weight[:, None]

    # ── Packing / stats ────────────────────────────────────────────────

    def get_packed_copy(self, allocator: Allocator) -> "TriangulatedShapeWeights":
        """Copy holding only live joints, contiguous per point."""
        counts = self._counts.data
        _, first, slots = _live_slots(counts, self._offsets.data)

        return TriangulatedShapeWeights._from_buffers(
            self.point_count,
            joints=buffers.from_array(self._joints.data[slots], JOINT_DTYPE, allocator),
            offsets=buffers.from_array(first, np.int64, allocator),
            counts=buffers.from_array(counts, np.int64, allocator),
            allocator=allocator,
        )

    def calculate_joint_stats(self) -> tuple[int, int, float]:
        """``(min, max, average)`` joint count per point."""
        counts = self._counts.data
        if self.point_count == 0:
            return 0, 0, 0.0
        return int(counts.min()), int(counts.max()), float(counts.mean())

    def joint_stats_message(self) -> str:
        min_count, max_count, average = self.calculate_joint_stats()
        return f"Min: {min_count}; Max: {max_count}; Average: {average:0.2f}"

    # ── Lifetime ───────────────────────────────────────────────────────

    @property
    def is_disposed(self) -> bool:
        return self._counts.is_released

    def dispose(self) -> None:
        self._joints.dispose()
        self._offsets.dispose()
        self._counts.dispose()

    def __enter__(self) -> "TriangulatedShapeWeights":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    def __repr__(self) -> str:
        if self.is_disposed:
            return f"TriangulatedShapeWeights(points={self.point_count}, disposed)"
        return f"TriangulatedShapeWeights(points={self.point_count}, {self.joint_stats_message()})"


def _live_slots(counts: NDArray, offsets: NDArray) -> tuple[NDArray, NDArray, NDArray]:
    """Flatten the live joints of consecutive points.

    Returns ``(owners, first, slots)``: the local point owning each live joint,
    the packed start of each point, and each joint's slot in the joint array.
    """
    owners = np.repeat(np.arange(len(counts)), counts)
    first = np.cumsum(counts) - counts
    slots = offsets[owners] + (np.arange(len(owners)) - first[owners])
    return owners, first, slots
