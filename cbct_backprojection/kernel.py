"""Voxel-driven back-projection of one projection into a volume.

For every voxel ``(z, i)`` the homogeneous point ``(X_i, Y_i, Z_z, 1)`` is
mapped through the projection's 3x4 transform to ``(u, v, w)``; the detector
pixel ``(round(v/w), round(u/w))`` is sampled, weighted by the cone-beam
weight of ``i`` and added to the voxel. Voxels whose ray misses the
detector are left untouched.

Threads split the volume by Z-slice. Each slice is written by exactly one
thread, so the accumulation needs no locking.
"""
from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, List, Optional, Tuple

import torch

from .data import GeometryStore, ProjectionStore


def static_chunks(num_items: int, num_chunks: int) -> List[Tuple[int, int]]:
    """Split ``range(num_items)`` into at most ``num_chunks`` contiguous,
    non-overlapping ``(start, stop)`` ranges whose sizes differ by at most one.
    """
    if num_chunks < 1:
        raise ValueError("num_chunks must be at least 1")
    num_chunks = min(num_chunks, num_items)
    chunks = []
    start = 0
    for k in range(num_chunks):
        size = num_items // num_chunks + (1 if k < num_items % num_chunks else 0)
        chunks.append((start, start + size))
        start += size
    return chunks


def intra_op_threads(slice_threads: int, cpu_count: Optional[int] = None) -> int:
    """Torch intra-op threads that fit beside ``slice_threads`` slice workers."""
    if slice_threads < 1:
        raise ValueError("slice_threads must be at least 1")
    if cpu_count is None:
        cpu_count = os.cpu_count() or 1
    return max(1, cpu_count // slice_threads)


class SliceParallelFor:
    """Fixed-size thread pool running statically partitioned loops.

    ``pfor(n, body)`` calls ``body(start, stop)`` once per chunk of
    :func:`static_chunks` and returns when all chunks are done. The chunks
    are disjoint, so bodies that only write to their own indices never race.

    Each body still runs torch ops that use torch's own intra-op pool, so
    callers running many slice threads should shrink that pool with
    :func:`intra_op_threads` to avoid oversubscribing the cores.

    Usable as a context manager; the pool is shut down on exit.
    """

    def __init__(self, num_threads: int = 1):
        if num_threads < 1:
            raise ValueError("num_threads must be at least 1")
        self.num_threads = num_threads
        self._executor: Optional[ThreadPoolExecutor] = None
        if num_threads > 1:
            self._executor = ThreadPoolExecutor(max_workers=num_threads, thread_name_prefix="bp-slice")

    def __call__(self, num_items: int, body: Callable[[int, int], None]) -> None:
        chunks = static_chunks(num_items, self.num_threads)
        if self._executor is None or len(chunks) <= 1:
            for start, stop in chunks:
                body(start, stop)
            return
        futures = [self._executor.submit(body, start, stop) for start, stop in chunks]
        # Let every chunk finish before surfacing the first error
        wait(futures)
        for f in futures:
            f.result()

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def round_half_away_from_zero(x: torch.Tensor) -> torch.Tensor:
    """Nearest integer, ties rounded away from zero (C ``round``)."""
    t = torch.trunc(x)
    return torch.where(torch.abs(x - t) >= 0.5, t + torch.sign(x), t)


def backproject(
    geometry: GeometryStore,
    projection: ProjectionStore,
    volume: torch.Tensor,
    pfor: Optional[SliceParallelFor] = None,
) -> torch.Tensor:
    """Add one projection's contribution to ``volume`` in place.

    Parameters
    ----------
    geometry : voxel coordinates of the volume
    projection : image, transform and weight of one projection
    volume : (n, n, n) contiguous float32 tensor, indexed ``[z, y, x]``
    pfor : thread pool to split Z-slices over; serial when None

    Returns
    -------
    volume : the same tensor, for chaining.
    """
    n = geometry.num_voxels
    if tuple(volume.shape) != (n, n, n) or not volume.is_contiguous():
        raise ValueError(f"volume must be a contiguous ({n}, {n}, {n}) tensor")
    if tuple(projection.volume_weight.shape) != (n, n):
        raise ValueError(f"volume_weight must have shape ({n}, {n})")
    if pfor is None:
        pfor = SliceParallelFor(1)

    t = projection.transform_matrix
    x, y, h = geometry.plane(0), geometry.plane(1), geometry.plane(3)
    z_coords = geometry.z_voxel_coords
    # Z-independent terms of the three dot products
    xy = [x * t[r, 0] + y * t[r, 1] for r in range(3)]
    hw = [h * t[r, 3] for r in range(3)]

    image = projection.projection.reshape(-1)
    weight = projection.volume_weight.reshape(-1)
    rows, cols = projection.detector_rows, projection.detector_columns
    slices = volume.view(n, n * n)

    def accumulate(start: int, stop: int) -> None:
        for z in range(start, stop):
            zc = z_coords[z]
            u = (xy[0] + zc * t[0, 2]) + hw[0]
            v = (xy[1] + zc * t[1, 2]) + hw[1]
            w = (xy[2] + zc * t[2, 2]) + hw[2]
            col = round_half_away_from_zero(u / w)
            row = round_half_away_from_zero(v / w)
            # NaN and +-inf from a zero divisor fail these comparisons
            hit = (col >= 0) & (col < cols) & (row >= 0) & (row < rows)
            if not bool(hit.any()):
                continue
            pixel = row[hit].long() * cols + col[hit].long()
            out = slices[z]
            out[hit] = out[hit] + image[pixel] * weight[hit]

    pfor(n, accumulate)
    return volume
