"""Distributed back-projection driver.

Public functions

reconstruct(config, ctx, ...):
    Back-project this worker's share of the projections, sum the partial
    volumes of all workers onto rank 0 and (on rank 0) write the result.

reduce_volume(accumulator, ctx, root=0):
    Collective element-wise sum of every worker's partial volume.

volume_checksum(volume):
    Sum of all voxels in float64.

Notes
-----
* Every worker of ``ctx.comm`` must call :func:`reconstruct`; the
  reduction blocks until all of them have finished back-projecting.
* Volumes are ``(n, n, n)`` float32 CPU tensors over a flat ``n^3`` buffer,
  element ``z*n^2 + y*n + x``.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np
import torch
from tqdm import tqdm

from .comm import WorkerContext
from .data import (
    GeometryStore,
    ProjectionStore,
    ReconstructionConfig,
    load_geometry,
    load_projection,
    write_floats,
)
from .kernel import SliceParallelFor, backproject
from .partition import partition_projections


class LocalAccumulator:
    """Partial reconstruction volume owned by one worker."""

    def __init__(self, num_voxels: int):
        self.num_voxels = num_voxels
        self.volume = torch.zeros((num_voxels, num_voxels, num_voxels), dtype=torch.float32)
        self.num_projections = 0

    def add(self, geometry: GeometryStore, projection: ProjectionStore,
            pfor: Optional[SliceParallelFor] = None) -> None:
        backproject(geometry, projection, self.volume, pfor)
        self.num_projections += 1

    @property
    def flat(self) -> torch.Tensor:
        return self.volume.view(-1)

    def numpy(self) -> np.ndarray:
        # Shares memory with the tensor
        return self.volume.numpy()


def reduce_volume(accumulator: LocalAccumulator, ctx: WorkerContext, root: int = 0) -> Optional[torch.Tensor]:
    """Sum every worker's partial volume onto ``root``.

    Collective: all workers must call it. Returns the combined ``(n, n, n)``
    volume on ``root`` and None elsewhere. A barrier follows the reduction
    so no worker reuses its buffers before the collective has completed
    everywhere.
    """
    n = accumulator.num_voxels
    summed = ctx.comm.reduce_sum(accumulator.flat.numpy(), root=root)
    ctx.comm.barrier()
    if summed is None:
        return None
    return torch.from_numpy(np.asarray(summed, dtype=np.float32)).reshape(n, n, n)


def volume_checksum(volume) -> float:
    if isinstance(volume, torch.Tensor):
        return float(volume.to(torch.float64).sum().item())
    return float(np.sum(volume, dtype=np.float64))


@dataclass
class ReconstructionResult:
    projection_range: range
    volume: Optional[torch.Tensor] = None
    checksum: Optional[float] = None
    timings: Dict[str, float] = field(default_factory=dict)


def reconstruct(
    config: ReconstructionConfig,
    ctx: WorkerContext,
    verbose: bool = False,
) -> ReconstructionResult:
    """Run this worker's part of the reconstruction.

    Parameters
    ----------
    config : dataset location, dimensions and optional output path
    ctx : this worker's communicator and thread count; ``config.num_threads``
        overrides ``ctx.num_threads`` when set
    verbose : show a progress bar over this worker's projections

    Returns
    -------
    ReconstructionResult
        ``volume`` and ``checksum`` are only set on rank 0. ``timings`` holds
        ``reading``, ``computation`` and ``elapsed`` seconds for this worker,
        plus ``writing`` on rank 0.
    """
    begin = time.perf_counter()
    num_threads = config.num_threads or ctx.num_threads
    projection_ids = partition_projections(config.num_projections, ctx.size, ctx.rank)

    geometry = load_geometry(config)
    accumulator = LocalAccumulator(config.num_voxels)
    reading_time = 0.0
    computation_time = 0.0

    with SliceParallelFor(num_threads) as pfor:
        for projection_id in tqdm(projection_ids, desc=f"rank {ctx.rank}", disable=not verbose):
            t0 = time.perf_counter()
            pdata = load_projection(config, projection_id)
            t1 = time.perf_counter()
            accumulator.add(geometry, pdata, pfor)
            t2 = time.perf_counter()
            reading_time += t1 - t0
            computation_time += t2 - t1
            del pdata

    volume = reduce_volume(accumulator, ctx, root=0)

    result = ReconstructionResult(projection_range=projection_ids)
    result.timings["reading"] = reading_time
    result.timings["computation"] = computation_time
    if volume is not None:
        t0 = time.perf_counter()
        if config.output_path:
            write_floats(config.output_path, volume, 0)
        result.timings["writing"] = time.perf_counter() - t0
        result.volume = volume
        result.checksum = volume_checksum(volume)
    result.timings["elapsed"] = time.perf_counter() - begin
    return result
