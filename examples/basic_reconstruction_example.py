#!/usr/bin/env python3
"""
Basic Back-Projection Example
=============================

This example writes a small synthetic cone-beam dataset to disk and
reconstructs it with the distributed back-projector. Run it directly for a
single worker, or under ``mpiexec -n 4 python basic_reconstruction_example.py``
to split the projections across workers.
"""

import os
import tempfile
import traceback

import numpy as np

from cbct_backprojection import ReconstructionConfig, WorkerContext, reconstruct


def create_circular_transforms(num_angles=64, rows=48, cols=64, source_distance=6.0, focal_length=40.0):
    """Create 3x4 projection matrices for a circular source orbit.

    Args:
        num_angles: Number of projection angles
        rows, cols: Detector size in pixels
        source_distance: Distance from origin to source
        focal_length: Source-to-detector distance in pixels

    Returns:
        transforms: (num_angles, 3, 4) float32
    """
    angles = np.linspace(0, 2 * np.pi, num_angles, endpoint=False)
    transforms = np.zeros((num_angles, 3, 4))
    for k, a in enumerate(angles):
        view = np.array([np.cos(a), np.sin(a), 0.0])
        u_axis = np.array([-np.sin(a), np.cos(a), 0.0])
        v_axis = np.array([0.0, 0.0, 1.0])
        transforms[k, 0, :3] = focal_length * u_axis - cols / 2 * view
        transforms[k, 0, 3] = cols / 2 * source_distance
        transforms[k, 1, :3] = focal_length * v_axis - rows / 2 * view
        transforms[k, 1, 3] = rows / 2 * source_distance
        transforms[k, 2, :3] = -view
        transforms[k, 2, 3] = source_distance
    return transforms.astype(np.float32)


def write_synthetic_dataset(root, num_voxels=32, num_angles=64, rows=48, cols=64):
    """Write a dataset whose projections show a bright disc."""
    voxel_dir = os.path.join(root, str(num_voxels))
    os.makedirs(voxel_dir, exist_ok=True)

    coords = np.linspace(-1, 1, num_voxels, dtype=np.float32)
    yy, xx = np.meshgrid(coords, coords, indexing="ij")
    combined = np.stack([xx, yy, np.zeros_like(xx), np.ones_like(xx)]).astype(np.float32)

    v, u = np.mgrid[:rows, :cols]
    disc = ((u - cols / 2) ** 2 + (v - rows / 2) ** 2 < (rows / 4) ** 2).astype(np.float32)
    projections = np.repeat(disc[None], num_angles, axis=0)
    weights = np.ones((num_angles, num_voxels, num_voxels), dtype=np.float32) / num_angles

    projections.tofile(os.path.join(root, "projections.bin"))
    create_circular_transforms(num_angles, rows, cols).tofile(os.path.join(root, "transform.bin"))
    combined.tofile(os.path.join(voxel_dir, "combined.bin"))
    coords.tofile(os.path.join(voxel_dir, "z_voxel_coords.bin"))
    weights.tofile(os.path.join(voxel_dir, "volumeweight.bin"))


def run(ctx):
    # Every worker must see the same directory
    root = os.environ.get("CBCT_EXAMPLE_DIR") or os.path.join(tempfile.gettempdir(), "cbct_example")
    if ctx.is_root:
        write_synthetic_dataset(root)
    ctx.comm.barrier()

    config = ReconstructionConfig(
        num_voxels=32,
        input_dir=root,
        output_path=os.path.join(root, "recon.bin"),
        num_projections=64,
        detector_rows=48,
        detector_columns=64,
    )
    result = reconstruct(config, ctx, verbose=True)

    if ctx.is_root:
        print(f"checksum: {result.checksum}")
        center = result.volume[16, 16, 16].item()
        corner = result.volume[16, 0, 0].item()
        print(f"centre voxel {center:.3f}, corner voxel {corner:.3f}")
        print(f"Volume written to {config.output_path}")


def main():
    ctx = WorkerContext.from_environment()
    try:
        run(ctx)
    except Exception:
        traceback.print_exc()
        if ctx.size > 1:
            # Peers would otherwise wait forever in the reduction
            ctx.comm.abort(1)
        raise


if __name__ == "__main__":
    main()
