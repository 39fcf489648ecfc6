"""Test configuration and fixtures."""

import os

import numpy as np
import pytest

from cbct_backprojection import ReconstructionConfig


def circular_transforms(num_projections, detector_rows, detector_columns,
                        source_distance=6.0, focal_length=30.0):
    """Pinhole 3x4 matrices for a source orbiting the Z axis.

    Returns a (P, 3, 4) float32 array mapping (x, y, z, 1) to homogeneous
    (col, row, 1) detector coordinates.
    """
    angles = np.linspace(0, 2 * np.pi, num_projections, endpoint=False)
    mats = np.zeros((num_projections, 3, 4), dtype=np.float64)
    cu, cv = detector_columns / 2.0, detector_rows / 2.0
    for k, a in enumerate(angles):
        view = np.array([np.cos(a), np.sin(a), 0.0])
        u_axis = np.array([-np.sin(a), np.cos(a), 0.0])
        v_axis = np.array([0.0, 0.0, 1.0])
        # depth = source_distance - view . p
        mats[k, 2, :3] = -view
        mats[k, 2, 3] = source_distance
        mats[k, 0, :3] = focal_length * u_axis - cu * view
        mats[k, 0, 3] = cu * source_distance
        mats[k, 1, :3] = focal_length * v_axis - cv * view
        mats[k, 1, 3] = cv * source_distance
    return mats.astype(np.float32)


def write_dataset(root, num_voxels=8, num_projections=6, detector_rows=12,
                  detector_columns=16, seed=0, transforms=None, projections=None,
                  weights=None):
    """Write a synthetic dataset in the on-disk layout and return its config."""
    rng = np.random.default_rng(seed)
    n = num_voxels
    voxel_dir = os.path.join(root, str(n))
    os.makedirs(voxel_dir, exist_ok=True)

    coords = np.linspace(-1.0, 1.0, n, dtype=np.float32)
    yy, xx = np.meshgrid(coords, coords, indexing="ij")
    combined = np.stack([xx, yy, np.zeros_like(xx), np.ones_like(xx)]).astype(np.float32)

    if transforms is None:
        transforms = circular_transforms(num_projections, detector_rows, detector_columns)
    if projections is None:
        projections = rng.random((num_projections, detector_rows, detector_columns), dtype=np.float32)
    if weights is None:
        weights = (0.5 + rng.random((num_projections, n, n), dtype=np.float32)).astype(np.float32)

    np.asarray(projections, dtype=np.float32).tofile(os.path.join(root, "projections.bin"))
    np.asarray(transforms, dtype=np.float32).tofile(os.path.join(root, "transform.bin"))
    combined.tofile(os.path.join(voxel_dir, "combined.bin"))
    coords.tofile(os.path.join(voxel_dir, "z_voxel_coords.bin"))
    np.asarray(weights, dtype=np.float32).tofile(os.path.join(voxel_dir, "volumeweight.bin"))

    return ReconstructionConfig(
        num_voxels=n,
        input_dir=str(root),
        num_projections=num_projections,
        detector_rows=detector_rows,
        detector_columns=detector_columns,
        num_threads=1,
    )


def reference_reconstruction(config):
    """Single-threaded numpy back-projection over all projections."""
    n = config.num_voxels
    rows, cols = config.detector_rows, config.detector_columns
    plane = n * n
    combined = np.fromfile(config.combined_path, dtype=np.float32).reshape(4, plane)
    z_coords = np.fromfile(config.z_voxel_coords_path, dtype=np.float32)
    images = np.fromfile(config.projections_path, dtype=np.float32).reshape(-1, rows * cols)
    transforms = np.fromfile(config.transform_path, dtype=np.float32).reshape(-1, 3, 4)
    weights = np.fromfile(config.volume_weight_path, dtype=np.float32).reshape(-1, plane)

    volume = np.zeros((n, plane), dtype=np.float32)
    x, y, h = combined[0], combined[1], combined[3]
    for p in range(config.num_projections):
        t = transforms[p]
        for z in range(n):
            zc = z_coords[z]
            u = (x * t[0, 0] + y * t[0, 1] + zc * t[0, 2]) + h * t[0, 3]
            v = (x * t[1, 0] + y * t[1, 1] + zc * t[1, 2]) + h * t[1, 3]
            w = (x * t[2, 0] + y * t[2, 1] + zc * t[2, 2]) + h * t[2, 3]
            with np.errstate(divide="ignore", invalid="ignore"):
                qc, qr = u / w, v / w
            col = np.where(np.abs(qc - np.trunc(qc)) >= 0.5, np.trunc(qc) + np.sign(qc), np.trunc(qc))
            row = np.where(np.abs(qr - np.trunc(qr)) >= 0.5, np.trunc(qr) + np.sign(qr), np.trunc(qr))
            hit = (col >= 0) & (col < cols) & (row >= 0) & (row < rows)
            idx = row[hit].astype(np.int64) * cols + col[hit].astype(np.int64)
            volume[z, hit] += images[p, idx] * weights[p, hit]
    return volume.reshape(n, n, n)


@pytest.fixture
def small_dataset(tmp_path):
    """Eight-voxel volume, six projections on a 12x16 detector."""
    return write_dataset(str(tmp_path))


@pytest.fixture
def odd_dataset(tmp_path):
    """Seven projections, so a four-worker split leaves a remainder."""
    return write_dataset(str(tmp_path), num_voxels=6, num_projections=7, seed=3)


@pytest.fixture(autouse=True)
def no_mpi_launcher(monkeypatch):
    """Keep WorkerContext.from_environment on the serial communicator."""
    for var in ("OMPI_COMM_WORLD_SIZE", "PMI_SIZE", "PMIX_RANK", "MPI_LOCALNRANKS"):
        monkeypatch.delenv(var, raising=False)
