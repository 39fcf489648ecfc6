"""On-disk CT dataset and the in-memory stores loaded from it.

Dataset layout (flat, native-endian float32)::

    {input}/projections.bin                  P x rows x cols
    {input}/transform.bin                    P x 12   (3x4 per projection)
    {input}/{n}/combined.bin                 4 x n^2  (X, Y, unused, 1 planes)
    {input}/{n}/z_voxel_coords.bin           n
    {input}/{n}/volumeweight.bin             P x n^2

Offsets handed to :func:`read_floats` / :func:`write_floats` are counted in
floats, not bytes.

The stores keep the flat buffers as returned by the reader and expose them
through torch views with the natural shapes, so ``combined[j, y, x]`` is
element ``j*n^2 + y*n + x`` of the file.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

import numpy as np
import torch

FLOAT_DTYPE = np.float32
FLOAT_BYTES = np.dtype(FLOAT_DTYPE).itemsize

# Dimensions of the dataset the reconstruction was built for.
DEFAULT_NUM_PROJECTIONS = 320
DEFAULT_DETECTOR_ROWS = 192
DEFAULT_DETECTOR_COLUMNS = 256


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class ReconstructionConfig:
    num_voxels: int
    input_dir: str
    output_path: Optional[str] = None
    num_projections: int = DEFAULT_NUM_PROJECTIONS
    detector_rows: int = DEFAULT_DETECTOR_ROWS
    detector_columns: int = DEFAULT_DETECTOR_COLUMNS
    num_threads: Optional[int] = None

    def __post_init__(self):
        for name in ("num_voxels", "num_projections", "detector_rows", "detector_columns"):
            value = getattr(self, name)
            if int(value) != value or value < 1:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
            setattr(self, name, int(value))
        if self.num_threads is not None and self.num_threads < 1:
            raise ValueError("num_threads must be at least 1")

    @property
    def voxel_dir(self) -> str:
        return os.path.join(self.input_dir, str(self.num_voxels))

    @property
    def projections_path(self) -> str:
        return os.path.join(self.input_dir, "projections.bin")

    @property
    def transform_path(self) -> str:
        return os.path.join(self.input_dir, "transform.bin")

    @property
    def combined_path(self) -> str:
        return os.path.join(self.voxel_dir, "combined.bin")

    @property
    def z_voxel_coords_path(self) -> str:
        return os.path.join(self.voxel_dir, "z_voxel_coords.bin")

    @property
    def volume_weight_path(self) -> str:
        return os.path.join(self.voxel_dir, "volumeweight.bin")

    @property
    def pixels_per_projection(self) -> int:
        return self.detector_rows * self.detector_columns

    @property
    def voxels_per_slice(self) -> int:
        return self.num_voxels * self.num_voxels

    @property
    def volume_size(self) -> int:
        return self.num_voxels ** 3


# ---------------------------------------------------------------------------
# Raw float I/O
# ---------------------------------------------------------------------------

def read_floats(path: str, count: int, offset: int = 0) -> np.ndarray:
    """Read exactly ``count`` float32 values starting ``offset`` floats in.

    Raises
    ------
    FileNotFoundError
        If ``path`` does not exist.
    OSError
        If the file ends before ``offset + count`` floats.
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Couldn't read file: {path}")
    needed = (int(offset) + int(count)) * FLOAT_BYTES
    available = os.path.getsize(path)
    if available < needed:
        raise OSError(
            f"{path}: expected at least {needed} bytes for {count} floats "
            f"at offset {offset}, file has {available}"
        )
    data = np.fromfile(path, dtype=FLOAT_DTYPE, count=int(count), offset=int(offset) * FLOAT_BYTES)
    if data.size != count:
        raise OSError(f"{path}: read {data.size} floats, expected {count}")
    return data


def write_floats(path: str, data, offset: int = 0) -> None:
    """Write ``data`` as float32 into a new file, starting ``offset`` floats in."""
    if isinstance(data, torch.Tensor):
        data = data.detach().cpu().numpy()
    array = np.ascontiguousarray(data, dtype=FLOAT_DTYPE)
    with open(path, "wb") as fh:
        fh.seek(int(offset) * FLOAT_BYTES)
        array.tofile(fh)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

@dataclass
class GeometryStore:
    """Voxel coordinates shared by every projection. Read-only after load."""

    num_voxels: int
    combined_matrix: torch.Tensor  # (4, n, n)
    z_voxel_coords: torch.Tensor  # (n,)

    def __post_init__(self):
        n = self.num_voxels
        if tuple(self.combined_matrix.shape) != (4, n, n):
            raise ValueError(f"combined_matrix must have shape (4, {n}, {n})")
        if tuple(self.z_voxel_coords.shape) != (n,):
            raise ValueError(f"z_voxel_coords must have shape ({n},)")

    @classmethod
    def from_flat(cls, num_voxels: int, combined, z_voxel_coords) -> "GeometryStore":
        n = num_voxels
        combined_t = torch.as_tensor(np.asarray(combined, dtype=FLOAT_DTYPE))
        z_t = torch.as_tensor(np.asarray(z_voxel_coords, dtype=FLOAT_DTYPE))
        return cls(n, combined_t.reshape(4, n, n), z_t.reshape(n))

    @property
    def plane_size(self) -> int:
        return self.num_voxels * self.num_voxels

    def plane(self, j: int) -> torch.Tensor:
        """Coordinate plane ``j`` as a flat ``n^2`` view."""
        return self.combined_matrix[j].reshape(-1)


@dataclass
class ProjectionStore:
    """Data belonging to one projection; dropped once it is back-projected."""

    projection_id: int
    projection: torch.Tensor  # (rows, cols)
    transform_matrix: torch.Tensor  # (3, 4)
    volume_weight: torch.Tensor  # (n, n)

    def __post_init__(self):
        if tuple(self.transform_matrix.shape) != (3, 4):
            raise ValueError("transform_matrix must have shape (3, 4)")
        if self.projection.ndim != 2:
            raise ValueError("projection must be a 2-D (rows, cols) image")
        if self.volume_weight.ndim != 2 or self.volume_weight.shape[0] != self.volume_weight.shape[1]:
            raise ValueError("volume_weight must be a square (n, n) plane")

    @classmethod
    def from_flat(cls, projection_id: int, projection, transform_matrix, volume_weight,
                  detector_rows: int, detector_columns: int, num_voxels: int) -> "ProjectionStore":
        return cls(
            projection_id=projection_id,
            projection=torch.as_tensor(np.asarray(projection, dtype=FLOAT_DTYPE)).reshape(detector_rows, detector_columns),
            transform_matrix=torch.as_tensor(np.asarray(transform_matrix, dtype=FLOAT_DTYPE)).reshape(3, 4),
            volume_weight=torch.as_tensor(np.asarray(volume_weight, dtype=FLOAT_DTYPE)).reshape(num_voxels, num_voxels),
        )

    @property
    def detector_rows(self) -> int:
        return self.projection.shape[0]

    @property
    def detector_columns(self) -> int:
        return self.projection.shape[1]


def load_geometry(config: ReconstructionConfig) -> GeometryStore:
    n = config.num_voxels
    combined = read_floats(config.combined_path, 4 * config.voxels_per_slice, 0)
    z_coords = read_floats(config.z_voxel_coords_path, n, 0)
    return GeometryStore.from_flat(n, combined, z_coords)


def load_projection(config: ReconstructionConfig, projection_id: int) -> ProjectionStore:
    if not 0 <= projection_id < config.num_projections:
        raise ValueError(f"projection id {projection_id} out of range [0, {config.num_projections})")
    pixels = config.pixels_per_projection
    plane = config.voxels_per_slice
    image = read_floats(config.projections_path, pixels, projection_id * pixels)
    transform = read_floats(config.transform_path, 12, projection_id * 12)
    weight = read_floats(config.volume_weight_path, plane, projection_id * plane)
    return ProjectionStore.from_flat(
        projection_id, image, transform, weight,
        config.detector_rows, config.detector_columns, config.num_voxels,
    )
