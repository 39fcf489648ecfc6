"""CBCT-Backprojection: distributed cone-beam CT back-projection.

Reconstructs a voxel volume from pre-processed cone-beam projections and
precomputed geometry by splitting the projections across worker processes
(MPI), back-projecting each worker's share with a thread pool over
Z-slices, and summing the partial volumes onto rank 0.

Modules:
--------
comm : Worker context and collective communicators
partition : Static projection split across workers
data : Dataset layout, float I/O and the geometry/projection stores
kernel : Parallel-for and the back-projection kernel
reconstruction : Local accumulation, global reduction and the driver
cli : ``cbct-reconstruct`` command-line entry point

Examples:
---------
>>> from cbct_backprojection import ReconstructionConfig, WorkerContext, reconstruct
>>> config = ReconstructionConfig(num_voxels=128, input_dir="./input")
>>> result = reconstruct(config, WorkerContext.from_environment())
>>> result.checksum
"""

from .comm import (
    WorkerContext,
    SerialCommunicator,
    MPICommunicator,
    LocalGroup,
)

from .partition import partition_projections

from .data import (
    ReconstructionConfig,
    GeometryStore,
    ProjectionStore,
    read_floats,
    write_floats,
    load_geometry,
    load_projection,
)

from .kernel import (
    SliceParallelFor,
    static_chunks,
    backproject,
    intra_op_threads,
    round_half_away_from_zero,
)

from .reconstruction import (
    LocalAccumulator,
    ReconstructionResult,
    reduce_volume,
    volume_checksum,
    reconstruct,
)

__version__ = "0.1.0"

__all__ = [
    # Workers and collectives
    'WorkerContext',
    'SerialCommunicator',
    'MPICommunicator',
    'LocalGroup',
    'partition_projections',

    # Data
    'ReconstructionConfig',
    'GeometryStore',
    'ProjectionStore',
    'read_floats',
    'write_floats',
    'load_geometry',
    'load_projection',

    # Kernel
    'SliceParallelFor',
    'static_chunks',
    'backproject',
    'intra_op_threads',
    'round_half_away_from_zero',

    # Reconstruction
    'LocalAccumulator',
    'ReconstructionResult',
    'reduce_volume',
    'volume_checksum',
    'reconstruct',

    # Version info
    '__version__',
]
