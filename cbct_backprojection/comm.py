"""Worker context and collective communication.

Every worker of a reconstruction receives a :class:`WorkerContext` that
carries its communicator and thread count. Nothing reads process identity
from module globals.

Communicators

SerialCommunicator
    Single worker; collectives are local copies.

MPICommunicator
    Wraps ``mpi4py.MPI.COMM_WORLD``. Requires the ``mpi`` extra.

LocalGroup
    ``size`` communicators sharing one process, each driven by its own
    thread. Used to exercise multi-worker reductions without a launcher.

Notes
-----
* ``reduce_sum`` is a synchronising collective: every worker of the
  communicator must call it, and only ``root`` receives the result.
* ``abort`` must make every peer fail rather than wait forever.
"""
from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from typing import Any, List, Optional

import numpy as np

# Variables exported by Open MPI, MPICH/Hydra and PMIx launchers.
_MPI_ENV_VARS = (
    "OMPI_COMM_WORLD_SIZE",
    "PMI_SIZE",
    "PMIX_RANK",
    "MPI_LOCALNRANKS",
)


class SerialCommunicator:
    rank = 0
    size = 1

    def reduce_sum(self, array: np.ndarray, root: int = 0) -> Optional[np.ndarray]:
        if root != 0:
            raise ValueError(f"root {root} out of range for a single worker")
        return np.array(array, copy=True)

    def barrier(self) -> None:
        pass

    def abort(self, errorcode: int = 1) -> None:
        raise SystemExit(errorcode)


class MPICommunicator:
    """Collective operations over an mpi4py communicator."""

    def __init__(self, comm: Any = None):
        try:
            from mpi4py import MPI  # type: ignore
        except ImportError as e:  # pragma: no cover
            raise ImportError(
                "mpi4py is required for multi-process reconstruction "
                "(pip install cbct-backprojection[mpi])"
            ) from e
        self._MPI = MPI
        self.comm = MPI.COMM_WORLD if comm is None else comm
        self.rank = self.comm.Get_rank()
        self.size = self.comm.Get_size()

    def reduce_sum(self, array: np.ndarray, root: int = 0) -> Optional[np.ndarray]:
        sendbuf = np.ascontiguousarray(array)
        recvbuf = np.zeros_like(sendbuf) if self.rank == root else None
        self.comm.Reduce(sendbuf, recvbuf, op=self._MPI.SUM, root=root)
        return recvbuf

    def barrier(self) -> None:
        self.comm.Barrier()

    def abort(self, errorcode: int = 1) -> None:
        self.comm.Abort(errorcode)

    def processor_name(self) -> str:
        return self._MPI.Get_processor_name()


class _GroupMember:
    def __init__(self, group: "LocalGroup", rank: int):
        self._group = group
        self.rank = rank
        self.size = group.size

    def reduce_sum(self, array: np.ndarray, root: int = 0) -> Optional[np.ndarray]:
        group = self._group
        group.slots[self.rank] = np.array(array, copy=True)
        group.barrier.wait()
        result = None
        if self.rank == root:
            # Rank order keeps the result independent of thread scheduling
            result = np.zeros_like(group.slots[0])
            for part in group.slots:
                result += part
        group.barrier.wait()
        group.slots[self.rank] = None
        return result

    def barrier(self) -> None:
        self._group.barrier.wait()

    def abort(self, errorcode: int = 1) -> None:
        self._group.barrier.abort()
        raise SystemExit(errorcode)


class LocalGroup:
    """A group of in-process workers, one thread per rank."""

    def __init__(self, size: int, timeout: Optional[float] = None):
        if size < 1:
            raise ValueError("group size must be at least 1")
        self.size = size
        self.barrier = threading.Barrier(size, timeout=timeout)
        self.slots: List[Optional[np.ndarray]] = [None] * size
        self.members = [_GroupMember(self, r) for r in range(size)]

    def __getitem__(self, rank: int) -> _GroupMember:
        return self.members[rank]

    def __len__(self) -> int:
        return self.size


def default_num_threads() -> int:
    env = os.environ.get("OMP_NUM_THREADS")
    if env:
        try:
            return max(1, int(env.split(",")[0]))
        except ValueError:
            pass
    return os.cpu_count() or 1


def launched_under_mpi() -> bool:
    return any(var in os.environ for var in _MPI_ENV_VARS)


@dataclass(frozen=True)
class WorkerContext:
    """Identity and resources of one worker, fixed for the whole run."""

    comm: Any
    num_threads: int = 1

    def __post_init__(self):
        if self.num_threads < 1:
            raise ValueError("num_threads must be at least 1")

    @property
    def rank(self) -> int:
        return self.comm.rank

    @property
    def size(self) -> int:
        return self.comm.size

    @property
    def is_root(self) -> bool:
        return self.comm.rank == 0

    @classmethod
    def from_environment(cls, num_threads: Optional[int] = None) -> "WorkerContext":
        if num_threads is None:
            num_threads = default_num_threads()
        comm = MPICommunicator() if launched_under_mpi() else SerialCommunicator()
        return cls(comm=comm, num_threads=num_threads)
