"""Static split of projections across workers."""
from __future__ import annotations


def partition_projections(num_projections: int, num_workers: int, rank: int) -> range:
    """Return the contiguous range of projection ids owned by ``rank``.

    Every worker gets ``num_projections // num_workers`` projections and the
    last worker also takes the remainder. When the count does not divide
    evenly the last worker carries up to ``num_workers - 1`` extra
    projections; the split is static and does no load balancing.

    Parameters
    ----------
    num_projections : total number of projections ``P``
    num_workers : number of workers ``W``
    rank : worker identity, ``0 <= rank < W``

    Returns
    -------
    range : half-open ``[start, stop)``; empty when ``P < W`` for all but
        the last worker.
    """
    if num_workers < 1:
        raise ValueError("num_workers must be at least 1")
    if not 0 <= rank < num_workers:
        raise ValueError(f"rank {rank} out of range for {num_workers} workers")
    if num_projections < 0:
        raise ValueError("num_projections must be non-negative")

    base = num_projections // num_workers
    start = rank * base
    if rank == num_workers - 1:
        stop = num_projections
    else:
        stop = start + base
    return range(start, stop)
