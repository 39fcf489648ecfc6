"""Command-line entry point: ``cbct-reconstruct``.

Run serially::

    cbct-reconstruct --num-voxels 128 --input ./input --out recon.bin

or across workers::

    mpiexec -n 4 cbct-reconstruct --num-voxels 128 --input ./input
"""
from __future__ import annotations

import argparse
import platform
import sys
import traceback
from typing import Optional, Sequence

import torch

from .comm import WorkerContext
from .data import (
    DEFAULT_DETECTOR_COLUMNS,
    DEFAULT_DETECTOR_ROWS,
    DEFAULT_NUM_PROJECTIONS,
    ReconstructionConfig,
)
from .kernel import intra_op_threads
from .reconstruction import ReconstructionResult, reconstruct


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="cbct-reconstruct",
        description="Distributed cone-beam CT back-projection.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--num-voxels", type=int, required=True,
                   help="Voxels per volume edge (e.g. --num-voxels 128)")
    p.add_argument("--input", type=str, required=True,
                   help="CT data directory (e.g. --input ./input)")
    p.add_argument("--out", type=str, default=None,
                   help="Write the reconstructed volume to this file")
    p.add_argument("--num-projections", type=int, default=DEFAULT_NUM_PROJECTIONS,
                   help="Projections stored in the dataset")
    p.add_argument("--detector-rows", type=int, default=DEFAULT_DETECTOR_ROWS,
                   help="Detector rows per projection")
    p.add_argument("--detector-columns", type=int, default=DEFAULT_DETECTOR_COLUMNS,
                   help="Detector columns per projection")
    p.add_argument("--threads", type=int, default=None,
                   help="Threads per worker (default: OMP_NUM_THREADS or CPU count)")
    p.add_argument("--verbose", action="store_true",
                   help="Show progress and the timing report")
    return p


def parse_config(argv: Optional[Sequence[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = ReconstructionConfig(
            num_voxels=args.num_voxels,
            input_dir=args.input,
            output_path=args.out,
            num_projections=args.num_projections,
            detector_rows=args.detector_rows,
            detector_columns=args.detector_columns,
            num_threads=args.threads,
        )
    except ValueError as e:
        parser.error(str(e))
    return config, args.verbose


def report(result: ReconstructionResult, verbose: bool = False) -> None:
    print(f"checksum: {result.checksum}")
    if verbose:
        t = result.timings
        print(f"elapsed time: {t['elapsed']} sec")
        print(f"reading time: {t['reading']} sec")
        print(f"writing time: {t['writing']} sec")
        print(f"computation time: {t['computation']} sec")


def main(argv: Optional[Sequence[str]] = None) -> int:
    config, verbose = parse_config(argv)
    ctx = WorkerContext.from_environment(config.num_threads)
    if ctx.num_threads > 1:
        torch.set_num_threads(intra_op_threads(ctx.num_threads))

    host = ctx.comm.processor_name() if hasattr(ctx.comm, "processor_name") else platform.node()
    print(f"CT Reconstruction running on `{host}`, rank {ctx.rank} out of {ctx.size}.")

    try:
        result = reconstruct(config, ctx, verbose=verbose)
    except Exception:
        traceback.print_exc()
        if ctx.size > 1:
            # Peers are (or will be) blocked in the reduction
            print(f"rank {ctx.rank}: aborting all workers", file=sys.stderr)
            ctx.comm.abort(1)
        return 1

    if ctx.is_root:
        report(result, verbose)
    return 0


if __name__ == "__main__":
    sys.exit(main())
