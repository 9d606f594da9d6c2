#!/usr/bin/env python3
"""
simulator.py — Provenance workload generator for provtrace testing.

Creates a working directory and performs the operations the recorder
reports, in a known order, so a recording of it can be checked by eye or
by script:
  • create input files and read them more than once (one READ each)
  • reuse a descriptor number for a second file (READ reported again)
  • dup2 over a descriptor that has already been read
  • pipe data to a forked child that writes an output file
  • exec a short-lived helper and rename the output into place

Usage
-----
    # Record the workload
    provtrace record -o trace.log -- python -m provtrace.simulator

    # Or run it on its own
    python -m provtrace.simulator --target-dir /tmp/provtrace_sim --cleanup
"""

from __future__ import annotations

import argparse
import logging
import os
import shutil
import sys
import tempfile

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("provtrace.simulator")


def simulate_workload(target_dir: str, num_files: int = 3) -> str:
    """Run the provenance workload inside *target_dir*.

    Returns the path of the final output file, which contains the
    concatenation of every input.

    Args:
        target_dir: Directory to operate in (created if missing).
        num_files:  Number of input files.
    """
    if num_files < 1:
        raise ValueError("num_files must be >= 1")
    os.makedirs(target_dir, exist_ok=True)
    logger.info("Starting provenance workload in: %s", target_dir)

    # ---- Phase 1: inputs ----
    inputs: list[str] = []
    for i in range(num_files):
        path = os.path.join(target_dir, f"input_{i:02d}.txt")
        with open(path, "w") as f:
            f.write(f"input line {i}\n")
        inputs.append(path)
    logger.info("Phase 1: Created %d input files.", len(inputs))

    # ---- Phase 2: repeated reads, then descriptor reuse ----
    chunks: list[bytes] = []
    for path in inputs:
        fd = os.open(path, os.O_RDONLY)
        try:
            chunks.append(os.read(fd, 8))
            chunks[-1] += os.read(fd, 4096)
        finally:
            os.close(fd)
    logger.info("Phase 2: Read %d inputs (two reads each).", len(chunks))

    # ---- Phase 3: dup2 over an already-read descriptor ----
    first = os.open(inputs[0], os.O_RDONLY)
    second = os.open(inputs[-1], os.O_RDONLY)
    try:
        os.read(second, 1)
        os.dup2(first, second)
        os.lseek(second, 0, os.SEEK_SET)
        os.read(second, 1)
    finally:
        os.close(first)
        os.close(second)
    logger.info("Phase 3: dup2(%d, %d) over a read descriptor.", first, second)

    # ---- Phase 4: pipe to a forked writer ----
    staging = os.path.join(target_dir, "output.tmp")
    payload = b"".join(chunks)
    read_end, write_end = os.pipe()
    pid = os.fork()
    if pid == 0:
        os.close(write_end)
        status = 0
        try:
            out = os.open(staging, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
            while True:
                data = os.read(read_end, 4096)
                if not data:
                    break
                os.write(out, data)
            os.close(out)
        except OSError:
            status = 1
        os._exit(status)

    os.close(read_end)
    os.write(write_end, payload)
    os.close(write_end)
    _, wait_status = os.waitpid(pid, 0)
    if os.waitstatus_to_exitcode(wait_status) != 0:
        raise RuntimeError(f"Writer child {pid} failed")
    logger.info("Phase 4: Child %d wrote %d bytes.", pid, len(payload))

    # ---- Phase 5: exec a helper, then publish the output ----
    helper = os.fork()
    if helper == 0:
        try:
            os.execv(sys.executable, [sys.executable, "-c", "pass"])
        finally:
            os._exit(127)
    os.waitpid(helper, 0)

    output = os.path.join(target_dir, "output.txt")
    os.rename(staging, output)
    logger.info("Workload complete. Output at: %s", output)
    return output


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="provtrace-simulator",
        description="Generate file activity with a known provenance shape.",
    )
    add_arguments(parser)
    return parser


def add_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--target-dir",
        default=None,
        help="Directory to operate in (default: auto-created temp dir).",
    )
    parser.add_argument(
        "--num-files",
        type=int,
        default=3,
        help="Number of input files (default: 3).",
    )
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Remove the target directory afterwards.",
    )


def run(args: argparse.Namespace) -> int:
    target = args.target_dir or tempfile.mkdtemp(prefix="provtrace_sim_")
    try:
        simulate_workload(target, args.num_files)
    finally:
        if args.cleanup and os.path.isdir(target):
            shutil.rmtree(target, ignore_errors=True)
            logger.info("Cleaned up: %s", target)
        else:
            logger.info("Files remain in: %s", target)
    return 0


def main() -> None:
    sys.exit(run(build_parser().parse_args()))


if __name__ == "__main__":
    main()
