#!/usr/bin/env python3
"""
provtrace_main.py — CLI entry point for provtrace.

Sub-commands
------------
record    Run a command under strace and write its provenance event
          stream (one record per line) to a file or stdout.

simulate  Run the built-in workload that exercises every event kind,
          typically as the command given to ``record``.

Usage
-----
    # Record a build
    provtrace record -o build.prov -- make -j4

    # Record the simulator to stdout
    provtrace record -- provtrace simulate --cleanup
"""

from __future__ import annotations

import argparse
import logging
import sys

from provtrace import simulator
from provtrace.config import RecorderConfig
from provtrace.emitter import FileSink, SinkError, StreamSink
from provtrace.monitor import StraceNotFoundError, TraceSession

# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger("provtrace")

EXIT_SINK_FAILURE = 1
EXIT_SETUP_ERROR = 2


# ---------------------------------------------------------------------------
# Record sub-command
# ---------------------------------------------------------------------------

def cmd_record(args: argparse.Namespace) -> int:
    """Trace ``args.command`` and return its exit status."""
    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        logger.error("No command given to record.")
        return EXIT_SETUP_ERROR

    try:
        config = RecorderConfig.from_env(
            output=args.output,
            strace_path=args.strace,
            string_limit=args.string_limit,
            log_level=args.log_level,
        )
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_SETUP_ERROR
    logging.getLogger().setLevel(config.log_level)

    try:
        sink = FileSink(config.output) if config.output else StreamSink(sys.stdout)
    except SinkError as exc:
        logger.error("%s", exc)
        return EXIT_SETUP_ERROR

    # records own stdout; the traced command's output moves to stderr
    command_stdout = None if config.output else sys.stderr
    session = TraceSession(command, sink, config, stdout=command_stdout)
    try:
        try:
            session.start()
        except (StraceNotFoundError, OSError) as exc:
            logger.error("Cannot start tracing: %s", exc)
            return EXIT_SETUP_ERROR

        try:
            status = session.wait()
        except KeyboardInterrupt:
            logger.info("Recording interrupted by user.")
            session.stop()
            status = session.wait()
    except SinkError as exc:
        logger.critical("Recording halted, the trace is incomplete: %s", exc)
        return EXIT_SINK_FAILURE
    finally:
        sink.close()

    logger.info("Traced command exited with status %d", status)
    # killed by signal N -> shell convention 128 + N
    return 128 - status if status < 0 else status


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="provtrace",
        description="provtrace — file provenance event recorder.",
    )
    sub = parser.add_subparsers(dest="command_name", required=True)

    # -- record --
    record_p = sub.add_parser("record", help="Record a command's provenance events.")
    record_p.add_argument(
        "-o",
        "--output",
        default=None,
        help="Append records to this file (default: stdout; the traced "
        "command's own stdout then goes to stderr).",
    )
    record_p.add_argument(
        "--strace",
        default=None,
        help="strace binary to use (default: strace on PATH).",
    )
    record_p.add_argument(
        "--string-limit",
        type=int,
        default=None,
        help="Longest string strace prints, in bytes (default: 4096).",
    )
    record_p.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Diagnostic log level (default: INFO).",
    )
    record_p.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        help="Command to trace, after '--'.",
    )

    # -- simulate --
    simulate_p = sub.add_parser("simulate", help="Run the provenance workload.")
    simulator.add_arguments(simulate_p)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> int:
    """Parse CLI args and dispatch to the appropriate sub-command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command_name == "record":
        return cmd_record(args)
    return simulator.run(args)


if __name__ == "__main__":
    sys.exit(main())
