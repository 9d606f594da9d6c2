"""
config.py — Recorder settings for provtrace.

Settings come from CLI arguments; a few can be overridden through the
environment so wrappers (CI jobs, build systems) don't have to thread
flags through.

    PROVTRACE_STRACE        path to the strace binary
    PROVTRACE_LOG_LEVEL     logging level name (DEBUG, INFO, ...)
    PROVTRACE_STRING_LIMIT  strace -s value (max printed string length)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping

logger = logging.getLogger(__name__)

DEFAULT_STRING_LIMIT = 4096

# Syscalls requested from strace; each maps onto a dispatcher hook point
# (chdir/fchdir only feed the working-directory tracker).
TRACED_SYSCALLS = (
    "open", "openat", "openat2", "creat",
    "read", "pread64", "readv", "preadv", "preadv2",
    "write", "pwrite64", "writev", "pwritev", "pwritev2",
    "mmap", "close", "pipe", "pipe2",
    "dup", "dup2", "dup3",
    "fork", "vfork", "clone", "clone3",
    "execve", "execveat", "exit_group",
    "rename", "renameat", "renameat2",
    "chdir", "fchdir",
)


@dataclass
class RecorderConfig:
    """Everything a recording session needs besides the command itself."""

    output: str | None = None
    strace_path: str = "strace"
    string_limit: int = DEFAULT_STRING_LIMIT
    log_level: str = "INFO"
    syscalls: tuple[str, ...] = field(default=TRACED_SYSCALLS)

    @classmethod
    def from_env(
        cls,
        env: Mapping[str, str] | None = None,
        **overrides: object,
    ) -> "RecorderConfig":
        """Build a config from the environment, then apply *overrides*.

        Explicit overrides win over the environment; ``None`` overrides are
        ignored so argparse defaults can be passed straight through.
        """
        env = os.environ if env is None else env
        cfg = cls()

        if env.get("PROVTRACE_STRACE"):
            cfg.strace_path = env["PROVTRACE_STRACE"]
        if env.get("PROVTRACE_LOG_LEVEL"):
            cfg.log_level = env["PROVTRACE_LOG_LEVEL"].upper()
        if env.get("PROVTRACE_STRING_LIMIT"):
            try:
                cfg.string_limit = int(env["PROVTRACE_STRING_LIMIT"])
            except ValueError:
                logger.warning(
                    "Ignoring non-integer PROVTRACE_STRING_LIMIT=%r",
                    env["PROVTRACE_STRING_LIMIT"],
                )

        for key, value in overrides.items():
            if value is None:
                continue
            if not hasattr(cfg, key):
                raise TypeError(f"Unknown recorder setting: {key}")
            setattr(cfg, key, value)

        if cfg.string_limit < 1:
            raise ValueError(f"string_limit must be positive, got {cfg.string_limit}")
        return cfg
