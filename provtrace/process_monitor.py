"""
process_monitor.py — Process inspection & path resolution for provtrace.

Provides lightweight wrappers around ``psutil`` for the two collaborators
the hook dispatcher consumes as opaque services:

* ``get_process_info(pid)`` — (pid, ppid, uid, name) snapshot used for
  every record header.
* ``PathResolver`` — turns a file handle, the process working directory or
  a cwd-relative path into an absolute path.

Neither collaborator keeps state between calls.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

import psutil

logger = logging.getLogger(__name__)

UNKNOWN_NAME = "?"


class ResolutionError(Exception):
    """A path could not be resolved; the dependent event is dropped."""


@dataclass(frozen=True)
class ProcessInfo:
    """Snapshot of a traced process."""

    pid: int
    ppid: int = 0
    uid: int = -1
    name: str = UNKNOWN_NAME


@dataclass(frozen=True)
class FileHandle:
    """What the open hook hands to path resolution.

    ``fd`` is the descriptor the open returned.  ``hint`` is an absolute
    path the hook source already knows (e.g. strace's ``-y`` annotation);
    when absent the descriptor is resolved through procfs.
    """

    fd: int
    hint: str | None = None


def get_process_info(pid: int) -> ProcessInfo:
    """Return a :class:`ProcessInfo` for *pid*.

    Never raises: a process that has already gone away (or that we may not
    inspect) yields a placeholder with only the pid filled in.
    """
    try:
        proc = psutil.Process(pid)
        with proc.oneshot():
            return ProcessInfo(
                pid=pid,
                ppid=proc.ppid(),
                uid=proc.uids().real,
                name=proc.name(),
            )
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as exc:
        logger.debug("Cannot inspect pid %d: %s", pid, exc)
        return ProcessInfo(pid=pid)


class PathResolver:
    """Absolute-path resolution backed by psutil and procfs.

    Every method raises :class:`ResolutionError` when the answer cannot be
    determined; callers treat that as "suppress the event".
    """

    def __init__(self, proc_root: str = "/proc") -> None:
        self.proc_root = proc_root

    def resolve(self, pid: int, handle: FileHandle) -> str:
        """Absolute path of an open descriptor."""
        if handle.hint and os.path.isabs(handle.hint):
            return handle.hint
        if handle.fd < 0:
            raise ResolutionError(f"pid {pid}: invalid descriptor {handle.fd}")
        link = os.path.join(self.proc_root, str(pid), "fd", str(handle.fd))
        try:
            return os.readlink(link)
        except OSError as exc:
            raise ResolutionError(f"pid {pid}: cannot read {link}: {exc}") from exc

    def cwd(self, pid: int) -> str:
        """Current working directory of *pid*."""
        try:
            return psutil.Process(pid).cwd()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as exc:
            raise ResolutionError(f"pid {pid}: cannot read cwd: {exc}") from exc

    def resolve_at_cwd(self, pid: int, path: str) -> str:
        """Resolve *path* against the working directory of *pid*."""
        if not path:
            raise ResolutionError(f"pid {pid}: empty path")
        if os.path.isabs(path):
            return os.path.normpath(path)
        return os.path.normpath(os.path.join(self.cwd(pid), path))
