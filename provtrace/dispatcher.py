"""
dispatcher.py — Hook handlers for provtrace.

One handler per monitored hook point.  Each handler is a function of the
hook's arguments and the current descriptor state: it decides whether an
event is emitted, emits it, and applies the matching state change.

Hook sources (see ``provtrace.monitor``) register against
:data:`HOOK_POINTS`, which also fixes the lifecycle phase each handler is
attached to.  Rename, execve entry and exit_group must be taken at syscall
entry; everything else is taken at return.

Failure policy:
  * an operation that failed produces no event and no state change;
  * a path that cannot be resolved drops only the dependent event;
  * ``SinkError`` is never caught here.
"""

from __future__ import annotations

import logging
import mmap
import os
from enum import Enum
from typing import Callable, Sequence

from provtrace.emitter import EventEmitter
from provtrace.events import EventKind
from provtrace.fd_state import DescriptorStateTracker, Direction
from provtrace.process_monitor import FileHandle, PathResolver, ResolutionError

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    ENTRY = "entry"
    RETURN = "return"


class HookPoint(str, Enum):
    OPEN = "open"
    PATH_RESOLVED = "path_resolved"
    READ = "read"
    WRITE = "write"
    MMAP = "mmap"
    CLOSE = "close"
    PIPE = "pipe"
    DUP = "dup"
    DUP2 = "dup2"
    FORK = "fork"
    EXECVE_ENTRY = "execve_entry"
    EXECVE_RETURN = "execve_return"
    EXIT_GROUP = "exit_group"
    RENAME = "rename"


# (handler method name, phase) per hook point.
HOOK_POINTS: dict[HookPoint, tuple[str, Phase]] = {
    HookPoint.OPEN: ("on_open_return", Phase.RETURN),
    HookPoint.PATH_RESOLVED: ("on_path_resolved", Phase.RETURN),
    HookPoint.READ: ("on_read_return", Phase.RETURN),
    HookPoint.WRITE: ("on_write_return", Phase.RETURN),
    HookPoint.MMAP: ("on_mmap_return", Phase.RETURN),
    HookPoint.CLOSE: ("on_close_return", Phase.RETURN),
    HookPoint.PIPE: ("on_pipe_return", Phase.RETURN),
    HookPoint.DUP: ("on_dup_return", Phase.RETURN),
    HookPoint.DUP2: ("on_dup2_return", Phase.RETURN),
    HookPoint.FORK: ("on_fork_return", Phase.RETURN),
    HookPoint.EXECVE_ENTRY: ("on_execve_entry", Phase.ENTRY),
    HookPoint.EXECVE_RETURN: ("on_execve_return", Phase.RETURN),
    HookPoint.EXIT_GROUP: ("on_exit_group", Phase.ENTRY),
    # Kernel-side argument identity is not stable by return time.
    HookPoint.RENAME: ("on_rename_entry", Phase.ENTRY),
}


_OPEN_KINDS = {
    os.O_RDONLY: EventKind.OPEN_READ,
    os.O_WRONLY: EventKind.OPEN_WRITE,
    os.O_RDWR: EventKind.OPEN_READWRITE,
}


def classify_open(flags: int) -> EventKind:
    """Map open(2) flags to an ``OPEN_*`` kind via the access mode bits."""
    # O_ACCMODE == 3 also covers the Linux-specific "3" (no access) mode.
    return _OPEN_KINDS.get(flags & os.O_ACCMODE, EventKind.OPEN_READWRITE)


def classify_mmap(prot: int) -> EventKind | None:
    """Map mmap(2) protection bits to an ``MMAP_*`` kind, or ``None``."""
    readable = bool(prot & mmap.PROT_READ)
    writable = bool(prot & mmap.PROT_WRITE)
    if readable and writable:
        return EventKind.MMAP_READWRITE
    if writable:
        return EventKind.MMAP_WRITE
    if readable:
        return EventKind.MMAP_READ
    return None


class HookDispatcher:
    """Turns hook invocations into provenance events.

    Parameters:
        emitter:  Formats and writes events.
        tracker:  Descriptor dedup state; owned exclusively by this object.
        resolver: Absolute-path resolution collaborator.
    """

    def __init__(
        self,
        emitter: EventEmitter,
        tracker: DescriptorStateTracker | None = None,
        resolver: PathResolver | None = None,
    ) -> None:
        self._emitter = emitter
        self._tracker = tracker if tracker is not None else DescriptorStateTracker()
        self._resolver = resolver if resolver is not None else PathResolver()

    @property
    def tracker(self) -> DescriptorStateTracker:
        return self._tracker

    def handlers(self) -> dict[HookPoint, Callable[..., None]]:
        """Hook point → bound handler, for registration by a hook source."""
        return {point: getattr(self, name) for point, (name, _) in HOOK_POINTS.items()}

    # ------------------------------------------------------------------
    # Descriptor lifecycle
    # ------------------------------------------------------------------

    def on_open_return(self, pid: int, path: str, flags: int, ret: int) -> None:
        if ret < 0:
            return
        self._emitter.emit(pid, classify_open(flags), path, ret)
        # Whatever this fd number meant before is gone.
        self._tracker.invalidate(pid, ret)

    def on_path_resolved(self, pid: int, handle: FileHandle, failed: bool = False) -> None:
        """Emit the absolute path of the file an open just produced.

        Correlated to the preceding ``OPEN_*`` record by stream adjacency.
        """
        if failed:
            return
        try:
            path = self._resolver.resolve(pid, handle)
        except ResolutionError as exc:
            logger.debug("OPEN_ABSPATH suppressed: %s", exc)
            return
        self._emitter.emit(pid, EventKind.OPEN_ABSPATH, path)

    def on_close_return(self, pid: int, fd: int, ret: int) -> None:
        if ret != 0:
            return
        self._emitter.emit(pid, EventKind.CLOSE, fd)
        self._tracker.invalidate(pid, fd)

    def on_pipe_return(self, pid: int, fd0: int, fd1: int) -> None:
        self._emitter.emit(pid, EventKind.PIPE, fd0, fd1)

    def on_dup_return(self, pid: int, oldfd: int, ret: int) -> None:
        if ret < 0:
            return
        self._emitter.emit(pid, EventKind.DUP, oldfd, ret)

    def on_dup2_return(self, pid: int, oldfd: int, newfd: int, ret: int) -> None:
        if ret < 0:
            return
        self._emitter.emit(pid, EventKind.DUP2, oldfd, newfd, ret)
        # dup2 silently closes whatever newfd referred to.
        self._tracker.invalidate(pid, newfd)

    # ------------------------------------------------------------------
    # Data flow
    # ------------------------------------------------------------------

    def on_read_return(self, pid: int, fd: int, ret: int) -> None:
        if ret > 0 and self._tracker.mark_and_check(pid, fd, Direction.READ):
            self._emitter.emit(pid, EventKind.READ, fd)

    def on_write_return(self, pid: int, fd: int, ret: int) -> None:
        if ret > 0 and self._tracker.mark_and_check(pid, fd, Direction.WRITE):
            self._emitter.emit(pid, EventKind.WRITE, fd)

    def on_mmap_return(self, pid: int, fd: int, prot: int, failed: bool = False) -> None:
        if failed or fd < 0:
            return
        kind = classify_mmap(prot)
        if kind is None:
            return
        self._emitter.emit(pid, kind, fd)

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    def on_fork_return(self, pid: int, child_pid: int) -> None:
        self._emitter.emit(pid, EventKind.FORK, child_pid)

    def on_execve_entry(self, pid: int, path: str, argv: Sequence[str]) -> None:
        try:
            cwd = self._resolver.cwd(pid)
        except ResolutionError as exc:
            logger.debug("EXECVE suppressed: %s", exc)
            return
        self._emitter.emit(pid, EventKind.EXECVE, cwd, path, list(argv))

    def on_execve_return(self, pid: int, ret: int) -> None:
        self._emitter.emit(pid, EventKind.EXECVE_RETURN, ret)

    def on_exit_group(self, pid: int, status: int) -> None:
        """Whole-process exit: emit, then drop every descriptor flag of *pid*.

        Never wire this to a single-thread exit; sibling threads would lose
        their dedup state while still running.
        """
        self._emitter.emit(pid, EventKind.EXIT_GROUP, status)
        self._tracker.invalidate_all(pid)

    def forget_process(self, pid: int) -> None:
        """Silent cleanup once a whole process is gone.

        Covers processes killed by a signal (no exit_group was seen) and
        makes a later reuse of *pid* start fresh; no event is emitted.
        """
        self._tracker.invalidate_all(pid)

    def on_rename_entry(self, pid: int, old_path: str, new_path: str) -> None:
        try:
            old_abs = self._resolver.resolve_at_cwd(pid, old_path)
            new_abs = self._resolver.resolve_at_cwd(pid, new_path)
        except ResolutionError as exc:
            logger.debug("RENAME suppressed: %s", exc)
            return
        self._emitter.emit(pid, EventKind.RENAME, old_abs, new_abs)
