"""
monitor.py — strace-driven hook source for provtrace.

Runs a command under ``strace -f -y``, parses its output and fires the
matching :class:`~provtrace.dispatcher.HookDispatcher` handlers, so every
monitored syscall of every traced process turns into zero or one
provenance record.

Public API
----------
start(command, sink, config)
    Launch the command under strace in the background and return the
    :class:`TraceSession` recording it.

stop()
    Terminate the running session (and the traced command).
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import subprocess
import tempfile
import threading
from typing import IO, Callable, Sequence

import psutil

from provtrace.config import RecorderConfig
from provtrace.dispatcher import HookDispatcher
from provtrace.emitter import EventEmitter, Sink, SinkError
from provtrace.fd_state import DescriptorStateTracker
from provtrace.process_monitor import (
    FileHandle,
    PathResolver,
    UNKNOWN_NAME,
    ProcessInfo,
    ResolutionError,
    get_process_info,
)
from provtrace.strace_parser import (
    OPEN_FLAGS,
    PROT_FLAGS,
    ProcessExit,
    StraceParser,
    Syscall,
    annotation,
    decode_flags,
    parse_fd_pair,
    parse_int,
    parse_string,
    parse_string_array,
    split_annotation,
    struct_field,
)

logger = logging.getLogger(__name__)

_CREAT_FLAGS = os.O_CREAT | os.O_WRONLY | os.O_TRUNC
_TASK_COMM_LEN = 15


class StraceNotFoundError(RuntimeError):
    """The strace binary could not be located."""


class TrackedPathResolver(PathResolver):
    """Path resolution that follows chdir/fork as seen in the trace.

    strace output is consumed after the fact, when a short-lived process
    may already be gone; the working directories recorded from the trace
    are used first and procfs only as a fallback.
    """

    def __init__(self, initial_cwd: str, proc_root: str = "/proc") -> None:
        super().__init__(proc_root)
        self.initial_cwd = initial_cwd
        self._cwds: dict[int, str] = {}

    def cwd(self, pid: int) -> str:
        if pid in self._cwds:
            return self._cwds[pid]
        try:
            return super().cwd(pid)
        except ResolutionError:
            logger.debug("pid %d: cwd unknown, assuming %s", pid, self.initial_cwd)
            return self.initial_cwd

    def set_cwd(self, pid: int, path: str) -> None:
        self._cwds[pid] = path

    def inherit(self, parent: int, child: int) -> None:
        self._cwds.setdefault(child, self.cwd(parent))

    def forget(self, pid: int) -> None:
        self._cwds.pop(pid, None)


class ProcessTable:
    """Header source for traced processes.

    The trace is read after the fact, so the live process may already have
    exec'd, exited or been replaced by a reused pid.  Once the trace has
    described a pid (fork, exec, or a first successful lookup) that
    snapshot answers; psutil is only asked about pids not yet known.
    """

    def __init__(self, lookup: Callable[[int], ProcessInfo] = get_process_info) -> None:
        self._lookup = lookup
        self._known: dict[int, ProcessInfo] = {}

    def info(self, pid: int) -> ProcessInfo:
        known = self._known.get(pid)
        if known is not None:
            return known
        live = self._lookup(pid)
        if live.name != UNKNOWN_NAME:
            self._known[pid] = live
        return live

    def forked(self, parent: int, child: int) -> None:
        parent_info = self.info(parent)
        self._known[child] = ProcessInfo(
            pid=child, ppid=parent, uid=parent_info.uid, name=parent_info.name
        )

    def executed(self, pid: int, path: str) -> None:
        current = self._known.get(pid) or self._lookup(pid)
        name = os.path.basename(path)[:_TASK_COMM_LEN] or current.name
        self._known[pid] = ProcessInfo(
            pid=pid, ppid=current.ppid, uid=current.uid, name=name
        )

    def forget(self, pid: int) -> None:
        self._known.pop(pid, None)


def read_tgid(tid: int, proc_root: str = "/proc") -> int:
    """Thread-group id of *tid* from procfs; *tid* itself if unavailable."""
    try:
        with open(os.path.join(proc_root, str(tid), "status"), encoding="ascii") as fh:
            for line in fh:
                if line.startswith("Tgid:"):
                    return int(line.split()[1])
    except (OSError, ValueError):
        pass
    return tid


class TraceSession:
    """One strace-backed recording.

    Parameters:
        command: argv of the program to trace.
        sink:    Output for provenance records.
        config:  Recorder settings (strace path, string limit …).
        cwd:     Working directory the command starts in.
        lookup:  Live process metadata source.
        proc_root: procfs mount point.
        stdout:  Where the traced command's stdout goes (inherited if None).
    """

    def __init__(
        self,
        command: Sequence[str],
        sink: Sink,
        config: RecorderConfig | None = None,
        cwd: str | None = None,
        tracker: DescriptorStateTracker | None = None,
        lookup: Callable[[int], ProcessInfo] = get_process_info,
        proc_root: str = "/proc",
        stdout: IO[str] | int | None = None,
    ) -> None:
        if not command:
            raise ValueError("Nothing to trace: empty command")
        self.command = list(command)
        self.config = config or RecorderConfig()
        self.cwd = os.path.abspath(cwd or os.getcwd())
        self.proc_root = proc_root
        self.stdout = stdout
        self.processes = ProcessTable(lookup)
        self.resolver = TrackedPathResolver(self.cwd, proc_root)
        self.emitter = EventEmitter(sink, process_info=self.processes.info)
        self.dispatcher = HookDispatcher(self.emitter, tracker, self.resolver)

        self._sink = sink
        self._parser = StraceParser()
        self._tgids: dict[int, int] = {}
        self._proc: subprocess.Popen | None = None
        self._reader: threading.Thread | None = None
        self._fifo_dir: str | None = None
        self._fifo: str | None = None
        self._error: SinkError | None = None
        self._handlers: dict[str, Callable[[int, Syscall], None]] = {
            "open": self._on_open,
            "openat": self._on_open,
            "openat2": self._on_open,
            "creat": self._on_open,
            "read": self._on_read,
            "pread64": self._on_read,
            "readv": self._on_read,
            "preadv": self._on_read,
            "preadv2": self._on_read,
            "write": self._on_write,
            "pwrite64": self._on_write,
            "writev": self._on_write,
            "pwritev": self._on_write,
            "pwritev2": self._on_write,
            "mmap": self._on_mmap,
            "close": self._on_close,
            "pipe": self._on_pipe,
            "pipe2": self._on_pipe,
            "dup": self._on_dup,
            "dup2": self._on_dup2,
            "dup3": self._on_dup2,
            "fork": self._on_fork,
            "vfork": self._on_fork,
            "clone": self._on_fork,
            "clone3": self._on_fork,
            "execve": self._on_execve,
            "execveat": self._on_execve,
            "exit_group": self._on_exit_group,
            "rename": self._on_rename,
            "renameat": self._on_rename,
            "renameat2": self._on_rename,
            "chdir": self._on_chdir,
            "fchdir": self._on_chdir,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def strace_argv(self, output_path: str) -> list[str]:
        strace = shutil.which(self.config.strace_path)
        if strace is None:
            raise StraceNotFoundError(f"strace not found: {self.config.strace_path}")
        # -q, not -qq: the "+++ exited/killed +++" notices drive state cleanup
        return [
            strace,
            "-f",
            "-q",
            "-y",
            "-s",
            str(self.config.string_limit),
            "-e",
            "trace=" + ",".join(self.config.syscalls),
            "-o",
            output_path,
            "--",
            *self.command,
        ]

    def start(self) -> None:
        """Launch strace + command and begin consuming the trace.

        strace opens the trace FIFO itself (close-on-exec), so the traced
        processes inherit no extra descriptor.  Does not block; call
        :meth:`wait` to run to completion.
        """
        self._fifo_dir = tempfile.mkdtemp(prefix="provtrace-")
        self._fifo = os.path.join(self._fifo_dir, "trace")
        try:
            os.mkfifo(self._fifo, 0o600)
            argv = self.strace_argv(self._fifo)
            self._reader = threading.Thread(
                target=self._read_fifo, name="provtrace-reader", daemon=True
            )
            self._reader.start()
            logger.info("Tracing: %s", " ".join(self.command))
            logger.debug("strace argv: %s", argv)
            self._proc = subprocess.Popen(argv, cwd=self.cwd, stdout=self.stdout)
        except BaseException:
            self._release_reader()
            self._cleanup_fifo()
            raise

    def wait(self) -> int:
        """Block until the traced command exits; returns its exit status.

        Raises:
            SinkError: if the output failed during the recording.
        """
        if self._proc is None:
            raise RuntimeError("Session not started")
        returncode = self._proc.wait()
        self._release_reader()
        self._cleanup_fifo()
        if self._error is not None:
            raise self._error
        return returncode

    def stop(self) -> None:
        """Terminate the traced process tree, then strace itself."""
        if self._proc is None or self._proc.poll() is not None:
            return
        logger.info("Stopping trace (strace pid %d)", self._proc.pid)
        try:
            tracees = psutil.Process(self._proc.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            tracees = []
        for proc in tracees:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
        psutil.wait_procs(tracees, timeout=5)

        self._proc.terminate()
        try:
            self._proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            self._proc.kill()
            self._proc.wait()

    def _read_fifo(self) -> None:
        # blocks until strace (or _release_reader) opens the write end
        with open(self._fifo, "r", encoding="latin-1", newline="\n") as stream:
            self._consume(stream)

    def _consume(self, stream) -> None:  # noqa: ANN001
        for line in stream:
            try:
                self.feed_line(line)
            except SinkError as exc:
                self._error = exc
                logger.critical("Output failed, halting the recording: %s", exc)
                self.stop()
                return
            except Exception:
                logger.exception("Failed to process strace line: %r", line)

    def _release_reader(self) -> None:
        """Let the reader see end-of-trace, even if strace never opened the FIFO."""
        if self._reader is None:
            return
        while self._reader.is_alive():
            try:
                fd = os.open(self._fifo, os.O_WRONLY | os.O_NONBLOCK)
            except OSError as exc:
                # ENXIO: the reader is not (or no longer) holding the FIFO open
                if exc.errno != errno.ENXIO:
                    raise
            else:
                os.close(fd)
            self._reader.join(timeout=0.1)

    def _cleanup_fifo(self) -> None:
        if self._fifo_dir is not None:
            shutil.rmtree(self._fifo_dir, ignore_errors=True)
            self._fifo_dir = None

    # ------------------------------------------------------------------
    # Trace handling
    # ------------------------------------------------------------------

    def feed_line(self, line: str) -> None:
        """Parse one strace output line and fire the matching hooks."""
        record = self._parser.feed(line)
        if isinstance(record, Syscall):
            handler = self._handlers.get(record.name)
            if handler is not None:
                handler(self._tgid_of(record.tid), record)
        elif isinstance(record, ProcessExit):
            self._on_task_exit(record)

    def _tgid_of(self, tid: int) -> int:
        tgid = self._tgids.get(tid)
        if tgid is None:
            tgid = self._tgids[tid] = read_tgid(tid, self.proc_root)
        return tgid

    def _on_open(self, pid: int, sc: Syscall) -> None:
        if sc.name in ("open", "creat"):
            path = parse_string(sc.arg(0))
            flags = _CREAT_FLAGS if sc.name == "creat" else decode_flags(sc.arg(1), OPEN_FLAGS)
        elif sc.name == "openat2":
            path = parse_string(sc.arg(1))
            flags = decode_flags(struct_field(sc.arg(2), "flags"), OPEN_FLAGS)
        else:
            path = parse_string(sc.arg(1))
            flags = decode_flags(sc.arg(2), OPEN_FLAGS)
        if path is None:
            logger.debug("Skipping %s without a path: %s", sc.name, sc.args)
            return
        ret = -1 if sc.failed else sc.return_value
        if ret is None:
            return
        self.dispatcher.on_open_return(pid, path, flags, ret)
        self.dispatcher.on_path_resolved(
            pid, FileHandle(fd=ret, hint=annotation(sc.result)), failed=ret < 0
        )

    def _on_read(self, pid: int, sc: Syscall) -> None:
        fd, ret = parse_int(sc.arg(0)), sc.return_value
        if fd is not None and ret is not None:
            self.dispatcher.on_read_return(pid, fd, ret)

    def _on_write(self, pid: int, sc: Syscall) -> None:
        fd, ret = parse_int(sc.arg(0)), sc.return_value
        if fd is not None and ret is not None:
            self.dispatcher.on_write_return(pid, fd, ret)

    def _on_mmap(self, pid: int, sc: Syscall) -> None:
        fd = parse_int(sc.arg(4))
        if fd is None:
            return
        prot = decode_flags(sc.arg(2), PROT_FLAGS)
        self.dispatcher.on_mmap_return(pid, fd, prot, failed=sc.failed)

    def _on_close(self, pid: int, sc: Syscall) -> None:
        fd, ret = parse_int(sc.arg(0)), sc.return_value
        if fd is not None and ret is not None:
            self.dispatcher.on_close_return(pid, fd, ret)

    def _on_pipe(self, pid: int, sc: Syscall) -> None:
        if sc.failed:
            return
        pair = parse_fd_pair(sc.arg(0))
        if pair is not None:
            self.dispatcher.on_pipe_return(pid, *pair)

    def _on_dup(self, pid: int, sc: Syscall) -> None:
        oldfd, ret = parse_int(sc.arg(0)), sc.return_value
        if oldfd is not None and ret is not None:
            self.dispatcher.on_dup_return(pid, oldfd, ret)

    def _on_dup2(self, pid: int, sc: Syscall) -> None:
        oldfd, newfd, ret = parse_int(sc.arg(0)), parse_int(sc.arg(1)), sc.return_value
        if oldfd is not None and newfd is not None and ret is not None:
            self.dispatcher.on_dup2_return(pid, oldfd, newfd, ret)

    def _on_fork(self, pid: int, sc: Syscall) -> None:
        child = sc.return_value
        if sc.failed or child is None or child <= 0:
            return
        if "CLONE_THREAD" in " ".join(sc.args):
            self._tgids[child] = pid
            return
        self._tgids[child] = child
        self.processes.forked(pid, child)
        self.resolver.inherit(pid, child)
        self.dispatcher.on_fork_return(pid, child)

    def _on_execve(self, pid: int, sc: Syscall) -> None:
        offset = 1 if sc.name == "execveat" else 0
        path = parse_string(sc.arg(offset))
        if path is None:
            return
        argv = parse_string_array(sc.arg(offset + 1))
        ret = sc.return_value
        self.dispatcher.on_execve_entry(pid, path, argv)
        if not sc.failed:
            self.processes.executed(pid, path)
        self.dispatcher.on_execve_return(pid, ret if ret is not None else -1)

    def _on_exit_group(self, pid: int, sc: Syscall) -> None:
        status = parse_int(sc.arg(0))
        self.dispatcher.on_exit_group(pid, status if status is not None else 0)

    def _on_rename(self, pid: int, sc: Syscall) -> None:
        if sc.failed:
            return
        if sc.name == "rename":
            old, new = parse_string(sc.arg(0)), parse_string(sc.arg(1))
        else:
            old = _join_dirfd(sc.arg(0), parse_string(sc.arg(1)))
            new = _join_dirfd(sc.arg(2), parse_string(sc.arg(3)))
        if old is None or new is None:
            logger.debug("Skipping %s with unreadable paths: %s", sc.name, sc.args)
            return
        self.dispatcher.on_rename_entry(pid, old, new)

    def _on_chdir(self, pid: int, sc: Syscall) -> None:
        if sc.failed:
            return
        if sc.name == "fchdir":
            target = annotation(sc.arg(0))
        else:
            path = parse_string(sc.arg(0))
            try:
                target = self.resolver.resolve_at_cwd(pid, path) if path else None
            except ResolutionError:
                target = None
        if target:
            self.resolver.set_cwd(pid, target)

    def _on_task_exit(self, notice: ProcessExit) -> None:
        tgid = self._tgids.pop(notice.tid, notice.tid)
        if notice.tid != tgid:
            return
        # the leader is reported last, once the whole group is gone; after a
        # kill there was no exit_group, otherwise this purge finds nothing
        self.dispatcher.forget_process(tgid)
        for tid in [t for t, g in self._tgids.items() if g == tgid]:
            del self._tgids[tid]
        self.resolver.forget(tgid)
        self.processes.forget(tgid)


def _join_dirfd(dirfd_token: str | None, path: str | None) -> str | None:
    """Anchor a *at() path on its directory descriptor's ``-y`` annotation."""
    if path is None or os.path.isabs(path) or dirfd_token is None:
        return path
    name, directory = split_annotation(dirfd_token)
    if directory and name != "AT_FDCWD":
        return os.path.join(directory, path)
    return path


# ---------------------------------------------------------------------------
# Module-level API
# ---------------------------------------------------------------------------
_session: TraceSession | None = None


def start(
    command: Sequence[str],
    sink: Sink,
    config: RecorderConfig | None = None,
) -> TraceSession:
    """Start tracing *command*, writing records to *sink*.

    Returns the running session; call ``session.wait()`` to block until
    the command finishes.
    """
    global _session  # noqa: PLW0603

    _session = TraceSession(command, sink, config)
    _session.start()
    return _session


def stop() -> None:
    """Stop the running session, if any."""
    global _session  # noqa: PLW0603
    if _session is not None:
        _session.stop()
        _session = None
        logger.info("Monitor stopped.")
