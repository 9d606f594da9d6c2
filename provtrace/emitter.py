"""
emitter.py — Event emission for provtrace.

Formats a provenance event with a freshly computed process header and
hands the complete line to a sink in a single write, so two handlers
racing to emit can never interleave bytes of their records.

A sink that cannot accept a record is fatal: :class:`SinkError` propagates
to whoever drives the hooks and the recording must stop.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable, Protocol, TextIO

from provtrace.events import EventKind, ProcessHeader, ProvEvent, format_record
from provtrace.process_monitor import ProcessInfo, get_process_info

logger = logging.getLogger(__name__)


class SinkError(Exception):
    """The output sink failed; the trace can no longer be trusted."""


class Sink(Protocol):
    def write(self, record: str) -> None: ...

    def close(self) -> None: ...


class FileSink:
    """Append-only file sink.

    The file is opened with ``O_APPEND`` and every record goes out through
    exactly one ``os.write`` call, guarded by a lock.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = os.fspath(path)
        self._lock = threading.Lock()
        try:
            self._fd: int | None = os.open(
                self.path, os.O_WRONLY | os.O_CREAT | os.O_APPEND | os.O_CLOEXEC, 0o644
            )
        except OSError as exc:
            raise SinkError(f"Cannot open output {self.path}: {exc}") from exc
        logger.info("Writing provenance records to %s", self.path)

    def write(self, record: str) -> None:
        data = record.encode("utf-8", "surrogateescape")
        with self._lock:
            if self._fd is None:
                raise SinkError(f"Output {self.path} is closed")
            try:
                written = os.write(self._fd, data)
            except OSError as exc:
                raise SinkError(f"Write to {self.path} failed: {exc}") from exc
            if written != len(data):
                raise SinkError(
                    f"Short write to {self.path}: {written} of {len(data)} bytes"
                )

    def close(self) -> None:
        with self._lock:
            if self._fd is not None:
                os.close(self._fd)
                self._fd = None


class StreamSink:
    """Sink over an already-open text stream (stdout by default)."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._lock = threading.Lock()

    def write(self, record: str) -> None:
        with self._lock:
            try:
                self._stream.write(record)
                self._stream.flush()
            except (OSError, ValueError) as exc:
                raise SinkError(f"Write to output stream failed: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            try:
                self._stream.flush()
            except (OSError, ValueError):
                logger.debug("Flush on close failed", exc_info=True)


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class EventEmitter:
    """Stateless formatter in front of a sink.

    Parameters:
        sink:         Where records go.
        process_info: Callable returning the header snapshot for a pid.
                      Called on every emission; never cached, since the
                      acting process may have exec'd since the last event.
        clock:        Millisecond wall clock.
    """

    def __init__(
        self,
        sink: Sink,
        process_info: Callable[[int], ProcessInfo] = get_process_info,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._sink = sink
        self._process_info = process_info
        self._clock = clock

    def emit(self, pid: int, kind: EventKind, *fields: object) -> str:
        """Emit one event on behalf of *pid* and return the written record.

        Raises:
            SinkError: if the sink rejects the record.
        """
        event = ProvEvent(kind, tuple(fields))
        info = self._process_info(pid)
        header = ProcessHeader(
            timestamp_ms=self._clock(),
            pid=info.pid,
            ppid=info.ppid,
            uid=info.uid,
            process_name=info.name,
        )
        record = format_record(header, event)
        try:
            self._sink.write(record)
        except SinkError:
            logger.critical("Output sink failed while emitting %s for pid %d", kind.value, pid)
            raise
        return record
