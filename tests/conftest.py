"""Shared fixtures: an in-memory sink and deterministic collaborators."""

from __future__ import annotations

import threading

import pytest

from provtrace.dispatcher import HookDispatcher
from provtrace.emitter import EventEmitter, SinkError
from provtrace.events import ParsedRecord, parse_record
from provtrace.fd_state import DescriptorStateTracker
from provtrace.process_monitor import FileHandle, ProcessInfo, ResolutionError


class RecordingSink:
    """Keeps every record in memory; can be told to fail."""

    def __init__(self) -> None:
        self.lines: list[str] = []
        self.fail = False
        self._lock = threading.Lock()

    def write(self, record: str) -> None:
        if self.fail:
            raise SinkError("disk full")
        with self._lock:
            self.lines.append(record)

    def close(self) -> None:
        pass

    @property
    def records(self) -> list[ParsedRecord]:
        return [parse_record(line) for line in self.lines]

    def kinds(self) -> list[str]:
        return [record.kind.value for record in self.records]


class FakeResolver:
    """Resolver with fixed answers; ``None`` entries fail."""

    def __init__(self) -> None:
        self.cwds: dict[int, str | None] = {}
        self.default_cwd: str | None = "/work"

    def resolve(self, pid: int, handle: FileHandle) -> str:
        if handle.hint is None:
            raise ResolutionError(f"no path for fd {handle.fd}")
        return handle.hint

    def cwd(self, pid: int) -> str:
        cwd = self.cwds.get(pid, self.default_cwd)
        if cwd is None:
            raise ResolutionError(f"no cwd for {pid}")
        return cwd

    def resolve_at_cwd(self, pid: int, path: str) -> str:
        if path.startswith("/"):
            return path
        return f"{self.cwd(pid)}/{path}"


def fake_process_info(pid: int) -> ProcessInfo:
    return ProcessInfo(pid=pid, ppid=1, uid=1000, name=f"proc{pid}")


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def emitter(sink) -> EventEmitter:
    return EventEmitter(sink, process_info=fake_process_info, clock=lambda: 1700000000000)


@pytest.fixture
def tracker() -> DescriptorStateTracker:
    return DescriptorStateTracker()


@pytest.fixture
def dispatcher(emitter, tracker, resolver) -> HookDispatcher:
    return HookDispatcher(emitter, tracker, resolver)
