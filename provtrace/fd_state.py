"""
fd_state.py — Per-process, per-descriptor dedup state for provtrace.

Holds the only mutable state of the recorder: two maps from ``(pid, fd)``
to a "reported" flag, one for reads and one for writes.  An absent key
means the descriptor is fresh for its current lifetime.

Locking
-------
* Single-key operations take a striped lock chosen by ``(pid, fd)``, so
  unrelated descriptors do not contend on one global lock.
* Every operation on a pid passes through that pid's gate: single-key
  operations hold it shared, ``invalidate_all`` holds it exclusive while it
  snapshots and then deletes the pid's keys.  Gates of different pids are
  independent.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Iterator

logger = logging.getLogger(__name__)

DEFAULT_STRIPES = 64


class Direction(str, Enum):
    READ = "read"
    WRITE = "write"


class _PidGate:
    """Shared/exclusive gate for one pid.

    ``retired`` is set once an exclusive holder has purged the pid and
    dropped the gate from the registry; late arrivals must fetch a new one.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._shared = 0
        self._exclusive = False
        self.retired = False

    def acquire_shared(self) -> bool:
        with self._cond:
            while self._exclusive:
                self._cond.wait()
            if self.retired:
                return False
            self._shared += 1
            return True

    def release_shared(self) -> None:
        with self._cond:
            self._shared -= 1
            if self._shared == 0:
                self._cond.notify_all()

    def acquire_exclusive(self) -> bool:
        with self._cond:
            while self._exclusive or self._shared:
                self._cond.wait()
            if self.retired:
                return False
            self._exclusive = True
            return True

    def release_exclusive(self, retire: bool) -> None:
        with self._cond:
            self._exclusive = False
            self.retired = retire
            self._cond.notify_all()


class DescriptorStateTracker:
    """Read/write first-observation flags keyed by ``(pid, fd)``.

    Parameters:
        stripes: Number of lock stripes for single-key operations.
    """

    def __init__(self, stripes: int = DEFAULT_STRIPES) -> None:
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._maps: dict[Direction, dict[tuple[int, int], bool]] = {
            Direction.READ: {},
            Direction.WRITE: {},
        }
        self._stripes = [threading.Lock() for _ in range(stripes)]
        self._gates: dict[int, _PidGate] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def mark_and_check(self, pid: int, fd: int, direction: Direction) -> bool:
        """Set the *direction* flag for ``(pid, fd)``.

        Returns ``True`` only for the call that found the flag unset, i.e.
        the first observation since the descriptor's identity last changed.
        """
        key = (pid, fd)
        table = self._maps[direction]
        with self._shared(pid), self._stripe(key):
            if key in table:
                return False
            table[key] = True
            return True

    def invalidate(self, pid: int, fd: int) -> None:
        """Forget both flags for ``(pid, fd)``.  Absent keys are a no-op."""
        key = (pid, fd)
        with self._shared(pid), self._stripe(key):
            for table in self._maps.values():
                table.pop(key, None)

    def invalidate_all(self, pid: int) -> int:
        """Forget every descriptor of *pid*; returns the number of keys dropped.

        Keys are collected first and deleted afterwards, both while holding
        the pid's gate exclusively.
        """
        while True:
            gate = self._gate(pid)
            if gate.acquire_exclusive():
                break
        try:
            doomed = {
                direction: [key for key in list(table) if key[0] == pid]
                for direction, table in self._maps.items()
            }
            removed = 0
            for direction, keys in doomed.items():
                table = self._maps[direction]
                for key in keys:
                    if table.pop(key, None) is not None:
                        removed += 1
        finally:
            with self._registry_lock:
                if self._gates.get(pid) is gate:
                    del self._gates[pid]
            gate.release_exclusive(retire=True)

        if removed:
            logger.debug("Dropped %d descriptor flag(s) for pid %d", removed, pid)
        return removed

    def is_reported(self, pid: int, fd: int, direction: Direction) -> bool:
        return (pid, fd) in self._maps[direction]

    def pids(self) -> set[int]:
        """Pids that currently own at least one flag."""
        found: set[int] = set()
        for table in self._maps.values():
            found.update(pid for pid, _ in list(table))
        return found

    def __len__(self) -> int:
        return sum(len(table) for table in self._maps.values())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _gate(self, pid: int) -> _PidGate:
        with self._registry_lock:
            gate = self._gates.get(pid)
            if gate is None:
                gate = self._gates[pid] = _PidGate()
            return gate

    @contextmanager
    def _shared(self, pid: int) -> Iterator[None]:
        while True:
            gate = self._gate(pid)
            if gate.acquire_shared():
                break
        try:
            yield
        finally:
            gate.release_shared()

    def _stripe(self, key: tuple[int, int]) -> threading.Lock:
        return self._stripes[hash(key) % len(self._stripes)]
