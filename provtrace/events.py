"""
events.py — Shared event schema for provtrace.

Defines the provenance event kinds, the immutable ``ProvEvent`` that the
dispatcher produces, the per-emission ``ProcessHeader`` and the one-line
record format written to the sink.

Record layout
-------------
    <timestamp_ms>||<pid>||<ppid>||<uid>||<process_name>||<KIND>||<fields...>

Text fields (process name, paths, argv) are escaped so a record always
stays on one line and splits cleanly: ``\\`` becomes ``\\\\``, newline and
carriage return become ``\\n`` and ``\\r``, and ``|`` becomes ``\\x7c``.  The
trailing ``argv`` of an ``EXECVE`` record keeps its ``|`` characters, since
the split is bounded before it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

DELIMITER = "||"

HEADER_FIELDS = ("timestamp_ms", "pid", "ppid", "uid", "process_name")

_FIELD_ESCAPES = str.maketrans({"\\": "\\\\", "\n": "\\n", "\r": "\\r", "|": "\\x7c"})
_ARGV_ESCAPES = str.maketrans({"\\": "\\\\", "\n": "\\n", "\r": "\\r"})
_UNESCAPE_RE = re.compile(r"\\(\\|n|r|x7c)")
_UNESCAPES = {"\\": "\\", "n": "\n", "r": "\r", "x7c": "|"}


class EventKind(str, Enum):
    """Every event kind the recorder can emit, with its field names."""

    OPEN_READ = "OPEN_READ"
    OPEN_WRITE = "OPEN_WRITE"
    OPEN_READWRITE = "OPEN_READWRITE"
    OPEN_ABSPATH = "OPEN_ABSPATH"
    READ = "READ"
    WRITE = "WRITE"
    MMAP_READ = "MMAP_READ"
    MMAP_WRITE = "MMAP_WRITE"
    MMAP_READWRITE = "MMAP_READWRITE"
    CLOSE = "CLOSE"
    PIPE = "PIPE"
    DUP = "DUP"
    DUP2 = "DUP2"
    FORK = "FORK"
    EXECVE = "EXECVE"
    EXECVE_RETURN = "EXECVE_RETURN"
    EXIT_GROUP = "EXIT_GROUP"
    RENAME = "RENAME"

    @property
    def field_names(self) -> tuple[str, ...]:
        return _FIELD_NAMES[self]


_FIELD_NAMES: dict[EventKind, tuple[str, ...]] = {
    EventKind.OPEN_READ: ("path", "fd"),
    EventKind.OPEN_WRITE: ("path", "fd"),
    EventKind.OPEN_READWRITE: ("path", "fd"),
    EventKind.OPEN_ABSPATH: ("path",),
    EventKind.READ: ("fd",),
    EventKind.WRITE: ("fd",),
    EventKind.MMAP_READ: ("fd",),
    EventKind.MMAP_WRITE: ("fd",),
    EventKind.MMAP_READWRITE: ("fd",),
    EventKind.CLOSE: ("fd",),
    EventKind.PIPE: ("fd0", "fd1"),
    EventKind.DUP: ("oldfd", "newfd"),
    EventKind.DUP2: ("oldfd", "newfd", "result"),
    EventKind.FORK: ("child_pid",),
    EventKind.EXECVE: ("cwd", "path", "argv"),
    EventKind.EXECVE_RETURN: ("result",),
    EventKind.EXIT_GROUP: ("status",),
    EventKind.RENAME: ("old_path", "new_path"),
}


@dataclass(frozen=True)
class ProcessHeader:
    """Snapshot of the acting process, taken at emission time."""

    timestamp_ms: int
    pid: int
    ppid: int
    uid: int
    process_name: str


@dataclass(frozen=True)
class ProvEvent:
    """A single provenance event.

    Attributes:
        kind:   What happened.
        fields: Kind-specific values, in the order of ``kind.field_names``.
    """

    kind: EventKind
    fields: tuple[Any, ...] = ()

    def __post_init__(self) -> None:
        expected = len(self.kind.field_names)
        if len(self.fields) != expected:
            raise ValueError(
                f"{self.kind.value} takes {expected} field(s), got {len(self.fields)}"
            )

    def as_dict(self) -> dict[str, Any]:
        return dict(zip(self.kind.field_names, self.fields))


@dataclass(frozen=True)
class ParsedRecord:
    """A record read back from the stream (all values as text)."""

    header: ProcessHeader
    kind: EventKind
    fields: dict[str, str]


def format_record(header: ProcessHeader, event: ProvEvent) -> str:
    """Render *header* + *event* as one newline-terminated record."""
    parts = [
        str(header.timestamp_ms),
        str(header.pid),
        str(header.ppid),
        str(header.uid),
        escape_field(header.process_name),
        event.kind.value,
    ]
    parts.extend(_render_field(value) for value in event.fields)
    return DELIMITER.join(parts) + "\n"


def escape_field(text: str) -> str:
    """Escape *text* so it holds no newline and no ``|``."""
    return text.translate(_FIELD_ESCAPES)


def unescape_field(text: str) -> str:
    """Inverse of :func:`escape_field` (and of the argv escaping)."""
    return _UNESCAPE_RE.sub(lambda m: _UNESCAPES[m.group(1)], text)


def _render_field(value: Any) -> str:
    # argv is the only sequence-valued field; it is space-joined and always last
    if isinstance(value, (list, tuple)):
        return " ".join(str(item) for item in value).translate(_ARGV_ESCAPES)
    return escape_field(str(value))


def parse_record(line: str) -> ParsedRecord:
    """Decode one record line produced by :func:`format_record`.

    The split is bounded by the number of fields the kind declares, so the
    last field (``argv`` for ``EXECVE``) keeps any delimiter it contains.

    Raises:
        ValueError: if the line is not a well-formed record.
    """
    line = line.rstrip("\n")
    head = line.split(DELIMITER, len(HEADER_FIELDS) + 1)
    if len(head) < len(HEADER_FIELDS) + 1:
        raise ValueError(f"Truncated record: {line!r}")

    try:
        kind = EventKind(head[len(HEADER_FIELDS)])
    except ValueError:
        raise ValueError(f"Unknown event kind in record: {line!r}") from None

    names = kind.field_names
    rest = head[len(HEADER_FIELDS) + 1] if len(head) > len(HEADER_FIELDS) + 1 else ""
    values = rest.split(DELIMITER, len(names) - 1)
    if len(values) != len(names):
        raise ValueError(f"{kind.value} record has wrong field count: {line!r}")

    header = ProcessHeader(
        timestamp_ms=int(head[0]),
        pid=int(head[1]),
        ppid=int(head[2]),
        uid=int(head[3]),
        process_name=unescape_field(head[4]),
    )
    fields = {name: unescape_field(value) for name, value in zip(names, values)}
    return ParsedRecord(header=header, kind=kind, fields=fields)
