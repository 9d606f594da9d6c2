"""
strace_parser.py — Decode ``strace -f -y`` output for provtrace.

Turns raw output lines into :class:`Syscall` and :class:`ProcessExit`
records.  The stream is expected to be read as latin-1 text so that every
byte strace prints maps to exactly one character; quoted strings and
``<path>`` annotations are unescaped back to real (UTF-8) paths here.

Handled line shapes::

    1234  openat(AT_FDCWD, "a.txt", O_RDONLY) = 3</tmp/a.txt>
    [pid  1234] read(3</tmp/a.txt>, "abc", 4096) = 3
    1234  read(3</tmp/a.txt>,  <unfinished ...>
    1234  <... read resumed>"abc", 4096) = 3
    1234  exit_group(0)                     = ?
    1234  +++ exited with 0 +++
    1234  +++ killed by SIGKILL +++
"""

from __future__ import annotations

import logging
import mmap
import os
import re
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Union

logger = logging.getLogger(__name__)

_LINE_RE = re.compile(r"^(?:\[pid\s+(?P<bpid>\d+)\]|(?P<pid>\d+))\s+(?P<body>.*)$")
_CALL_RE = re.compile(r"^(?P<name>\w+)\((?P<rest>.*)$", re.DOTALL)
_RESUMED_RE = re.compile(r"^<\.\.\. (?P<name>\w+) resumed>\s?(?P<rest>.*)$", re.DOTALL)
_UNFINISHED_RE = re.compile(r"\s*<unfinished \.\.\.>\s*$")
_EXITED_RE = re.compile(r"^\+\+\+ exited with (?P<status>-?\d+) \+\+\+$")
_KILLED_RE = re.compile(r"^\+\+\+ killed by (?P<signal>\w+)(?: \(core dumped\))? \+\+\+$")
_ERROR_RE = re.compile(r"^(?P<code>-?\d+) (?P<errno>E[A-Z0-9]+)\b")

# Symbolic flag tables used to turn strace's decoded flags back into ints.
OPEN_FLAGS = {name: getattr(os, name) for name in dir(os) if name.startswith("O_")}
PROT_FLAGS = {
    "PROT_NONE": 0,
    "PROT_READ": mmap.PROT_READ,
    "PROT_WRITE": mmap.PROT_WRITE,
    "PROT_EXEC": mmap.PROT_EXEC,
}


@dataclass
class Syscall:
    """One completed system call as reported by strace.

    Attributes:
        tid:    Thread id strace attributed the call to.
        name:   Syscall name (``openat``, ``read`` …).
        args:   Raw argument tokens, still in strace notation.
        result: Raw result token (``3</tmp/a>``, ``0x7f…``, ``?``).
        errno:  Error name when the call failed (``ENOENT``), else ``None``.
    """

    tid: int
    name: str
    args: list[str] = field(default_factory=list)
    result: str = "?"
    errno: str | None = None

    @property
    def failed(self) -> bool:
        return self.errno is not None

    @property
    def return_value(self) -> int | None:
        return parse_int(self.result)

    def arg(self, index: int) -> str | None:
        return self.args[index] if index < len(self.args) else None


@dataclass
class ProcessExit:
    """A ``+++ exited`` / ``+++ killed`` notice for one thread."""

    tid: int
    status: int | None = None
    signal: str | None = None


Record = Union[Syscall, ProcessExit]


# ---------------------------------------------------------------------------
# Token helpers
# ---------------------------------------------------------------------------

def unescape(text: str) -> str:
    """Undo strace's C-style escaping of latin-1 decoded output."""
    try:
        raw = text.encode("latin-1")
        if b"\\" in raw:
            raw = raw.decode("unicode_escape").encode("latin-1")
    except (UnicodeDecodeError, UnicodeEncodeError):
        logger.debug("Could not unescape %r", text)
        return text
    return raw.decode("utf-8", "surrogateescape")


def parse_string(token: str | None) -> str | None:
    """Decode a quoted strace string (``"a\\tb"...``) or return ``None``."""
    if token is None:
        return None
    token = token.strip()
    if token.endswith("..."):
        token = token[:-3]
    if len(token) < 2 or not (token.startswith('"') and token.endswith('"')):
        return None
    return unescape(token[1:-1])


def split_annotation(token: str) -> tuple[str, str | None]:
    """Split ``3</tmp/a.txt>`` into ``("3", "/tmp/a.txt")``."""
    token = token.strip()
    start = token.find("<")
    if start <= 0 or not token.endswith(">"):
        return token, None
    return token[:start], unescape(token[start + 1 : -1])


def annotation(token: str | None) -> str | None:
    """The ``-y`` path annotation of a descriptor token, if any."""
    if token is None:
        return None
    return split_annotation(token)[1]


def parse_int(token: str | None) -> int | None:
    """Parse a (possibly annotated) integer token; ``None`` if not numeric."""
    if token is None:
        return None
    value, _ = split_annotation(token)
    try:
        return int(value, 0)
    except ValueError:
        return None


def decode_flags(token: str | None, table: dict[str, int]) -> int:
    """Turn ``O_WRONLY|O_CREAT|0x80000`` into an int using *table*."""
    if not token:
        return 0
    flags = 0
    for part in token.strip().split("|"):
        part = part.strip()
        if part in table:
            flags |= table[part]
            continue
        try:
            flags |= int(part, 0)
        except ValueError:
            logger.debug("Ignoring unknown flag %r", part)
    return flags


def struct_field(token: str | None, name: str) -> str | None:
    """Pull ``name=value`` out of a ``{...}`` struct token."""
    if not token or not token.startswith("{") or not token.endswith("}"):
        return None
    for member in split_args(token[1:-1])[0]:
        key, sep, value = member.partition("=")
        if sep and key.strip() == name:
            return value.strip()
    return None


def parse_string_array(token: str | None) -> list[str]:
    """Decode ``["ls", "-l"]`` (possibly ending in ``...``) into a list."""
    if not token:
        return []
    token = token.strip()
    if not (token.startswith("[") and token.endswith("]")):
        return []
    items, _ = split_args(token[1:-1])
    decoded = []
    for item in items:
        value = parse_string(item)
        if value is not None:
            decoded.append(value)
    return decoded


def parse_fd_pair(token: str | None) -> tuple[int, int] | None:
    """Decode pipe's ``[3<pipe:[1]>, 4<pipe:[1]>]``."""
    if not token or not token.startswith("["):
        return None
    items, _ = split_args(token.strip()[1:-1])
    if len(items) != 2:
        return None
    fd0, fd1 = parse_int(items[0]), parse_int(items[1])
    if fd0 is None or fd1 is None:
        return None
    return fd0, fd1


def split_args(text: str) -> tuple[list[str], str]:
    """Split a comma-separated argument list at nesting depth zero.

    Scanning stops at an unbalanced ``)``; returns the argument tokens and
    whatever follows that parenthesis (the ``= result`` tail).
    """
    args: list[str] = []
    depth = 0
    current: list[str] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == '"':
            end = _skip_string(text, i)
            current.append(text[i:end])
            i = end
            continue
        if ch == "<":
            end = _annotation_end(text, i)
            current.append(text[i:end])
            i = end
            continue
        if ch == "/" and text.startswith("/*", i):
            end = text.find("*/", i)
            end = n if end == -1 else end + 2
            current.append(text[i:end])
            i = end
            continue
        if ch in "([{":
            depth += 1
        elif ch in ")]}":
            if depth == 0:
                if ch == ")":
                    _flush(args, current)
                    return args, text[i + 1 :]
            else:
                depth -= 1
        elif ch == "," and depth == 0:
            _flush(args, current)
            current = []
            i += 1
            continue
        current.append(ch)
        i += 1
    _flush(args, current)
    return args, ""


def _flush(args: list[str], current: list[str]) -> None:
    token = "".join(current).strip()
    if token:
        args.append(token)


def _annotation_end(text: str, start: int) -> int:
    # <TCP:[1.2.3.4:5->6.7.8.9:10]> contains '>', so only a '>' that closes
    # the token counts.
    end = text.find(">", start)
    while end != -1:
        nxt = text[end + 1 : end + 2]
        if nxt in ("", ",", ")", "]", "}", " "):
            return end + 1
        end = text.find(">", end + 1)
    return len(text)


def _skip_string(text: str, start: int) -> int:
    i = start + 1
    while i < len(text):
        if text[i] == "\\":
            i += 2
            continue
        if text[i] == '"':
            i += 1
            # strace marks truncated strings with a trailing "..."
            if text.startswith("...", i):
                i += 3
            return i
        i += 1
    return len(text)


def _parse_result(tail: str) -> tuple[str, str | None]:
    tail = tail.strip()
    if not tail.startswith("="):
        return "?", None
    tail = tail[1:].strip()
    match = _ERROR_RE.match(tail)
    if match:
        return match.group("code"), match.group("errno")
    token = tail.split(" ", 1)[0] if tail else "?"
    # an annotated result may contain spaces inside <...>
    if "<" in token and not token.endswith(">"):
        end = tail.find(">")
        token = tail[: end + 1] if end != -1 else tail
    return token, None


# ---------------------------------------------------------------------------
# Stream parser
# ---------------------------------------------------------------------------

class StraceParser:
    """Stateful line parser; joins unfinished/resumed halves per thread."""

    def __init__(self) -> None:
        self._pending: dict[int, tuple[str, str]] = {}

    def feed(self, line: str) -> Record | None:
        """Parse one line; ``None`` for lines that carry no record (yet)."""
        line = line.rstrip("\n")
        match = _LINE_RE.match(line)
        if not match:
            logger.debug("Unrecognised strace line: %r", line)
            return None
        tid = int(match.group("bpid") or match.group("pid"))
        body = match.group("body").strip()

        if body.startswith("+++"):
            return self._parse_exit(tid, body)
        if body.startswith("---"):
            return None

        resumed = _RESUMED_RE.match(body)
        if resumed:
            pending = self._pending.pop(tid, None)
            if pending is None or pending[0] != resumed.group("name"):
                logger.debug("Resumed call without a matching start: %r", line)
                return None
            name, head = pending
            return self._parse_call(tid, name, _join_halves(head, resumed.group("rest")))

        call = _CALL_RE.match(body)
        if not call:
            logger.debug("Unrecognised strace line: %r", line)
            return None
        name, rest = call.group("name"), call.group("rest")
        if _UNFINISHED_RE.search(rest):
            self._pending[tid] = (name, _UNFINISHED_RE.sub("", rest))
            return None
        return self._parse_call(tid, name, rest)

    def parse(self, lines: Iterable[str]) -> Iterator[Record]:
        for line in lines:
            record = self.feed(line)
            if record is not None:
                yield record

    def _parse_exit(self, tid: int, body: str) -> ProcessExit | None:
        self._pending.pop(tid, None)
        exited = _EXITED_RE.match(body)
        if exited:
            return ProcessExit(tid=tid, status=int(exited.group("status")))
        killed = _KILLED_RE.match(body)
        if killed:
            return ProcessExit(tid=tid, signal=killed.group("signal"))
        logger.debug("Unrecognised exit notice: %r", body)
        return None

    @staticmethod
    def _parse_call(tid: int, name: str, rest: str) -> Syscall:
        args, tail = split_args(rest)
        result, errno = _parse_result(tail)
        return Syscall(tid=tid, name=name, args=args, result=result, errno=errno)


def _join_halves(head: str, rest: str) -> str:
    head = head.rstrip()
    if head and not head.endswith(",") and not rest.startswith(")"):
        head += ","
    return f"{head} {rest}" if head else rest
