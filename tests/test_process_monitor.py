"""Tests for process metadata and path resolution."""

from __future__ import annotations

import os
from unittest import mock

import psutil
import pytest

from provtrace.process_monitor import (
    FileHandle,
    PathResolver,
    ProcessInfo,
    ResolutionError,
    get_process_info,
)


class TestGetProcessInfo:
    def test_current_process(self):
        info = get_process_info(os.getpid())
        assert info.pid == os.getpid()
        assert info.ppid == os.getppid()
        assert info.uid == os.getuid()
        assert info.name

    def test_vanished_process_gives_placeholder(self):
        with mock.patch(
            "provtrace.process_monitor.psutil.Process",
            side_effect=psutil.NoSuchProcess(123),
        ):
            assert get_process_info(123) == ProcessInfo(pid=123)

    def test_access_denied_gives_placeholder(self):
        with mock.patch(
            "provtrace.process_monitor.psutil.Process",
            side_effect=psutil.AccessDenied(1),
        ):
            info = get_process_info(1)
        assert info.pid == 1
        assert info.uid == -1


class TestPathResolver:
    def test_hint_wins(self):
        assert PathResolver().resolve(1, FileHandle(fd=3, hint="/tmp/x")) == "/tmp/x"

    def test_resolves_open_descriptor_through_procfs(self, tmp_path):
        target = tmp_path / "data.txt"
        target.write_text("x")
        fd = os.open(target, os.O_RDONLY)
        try:
            path = PathResolver().resolve(os.getpid(), FileHandle(fd=fd))
        finally:
            os.close(fd)
        assert path == os.path.realpath(target)

    def test_closed_descriptor_fails(self, tmp_path):
        with pytest.raises(ResolutionError):
            PathResolver(proc_root=str(tmp_path)).resolve(1, FileHandle(fd=3))

    def test_negative_descriptor_fails(self):
        with pytest.raises(ResolutionError):
            PathResolver().resolve(1, FileHandle(fd=-1))

    def test_cwd_of_current_process(self):
        assert PathResolver().cwd(os.getpid()) == os.getcwd()

    def test_cwd_of_missing_process_fails(self):
        with mock.patch(
            "provtrace.process_monitor.psutil.Process",
            side_effect=psutil.NoSuchProcess(99),
        ):
            with pytest.raises(ResolutionError):
                PathResolver().cwd(99)

    def test_resolve_at_cwd(self):
        resolver = PathResolver()
        with mock.patch.object(resolver, "cwd", return_value="/home/u"):
            assert resolver.resolve_at_cwd(1, "a/../b.txt") == "/home/u/b.txt"
            assert resolver.resolve_at_cwd(1, "/etc//hosts") == "/etc/hosts"
            with pytest.raises(ResolutionError):
                resolver.resolve_at_cwd(1, "")
