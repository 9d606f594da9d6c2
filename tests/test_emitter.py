"""Tests for event emission and sinks."""

from __future__ import annotations

import io
import threading

import pytest

from provtrace.emitter import EventEmitter, FileSink, SinkError, StreamSink
from provtrace.events import EventKind, parse_record
from provtrace.process_monitor import ProcessInfo


class TestEventEmitter:
    def test_emits_one_record(self, emitter, sink):
        record = emitter.emit(42, EventKind.CLOSE, 3)
        assert sink.lines == [record]
        assert record == "1700000000000||42||1||1000||proc42||CLOSE||3\n"

    def test_header_is_looked_up_on_every_call(self, sink):
        names = iter(["python3", "cc1"])
        calls = []

        def info(pid):
            calls.append(pid)
            return ProcessInfo(pid=pid, ppid=1, uid=0, name=next(names))

        emitter = EventEmitter(sink, process_info=info, clock=lambda: 5)
        emitter.emit(7, EventKind.EXECVE_RETURN, 0)
        emitter.emit(7, EventKind.READ, 3)

        assert calls == [7, 7]
        assert [r.header.process_name for r in sink.records] == ["python3", "cc1"]

    def test_sink_failure_propagates(self, emitter, sink):
        sink.fail = True
        with pytest.raises(SinkError):
            emitter.emit(1, EventKind.READ, 3)


class TestFileSink:
    def test_appends_lines(self, tmp_path):
        path = tmp_path / "trace.log"
        path.write_text("existing\n")
        sink = FileSink(path)
        sink.write("a\n")
        sink.write("b\n")
        sink.close()
        assert path.read_text() == "existing\na\nb\n"

    def test_unopenable_target_is_sink_error(self, tmp_path):
        with pytest.raises(SinkError):
            FileSink(tmp_path / "missing-dir" / "trace.log")

    def test_write_after_close(self, tmp_path):
        sink = FileSink(tmp_path / "trace.log")
        sink.close()
        with pytest.raises(SinkError):
            sink.write("x\n")

    def test_concurrent_writers_never_interleave(self, tmp_path):
        path = tmp_path / "trace.log"
        sink = FileSink(path)
        emitter = EventEmitter(
            sink,
            process_info=lambda pid: ProcessInfo(pid=pid, name="w"),
            clock=lambda: 1,
        )
        long_path = "/data/" + "x" * 2000

        def worker(pid):
            for fd in range(200):
                emitter.emit(pid, EventKind.OPEN_READ, long_path, fd)

        threads = [threading.Thread(target=worker, args=(pid,)) for pid in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        sink.close()

        lines = path.read_text().splitlines(keepends=True)
        assert len(lines) == 8 * 200
        for line in lines:
            parsed = parse_record(line)
            assert parsed.fields["path"] == long_path


class TestStreamSink:
    def test_writes_and_flushes(self):
        stream = io.StringIO()
        sink = StreamSink(stream)
        sink.write("r\n")
        assert stream.getvalue() == "r\n"

    def test_closed_stream_is_sink_error(self):
        stream = io.StringIO()
        stream.close()
        with pytest.raises(SinkError):
            StreamSink(stream).write("r\n")
