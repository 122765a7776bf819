"""Tests for endpoint resolution."""

import io
import queue
import subprocess

import pytest
from shell_bake import Opts, UnsupportedStreamBinding, chunks, lines, sh
from shell_bake import streams


def drain(q):
    items = []
    while True:
        item = q.get(timeout=5)
        if item is None:
            return items
        items.append(item)


class TestResolveInput:
    """Test how stdin values map onto Popen arguments."""

    def test_none_inherits(self):
        endpoint = streams.resolve_input(None)
        assert endpoint.target is None
        assert endpoint.pump is None

    def test_literals_use_pipe(self):
        for value in ("text", b"bytes", bytearray(b"buf")):
            endpoint = streams.resolve_input(value)
            assert endpoint.target is subprocess.PIPE
            assert endpoint.is_input

    def test_real_file_passed_directly(self, tmp_path):
        path = tmp_path / "in.txt"
        path.write_text("x")
        with open(path, "rb") as f:
            endpoint = streams.resolve_input(f)
            assert endpoint.target is f
            assert endpoint.pump is None

    def test_mapping_unsupported(self):
        with pytest.raises(UnsupportedStreamBinding) as exc_info:
            streams.resolve_input({"a": 1})
        assert exc_info.value.stream == "stdin"

    def test_sequence_of_non_bytes_unsupported(self):
        with pytest.raises(UnsupportedStreamBinding) as exc_info:
            streams.resolve_input([3])
        assert exc_info.value.value == 3

    def test_object_unsupported(self):
        with pytest.raises(UnsupportedStreamBinding):
            streams.resolve_input(object())


class TestResolveOutput:
    """Test how stdout/stderr values map onto Popen arguments."""

    def test_none_inherits(self):
        assert streams.resolve_output(None).target is None

    def test_bytearray_uses_pipe(self):
        endpoint = streams.resolve_output(bytearray())
        assert endpoint.target is subprocess.PIPE
        assert not endpoint.is_input

    def test_real_file_passed_directly(self, tmp_path):
        with open(tmp_path / "out.txt", "wb") as f:
            assert streams.resolve_output(f).target is f

    def test_string_unsupported(self):
        with pytest.raises(UnsupportedStreamBinding) as exc_info:
            streams.resolve_output("nope", "stderr")
        assert exc_info.value.stream == "stderr"
        assert exc_info.value.value == "nope"


class TestInputBindings:
    """Test the input kinds end to end."""

    def test_bytes(self):
        assert sh("cat", Opts(stdin=b"raw bytes")).output() == "raw bytes"

    def test_multiline_string(self):
        text = "line1\nline2\nline3"
        assert sh("cat", Opts(stdin=text)).output() == text

    def test_string_io(self):
        assert sh("cat", Opts(stdin=io.StringIO("from StringIO"))).output() == "from StringIO"

    def test_real_file(self, tmp_path):
        path = tmp_path / "in.txt"
        path.write_text("from file")
        with open(path, "rb") as f:
            assert sh("cat", Opts(stdin=f)).output() == "from file"

    def test_queue(self):
        q = queue.Queue()
        q.put("a\n")
        q.put(b"b\n")
        q.put(None)
        assert sh("cat", Opts(stdin=q)).output() == "a\nb\n"

    def test_generator(self):
        def produce():
            for i in range(3):
                yield f"{i}\n"

        assert sh("cat", Opts(stdin=produce())).output() == "0\n1\n2\n"

    def test_list_of_chunks(self):
        assert sh("cat", Opts(stdin=["a", b"b"])).output() == "ab"

    def test_list_of_ints_rejected_at_start(self):
        with pytest.raises(UnsupportedStreamBinding):
            sh("od", "-c", Opts(stdin=[3])).start()

    def test_process_ignoring_input(self):
        # The process exits without reading; the broken pipe must not surface
        sh("true", Opts(stdin="x" * 200000)).run()


class TestOutputBindings:
    """Test the output kinds end to end."""

    def test_bytearray(self):
        buf = bytearray()
        sh("printf", "hello", Opts(stdout=buf)).run()
        assert buf == b"hello"

    def test_bytes_io(self):
        buf = io.BytesIO()
        sh("printf", "hello", Opts(stdout=buf)).run()
        assert buf.getvalue() == b"hello"

    def test_string_io(self):
        buf = io.StringIO()
        sh("printf", "caf\\303\\251", Opts(stdout=buf)).run()
        assert buf.getvalue() == "café"

    def test_real_file(self, tmp_path):
        path = tmp_path / "out.txt"
        with open(path, "wb") as f:
            sh("printf", "to file", Opts(stdout=f)).run()
        assert path.read_text() == "to file"

    def test_stderr_binding(self):
        err = io.BytesIO()
        sh("sh", "-c", "printf oops >&2", Opts(stderr=err)).run()
        assert err.getvalue() == b"oops"

    def test_queue_chunks(self):
        q = queue.Queue()
        sh("printf", "hello", Opts(stdout=q)).run()
        assert b"".join(drain(q)) == b"hello"

    def test_chunks_wrapper(self):
        q = queue.Queue()
        sh("printf", "hello", Opts(stdout=chunks(q))).run()
        assert b"".join(drain(q)) == b"hello"

    def test_lines(self):
        q = queue.Queue()
        sh("printf", "x\\ny\\nz", Opts(stdout=lines(q))).run()
        assert drain(q) == ["x", "y", "z"]

    def test_lines_trailing_newline(self):
        q = queue.Queue()
        sh("printf", "x\\ny\\n", Opts(stdout=lines(q))).run()
        assert drain(q) == ["x", "y"]

    def test_same_object_merges_streams(self):
        buf = io.BytesIO()
        c = sh("sh", "-c", "printf a; printf b >&2; printf c", Opts(stdout=buf, stderr=buf))
        c.run()
        assert buf.getvalue() == b"abc"

    def test_unsupported_output(self):
        with pytest.raises(UnsupportedStreamBinding):
            sh("printf", "x", Opts(stdout=42)).run()
