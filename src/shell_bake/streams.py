"""
Endpoint resolution for process stdin, stdout and stderr.

Each endpoint value is turned into an ``Endpoint``: the object handed to
``subprocess.Popen`` for that stream, plus an optional pump that runs in a
thread once the process exists, shuttling bytes between the pipe and the
caller's value.

Input values:
    None                      inherit the parent's stdin
    str / bytes / bytearray   fed in literally (str as UTF-8)
    real file (has fileno)    handed to the child directly
    readable (has .read)      streamed in, e.g. io.BytesIO, io.StringIO
    queue.Queue               items streamed in until a None sentinel
    iterable of str/bytes     chunks streamed in

Output values:
    None                      inherit the parent's stream
    bytearray                 accumulated in place
    real file (has fileno)    handed to the child directly
    writable (has .write)     streamed out, flushed after every chunk
    queue.Queue / chunks(q)   raw byte chunks put as they arrive, then None
    lines(q)                  decoded lines put per line break, then None
"""

from __future__ import annotations

import codecs
import io
import logging
import queue
import subprocess
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import IO, Any, Callable, Optional

from shell_bake.errors import UnsupportedStreamBinding

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192
ENCODING = "utf-8"

_QUEUE_TYPES = (queue.Queue, queue.SimpleQueue)


class ChunkChannel:
    """Send raw byte chunks to ``sink.put`` as the process writes them."""

    def __init__(self, sink: Any):
        self.sink = sink

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.sink!r})"


class LineChannel(ChunkChannel):
    """Send decoded lines (without the newline) to ``sink.put``."""

    def __init__(self, sink: Any, encoding: str = ENCODING):
        super().__init__(sink)
        self.encoding = encoding


chunks = ChunkChannel
lines = LineChannel


class Pump(threading.Thread):
    """Daemon thread that remembers the exception its target raised."""

    def __init__(self, name: str, target: Callable[[], None], is_input: bool):
        super().__init__(name=name, daemon=True)
        self._pump_target = target
        self.is_input = is_input
        self.error: Optional[BaseException] = None

    def run(self) -> None:
        try:
            self._pump_target()
        except BaseException as exc:
            logger.debug("pump %s failed: %r", self.name, exc)
            self.error = exc

    def check(self) -> None:
        """Re-raise the pump's exception in the calling thread, if any."""
        if self.error is not None:
            raise self.error


@dataclass
class Endpoint:
    """What to pass to Popen for one stream, and how to service the pipe."""

    target: Any = None
    pump: Optional[Callable[[IO[bytes]], None]] = None

    @property
    def is_input(self) -> bool:
        return getattr(self.pump, "is_input", False)

    def start(self, name: str, pipe: Optional[IO[bytes]]) -> Optional[Pump]:
        if self.pump is None:
            return None
        pump_fn = self.pump
        thread = Pump(name, lambda: pump_fn(pipe), is_input=self.is_input)
        thread.start()
        return thread


def _has_fileno(value: Any) -> bool:
    # io.UnsupportedOperation subclasses both OSError and ValueError
    try:
        value.fileno()
    except (AttributeError, OSError, ValueError):
        return False
    return True


def _encode(data: Any) -> bytes:
    if isinstance(data, str):
        return data.encode(ENCODING)
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    raise UnsupportedStreamBinding("stdin", data)


def _input_pump(source: Callable[[], Iterable[Any]]) -> Callable[[IO[bytes]], None]:
    def pump(pipe: IO[bytes]) -> None:
        try:
            for item in source():
                pipe.write(_encode(item))
                pipe.flush()
        except BrokenPipeError:
            pass  # Process stopped reading
        finally:
            try:
                pipe.close()
            except BrokenPipeError:
                pass

    pump.is_input = True  # type: ignore[attr-defined]
    return pump


def _read_chunks(reader: Any) -> Iterable[Any]:
    while True:
        chunk = reader.read(CHUNK_SIZE)
        if not chunk:
            break
        yield chunk


def _drain_queue(channel: Any) -> Iterable[Any]:
    while True:
        item = channel.get()
        if item is None:
            break
        yield item


def resolve_input(value: Any) -> Endpoint:
    """Resolve a stdin binding. Piped commands are handled by the caller."""
    if value is None:
        return Endpoint()
    if isinstance(value, (str, bytes, bytearray, memoryview)):
        # Snapshot at start time; later mutations of a bytearray are not seen
        data = _encode(value)
        return Endpoint(subprocess.PIPE, _input_pump(lambda: [data]))
    if _has_fileno(value):
        return Endpoint(value)
    if hasattr(value, "read"):
        return Endpoint(subprocess.PIPE, _input_pump(lambda: _read_chunks(value)))
    if isinstance(value, _QUEUE_TYPES):
        return Endpoint(subprocess.PIPE, _input_pump(lambda: _drain_queue(value)))
    if isinstance(value, (list, tuple)):
        # Sequences are checked up front; lazy sources fail in the pump
        data = [_encode(item) for item in value]
        return Endpoint(subprocess.PIPE, _input_pump(lambda: data))
    if isinstance(value, Iterable) and not isinstance(value, Mapping):
        return Endpoint(subprocess.PIPE, _input_pump(lambda: iter(value)))
    raise UnsupportedStreamBinding("stdin", value)


def _pipe_chunks(pipe: IO[bytes]) -> Iterable[bytes]:
    read = getattr(pipe, "read1", pipe.read)
    while True:
        chunk = read(CHUNK_SIZE)
        if not chunk:
            break
        yield chunk


def _output_pump(
    write: Callable[[bytes], None], finish: Optional[Callable[[], None]] = None
) -> Callable[[IO[bytes]], None]:
    def pump(pipe: IO[bytes]) -> None:
        try:
            for chunk in _pipe_chunks(pipe):
                write(chunk)
        finally:
            pipe.close()
            if finish is not None:
                finish()

    return pump


def _chunk_pump(channel: Any) -> Callable[[IO[bytes]], None]:
    return _output_pump(channel.put, lambda: channel.put(None))


def _line_pump(channel: LineChannel) -> Callable[[IO[bytes]], None]:
    pending = bytearray()

    def write(chunk: bytes) -> None:
        pending.extend(chunk)
        while True:
            idx = pending.find(b"\n")
            if idx < 0:
                break
            line = bytes(pending[:idx])
            del pending[: idx + 1]
            channel.sink.put(line.decode(channel.encoding, errors="replace"))

    def finish() -> None:
        if pending:
            channel.sink.put(pending.decode(channel.encoding, errors="replace"))
            pending.clear()
        channel.sink.put(None)

    return _output_pump(write, finish)


def _writer_pump(sink: Any) -> Callable[[IO[bytes]], None]:
    flush = getattr(sink, "flush", None)
    if isinstance(sink, io.TextIOBase):
        decoder = codecs.getincrementaldecoder(ENCODING)(errors="replace")

        def write(chunk: bytes) -> None:
            sink.write(decoder.decode(chunk))
            if flush is not None:
                flush()

        def finish() -> None:
            tail = decoder.decode(b"", final=True)
            if tail:
                sink.write(tail)
                if flush is not None:
                    flush()

        return _output_pump(write, finish)

    def write_bytes(chunk: bytes) -> None:
        sink.write(chunk)
        if flush is not None:
            flush()

    return _output_pump(write_bytes)


def resolve_output(value: Any, stream: str = "stdout") -> Endpoint:
    """Resolve a stdout or stderr binding."""
    if value is None:
        return Endpoint()
    if isinstance(value, bytearray):
        return Endpoint(subprocess.PIPE, _output_pump(value.extend))
    if isinstance(value, LineChannel):
        return Endpoint(subprocess.PIPE, _line_pump(value))
    if isinstance(value, ChunkChannel):
        return Endpoint(subprocess.PIPE, _chunk_pump(value.sink))
    if isinstance(value, _QUEUE_TYPES):
        return Endpoint(subprocess.PIPE, _chunk_pump(value))
    if _has_fileno(value):
        # Anything already sitting in Python's buffer must land before the child writes
        if hasattr(value, "flush"):
            value.flush()
        return Endpoint(value)
    if hasattr(value, "write"):
        return Endpoint(subprocess.PIPE, _writer_pump(value))
    raise UnsupportedStreamBinding(stream, value)
