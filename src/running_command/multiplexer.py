"""Stream multiplexer module.

This module contains the StreamMultiplexer class that feeds a child's stdin
while draining its stdout and stderr from a single blocking readiness wait, so
a full pipe in one direction can never stall the other.
"""

from __future__ import annotations

import enum
import logging
import os
import select
import selectors
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from running_command.pipes import PipeEndpoint, StreamRole

if TYPE_CHECKING:
    from running_command.spawn import ChildProcess

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 256

# Writes no larger than this are atomic and fit whenever the pipe reports writable.
_WRITE_CHUNK = getattr(select, "PIPE_BUF", 512)


class StreamState(enum.Enum):
    """Whether a stream still takes part in the readiness loop."""

    PENDING = "pending"
    CLOSED = "closed"


@dataclass
class ActiveStream:
    """A pipe endpoint being watched, tagged with the stream it serves."""

    endpoint: PipeEndpoint
    state: StreamState = StreamState.PENDING
    buffer: bytearray = field(default_factory=bytearray)

    @property
    def role(self) -> StreamRole:
        return self.endpoint.role


@dataclass
class Captured:
    """Output collected from a child. A stream that was not captured is None."""

    stdout: bytes | None = None
    stderr: bytes | None = None


class StreamMultiplexer:
    """Moves bytes between the parent and a child's pipes without deadlock.

    Only the streams the child was spawned with are watched. I/O errors on a
    pipe retire that pipe and are otherwise absorbed: whatever was captured
    before the error is still returned.
    """

    def __init__(self, child: ChildProcess, input: bytes | None = None, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:  # noqa: A002
        if input is not None and child.stdin is None:
            error_message = "Input was given but the child has no stdin pipe"
            raise ValueError(error_message)
        if chunk_size <= 0:
            error_message = f"chunk_size must be positive, got {chunk_size}"
            raise ValueError(error_message)
        self._child = child
        self._input = memoryview(input if input is not None else b"")
        self._offset = 0
        self._chunk_size = chunk_size
        self._streams: dict[StreamRole, ActiveStream] = {}

    @property
    def _remaining(self) -> int:
        return len(self._input) - self._offset

    def _collect_streams(self) -> list[ActiveStream]:
        streams = []
        for endpoint in (self._child.stdin, self._child.stdout, self._child.stderr):
            if endpoint is None or endpoint.closed:
                continue
            stream = ActiveStream(endpoint)
            self._streams[endpoint.role] = stream
            streams.append(stream)
        return streams

    def _retire(self, selector: selectors.BaseSelector, stream: ActiveStream) -> None:
        """Stop watching a stream and release its descriptor."""
        if stream.state is StreamState.CLOSED:
            return
        selector.unregister(stream.endpoint.fileno())
        stream.endpoint.close()
        stream.state = StreamState.CLOSED

    def _write_input(self, selector: selectors.BaseSelector, stream: ActiveStream) -> bool:
        """Write the next piece of pending input. Returns True on progress."""
        chunk = self._input[self._offset : self._offset + _WRITE_CHUNK]
        try:
            written = os.write(stream.endpoint.fileno(), chunk)
        except BlockingIOError:
            return False
        except OSError as e:
            logger.debug("Write to stdin of pid %d failed: %s", self._child.pid, e)
            self._retire(selector, stream)
            return True

        self._offset += written
        if self._remaining <= 0:
            self._retire(selector, stream)
        return True

    def _read_output(self, selector: selectors.BaseSelector, stream: ActiveStream) -> bool:
        """Read one bounded chunk into the stream's buffer. Returns True on progress."""
        try:
            data = os.read(stream.endpoint.fileno(), self._chunk_size)
        except OSError as e:
            logger.debug("Read from %s of pid %d failed: %s", stream.role.name, self._child.pid, e)
            data = b""
        if not data:
            self._retire(selector, stream)
        else:
            stream.buffer += data
        return True

    def _captured(self) -> Captured:
        def _bytes(role: StreamRole) -> bytes | None:
            stream = self._streams.get(role)
            return bytes(stream.buffer) if stream is not None else None

        return Captured(stdout=_bytes(StreamRole.OUTPUT), stderr=_bytes(StreamRole.ERROR))

    def run(self) -> Captured:
        """Loop until every watched pipe is closed or a wakeup makes no progress."""
        streams = self._collect_streams()
        if not streams:
            return Captured()

        with selectors.DefaultSelector() as selector:
            for stream in streams:
                if stream.role is StreamRole.INPUT:
                    if self._remaining <= 0:
                        # Nothing to send: the child sees EOF right away.
                        stream.endpoint.close()
                        stream.state = StreamState.CLOSED
                        continue
                    os.set_blocking(stream.endpoint.fileno(), False)
                    selector.register(stream.endpoint.fileno(), selectors.EVENT_WRITE, stream)
                else:
                    selector.register(stream.endpoint.fileno(), selectors.EVENT_READ, stream)

            while selector.get_map():
                progressed = False
                for key, _ in selector.select():
                    stream = key.data
                    if stream.state is StreamState.CLOSED:
                        continue
                    if stream.role is StreamRole.INPUT:
                        progressed = self._write_input(selector, stream) or progressed
                    else:
                        progressed = self._read_output(selector, stream) or progressed
                if not progressed:
                    logger.debug("No progress on pipes of pid %d, leaving the multiplex loop", self._child.pid)
                    break

        return self._captured()


def multiplex(child: ChildProcess, input: bytes | None = None, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Captured:  # noqa: A002
    """Feed ``input`` to ``child`` and capture its piped output."""
    return StreamMultiplexer(child, input=input, chunk_size=chunk_size).run()
