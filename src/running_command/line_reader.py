"""Line reader module.

This module contains the CommandLineReader class, a lazy iterator over the
lines a command writes to stdout. The child is started eagerly; every pull
performs one blocking line read. When the output is exhausted, a read fails,
or the reader is closed or abandoned, the pipe is closed and the child is sent
SIGTERM.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
import warnings
import weakref
from collections.abc import Iterator, Sequence
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import IO, Any

import psutil

from running_command.process_utils import process_handle, reap_nowait, terminate_process
from running_command.spawn import ChildProcess, EnvOverrides, spawn_process

logger = logging.getLogger(__name__)


class EndOfStream:
    """Sentinel used to indicate end-of-stream from the reader."""


class LineEncodingError(ValueError):
    """Raised when a line of command output is not valid UTF-8."""


@dataclass
class _ReaderState:
    """Everything cleanup needs, kept apart from the reader so the finalizer can hold it."""

    pid: int
    handle: psutil.Process | None
    source: IO[bytes] | None
    returncode: int | None = None


def _release(state: _ReaderState) -> None:
    """Close the output source and signal the child. Runs at most once per reader."""
    source, state.source = state.source, None
    if source is not None:
        try:
            source.close()
        except (ValueError, OSError) as err:
            reader_error_msg = f"Line reader encountered error closing output of pid {state.pid}: {err}"
            warnings.warn(reader_error_msg, stacklevel=2)

    if terminate_process(state.handle):
        logger.debug("Sent SIGTERM to pid %d", state.pid)
    if state.returncode is None:
        state.returncode = reap_nowait(state.handle)


class CommandLineReader(AbstractContextManager["CommandLineReader"], Iterator[str]):
    """Lazy, forward-only iterator over the stdout lines of a running child.

    Yields decoded lines with trailing CR/LF removed. Once closed, every pull
    returns EndOfStream. Prefer ``close()`` or a ``with`` block; garbage
    collection of an abandoned reader performs the same cleanup eventually.
    """

    def __init__(self, child: ChildProcess) -> None:
        if child.stdout is None:
            error_message = "CommandLineReader needs a child spawned with a stdout pipe"
            raise ValueError(error_message)
        self._state = _ReaderState(
            pid=child.pid,
            handle=process_handle(child.pid),
            source=os.fdopen(child.stdout.detach(), "rb"),
        )
        self._finalizer = weakref.finalize(self, _release, self._state)

    def __repr__(self) -> str:
        state = "closed" if self.closed else "active"
        return f"CommandLineReader(pid={self.pid}, {state})"

    @property
    def pid(self) -> int:
        return self._state.pid

    @property
    def closed(self) -> bool:
        return self._state.source is None

    def next_line(self) -> str | EndOfStream:
        """
        Read the next line of output.

        Returns:
            str: The next line without its trailing CR/LF characters.
            EndOfStream: The output is exhausted or the reader was closed.

        Raises:
            LineEncodingError: If the line is not valid UTF-8. The reader is
                closed before this is raised.
        """
        source = self._state.source
        if source is None:
            return EndOfStream()

        try:
            raw = source.readline()
        except (ValueError, OSError) as e:
            logger.debug("Reading output of pid %d failed: %s", self.pid, e)
            raw = b""

        if not raw:
            self.close()
            return EndOfStream()

        line = raw.rstrip(b"\r\n")
        try:
            return line.decode("utf-8")
        except UnicodeDecodeError as e:
            self.close()
            error_message = f"Output of pid {self.pid} is not valid UTF-8: {line!r}"
            raise LineEncodingError(error_message) from e

    def close(self) -> None:
        """Close the output pipe and send SIGTERM to the child. Safe to call repeatedly."""
        self._finalizer()

    def poll(self) -> int | None:
        """Return the child's return code if it has been collected, without blocking."""
        if self._state.returncode is None:
            self._state.returncode = reap_nowait(self._state.handle)
        return self._state.returncode

    def wait(self, timeout: float | None = None) -> int | None:
        """Block until the child exits and return its return code.

        Raises:
            TimeoutError: If the child is still running after ``timeout`` seconds.
        """
        if self._state.returncode is not None or self._state.handle is None:
            return self._state.returncode
        try:
            self._state.returncode = self._state.handle.wait(timeout=timeout)
        except psutil.TimeoutExpired as e:
            timeout_msg = f"Timeout after {timeout} seconds waiting for pid {self.pid}"
            raise TimeoutError(timeout_msg) from e
        except psutil.NoSuchProcess:
            return None
        return self._state.returncode

    # Context manager protocol
    def __enter__(self) -> CommandLineReader:
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: Any | None) -> bool:
        self.close()
        # Do not suppress exceptions
        return False

    # Iterator protocol
    def __iter__(self) -> Iterator[str]:
        return self

    def __next__(self) -> str:
        next_item = self.next_line()
        if isinstance(next_item, EndOfStream):
            raise StopIteration
        return next_item


def command_by_line(
    executable: str,
    args: Sequence[str] = (),
    env: EnvOverrides | None = None,
    *,
    cancel: threading.Event | None = None,
) -> CommandLineReader:
    """Start a command with only stdout piped and return a lazy reader over its lines.

    stdin and stderr are inherited. The child is not waited for until the
    reader reaches the end or is closed.

    Raises:
        SpawnError: If the process could not be created.
        CommandCancelledError: If ``cancel`` was set before the spawn.
    """
    child = spawn_process(executable, args, env, stdout=True, cancel=cancel)
    try:
        return CommandLineReader(child)
    except BaseException:
        child.close_pipes()
        child.send_signal(signal.SIGTERM)
        raise
