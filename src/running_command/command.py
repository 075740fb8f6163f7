"""Synchronous command execution.

## Basic Usage

```python
result = run_command("echo", ["Hello World"])
print(result.exit_code)  # 0
print(result.stdout)  # b"Hello World\\n"

# Feed stdin while stdout/stderr are drained, without deadlock
result = run_command("cat", input=b"x" * 1_000_000)
assert result.stdout == b"x" * 1_000_000

# Environment overrides are appended to the inherited environment
result = run_command("sh", ["-c", "echo $FOO"], env={"FOO": "bar"})
```
"""

from __future__ import annotations

import logging
import signal
import subprocess
import threading
from collections.abc import Sequence
from dataclasses import dataclass

import psutil

from running_command.multiplexer import DEFAULT_CHUNK_SIZE, multiplex
from running_command.process_utils import process_handle
from running_command.reaper import ExitStatus, decode_status, reap
from running_command.spawn import ChildProcess, EnvOverrides, spawn_process

logger = logging.getLogger(__name__)

ABORT_GRACE_PERIOD = 3.0


@dataclass
class CommandResult:
    """Outcome of run_command.

    ``status`` is the raw wait status. ``stdout``/``stderr`` are None when that
    stream was not captured.
    """

    args: list[str]
    status: int
    stdout: bytes | None = None
    stderr: bytes | None = None

    @property
    def decoded(self) -> ExitStatus:
        return decode_status(self.status)

    @property
    def exited(self) -> bool:
        return self.decoded.exit_code is not None

    @property
    def signaled(self) -> bool:
        return self.decoded.term_signal is not None

    @property
    def exit_code(self) -> int | None:
        return self.decoded.exit_code

    @property
    def term_signal(self) -> int | None:
        return self.decoded.term_signal

    @property
    def returncode(self) -> int:
        return self.decoded.returncode

    def check_returncode(self) -> None:
        """Raise CalledProcessError if the command did not exit with 0."""
        if self.returncode != 0:
            raise subprocess.CalledProcessError(
                returncode=self.returncode,
                cmd=self.args,
                output=self.stdout,
                stderr=self.stderr,
            )


def _abort(child: ChildProcess) -> None:
    """Terminate and reap a child whose caller is unwinding.

    The child gets SIGTERM, then SIGKILL if it is still running after
    ABORT_GRACE_PERIOD seconds.
    """
    logger.warning("Run of %s did not complete, terminating pid %d", child.argv, child.pid)
    child.send_signal(signal.SIGTERM)
    child.close_pipes()
    handle = process_handle(child.pid)
    if handle is None:
        return
    try:
        handle.wait(timeout=ABORT_GRACE_PERIOD)
    except psutil.TimeoutExpired:
        logger.warning("Pid %d survived SIGTERM, killing it", child.pid)
        child.send_signal(signal.SIGKILL)
        handle.wait()


def run_command(
    executable: str,
    args: Sequence[str] = (),
    env: EnvOverrides | None = None,
    input: bytes | None = None,  # noqa: A002
    *,
    capture_stdout: bool = True,
    capture_stderr: bool = True,
    cancel: threading.Event | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> CommandResult:
    """
    Run a command to completion, feeding it input and capturing its output.

    Args:
        executable: Program to run; looked up on PATH unless it starts with ``/``.
        args: Arguments passed verbatim, no shell.
        env: Overrides appended to the inherited environment.
        input: Bytes written to the child's stdin. None leaves stdin inherited;
            ``b""`` gives the child an immediately closed stdin.
        capture_stdout: Pipe and capture stdout instead of inheriting it.
        capture_stderr: Pipe and capture stderr instead of inheriting it.
        cancel: If already set, no process is started.
        chunk_size: Size of each read from an output pipe.

    Returns:
        CommandResult with the raw wait status and the captured output.

    Raises:
        SpawnError: If the process could not be created.
        CommandCancelledError: If ``cancel`` was set before the spawn.
    """
    if chunk_size <= 0:
        error_message = f"chunk_size must be positive, got {chunk_size}"
        raise ValueError(error_message)

    child = spawn_process(
        executable,
        args,
        env,
        stdin=input is not None,
        stdout=capture_stdout,
        stderr=capture_stderr,
        cancel=cancel,
    )
    try:
        try:
            captured = multiplex(child, input=input, chunk_size=chunk_size)
            status = reap(child.pid)
        except BaseException:
            _abort(child)
            raise
    finally:
        child.close_pipes()

    return CommandResult(args=child.argv, status=status, stdout=captured.stdout, stderr=captured.stderr)
