"""Reaper module: waits for a child to finish and decodes its wait status."""

from __future__ import annotations

import contextlib
import logging
import os
import signal
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExitStatus:
    """A decoded wait status: exactly one of the two fields is set."""

    exit_code: int | None = None
    term_signal: int | None = None

    @property
    def returncode(self) -> int:
        """subprocess-style return code, negative when killed by a signal."""
        if self.term_signal is not None:
            return -self.term_signal
        assert self.exit_code is not None
        return self.exit_code


def decode_status(status: int) -> ExitStatus:
    """Split a raw wait status into exit code or terminating signal."""
    if os.WIFEXITED(status):
        return ExitStatus(exit_code=os.WEXITSTATUS(status))
    if os.WIFSIGNALED(status):
        return ExitStatus(term_signal=os.WTERMSIG(status))
    error_message = f"Wait status {status:#x} is neither an exit nor a signal"
    raise ValueError(error_message)


def reap(pid: int) -> int:
    """Wait for ``pid`` to exit or be killed and return the raw wait status.

    Interrupted waits are retried by the interpreter. A child that is merely
    stopped is sent SIGCONT and waited for again.

    Raises:
        ChildProcessError: If the child was reaped elsewhere (or SIGCHLD is
            ignored) and its exit status is lost.
    """
    while True:
        try:
            _, status = os.waitpid(pid, os.WUNTRACED)
        except ChildProcessError as e:
            error_message = f"Child {pid} was reaped elsewhere, its exit status is lost"
            raise ChildProcessError(e.errno, error_message) from e

        if os.WIFSTOPPED(status):
            logger.debug("Child %d stopped by signal %d, continuing it", pid, os.WSTOPSIG(status))
            with contextlib.suppress(ProcessLookupError):
                os.kill(pid, signal.SIGCONT)
            continue
        if os.WIFEXITED(status) or os.WIFSIGNALED(status):
            logger.debug("Child %d finished with status %#x", pid, status)
            return status
