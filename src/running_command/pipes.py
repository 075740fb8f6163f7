"""Pipe endpoint module.

This module contains the PipeEndpoint and Pipe classes that give each pipe
descriptor a single owner and a single release.
"""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class StreamRole(enum.Enum):
    """Which standard stream of the child a pipe is attached to."""

    INPUT = 0
    OUTPUT = 1
    ERROR = 2

    @property
    def child_fd(self) -> int:
        """Standard descriptor number the pipe is duplicated onto in the child."""
        return self.value


class PipeEndpoint:
    """One end of a pipe, owned by exactly one object.

    The descriptor number is forgotten as soon as it is closed or detached, so
    a number recycled by the OS can never be closed through a stale endpoint.
    """

    def __init__(self, fd: int, role: StreamRole) -> None:
        self._fd: int | None = fd
        self.role = role

    def __repr__(self) -> str:
        state = "closed" if self._fd is None else f"fd={self._fd}"
        return f"PipeEndpoint({self.role.name}, {state})"

    @property
    def closed(self) -> bool:
        """True once the descriptor was closed or detached."""
        return self._fd is None

    def fileno(self) -> int:
        """Return the raw descriptor. Raises ValueError once closed."""
        if self._fd is None:
            error_message = f"{self.role.name} pipe endpoint is closed"
            raise ValueError(error_message)
        return self._fd

    def detach(self) -> int:
        """Hand the descriptor to a new owner; this endpoint no longer closes it."""
        fd = self.fileno()
        self._fd = None
        return fd

    def close(self) -> None:
        """Release the descriptor. Only the first call closes anything."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.close(fd)
        except OSError as e:
            logger.warning("Closing %s pipe fd %d failed: %s", self.role.name, fd, e)


@dataclass
class Pipe:
    """A pipe split into the end the parent keeps and the end the child gets."""

    parent: PipeEndpoint
    child: PipeEndpoint

    @classmethod
    def open(cls, role: StreamRole) -> Pipe:
        """Create a pipe oriented for ``role``.

        For INPUT the parent keeps the write end; for OUTPUT and ERROR it keeps
        the read end. Both descriptors are close-on-exec, so the child only sees
        what the spawn file actions duplicate onto 0/1/2.
        """
        read_fd, write_fd = os.pipe()
        if role is StreamRole.INPUT:
            return cls(parent=PipeEndpoint(write_fd, role), child=PipeEndpoint(read_fd, role))
        return cls(parent=PipeEndpoint(read_fd, role), child=PipeEndpoint(write_fd, role))

    def close(self) -> None:
        self.child.close()
        self.parent.close()
