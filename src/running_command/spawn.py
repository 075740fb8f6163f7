"""Process launcher module.

Builds the argument vector and environment, sets up the requested pipes and
starts the child with ``os.posix_spawn``/``os.posix_spawnp``. The signal
disposition of the launching thread is adjusted for the duration of the spawn
and restored on every exit path.
"""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import threading
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Union

from running_command.pipes import Pipe, PipeEndpoint, StreamRole

logger = logging.getLogger(__name__)

# Status reported for a command whose process could not be created.
SPAWN_FAILED = -1

# Interactive signals ignored by the launcher while it spawns.
INTERACTIVE_SIGNALS = (signal.SIGINT, signal.SIGQUIT)

# The interpreter ignores these; a spawned program expects the default action.
INHERITED_IGNORED_SIGNALS = tuple(
    sig for sig in (getattr(signal, name, None) for name in ("SIGPIPE", "SIGXFZ", "SIGXFSZ")) if sig is not None
)

EnvOverrides = Union[Mapping[str, str], Iterable[tuple[str, str]]]


class SpawnError(OSError):
    """Raised when the OS refuses to create the child process."""

    status = SPAWN_FAILED


class CommandCancelledError(RuntimeError):
    """Raised when cancellation was requested before the child was started."""


@dataclass(frozen=True)
class SpawnSignals:
    """Signal configuration applied atomically when the child is created."""

    mask: frozenset[int]
    defaults: frozenset[int]


@dataclass
class ChildProcess:
    """A spawned child and the pipe endpoints the parent kept."""

    pid: int
    argv: list[str]
    stdin: PipeEndpoint | None = None
    stdout: PipeEndpoint | None = None
    stderr: PipeEndpoint | None = None

    def close_pipes(self) -> None:
        """Close whatever parent-side endpoints are still open."""
        for endpoint in (self.stdin, self.stdout, self.stderr):
            if endpoint is not None:
                endpoint.close()

    def send_signal(self, signum: int) -> bool:
        """Best-effort signal delivery. Returns False if the child is already gone."""
        try:
            os.kill(self.pid, signum)
        except ProcessLookupError:
            return False
        return True


def build_environment(overrides: EnvOverrides | None) -> Mapping[str, str]:
    """Return the environment for a child.

    With no overrides this is ``os.environ`` itself. Otherwise it is a new
    mapping holding a snapshot of the inherited variables followed by the
    overrides in order; when a key repeats, the last occurrence wins.
    """
    if not overrides:
        return os.environ

    items = overrides.items() if isinstance(overrides, Mapping) else overrides
    env: dict[str, str] = dict(os.environ)
    for key, value in items:
        if not key or "=" in key or "\0" in key:
            error_message = f"Invalid environment variable name: {key!r}"
            raise ValueError(error_message)
        # Drop the old position so an override always sorts after inherited entries.
        env.pop(key, None)
        env[key] = value
    return env


def render_environment(env: Mapping[str, str]) -> list[str]:
    """Render an environment the way the child receives it: ``KEY=VALUE`` strings."""
    return [f"{key}={value}" for key, value in env.items()]


@contextlib.contextmanager
def spawn_signal_disposition() -> Iterator[SpawnSignals]:
    """Block SIGCHLD and ignore SIGINT/SIGQUIT on the launching thread.

    Yields the mask and default-disposition set the child must be created with.
    Python only allows handler changes from the main thread; elsewhere the
    handlers are left alone and only the mask is adjusted.
    """
    can_set_handlers = threading.current_thread() is threading.main_thread()
    old_mask = signal.pthread_sigmask(signal.SIG_BLOCK, {signal.SIGCHLD})
    saved_handlers: dict[int, Any] = {}
    try:
        reset = set(INHERITED_IGNORED_SIGNALS)
        for signum in INTERACTIVE_SIGNALS:
            handler = signal.getsignal(signum)
            if handler != signal.SIG_IGN:
                reset.add(signum)
            # None means the handler was not installed from Python and cannot be restored.
            if can_set_handlers and handler is not None:
                saved_handlers[signum] = handler
                signal.signal(signum, signal.SIG_IGN)
        yield SpawnSignals(mask=frozenset(old_mask), defaults=frozenset(reset))
    finally:
        for signum, handler in saved_handlers.items():
            signal.signal(signum, handler)
        signal.pthread_sigmask(signal.SIG_SETMASK, old_mask)


def _file_actions(pipes: Sequence[Pipe]) -> list[tuple[int, ...]]:
    """Duplicate every child end onto its standard descriptor, then close the originals."""
    actions: list[tuple[int, ...]] = [
        (os.POSIX_SPAWN_DUP2, pipe.child.fileno(), pipe.child.role.child_fd) for pipe in pipes
    ]
    for pipe in pipes:
        for endpoint in (pipe.child, pipe.parent):
            # A descriptor already sitting on 0/1/2 was a dup2 target or source.
            if endpoint.fileno() > 2:
                actions.append((os.POSIX_SPAWN_CLOSE, endpoint.fileno()))
    return actions


def spawn_process(
    executable: str,
    args: Sequence[str] = (),
    env: EnvOverrides | None = None,
    *,
    stdin: bool = False,
    stdout: bool = False,
    stderr: bool = False,
    cancel: threading.Event | None = None,
) -> ChildProcess:
    """Start ``executable`` with ``args`` and the requested pipes.

    Args:
        executable: Program to run. A leading ``/`` means a path used as-is,
            anything else is looked up on PATH.
        args: Arguments passed verbatim after the executable, no shell involved.
        env: Environment overrides appended to the inherited environment.
        stdin: Connect the child's stdin to a pipe instead of inheriting it.
        stdout: Connect the child's stdout to a pipe.
        stderr: Connect the child's stderr to a pipe.
        cancel: If already set, nothing is started.

    Returns:
        The ChildProcess holding the pid and the parent ends of the pipes.

    Raises:
        CommandCancelledError: If ``cancel`` was set.
        SpawnError: If the process could not be created.
    """
    if cancel is not None and cancel.is_set():
        error_message = f"Cancelled before starting {executable!r}"
        raise CommandCancelledError(error_message)

    argv = [executable, *args]
    child_env = build_environment(env)
    roles = [
        role
        for role, wanted in ((StreamRole.INPUT, stdin), (StreamRole.OUTPUT, stdout), (StreamRole.ERROR, stderr))
        if wanted
    ]

    pipes: list[Pipe] = []
    try:
        for role in roles:
            pipes.append(Pipe.open(role))
        spawn = os.posix_spawn if executable.startswith("/") else os.posix_spawnp
        with spawn_signal_disposition() as signals:
            pid = spawn(
                executable,
                argv,
                child_env,
                file_actions=_file_actions(pipes),
                setsigmask=signals.mask,
                setsigdef=signals.defaults,
            )
    except BaseException as e:
        # No child owns these pipes yet, so the parent ends go too
        for pipe in pipes:
            pipe.close()
        if isinstance(e, OSError):
            logger.debug("Spawn of %s failed: %s", argv, e)
            raise SpawnError(e.errno, e.strerror, executable) from e
        raise
    finally:
        for pipe in pipes:
            pipe.child.close()

    logger.debug("Spawned pid %d: %s", pid, argv)
    parents = {pipe.parent.role: pipe.parent for pipe in pipes}
    return ChildProcess(
        pid=pid,
        argv=argv,
        stdin=parents.get(StreamRole.INPUT),
        stdout=parents.get(StreamRole.OUTPUT),
        stderr=parents.get(StreamRole.ERROR),
    )
