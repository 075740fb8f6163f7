#!/usr/bin/env python3
"""Process utilities for signalling, reaping and checking on spawned children."""

from __future__ import annotations

import contextlib
import warnings

import psutil


def process_handle(pid: int) -> psutil.Process | None:
    """Get a handle bound to the process currently running as ``pid``.

    psutil remembers the creation time, so a later signal through the handle
    can never reach an unrelated process that reused the pid.
    """
    try:
        return psutil.Process(pid)
    except psutil.NoSuchProcess:
        return None


def terminate_process(handle: psutil.Process | None) -> bool:
    """Send SIGTERM without waiting. Returns False if the process was already gone."""
    if handle is None:
        return False
    try:
        handle.terminate()
    except psutil.NoSuchProcess:
        return False
    except (OSError, psutil.Error) as e:
        warnings.warn(f"Error terminating process {handle.pid}: {e}", UserWarning, stacklevel=2)
        return False
    return True


def reap_nowait(handle: psutil.Process | None) -> int | None:
    """Collect the exit status of a finished child without blocking.

    Returns the psutil return code (negative signal number when signalled), or
    None if the child is still running or was reaped elsewhere.
    """
    if handle is None:
        return None
    with contextlib.suppress(psutil.TimeoutExpired, psutil.NoSuchProcess, ChildProcessError):
        return handle.wait(timeout=0)
    return None


def is_process_running(pid: int) -> bool:
    """True if ``pid`` is alive. A zombie waiting to be reaped does not count."""
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False

