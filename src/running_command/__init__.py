"""Deadlock-free execution of external programs over pipes."""

from __future__ import annotations

__version__ = "1.0.0"

from running_command.command import CommandResult, run_command
from running_command.line_reader import CommandLineReader, EndOfStream, LineEncodingError, command_by_line
from running_command.reaper import ExitStatus, decode_status
from running_command.spawn import SPAWN_FAILED, CommandCancelledError, SpawnError
from running_command.subprocess_runner import subprocess_run

__all__ = [
    "SPAWN_FAILED",
    "CommandCancelledError",
    "CommandLineReader",
    "CommandResult",
    "EndOfStream",
    "ExitStatus",
    "LineEncodingError",
    "SpawnError",
    "command_by_line",
    "decode_status",
    "run_command",
    "subprocess_run",
]
