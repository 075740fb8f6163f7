"""Command line interface: run a program and relay its output.

Usage:
    python -m running_command.cli [--lines] [--env KEY=VALUE ...] [--input FILE] -- program [args...]
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from running_command.command import run_command
from running_command.line_reader import LineEncodingError, command_by_line
from running_command.spawn import SpawnError

logger = logging.getLogger(__name__)

# Exit code used by shells when a command cannot be found or executed.
EXIT_SPAWN_FAILED = 127


def _parse_env(parser: argparse.ArgumentParser, entries: list[str]) -> list[tuple[str, str]]:
    overrides = []
    for entry in entries:
        key, sep, value = entry.partition("=")
        if not sep or not key:
            parser.error(f"--env expects KEY=VALUE, got {entry!r}")
        overrides.append((key, value))
    return overrides


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="running-command",
        description="Run a program without a shell, feeding stdin and capturing its output.",
    )
    parser.add_argument("--lines", action="store_true", help="Stream stdout line by line instead of capturing it")
    parser.add_argument("--env", action="append", default=[], metavar="KEY=VALUE", help="Environment override")
    parser.add_argument("--input", type=Path, help="File whose contents are written to the program's stdin")
    parser.add_argument("--no-stderr", action="store_true", help="Let stderr pass through instead of capturing it")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Program and its arguments")
    return parser


def _run_lines(program: str, args: list[str], env: list[tuple[str, str]]) -> int:
    with command_by_line(program, args, env) as reader:
        for line in reader:
            print(line, flush=True)
    return 0


def _run_captured(program: str, args: list[str], env: list[tuple[str, str]], input_file: Path | None, capture_stderr: bool) -> int:
    data = input_file.read_bytes() if input_file is not None else None
    result = run_command(program, args, env, input=data, capture_stderr=capture_stderr)
    if result.stdout:
        sys.stdout.buffer.write(result.stdout)
        sys.stdout.buffer.flush()
    if result.stderr:
        sys.stderr.buffer.write(result.stderr)
        sys.stderr.buffer.flush()
    if result.signaled:
        assert result.term_signal is not None
        return 128 + result.term_signal
    assert result.exit_code is not None
    return result.exit_code


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    ns = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if ns.verbose else logging.WARNING)

    command: list[str] = ns.command
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        parser.print_help()
        return 0

    env = _parse_env(parser, ns.env)
    program, args = command[0], command[1:]
    try:
        if ns.lines:
            return _run_lines(program, args, env)
        return _run_captured(program, args, env, ns.input, capture_stderr=not ns.no_stderr)
    except SpawnError as e:
        print(f"running-command: cannot run {program}: {e.strerror}", file=sys.stderr)
        return EXIT_SPAWN_FAILED
    except LineEncodingError as e:
        print(f"running-command: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
