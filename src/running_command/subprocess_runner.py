"""subprocess.run() replacement backed by run_command."""

import subprocess
from collections.abc import Sequence

from running_command.command import run_command
from running_command.spawn import EnvOverrides


def subprocess_run(
    command: Sequence[str],
    env: EnvOverrides | None = None,
    input: bytes | None = None,  # noqa: A002
    check: bool = False,
) -> subprocess.CompletedProcess[bytes]:
    """
    Execute a command and return a subprocess.CompletedProcess.

    Uses run_command as the backend to provide:
    - Deadlock-free feeding of stdin while stdout and stderr are drained
    - No shell: the arguments reach the program verbatim
    - Standard subprocess.CompletedProcess return value

    Args:
        command: Executable followed by its arguments.
        env: Overrides appended to the inherited environment.
        input: Bytes to write to stdin. None leaves stdin inherited.
        check: If True, raise CalledProcessError for non-zero exit codes.

    Returns:
        CompletedProcess with captured stdout and stderr and the subprocess-style
        return code (negative signal number if the command was killed).

    Raises:
        ValueError: If ``command`` is empty.
        SpawnError: If the process could not be created.
        CalledProcessError: If check=True and process exits with non-zero code.
    """
    if not command:
        error_message = "command must name an executable"
        raise ValueError(error_message)

    result = run_command(command[0], command[1:], env=env, input=input)

    completed = subprocess.CompletedProcess(
        args=list(command),
        returncode=result.returncode,
        stdout=result.stdout,
        stderr=result.stderr,
    )

    if check:
        # Raise the standard exception with captured output
        result.check_returncode()

    return completed
