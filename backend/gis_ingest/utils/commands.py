"""Safe execution wrapper for external geometry command-line tools.

This module runs conversion tools (mapshaper, ogr2ogr and friends) as
subprocesses. Non-zero exit codes raise CommandError carrying the tool's
stderr, and runs that exceed their time limit are killed and raise
CommandTimeoutError.

Example:
    Run mapshaper and get its stdout:
        >>> from gis_ingest.utils.commands import run_command, CommandError
        >>> try:
        ...     run_command(
        ...         ["mapshaper", "-i", "in.shp", "-o", "out.geojson"],
        ...         timeout=600,
        ...     )
        ... except CommandError as e:
        ...     print(f"Command failed: {e}")
"""

from __future__ import annotations

import subprocess
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable


class CommandError(RuntimeError):
    """Exception raised when a subprocess command fails.

    Contains the error message from the failed command's stderr output.
    """


class CommandTimeoutError(CommandError):
    """Exception raised when a subprocess command exceeds its time limit."""

    def __init__(self, message: str, timeout: float) -> None:
        super().__init__(message)
        self.timeout = timeout


def run_command(
    command: Iterable[str | pathlib.Path],
    workdir: pathlib.Path | None = None,
    timeout: float | None = None,
) -> str:
    """Execute a command and raise on non-zero exit.

    Args:
        command: Iterable arguments to execute (e.g., ["mapshaper", "-i", ...]).
        workdir: Optional working directory for the command execution.
        timeout: Seconds after which the process is killed.

    Returns:
        The command's standard output.

    Raises:
        CommandError: if the command exits with a non-zero status code or
            the executable cannot be started. The message contains stderr.
        CommandTimeoutError: if the command runs longer than ``timeout``.
    """
    args = [str(part) for part in command]
    try:
        result = subprocess.run(
            args,
            cwd=workdir,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise CommandTimeoutError(
            f"{args[0]} timed out after {timeout:.0f}s", timeout or 0.0
        ) from exc
    except OSError as exc:
        raise CommandError(f"{args[0]}: {exc}") from exc
    if result.returncode != 0:
        raise CommandError(result.stderr.strip() or "Unknown command failure")
    return result.stdout
