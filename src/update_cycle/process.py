"""
Subprocess helpers for invoking the external collaborators.

Every collaborator is started with asyncio.create_subprocess_exec and
awaited with a timeout. A non-zero exit status, a timeout or a command
that cannot be executed raises ExternalProcessError naming the stage.
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from update_cycle.errors import ExternalProcessError, FailedPreconditionError
from update_cycle.logging import get_logger

logger = get_logger(__name__)

# Number of trailing stderr characters kept in error details
STDERR_TAIL_CHARS = 2000


@dataclass
class CommandResult:
    """Exit status and decoded output of a finished command."""

    returncode: int
    stdout: str
    stderr: str


def render_command(template: list[str], **context: Any) -> list[str]:
    """
    Fill the placeholders of a command template.

    "{python}" always resolves to the running interpreter.

    Args:
        template: Command template, e.g. ["tar", "-xf", "{archive}"].
        **context: Placeholder values.

    Returns:
        The rendered argument list.

    Raises:
        FailedPreconditionError: If a placeholder has no value.
    """
    values = {"python": sys.executable, **{k: str(v) for k, v in context.items()}}
    try:
        return [part.format(**values) for part in template]
    except KeyError as e:
        raise FailedPreconditionError(
            f"Unknown placeholder in command template: {e.args[0]}",
            details={"template": template, "available": sorted(values)},
        ) from e


async def run_command(
    args: list[str],
    *,
    stage: str,
    timeout: float,
    cwd: Path | str | None = None,
    capture_output: bool = True,
) -> CommandResult:
    """
    Run a command to completion.

    Args:
        args: Command and arguments.
        stage: Pipeline stage name, used in errors and logs.
        timeout: Timeout in seconds.
        cwd: Working directory.
        capture_output: Capture stdout/stderr; when False the command
            inherits the terminal.

    Returns:
        CommandResult of a successful (exit status 0) run.

    Raises:
        ExternalProcessError: On non-zero exit, timeout or execution failure.
    """
    pipe = asyncio.subprocess.PIPE if capture_output else None
    logger.info(
        f"[{stage}] Running {' '.join(args)}",
        extra={"stage": stage, "cwd": str(cwd) if cwd else None},
    )

    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            stdout=pipe,
            stderr=pipe,
        )
    except OSError as e:
        raise ExternalProcessError(
            f"[{stage}] Failed to execute command: {e}",
            command=args,
            details={"stage": stage, "error": str(e)},
        ) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError as e:
        process.kill()
        await process.wait()
        raise ExternalProcessError(
            f"[{stage}] Command timed out after {timeout}s",
            command=args,
            details={"stage": stage, "timeout": timeout},
        ) from e

    result = CommandResult(
        returncode=process.returncode or 0,
        stdout=stdout.decode("utf-8", errors="replace") if stdout else "",
        stderr=stderr.decode("utf-8", errors="replace") if stderr else "",
    )

    if result.returncode != 0:
        raise ExternalProcessError(
            f"[{stage}] Command exited with status {result.returncode}",
            command=args,
            returncode=result.returncode,
            details={"stage": stage, "stderr": result.stderr[-STDERR_TAIL_CHARS:]},
        )

    logger.debug(f"[{stage}] Command finished", extra={"stage": stage})
    return result


async def start_background(
    args: list[str],
    *,
    stage: str,
    cwd: Path | str | None = None,
) -> asyncio.subprocess.Process:
    """
    Start a long-running command without waiting for it.

    Output is discarded so a chatty process can never block on a full pipe.

    Raises:
        ExternalProcessError: If the command cannot be executed.
    """
    logger.info(f"[{stage}] Starting {' '.join(args)}", extra={"stage": stage})
    try:
        return await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        raise ExternalProcessError(
            f"[{stage}] Failed to start command: {e}",
            command=args,
            details={"stage": stage, "error": str(e)},
        ) from e
