"""Subprocess helpers for host disk tools.

Backends never build shell strings: every command is an argv list and is
run without a shell. Output is captured as text so callers can parse the
JSON the tools emit.
"""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
from collections.abc import Callable, Sequence
from typing import Any

from batocera_provision.errors import CommandError

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 120

# Signature shared by run_command and test doubles
CommandRunner = Callable[[Sequence[str]], str]


def run_command(
    command: Sequence[str],
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
) -> str:
    """Run a command and return its stdout.

    Args:
        command: Command and arguments.
        timeout: Seconds before the process is killed.

    Returns:
        Captured stdout.

    Raises:
        CommandError: The tool is missing, timed out or exited non-zero.
    """
    argv = list(command)
    logger.debug("Running: %s", shlex.join(argv))

    try:
        result = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as e:
        raise CommandError(f"Command not found: {argv[0]}", command=argv) from e
    except subprocess.TimeoutExpired as e:
        raise CommandError(
            f"Command timed out after {timeout}s: {argv[0]}", command=argv
        ) from e

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        logger.debug("Command failed (%d): %s", result.returncode, stderr)
        raise CommandError(
            f"{argv[0]} exited with code {result.returncode}: {stderr or 'no output'}",
            command=argv,
            exit_code=result.returncode,
            stderr=stderr,
        )

    return result.stdout


def parse_json_output(output: str, command_name: str) -> Any:
    """Decode JSON printed by a host tool.

    Args:
        output: Raw stdout.
        command_name: Tool name used in the error message.

    Returns:
        Decoded JSON value, or None for empty output.

    Raises:
        CommandError: Output is not valid JSON.
    """
    text = output.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise CommandError(
            f"Could not parse {command_name} output as JSON: {e}",
            command=[command_name],
        ) from e


def as_list(payload: Any) -> list[dict[str, Any]]:
    """Normalise a JSON payload to a list of objects.

    PowerShell's ConvertTo-Json emits a bare object for a single result and
    nothing at all for zero results.
    """
    if payload is None:
        return []
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if isinstance(payload, dict):
        return [payload]
    return []


__all__ = [
    "DEFAULT_COMMAND_TIMEOUT",
    "CommandRunner",
    "as_list",
    "parse_json_output",
    "run_command",
]
