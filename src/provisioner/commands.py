"""Subprocess execution for provider CLIs (hcloud, op).

Every provider call is synchronous and bounded by a timeout. Command lines
can carry key material (e.g. importing a private key into 1Password), so
only the binary and its subcommand are ever logged.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Protocol

from .config import DEFAULT_COMMAND_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

# Number of leading argv entries safe to log ("hcloud firewall describe")
LOGGED_ARGV_PREFIX = 3


class CommandError(Exception):
    """Raised when a command cannot be executed at all (missing binary, timeout)."""

    pass


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class Runner(Protocol):
    """Executes commands. Swapped for an in-memory fake in tests."""

    def run(self, cmd: list[str]) -> CommandResult: ...

    def available(self, binary: str) -> bool: ...


class CommandRunner:
    """Runs real subprocesses with a per-call timeout."""

    def __init__(
        self,
        *,
        timeout: int = DEFAULT_COMMAND_TIMEOUT_SECONDS,
        env: dict[str, str] | None = None,
    ) -> None:
        self._timeout = timeout
        self._env = env

    def available(self, binary: str) -> bool:
        return shutil.which(binary) is not None

    def run(self, cmd: list[str]) -> CommandResult:
        """Run a command and capture its output.

        Args:
            cmd: Command and arguments.

        Returns:
            CommandResult; a non-zero exit code is not an exception.

        Raises:
            CommandError: If the binary is missing or the call times out.
        """
        full_env = os.environ.copy()
        if self._env:
            full_env.update(self._env)

        summary = " ".join(cmd[:LOGGED_ARGV_PREFIX])
        logger.debug("Running command", extra={"command": summary})

        try:
            completed = subprocess.run(
                cmd,
                env=full_env,
                timeout=self._timeout,
                capture_output=True,
                text=True,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandError(f"Command timed out after {self._timeout}s: {summary}") from e
        except FileNotFoundError as e:
            raise CommandError(f"Command not found: {cmd[0]}") from e

        result = CommandResult(
            args=tuple(cmd),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if not result.ok:
            logger.debug(
                "Command exited non-zero",
                extra={"command": summary, "returncode": result.returncode},
            )
        return result
