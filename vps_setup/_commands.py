"""External command execution for the provisioning stages."""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from typing import Protocol

from plumbum import local
from plumbum.commands.processes import CommandNotFound, ProcessTimedOut

from vps_setup._errors import CommandError

logger = logging.getLogger(__name__)

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


@dataclass(slots=True)
class CommandContext:
    """Execution options for :meth:`CommandRunner.run`."""

    env: dict[str, str] | None = None
    stdin: str | None = None
    timeout: float | None = None


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of an external command."""

    return_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        """Return ``True`` when the command exited with status zero.

        Examples
        --------
        >>> CommandResult(0).success
        True
        >>> CommandResult(1, stderr="boom").success
        False
        """

        return self.return_code == 0


class CommandRunner(Protocol):
    """Anything able to run an external command and report its outcome."""

    def run(
        self,
        command: str,
        *args: str,
        context: CommandContext | None = None,
    ) -> CommandResult:
        """Run ``command`` with ``args`` and return its result."""
        ...


def format_command(command: str, *args: str) -> str:
    """Return a shell-quoted rendering of a command line.

    Examples
    --------
    >>> format_command("ufw", "allow", "2222/tcp")
    'ufw allow 2222/tcp'
    >>> format_command("adduser", "--gecos", "", "vpsadmin")
    "adduser --gecos '' vpsadmin"
    """

    return shlex.join([command, *args])


@dataclass(slots=True)
class PlumbumRunner:
    """Run commands on the local host through :mod:`plumbum`."""

    base_env: dict[str, str] = field(default_factory=dict)

    def run(
        self,
        command: str,
        *args: str,
        context: CommandContext | None = None,
    ) -> CommandResult:
        ctx = context or CommandContext()
        try:
            bound = local[command][list(args)]
        except CommandNotFound:
            logger.debug("Command not found: %s", command)
            return CommandResult(127, "", f"{command}: command not found")
        env = None
        if ctx.env or self.base_env:
            env = {**os.environ, **self.base_env, **(ctx.env or {})}
        if ctx.stdin is not None:
            bound = bound << ctx.stdin
        try:
            return_code, stdout, stderr = bound.run(
                retcode=None,
                env=env,
                timeout=ctx.timeout,
            )
        except ProcessTimedOut as exc:
            msg = f"Command {format_command(command, *args)!r} timed out"
            raise CommandError(msg) from exc
        return CommandResult(return_code, stdout, stderr)


def run_command(
    runner: CommandRunner,
    command: str,
    *args: str,
    context: CommandContext | None = None,
) -> CommandResult:
    """Run a command, logging it, and return the result whatever its status."""

    logger.debug("Executing: %s", format_command(command, *args))
    return runner.run(command, *args, context=context)


def run_checked(
    runner: CommandRunner,
    command: str,
    *args: str,
    context: CommandContext | None = None,
) -> str:
    """Run a command and return its stdout, raising on a non-zero exit.

    Raises
    ------
    CommandError
        When the command exits with a non-zero status.
    """

    result = run_command(runner, command, *args, context=context)
    if not result.success:
        detail = result.stderr.strip() or result.stdout.strip()
        msg = (
            f"Command {format_command(command, *args)!r} failed "
            f"(exit status {result.return_code})"
        )
        if detail:
            msg = f"{msg}: {detail}"
        raise CommandError(msg)
    return result.stdout


def apt_context() -> CommandContext:
    """Return the execution context used for package manager calls."""

    return CommandContext(env=dict(APT_ENV))


__all__ = [
    "APT_ENV",
    "CommandContext",
    "CommandResult",
    "CommandRunner",
    "PlumbumRunner",
    "apt_context",
    "format_command",
    "run_checked",
    "run_command",
]
