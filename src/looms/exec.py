"""Subprocess helpers for running external commands."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Protocol

from .services.errors import CommandFailedError, CommandTimeoutError


@dataclass(frozen=True)
class CommandRequest:
    """Typed command invocation request."""

    argv: tuple[str, ...]
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    timeout_seconds: float | None = None


@dataclass(frozen=True)
class CommandResult:
    """Typed command execution result."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False


class CommandRunner(Protocol):
    """Runtime command-execution interface.

    Returns ``None`` when the executable is missing.
    """

    def run(self, request: CommandRequest) -> CommandResult | None: ...


class SubprocessCommandRunner:
    """Default command-runner adapter backed by subprocess."""

    def run(self, request: CommandRequest) -> CommandResult | None:
        run_kwargs: dict[str, object] = {
            "cwd": request.cwd,
            "env": request.env,
            "check": False,
            "capture_output": True,
            "text": True,
        }
        if request.timeout_seconds is not None:
            run_kwargs["timeout"] = request.timeout_seconds
        try:
            completed = subprocess.run(list(request.argv), **run_kwargs)
        except FileNotFoundError:
            return None
        except subprocess.TimeoutExpired as exc:
            stdout = (exc.stdout or "") if isinstance(exc.stdout, str) else ""
            stderr = (exc.stderr or "") if isinstance(exc.stderr, str) else ""
            return CommandResult(
                argv=request.argv,
                returncode=124,
                stdout=stdout,
                stderr=stderr,
                timed_out=True,
            )

        stdout = completed.stdout if isinstance(completed.stdout, str) else ""
        stderr = completed.stderr if isinstance(completed.stderr, str) else ""
        return CommandResult(
            argv=request.argv,
            returncode=completed.returncode,
            stdout=stdout,
            stderr=stderr,
        )


_DEFAULT_COMMAND_RUNNER: CommandRunner = SubprocessCommandRunner()


def run_with_runner(
    request: CommandRequest, *, runner: CommandRunner | None = None
) -> CommandResult | None:
    """Execute a typed command request with the given runner."""
    active_runner = runner or _DEFAULT_COMMAND_RUNNER
    return active_runner.run(request)


def _command_failure_detail(request: CommandRequest, result: CommandResult) -> str:
    output = (result.stderr or result.stdout or "").strip()
    command_text = " ".join(request.argv)
    if output:
        return f"command failed: {command_text}\n{output}"
    return f"command failed: {command_text}"


def run_checked(
    request: CommandRequest, *, runner: CommandRunner | None = None
) -> CommandResult:
    """Execute a command and raise on a missing executable, timeout, or failure.

    Raises:
        CommandTimeoutError: The command exceeded ``request.timeout_seconds``.
        CommandFailedError: The executable is missing or exited non-zero.
    """
    result = run_with_runner(request, runner=runner)
    if result is None:
        command = request.argv[0] if request.argv else ""
        raise CommandFailedError(
            f"missing required command: {command}" if command else "missing required command",
            argv=request.argv,
        )
    if result.timed_out:
        raise CommandTimeoutError(request.argv, request.timeout_seconds)
    if result.returncode != 0:
        raise CommandFailedError(
            _command_failure_detail(request, result),
            argv=request.argv,
            returncode=result.returncode,
            stderr=result.stderr,
        )
    return result


def try_run(
    request: CommandRequest, *, runner: CommandRunner | None = None
) -> CommandResult | None:
    """Execute a command, returning ``None`` if missing and raising only on timeout.

    Non-zero exits are returned to the caller for inspection.
    """
    result = run_with_runner(request, runner=runner)
    if result is not None and result.timed_out:
        raise CommandTimeoutError(request.argv, request.timeout_seconds)
    return result
