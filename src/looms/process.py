"""Detect, classify, and terminate the process listening on a loom's port."""

from __future__ import annotations

import os
import re
import signal
import sys
import time
from typing import Literal

from . import exec as exec_util
from .log import Logger
from .models import ProcessInfo
from .services.errors import CommandFailedError, ExternalError, ProcessTerminationError

Platform = Literal["posix", "windows", "unsupported"]

DEV_SERVER_NAMES = re.compile(
    r"^(node|npm|npx|pnpm|yarn|bun|next|next-server|vite|webpack|dev-server|turbo)$",
    re.IGNORECASE,
)
DEV_SERVER_COMMANDS = re.compile(
    r"(next dev|next-server|npm.*dev|pnpm.*dev|yarn.*dev|bun.*dev|vite|webpack.*serve"
    r"|turbo.*dev|dev.*server)",
    re.IGNORECASE,
)
DEFAULT_SETTLE_SECONDS = 1.0


def detect_platform(value: str | None = None) -> Platform:
    name = value if value is not None else sys.platform
    if name == "win32":
        return "windows"
    if name == "darwin" or name.startswith("linux"):
        return "posix"
    return "unsupported"


def is_dev_server(name: str, command: str) -> bool:
    """Return whether a process looks like a workspace dev-server.

    Both the executable name and the command line must match; a bare
    ``node script.js`` is never classified as a dev-server.

    Example:
        >>> is_dev_server("node", "node node_modules/.bin/next dev")
        True
        >>> is_dev_server("node", "node script.js")
        False
        >>> is_dev_server("python", "python -m vite")
        False
    """
    normalized = name.strip()
    if normalized.lower().endswith(".exe"):
        normalized = normalized[: -len(".exe")]
    if not DEV_SERVER_NAMES.match(normalized):
        return False
    return bool(DEV_SERVER_COMMANDS.search(command))


def parse_lsof_listener(output: str) -> tuple[str, int] | None:
    """Return ``(name, pid)`` for the first LISTEN line of ``lsof -i :port -P``."""
    for line in output.splitlines():
        if "LISTEN" not in line:
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        try:
            return parts[0], int(parts[1])
        except ValueError:
            continue
    return None


def parse_netstat_listener(output: str, port: int) -> int | None:
    """Return the PID listening on ``port`` from ``netstat -ano`` output."""
    needle = f":{port}"
    for line in output.splitlines():
        if "LISTENING" not in line:
            continue
        parts = line.split()
        if len(parts) < 2 or not parts[1].endswith(needle):
            continue
        try:
            return int(parts[-1])
        except ValueError:
            continue
    return None


def parse_tasklist_name(output: str) -> str | None:
    lines = [line for line in output.splitlines() if line.strip()]
    if len(lines) < 2:
        return None
    first = lines[1].split(",")[0].strip().strip('"')
    return first or None


class ProcessProbe:
    """Port-bound process inspection.

    Termination is never attempted here on the probe's own initiative;
    callers must check ``ProcessInfo.is_dev_server`` first.
    """

    def __init__(
        self,
        *,
        runner: exec_util.CommandRunner | None = None,
        logger: Logger | None = None,
        platform: Platform | None = None,
        timeout_seconds: float | None = None,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
    ) -> None:
        self._runner = runner
        self._logger = logger or Logger.default()
        self._platform = platform or detect_platform()
        self._timeout = timeout_seconds
        self._settle_seconds = settle_seconds

    def _capture(self, argv: list[str]) -> exec_util.CommandResult | None:
        request = exec_util.CommandRequest(argv=tuple(argv), timeout_seconds=self._timeout)
        return exec_util.try_run(request, runner=self._runner)

    def detect(self, port: int) -> ProcessInfo | None:
        """Return the process listening on ``port``, or ``None`` if the port is free.

        Raises:
            ExternalError: The platform has no supported detection tools.
        """
        if self._platform == "unsupported":
            raise ExternalError("Process detection not supported on this platform")
        if self._platform == "windows":
            return self._detect_windows(port)
        return self._detect_posix(port)

    def _detect_posix(self, port: int) -> ProcessInfo | None:
        result = self._capture(["lsof", "-i", f":{port}", "-P"])
        if result is None:
            self._logger.debug("lsof not available; assuming port is free")
            return None
        listener = parse_lsof_listener(result.stdout)
        if listener is None:
            return None
        name, pid = listener
        ps_result = self._capture(["ps", "-p", str(pid), "-o", "command="])
        command = ps_result.stdout.strip() if ps_result is not None else ""
        return ProcessInfo(
            pid=pid,
            name=name,
            command=command,
            port=port,
            is_dev_server=is_dev_server(name, command),
        )

    def _detect_windows(self, port: int) -> ProcessInfo | None:
        result = self._capture(["netstat", "-ano"])
        if result is None:
            self._logger.debug("netstat not available; assuming port is free")
            return None
        pid = parse_netstat_listener(result.stdout, port)
        if pid is None:
            return None
        task_result = self._capture(["tasklist", "/FI", f"PID eq {pid}", "/FO", "CSV"])
        name = parse_tasklist_name(task_result.stdout) if task_result is not None else None
        if name is None:
            return None
        # tasklist does not expose the full command line
        return ProcessInfo(
            pid=pid,
            name=name,
            command=name,
            port=port,
            is_dev_server=is_dev_server(name, name),
        )

    def terminate(self, pid: int) -> bool:
        """Forcefully kill ``pid``.

        Raises:
            ProcessTerminationError: The kill failed for any reason.
        """
        try:
            if self._platform == "windows":
                exec_util.run_checked(
                    exec_util.CommandRequest(
                        argv=("taskkill", "/PID", str(pid), "/F"),
                        timeout_seconds=self._timeout,
                    ),
                    runner=self._runner,
                )
            else:
                os.kill(pid, signal.SIGKILL)
        except (OSError, CommandFailedError) as exc:
            raise ProcessTerminationError(pid, str(exc)) from exc
        if self._settle_seconds > 0:
            time.sleep(self._settle_seconds)
        self._logger.debug(f"Terminated process {pid}")
        return True

    def verify_free(self, port: int) -> bool:
        return self.detect(port) is None
