"""Structured terminal logging for loom operations.

Components receive a ``Logger`` instance instead of writing to a module-level
console, so tests can capture or silence output per call.
"""

from __future__ import annotations

import os
import sys
from enum import IntEnum
from typing import TextIO

from rich.console import Console
from rich.text import Text


class LogLevel(IntEnum):
    TRACE = 10
    DEBUG = 20
    INFO = 30
    SUCCESS = 35
    WARNING = 40
    ERROR = 50


_LEVEL_BY_NAME = {
    "trace": LogLevel.TRACE,
    "debug": LogLevel.DEBUG,
    "info": LogLevel.INFO,
    "success": LogLevel.SUCCESS,
    "warning": LogLevel.WARNING,
    "warn": LogLevel.WARNING,
    "error": LogLevel.ERROR,
}
_DEFAULT_LEVEL = LogLevel.INFO


def normalize_level(value: str | None) -> LogLevel:
    if value is None:
        return _DEFAULT_LEVEL
    normalized = value.strip().lower()
    if not normalized:
        return _DEFAULT_LEVEL
    return _LEVEL_BY_NAME.get(normalized, _DEFAULT_LEVEL)


def _default_style(level: LogLevel) -> str:
    if level is LogLevel.TRACE:
        return "dim"
    if level is LogLevel.DEBUG:
        return "cyan"
    if level is LogLevel.SUCCESS:
        return "green"
    if level is LogLevel.WARNING:
        return "yellow"
    if level is LogLevel.ERROR:
        return "bold red"
    return ""


class Logger:
    """Levelled logger writing rich text to stdout/stderr.

    Args:
        level: Minimum level that is emitted.
        stdout: Stream for trace/debug/info/success output.
        stderr: Stream for warnings and errors.
        no_color: Disable styling.
    """

    def __init__(
        self,
        level: LogLevel = _DEFAULT_LEVEL,
        *,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
        no_color: bool = False,
    ) -> None:
        self.level = level
        self._stdout = stdout
        self._stderr = stderr
        self._no_color = no_color

    @classmethod
    def default(cls) -> Logger:
        """Build a logger configured from ``LOOMS_LOG_LEVEL`` and ``NO_COLOR``."""
        return cls(
            normalize_level(os.environ.get("LOOMS_LOG_LEVEL")),
            no_color=bool(os.environ.get("NO_COLOR") or os.environ.get("LOOMS_NO_COLOR")),
        )

    def set_level(self, value: str | None) -> None:
        """Set the active log level."""
        self.level = normalize_level(value)

    def is_enabled(self, level: LogLevel) -> bool:
        return level >= self.level

    def _console(self, *, stderr: bool) -> Console:
        if stderr:
            stream = self._stderr or sys.stderr
        else:
            stream = self._stdout or sys.stdout
        return Console(
            file=stream,
            soft_wrap=True,
            highlight=False,
            no_color=self._no_color,
        )

    def emit(
        self,
        level: LogLevel,
        message: str,
        *,
        style: str | None = None,
        stderr: bool | None = None,
    ) -> None:
        if not self.is_enabled(level):
            return
        target_stderr = stderr if stderr is not None else level >= LogLevel.WARNING
        text = Text(message, style=style or _default_style(level))
        self._console(stderr=target_stderr).print(text)

    def trace(self, message: str, *, style: str | None = None) -> None:
        self.emit(LogLevel.TRACE, message, style=style, stderr=False)

    def debug(self, message: str, *, style: str | None = None) -> None:
        self.emit(LogLevel.DEBUG, message, style=style, stderr=False)

    def info(self, message: str, *, style: str | None = None) -> None:
        self.emit(LogLevel.INFO, message, style=style, stderr=False)

    def success(self, message: str, *, style: str | None = None) -> None:
        self.emit(LogLevel.SUCCESS, message, style=style, stderr=False)

    def warning(self, message: str, *, style: str | None = None) -> None:
        self.emit(LogLevel.WARNING, message, style=style, stderr=True)

    def error(self, message: str, *, style: str | None = None) -> None:
        self.emit(LogLevel.ERROR, message, style=style, stderr=True)
