"""Per-loom ``.env`` file access backed by python-dotenv."""

from __future__ import annotations

import re
import shutil
from pathlib import Path

from dotenv import dotenv_values, set_key

from .log import Logger
from .services.errors import InputError

ENV_FILENAME = ".env"
PORT_VAR = "PORT"
_VAR_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def env_file_path(worktree: Path) -> Path:
    return Path(worktree) / ENV_FILENAME


def validate_env_key(key: str) -> str:
    """Return ``key`` if it is a valid environment variable name.

    Example:
        >>> validate_env_key("DATABASE_URL")
        'DATABASE_URL'
    """
    if not _VAR_NAME.match(key or ""):
        raise InputError(
            f"Invalid variable name {key!r}. "
            "Use letters, digits, and underscores, not starting with a digit",
        )
    return key


class DotenvEnvironmentWriter:
    """Reads and writes ``KEY=VALUE`` env files in place.

    Existing comments and unrelated lines are preserved; only the target key
    is replaced or appended.
    """

    def __init__(self, *, logger: Logger | None = None) -> None:
        self._logger = logger or Logger.default()

    def set_var(self, path: Path, key: str, value: str) -> None:
        validate_env_key(key)
        target = Path(path)
        existed = target.exists()
        target.parent.mkdir(parents=True, exist_ok=True)
        target.touch(exist_ok=True)
        set_key(str(target), key, value, quote_mode="never")
        if existed:
            self._logger.debug(f"Set {key} in {target}")
        else:
            self._logger.info(f"Created {target} with {key}")

    def set_port(self, path: Path, port: int) -> None:
        self.set_var(path, PORT_VAR, str(port))

    def read(self, path: Path) -> dict[str, str]:
        """Return the variables in ``path``; a missing file reads as empty."""
        target = Path(path)
        if not target.exists():
            return {}
        values = dotenv_values(str(target))
        return {key: value for key, value in values.items() if value is not None}

    def copy_if_missing(self, source: Path, destination: Path) -> bool:
        """Copy ``source`` to ``destination`` unless the destination exists.

        Returns:
            ``True`` when a copy was made.
        """
        src = Path(source)
        dest = Path(destination)
        if not src.exists() or dest.exists():
            return False
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dest)
        self._logger.debug(f"Copied {src} to {dest}")
        return True
