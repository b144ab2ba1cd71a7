"""Versioned executable symlinks for CLI projects.

Each loom of a CLI project exposes its ``bin`` entries as
``<bin>-<identifier>`` symlinks in a shared bin directory, so several
checkouts of the same tool can be run side by side.
"""

from __future__ import annotations

import os
from pathlib import Path

from . import exec as exec_util
from . import paths
from .capabilities import read_package_json
from .log import Logger
from .models import BranchIdentifier, ResolvedIdentifier
from .services.errors import InputError

BUILD_SCRIPT = "build"
_LOCKFILES = (
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("bun.lockb", "bun"),
)


def symlink_suffix(identifier: ResolvedIdentifier) -> str:
    """Return the suffix used for a loom's versioned executables.

    Example:
        >>> from looms.models import IssueIdentifier
        >>> symlink_suffix(IssueIdentifier(42))
        '42'
    """
    if isinstance(identifier, BranchIdentifier):
        return paths.sanitize_branch_name(identifier.name)
    return identifier.natural_key


def detect_package_manager(worktree: Path) -> str:
    for lockfile, manager in _LOCKFILES:
        if (Path(worktree) / lockfile).exists():
            return manager
    return "npm"


def _links_into(entry: Path, root: Path) -> bool:
    if not entry.is_symlink():
        return False
    target = Path(os.readlink(entry))
    if not target.is_absolute():
        target = entry.parent / target
    target = Path(os.path.normpath(target))
    return target == root or root in target.parents


class CliIsolation:
    """Creates and removes versioned CLI symlinks.

    Args:
        bin_dir: Directory that holds the symlinks (defaults to the looms bin dir).
        runner: Command runner used for the build step.
        logger: Optional logger.
        timeout_seconds: Build timeout.
    """

    def __init__(
        self,
        *,
        bin_dir: Path | None = None,
        runner: exec_util.CommandRunner | None = None,
        logger: Logger | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.bin_dir = Path(bin_dir) if bin_dir is not None else paths.looms_bin_dir()
        self._runner = runner
        self._logger = logger or Logger.default()
        self._timeout = timeout_seconds

    def build(self, worktree: Path) -> bool:
        """Run the project's build script if it has one."""
        package = read_package_json(worktree)
        if package is None or BUILD_SCRIPT not in package.scripts:
            self._logger.warning("No build script found in package.json; skipping build")
            return False
        manager = detect_package_manager(worktree)
        self._logger.info(f"Building CLI tool with {manager}...")
        exec_util.run_checked(
            exec_util.CommandRequest(
                argv=(manager, "run", BUILD_SCRIPT),
                cwd=Path(worktree),
                timeout_seconds=self._timeout,
            ),
            runner=self._runner,
        )
        self._logger.success("Build completed")
        return True

    def setup(
        self,
        worktree: Path,
        identifier: ResolvedIdentifier,
        bin_entries: dict[str, str],
        *,
        build: bool = True,
    ) -> list[str]:
        """Build the project and link its executables.

        Returns:
            Names of the created symlinks.

        Raises:
            InputError: A bin target does not exist.
        """
        if build:
            self.build(worktree)
        targets: dict[str, Path] = {}
        for bin_name, bin_path in bin_entries.items():
            target = (Path(worktree) / bin_path).resolve()
            if not target.exists():
                raise InputError(f"Bin target does not exist: {target}")
            targets[bin_name] = target

        self.bin_dir.mkdir(parents=True, exist_ok=True)
        suffix = symlink_suffix(identifier)
        created: list[str] = []
        for bin_name, target in targets.items():
            versioned = f"{bin_name}-{suffix}"
            link = self.bin_dir / versioned
            if link.is_symlink() or link.exists():
                link.unlink()
            link.symlink_to(target)
            self._logger.success(f"CLI available: {versioned}")
            created.append(versioned)
        self._warn_if_not_on_path()
        return created

    def _warn_if_not_on_path(self) -> None:
        entries = os.environ.get("PATH", "").split(os.pathsep)
        if str(self.bin_dir) in entries:
            return
        self._logger.warning(f"Add {self.bin_dir} to PATH to run versioned CLI executables")

    def cleanup(self, identifier: ResolvedIdentifier, worktree: Path | None = None) -> list[str]:
        """Remove every executable ending in ``-<identifier>``.

        When ``worktree`` is given, only symlinks pointing into that worktree
        are removed, so another loom whose suffix also ends in the identifier
        keeps its executables.

        Returns:
            Names of the removed entries. A missing bin dir removes nothing.
        """
        if not self.bin_dir.is_dir():
            self._logger.debug("No CLI executables directory found; nothing to clean up")
            return []
        suffix = f"-{symlink_suffix(identifier)}"
        owner = Path(worktree).resolve() if worktree is not None else None
        removed: list[str] = []
        for entry in sorted(self.bin_dir.iterdir()):
            if not entry.name.endswith(suffix):
                continue
            if owner is not None and not _links_into(entry, owner):
                self._logger.debug(f"Keeping {entry.name}: it belongs to another worktree")
                continue
            try:
                entry.unlink()
            except FileNotFoundError:
                pass
            removed.append(entry.name)
        if removed:
            self._logger.success(f"Removed CLI executables: {', '.join(removed)}")
        return removed

    def find_orphaned(self) -> list[Path]:
        """Return symlinks whose targets no longer exist."""
        if not self.bin_dir.is_dir():
            return []
        return [
            entry
            for entry in sorted(self.bin_dir.iterdir())
            if entry.is_symlink() and not entry.exists()
        ]
