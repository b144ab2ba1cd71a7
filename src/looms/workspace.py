"""Workspace manager facade.

Wires settings, git, process, environment, and provider collaborators into
the creation and cleanup services. Front ends construct one manager per
repository and call it with raw identifiers.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from . import config, git
from . import exec as exec_util
from .cli_isolation import CliIsolation
from .database import DatabaseManager
from .environment import ENV_FILENAME, DotenvEnvironmentWriter
from .identifiers import IdentifierResolver
from .log import Logger
from .models import (
    CleanupOptions,
    CleanupReport,
    CreateOptions,
    LoomsSettings,
    ResolvedIdentifier,
    WorkingTree,
    WorkspaceRecord,
)
from .ports import Confirm, DatabaseBranchProvider, EnvironmentWriter, IssueTracker, Launcher
from .process import ProcessProbe
from .services.cleanup_workspace import CleanupWorkspaceService
from .services.create_workspace import CreateWorkspaceService
from .services.errors import NotFoundError
from .worktrees import WorkingTreeStore


class WorkspaceManager:
    """Create, list, and clean up looms for one repository.

    Args:
        repo_root: Main repository checkout.
        tracker: Issue tracker used for identifier resolution.
        database_provider: Optional database branching backend.
        launcher: Optional launcher run after provisioning.
        settings: Settings; loaded from ``.looms/`` when omitted.
        environment: Env file writer; python-dotenv backed by default.
        runner: Command runner shared by git and process tools.
        git_path: Optional git executable path.
        confirm: Prompt used before deleting preview database branches.
        bin_dir: Directory for versioned CLI symlinks.
        logger: Optional logger.
        timeout_seconds: Default per-command timeout.
    """

    def __init__(
        self,
        repo_root: Path,
        tracker: IssueTracker,
        *,
        database_provider: DatabaseBranchProvider | None = None,
        launcher: Launcher | None = None,
        settings: LoomsSettings | None = None,
        environment: EnvironmentWriter | None = None,
        runner: exec_util.CommandRunner | None = None,
        git_path: str | None = None,
        confirm: Confirm | None = None,
        bin_dir: Path | None = None,
        logger: Logger | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.repo_root = Path(repo_root)
        self.logger = logger or Logger.default()
        self.settings = settings if settings is not None else config.load_settings(self.repo_root)
        self._tracker = tracker
        self._launcher = launcher
        self._runner = runner
        self._git_path = git_path
        self._bin_dir = bin_dir
        self._timeout = timeout_seconds
        self.environment = environment or DotenvEnvironmentWriter(logger=self.logger)
        self.resolver = IdentifierResolver(tracker, logger=self.logger)
        self.database: DatabaseManager | None = None
        if database_provider is not None:
            self.database = DatabaseManager(
                database_provider,
                self.environment,
                database_url_env_var=self.settings.database_url_env_var,
                confirm=confirm,
                logger=self.logger,
            )

    @classmethod
    def from_directory(
        cls,
        start: Path,
        tracker: IssueTracker,
        *,
        runner: exec_util.CommandRunner | None = None,
        git_path: str | None = None,
        **kwargs: Any,
    ) -> WorkspaceManager:
        """Build a manager for the repository containing ``start``.

        Raises:
            NotFoundError: ``start`` is not inside a git repository.
        """
        repo_root = git.git_repo_root(Path(start), git_path=git_path, runner=runner)
        if repo_root is None:
            raise NotFoundError(f"Not a git repository: {start}")
        return cls(repo_root, tracker, runner=runner, git_path=git_path, **kwargs)

    def _timeout_for(self, timeout_seconds: float | None) -> float | None:
        return timeout_seconds if timeout_seconds is not None else self._timeout

    def store(self, timeout_seconds: float | None = None) -> WorkingTreeStore:
        return WorkingTreeStore(
            self.repo_root,
            runner=self._runner,
            git_path=self._git_path,
            logger=self.logger,
            timeout_seconds=self._timeout_for(timeout_seconds),
            managed_files=(ENV_FILENAME, *self.settings.copy_env_files),
        )

    def _cli_isolation(self, timeout_seconds: float | None) -> CliIsolation:
        return CliIsolation(
            bin_dir=self._bin_dir,
            runner=self._runner,
            logger=self.logger,
            timeout_seconds=self._timeout_for(timeout_seconds),
        )

    def resolve(self, raw: str) -> ResolvedIdentifier:
        return self.resolver.resolve(raw)

    def create_workspace(
        self, identifier: str | ResolvedIdentifier, options: CreateOptions | None = None
    ) -> WorkspaceRecord:
        """Create or reuse the loom for ``identifier``."""
        options = options or CreateOptions()
        service = CreateWorkspaceService(
            resolver=self.resolver,
            tracker=self._tracker,
            store=self.store(options.timeout_seconds),
            environment=self.environment,
            settings=self.settings,
            database=self.database,
            cli_isolation=self._cli_isolation(options.timeout_seconds),
            launcher=self._launcher,
            logger=self.logger,
        )
        return service.create(identifier, options)

    def _cleanup_service(self, options: CleanupOptions) -> CleanupWorkspaceService:
        timeout = self._timeout_for(options.timeout_seconds)
        return CleanupWorkspaceService(
            store=self.store(options.timeout_seconds),
            probe=ProcessProbe(runner=self._runner, logger=self.logger, timeout_seconds=timeout),
            settings=self.settings,
            database=self.database,
            cli_isolation=self._cli_isolation(options.timeout_seconds),
            logger=self.logger,
        )

    def cleanup_workspace(
        self, identifier: str | ResolvedIdentifier, options: CleanupOptions | None = None
    ) -> CleanupReport:
        """Tear down the loom for ``identifier``.

        Raises:
            WorktreeNotFoundError: No loom matches ``identifier``.
            SafetyBlockedError: The loom is protected or has uncommitted changes.
        """
        options = options or CleanupOptions()
        return self._cleanup_service(options).cleanup(identifier, options)

    def cleanup_many(
        self, identifiers: list[str], options: CleanupOptions | None = None
    ) -> list[CleanupReport]:
        options = options or CleanupOptions()
        return self._cleanup_service(options).cleanup_many(identifiers, options)

    def cleanup_issue(
        self, number: int, options: CleanupOptions | None = None
    ) -> list[CleanupReport]:
        """Tear down every branch and loom that looks like work on issue ``number``."""
        options = options or CleanupOptions()
        return self._cleanup_service(options).cleanup_issue(number, options)

    def cleanup_all(self, options: CleanupOptions | None = None) -> list[CleanupReport]:
        options = options or CleanupOptions()
        return self._cleanup_service(options).cleanup_all(options)

    def list_workspaces(self) -> list[WorkingTree]:
        """Return every worktree except the main checkout."""
        store = self.store()
        trees = store.list()
        if not trees:
            return []
        return trees[1:]

    def orphaned_cli_symlinks(self) -> list[Path]:
        return self._cli_isolation(None).find_orphaned()
