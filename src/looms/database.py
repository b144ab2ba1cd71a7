"""Guarded database-branch provisioning around a provider port.

Database branching only runs when the provider is configured and the loom's
``.env`` file defines the configured database URL variable.
"""

from __future__ import annotations

from pathlib import Path

from . import io
from .log import Logger
from .models import DatabaseDeletionResult
from .ports import Confirm, DatabaseBranchProvider, EnvironmentWriter

DEFAULT_DATABASE_URL_VAR = "DATABASE_URL"


class DatabaseManager:
    """Creates and deletes per-loom database branches.

    Args:
        provider: Database branching backend.
        environment: Env file reader/writer.
        database_url_env_var: Env var holding the connection string.
        confirm: Prompt used before deleting a preview branch.
        logger: Optional logger.
    """

    def __init__(
        self,
        provider: DatabaseBranchProvider,
        environment: EnvironmentWriter,
        *,
        database_url_env_var: str = DEFAULT_DATABASE_URL_VAR,
        confirm: Confirm | None = None,
        logger: Logger | None = None,
    ) -> None:
        self._provider = provider
        self._environment = environment
        self.database_url_env_var = database_url_env_var
        self._confirm = confirm or io.confirm
        self._logger = logger or Logger.default()

    def should_use_branching(self, env_file: Path) -> bool:
        if not self._provider.is_configured():
            self._logger.debug("Skipping database branching: provider not configured")
            return False
        values = self._environment.read(env_file)
        if not values.get(self.database_url_env_var):
            self._logger.debug(
                f"Skipping database branching: {self.database_url_env_var} not found in {env_file}"
            )
            return False
        return True

    def create_branch_if_configured(self, branch_name: str, env_file: Path) -> str | None:
        """Create a database branch and point the env file at it.

        Returns:
            The connection string, or ``None`` when branching is not in use.
        """
        if not self.should_use_branching(env_file):
            return None
        connection = self._provider.create_branch(branch_name)
        self._environment.set_var(env_file, self.database_url_env_var, connection)
        self._logger.success(f"Database branch ready: {branch_name}")
        return connection

    def delete_branch_if_configured(
        self,
        branch_name: str,
        *,
        should_cleanup: bool,
        force: bool = False,
    ) -> DatabaseDeletionResult:
        """Delete the database branch for a loom.

        ``should_cleanup`` is read from the loom's env file before the
        worktree is removed. Preview branches need confirmation unless
        ``force`` is set.
        """
        if not should_cleanup or not self._provider.is_configured():
            return DatabaseDeletionResult(success=True, not_found=True, branch_name=branch_name)
        is_preview = self._provider.is_preview_branch(branch_name)
        if is_preview and not force:
            prompt = f"Database branch {branch_name!r} is a preview branch. Delete it?"
            if not self._confirm(prompt, default=False):
                self._logger.info("Preview database deletion declined")
                return DatabaseDeletionResult(
                    success=True, user_declined=True, branch_name=branch_name
                )
        return self._provider.delete_branch(branch_name, is_preview=is_preview)
