"""Safety-gated loom teardown.

Locating the worktree and the safety check abort the whole operation by
raising. Every later stage records its outcome in the ``CleanupReport`` and
never stops the stages after it. Stage order is fixed: dev-server, worktree,
branch, database, CLI symlinks.

Besides single looms, the service tears down every branch matching an issue
number and every loom of the repository, one report per target.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from .. import paths
from ..cli_isolation import CliIsolation, symlink_suffix
from ..database import DatabaseManager
from ..environment import env_file_path
from ..identifiers import IdentifierResolver
from ..log import Logger
from ..models import (
    BranchIdentifier,
    CleanupOptions,
    CleanupReport,
    DescriptionIdentifier,
    IssueIdentifier,
    LoomsSettings,
    OperationResult,
    OperationType,
    PullRequestIdentifier,
    ResolvedIdentifier,
    SafetyCheck,
    WorkingTree,
)
from ..process import ProcessProbe
from ..worktrees import WorkingTreeStore
from .base import BaseService
from .errors import (
    ExternalError,
    InputError,
    LoomsError,
    ProtectedBranchError,
    SafetyBlockedError,
    UnmergedBranchError,
    WorktreeNotFoundError,
)

DRY_RUN_PREFIX = "[DRY RUN]"
PR_DIRECTORY = re.compile(r"_pr_(\d+)$")


@dataclass(frozen=True)
class CleanupWorkspaceRequest:
    """Input contract for loom teardown.

    Attributes:
        identifier: Raw input (classified without tracker calls) or a resolved
            identifier.
        options: Validated cleanup options.
    """

    identifier: str | ResolvedIdentifier
    options: CleanupOptions = field(default_factory=CleanupOptions)


def _dry(message: str) -> str:
    return f"{DRY_RUN_PREFIX} {message}"


def _display(identifier: ResolvedIdentifier) -> str:
    if isinstance(identifier, (IssueIdentifier, PullRequestIdentifier)):
        return str(identifier.number)
    return identifier.natural_key


class CleanupWorkspaceService(BaseService[CleanupWorkspaceRequest, CleanupReport]):
    """Tear down a loom and its auxiliary resources."""

    def __init__(
        self,
        *,
        store: WorkingTreeStore,
        probe: ProcessProbe,
        settings: LoomsSettings | None = None,
        database: DatabaseManager | None = None,
        cli_isolation: CliIsolation | None = None,
        logger: Logger | None = None,
    ) -> None:
        self._store = store
        self._probe = probe
        self._settings = settings or LoomsSettings()
        self._database = database
        self._cli_isolation = cli_isolation
        self._logger = logger or Logger.default()

    def cleanup(
        self, identifier: str | ResolvedIdentifier, options: CleanupOptions | None = None
    ) -> CleanupReport:
        return self(CleanupWorkspaceRequest(identifier, options or CleanupOptions()))

    def cleanup_many(
        self, identifiers: list[str], options: CleanupOptions | None = None
    ) -> list[CleanupReport]:
        """Clean up several looms, reporting aborted ones as failed reports."""
        reports: list[CleanupReport] = []
        for raw in identifiers:
            try:
                reports.append(self.cleanup(raw, options))
            except LoomsError as exc:
                reports.append(CleanupReport(identifier=raw.strip(), errors=[exc]))
        return reports

    def cleanup_issue(
        self, number: int, options: CleanupOptions | None = None
    ) -> list[CleanupReport]:
        """Clean up every local branch that looks like work on issue ``number``.

        Each matching branch gets its own report. A branch checked out in a
        worktree gets the full teardown; a branch-only match gets just the
        branch stage. Branches are always deleted in this mode, and an unmerged
        branch is skipped with a warning instead of failing the report.
        Protected branches never match.
        """
        options = (options or CleanupOptions()).model_copy(update={"delete_branch": True})
        branches = self._store.find_branches_for_issue(
            number, exclude=self._settings.protected_branch_set()
        )
        if not branches:
            self._logger.warning(f"No branches found for issue #{number}")
            return []
        self._logger.info(
            f"Found {len(branches)} branch(es) for issue #{number}: {', '.join(branches)}"
        )
        reports: list[CleanupReport] = []
        for branch in branches:
            try:
                tree = self._store.find_by_branch(branch)
                if tree is None:
                    reports.append(self._branch_only(branch, options))
                    continue
                identifier = self._identifier_for(tree)
                reports.append(
                    self._teardown(
                        identifier, tree, _display(identifier), options, skip_unmerged=True
                    )
                )
            except LoomsError as exc:
                reports.append(CleanupReport(identifier=branch, branch_name=branch, errors=[exc]))
        return reports

    def cleanup_all(self, options: CleanupOptions | None = None) -> list[CleanupReport]:
        """Clean up every loom of the repository, never the main worktree."""
        options = options or CleanupOptions()
        reports: list[CleanupReport] = []
        for tree in self._store.list():
            if tree.bare or self._store.is_main_worktree(tree):
                self._logger.debug(f"Skipping main worktree: {tree.path}")
                continue
            identifier = self._identifier_for(tree)
            display = _display(identifier)
            try:
                reports.append(self._teardown(identifier, tree, display, options))
            except LoomsError as exc:
                reports.append(
                    CleanupReport(identifier=display, branch_name=tree.branch, errors=[exc])
                )
        return reports

    def _run(self, request: CleanupWorkspaceRequest) -> CleanupReport:
        identifier = self._classify(request.identifier)
        display = _display(identifier)
        tree = self._locate(identifier)
        if tree is None:
            raise WorktreeNotFoundError(display)
        return self._teardown(identifier, tree, display, request.options)

    def _teardown(
        self,
        identifier: ResolvedIdentifier,
        tree: WorkingTree,
        display: str,
        options: CleanupOptions,
        *,
        skip_unmerged: bool = False,
    ) -> CleanupReport:
        self._logger.info(f"Starting cleanup for: {display}")
        self._logger.debug(f"Found worktree: {tree.path} ({tree.branch})")

        safety = self.check_safety(tree, display, force=options.force)
        if not safety.is_safe:
            raise SafetyBlockedError(safety.blockers)
        for warning in safety.warnings:
            self._logger.warning(warning)

        database_cleanup = self._database_cleanup_wanted(tree, options)

        report = CleanupReport(identifier=display, branch_name=tree.branch)
        self._dev_server_stage(report, identifier, options)
        self._worktree_stage(report, tree, options)
        if options.delete_branch:
            self._branch_stage(report, tree, options, skip_unmerged=skip_unmerged)
        if self._database is not None and database_cleanup is not None:
            self._database_stage(report, tree, options, self._database, database_cleanup)
        if self._cli_isolation is not None:
            self._cli_stage(report, identifier, tree, options, self._cli_isolation)

        if report.success:
            self._logger.success(f"Cleanup complete for: {display}")
        else:
            self._logger.warning(f"Cleanup finished with {len(report.errors)} error(s): {display}")
        return report

    def _branch_only(self, branch: str, options: CleanupOptions) -> CleanupReport:
        self._logger.info(f"Processing branch without worktree: {branch}")
        report = CleanupReport(identifier=branch, branch_name=branch)
        self._delete_branch(report, branch, options, skip_unmerged=True)
        return report

    @staticmethod
    def _classify(raw: str | ResolvedIdentifier) -> ResolvedIdentifier:
        identifier = IdentifierResolver.classify_local(raw) if isinstance(raw, str) else raw
        if isinstance(identifier, DescriptionIdentifier):
            raise InputError("Cannot clean up a description; use its issue number")
        return identifier

    @staticmethod
    def _identifier_for(tree: WorkingTree) -> ResolvedIdentifier:
        """Recover the identifier a loom was created for from its branch and path."""
        pr_match = PR_DIRECTORY.search(tree.path.name)
        if pr_match:
            return PullRequestIdentifier(int(pr_match.group(1)))
        try:
            return IdentifierResolver.classify_local(tree.branch)
        except InputError:
            return BranchIdentifier(paths.sanitize_branch_name(tree.path.name))

    def _locate(self, identifier: ResolvedIdentifier) -> WorkingTree | None:
        if isinstance(identifier, IssueIdentifier):
            return self._store.find_by_issue_number(identifier.number)
        if isinstance(identifier, PullRequestIdentifier):
            return self._store.find_by_pr_number(identifier.number)
        if isinstance(identifier, BranchIdentifier):
            return self._store.find_by_branch(identifier.name)
        return None

    def check_safety(self, tree: WorkingTree, display: str, *, force: bool = False) -> SafetyCheck:
        """Collect blockers and warnings for removing ``tree``.

        The main worktree and protected branches always block. Uncommitted
        changes block unless ``force`` is set.
        """
        safety = SafetyCheck()
        if self._store.is_main_worktree(tree):
            safety.blockers.append(
                f'Cannot cleanup main worktree: "{tree.branch}" @ "{tree.path}"'
            )
        if tree.branch in self._settings.protected_branch_set():
            safety.blockers.append(f'Cannot cleanup protected branch: "{tree.branch}"')
        if not force and self._store.has_uncommitted_changes(tree.path):
            safety.blockers.append(
                "Worktree has uncommitted changes.\n\n"
                "Please resolve before cleanup:\n"
                f"  - Commit changes: cd {tree.path} && git commit -am \"message\"\n"
                f"  - Stash changes: cd {tree.path} && git stash\n"
                f"  - Force cleanup of {display} (discards the changes)"
            )
        if tree.locked:
            reason = f": {tree.lock_reason}" if tree.lock_reason else ""
            safety.warnings.append(f"Worktree is locked{reason}")
        if tree.detached:
            safety.warnings.append(f"Worktree at {tree.path} has a detached HEAD")
        return safety

    def _database_cleanup_wanted(self, tree: WorkingTree, options: CleanupOptions) -> bool | None:
        """Read database config from the loom's env file before it is deleted.

        Returns ``None`` when the database stage does not run at all.
        """
        if self._database is None or options.keep_database:
            return None
        env_file = env_file_path(tree.path)
        try:
            return self._database.should_use_branching(env_file)
        except Exception as exc:
            self._logger.warning(
                f"Failed to read database config from {env_file}, skipping database cleanup: {exc}"
            )
            return False

    def _fail(
        self,
        report: CleanupReport,
        operation_type: OperationType,
        message: str,
        error: Exception,
        *,
        dry_run: bool = False,
    ) -> None:
        detail = error.message if isinstance(error, LoomsError) else str(error)
        self._logger.warning(f"{message}: {detail}")
        if dry_run:
            message = _dry(message)
        report.record(OperationResult(operation_type, False, message, detail), error)

    def _dev_server_stage(
        self, report: CleanupReport, identifier: ResolvedIdentifier, options: CleanupOptions
    ) -> None:
        try:
            port = paths.allocate_port(identifier, self._settings.base_port)
            info = self._probe.detect(port)
            if info is None:
                message = f"No dev server running on port {port}"
            elif not info.is_dev_server:
                self._logger.warning(
                    f"Process on port {port} ({info.name}) doesn't appear to be "
                    "a dev server, skipping"
                )
                message = f"Process on port {port} is not a dev server (skipped)"
            elif options.dry_run:
                message = f"Would terminate dev server on port {port} (PID {info.pid})"
            else:
                self._logger.info(f"Terminating dev server: {info.name} (PID: {info.pid})")
                self._probe.terminate(info.pid)
                if not self._probe.verify_free(port):
                    raise ExternalError(f"Dev server may still be running on port {port}")
                message = f"Dev server on port {port} terminated"
        except Exception as exc:
            self._fail(
                report, "dev-server", "Failed to terminate dev server", exc, dry_run=options.dry_run
            )
            return
        if options.dry_run:
            message = _dry(message)
        report.record(OperationResult("dev-server", True, message))

    def _worktree_stage(
        self, report: CleanupReport, tree: WorkingTree, options: CleanupOptions
    ) -> None:
        try:
            message = self._store.remove(
                tree.path,
                force=options.force,
                remove_directory=True,
                dry_run=options.dry_run,
            )
        except Exception as exc:
            self._fail(
                report, "worktree", "Failed to remove worktree", exc, dry_run=options.dry_run
            )
            return
        if options.dry_run:
            message = _dry(message)
        report.record(OperationResult("worktree", True, message))

    def _branch_stage(
        self,
        report: CleanupReport,
        tree: WorkingTree,
        options: CleanupOptions,
        *,
        skip_unmerged: bool = False,
    ) -> None:
        if tree.detached or tree.bare:
            message = f"No branch to delete for {tree.path}"
            report.record(
                OperationResult("branch", True, _dry(message) if options.dry_run else message)
            )
            return
        self._delete_branch(report, tree.branch, options, skip_unmerged=skip_unmerged)

    def _delete_branch(
        self,
        report: CleanupReport,
        branch: str,
        options: CleanupOptions,
        *,
        skip_unmerged: bool = False,
    ) -> None:
        try:
            if branch in self._settings.protected_branch_set():
                raise ProtectedBranchError(branch)
            message = self._store.delete_branch(
                branch, force=options.force, dry_run=options.dry_run
            )
        except UnmergedBranchError as exc:
            if not skip_unmerged:
                self._fail(
                    report, "branch", "Failed to delete branch", exc, dry_run=options.dry_run
                )
                return
            self._logger.warning(
                f"Branch {branch} not fully merged, skipping deletion. Use force to delete anyway"
            )
            message = f"Branch not fully merged, deletion skipped: {branch}"
        except Exception as exc:
            self._fail(
                report, "branch", "Failed to delete branch", exc, dry_run=options.dry_run
            )
            return
        if options.dry_run:
            message = _dry(message)
        report.record(OperationResult("branch", True, message))

    def _database_stage(
        self,
        report: CleanupReport,
        tree: WorkingTree,
        options: CleanupOptions,
        database: DatabaseManager,
        should_cleanup: bool,
    ) -> None:
        branch = tree.branch
        if not should_cleanup:
            message = "Database cleanup skipped (not configured)"
            report.record(
                OperationResult("database", True, _dry(message) if options.dry_run else message)
            )
            return
        if options.dry_run:
            report.record(
                OperationResult("database", True, _dry(f"Would delete database branch: {branch}"))
            )
            return
        try:
            result = database.delete_branch_if_configured(
                branch, should_cleanup=True, force=options.force
            )
        except Exception as exc:
            self._fail(report, "database", "Database cleanup failed", exc)
            return
        if result.deleted:
            report.record(OperationResult("database", True, "Database branch deleted"))
        elif result.user_declined:
            report.record(
                OperationResult("database", True, "Database cleanup skipped (user declined)")
            )
        elif result.not_found:
            report.record(
                OperationResult("database", True, "No database branch found (skipped)")
            )
        elif not result.success:
            self._fail(
                report,
                "database",
                "Database cleanup failed",
                ExternalError(result.error or "Unknown error"),
            )
        else:
            self._fail(
                report,
                "database",
                "Database cleanup failed",
                ExternalError("Database cleanup in an unknown state"),
            )

    def _cli_stage(
        self,
        report: CleanupReport,
        identifier: ResolvedIdentifier,
        tree: WorkingTree,
        options: CleanupOptions,
        cli_isolation: CliIsolation,
    ) -> None:
        suffix = symlink_suffix(identifier)
        if options.dry_run:
            message = f"Would clean up CLI symlinks for: {suffix}"
            report.record(OperationResult("cli-symlinks", True, _dry(message)))
            return
        try:
            removed = cli_isolation.cleanup(identifier, tree.path)
        except Exception as exc:
            self._logger.warning(f"CLI symlink cleanup failed: {exc}")
            report.record(
                OperationResult(
                    "cli-symlinks", False, "CLI symlink cleanup failed (non-fatal)", str(exc)
                )
            )
            return
        if removed:
            message = f"CLI symlinks removed: {len(removed)}"
        else:
            message = "No CLI symlinks to clean up"
        report.record(OperationResult("cli-symlinks", True, message))
