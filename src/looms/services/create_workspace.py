"""Loom creation pipeline.

Resolve the identifier, reuse an existing worktree when one matches, and
otherwise create a worktree and provision it in a fixed order: environment,
database, capabilities, CLI isolation, launch. A failing stage raises
``ProvisioningError``; the created worktree is left on disk.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator

from .. import paths
from ..capabilities import ProjectCapabilities, detect_capabilities
from ..cli_isolation import CliIsolation
from ..database import DatabaseManager
from ..environment import PORT_VAR, env_file_path
from ..identifiers import IdentifierResolver
from ..log import Logger
from ..models import (
    BranchIdentifier,
    CreateOptions,
    DescriptionIdentifier,
    GithubData,
    IssueIdentifier,
    LoomsSettings,
    PullRequestIdentifier,
    ResolvedIdentifier,
    WorkingTree,
    WorkspaceRecord,
    describe_identifier,
    identifier_id,
)
from ..ports import EnvironmentWriter, IssueTracker, Launcher
from ..worktrees import WorkingTreeStore
from .base import BaseService
from .errors import BranchExistsError, ExternalError, LoomsError, ProvisioningError

CapabilityDetector = Callable[[Path], ProjectCapabilities]


@dataclass(frozen=True)
class CreateWorkspaceRequest:
    """Input contract for loom creation.

    Attributes:
        identifier: Raw user input or an already resolved identifier.
        options: Validated creation options.
    """

    identifier: str | ResolvedIdentifier
    options: CreateOptions = field(default_factory=CreateOptions)


@dataclass(frozen=True)
class _Target:
    identifier: ResolvedIdentifier
    github_data: GithubData | None


class CreateWorkspaceService(BaseService[CreateWorkspaceRequest, WorkspaceRecord]):
    """Create or reuse a loom for an issue, pull request, or branch."""

    def __init__(
        self,
        *,
        resolver: IdentifierResolver,
        tracker: IssueTracker,
        store: WorkingTreeStore,
        environment: EnvironmentWriter,
        settings: LoomsSettings | None = None,
        database: DatabaseManager | None = None,
        cli_isolation: CliIsolation | None = None,
        launcher: Launcher | None = None,
        capability_detector: CapabilityDetector = detect_capabilities,
        logger: Logger | None = None,
    ) -> None:
        self._resolver = resolver
        self._tracker = tracker
        self._store = store
        self._environment = environment
        self._settings = settings or LoomsSettings()
        self._database = database
        self._cli_isolation = cli_isolation
        self._launcher = launcher
        self._detect_capabilities = capability_detector
        self._logger = logger or Logger.default()

    def create(
        self, identifier: str | ResolvedIdentifier, options: CreateOptions | None = None
    ) -> WorkspaceRecord:
        return self(CreateWorkspaceRequest(identifier, options or CreateOptions()))

    def _handle_failure(self, error: LoomsError) -> WorkspaceRecord:
        self._logger.error(error.message)
        if error.recovery_hint:
            self._logger.info(error.recovery_hint)
        raise error

    def _run(self, request: CreateWorkspaceRequest) -> WorkspaceRecord:
        target = self._resolve_target(request.identifier, request.options)
        identifier = target.identifier

        existing = self._find_existing(identifier, target.github_data)
        if existing is not None:
            self._logger.success(f"Found existing worktree, reusing: {existing.path}")
            return self._reused_record(existing, target)

        branch = self._branch_name(identifier, target.github_data)
        location = paths.allocate_location(
            identifier,
            self._store.repo_root,
            prefix=self._settings.worktree_prefix,
            branch_name=branch,
            base_port=self._settings.base_port,
        )
        worktree = self._create_worktree(identifier, branch, location.path, request.options)
        return self._provision(target, branch, worktree, location.port, request.options)

    def _resolve_target(
        self, raw: str | ResolvedIdentifier, options: CreateOptions
    ) -> _Target:
        identifier = self._resolver.resolve(raw) if isinstance(raw, str) else raw
        if isinstance(identifier, DescriptionIdentifier):
            identifier = self._resolver.promote_description(identifier, options.issue_body)
        return _Target(identifier=identifier, github_data=self._fetch_metadata(identifier))

    def _fetch_metadata(self, identifier: ResolvedIdentifier) -> GithubData | None:
        if isinstance(identifier, IssueIdentifier):
            fetch = getattr(self._tracker, "fetch_issue", None)
        elif isinstance(identifier, PullRequestIdentifier):
            fetch = getattr(self._tracker, "fetch_pr", None)
        else:
            return None
        if fetch is None:
            return None
        label = describe_identifier(identifier)
        self._logger.debug(f"Fetching metadata for {label}")
        try:
            return fetch(identifier.number)
        except LoomsError:
            raise
        except Exception as exc:
            raise ExternalError(f"Failed to fetch {label}: {exc}") from exc

    def _find_existing(
        self, identifier: ResolvedIdentifier, github_data: GithubData | None
    ) -> WorkingTree | None:
        if isinstance(identifier, IssueIdentifier):
            return self._store.find_by_issue_number(identifier.number)
        if isinstance(identifier, PullRequestIdentifier):
            branch = github_data.branch if github_data else None
            return self._store.find_by_pr_number(identifier.number, branch)
        if isinstance(identifier, BranchIdentifier):
            return self._store.find_by_branch(identifier.name)
        return None

    def _reused_record(self, tree: WorkingTree, target: _Target) -> WorkspaceRecord:
        port = self._existing_port(tree.path)
        if port is None:
            port = paths.allocate_port(target.identifier, self._settings.base_port)
        capabilities = self._detect_capabilities(tree.path)
        return WorkspaceRecord(
            id=identifier_id(target.identifier),
            path=tree.path,
            branch=tree.branch,
            identifier=target.identifier,
            port=port,
            capabilities=capabilities.capabilities,
            github_data=target.github_data,
            reused=True,
        )

    def _existing_port(self, worktree: Path) -> int | None:
        value = self._environment.read(env_file_path(worktree)).get(PORT_VAR)
        if value is None or not value.strip().isdigit():
            return None
        return int(value.strip())

    def _branch_name(self, identifier: ResolvedIdentifier, github_data: GithubData | None) -> str:
        if isinstance(identifier, BranchIdentifier):
            return identifier.name
        if isinstance(identifier, PullRequestIdentifier):
            if github_data and github_data.branch:
                return github_data.branch
            return f"pr-{identifier.number}"
        if isinstance(identifier, IssueIdentifier):
            namer = getattr(self._tracker, "branch_name_for_issue", None)
            if namer is not None:
                title = github_data.title if github_data else None
                named = namer(identifier.number, title)
                if named:
                    return named
            return f"issue-{identifier.number}"
        raise TypeError(f"unsupported identifier: {identifier!r}")

    def _create_worktree(
        self,
        identifier: ResolvedIdentifier,
        branch: str,
        path: Path,
        options: CreateOptions,
    ) -> Path:
        is_pr = isinstance(identifier, PullRequestIdentifier)
        if is_pr:
            self._logger.info("Fetching remote branches...")
            self._store.fetch()
        elif self._store.branch_exists(branch):
            raise BranchExistsError(branch)
        self._logger.info(f"Creating worktree at {path}")
        return self._store.create(
            branch,
            path,
            create_branch=not is_pr,
            base_branch=options.base_branch,
        )

    def _provision(
        self,
        target: _Target,
        branch: str,
        worktree: Path,
        port: int,
        options: CreateOptions,
    ) -> WorkspaceRecord:
        env_file = env_file_path(worktree)

        with _stage("environment", worktree):
            main_path = self._store.main_worktree_path()
            for name in self._settings.copy_env_files:
                self._environment.copy_if_missing(main_path / name, worktree / name)
            self._environment.set_port(env_file, port)

        database_branch: str | None = None
        if self._database is not None and not options.skip_database:
            with _stage("database", worktree):
                if self._database.create_branch_if_configured(branch, env_file):
                    database_branch = branch

        with _stage("capabilities", worktree):
            detected = self._detect_capabilities(worktree)

        cli_symlinks: tuple[str, ...] = ()
        if "cli" in detected.capabilities and self._cli_isolation is not None:
            try:
                cli_symlinks = tuple(
                    self._cli_isolation.setup(worktree, target.identifier, detected.bin_entries)
                )
            except Exception as exc:
                self._logger.warning(f"Failed to set up CLI isolation: {exc}")

        record = WorkspaceRecord(
            id=identifier_id(target.identifier),
            path=worktree,
            branch=branch,
            identifier=target.identifier,
            port=port,
            capabilities=detected.capabilities,
            github_data=target.github_data,
            database_branch=database_branch,
            cli_symlinks=cli_symlinks,
        )

        if self._launcher is not None and _wants_launch(options):
            with _stage("launch", worktree):
                self._launcher.launch(record, options)

        self._logger.success(f"Created loom {record.id} at {worktree}")
        return record


def _wants_launch(options: CreateOptions) -> bool:
    if not options.launch:
        return False
    return (
        options.enable_claude
        or options.enable_code
        or options.enable_dev_server
        or options.enable_terminal
    )


@contextmanager
def _stage(name: str, worktree: Path) -> Iterator[None]:
    """Map any failure inside a provisioning stage to ``ProvisioningError``."""
    try:
        yield
    except ProvisioningError:
        raise
    except Exception as exc:
        detail = exc.message if isinstance(exc, LoomsError) else str(exc)
        raise ProvisioningError(name, detail, worktree_path=str(worktree)) from exc
