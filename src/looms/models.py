"""Data models for looms: identifiers, worktrees, options, and reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

DESCRIPTION_MIN_LENGTH = 25
DESCRIPTION_MIN_SPACES = 2

IdentifierKind = Literal["issue", "pr", "branch", "description"]
Capability = Literal["cli", "web"]
OperationType = Literal["dev-server", "worktree", "branch", "database", "cli-symlinks"]
IssueClassification = Literal["issue", "pr", "unknown"]


def looks_like_description(text: str) -> bool:
    """Return whether text is long and wordy enough to be a task description.

    Example:
        >>> looks_like_description("add dark mode toggle to the settings page")
        True
        >>> looks_like_description("feat/dark-mode")
        False
    """
    return len(text) > DESCRIPTION_MIN_LENGTH and text.count(" ") > DESCRIPTION_MIN_SPACES


@dataclass(frozen=True)
class IssueIdentifier:
    number: int
    kind: Literal["issue"] = field(default="issue", init=False)

    @property
    def natural_key(self) -> str:
        return str(self.number)


@dataclass(frozen=True)
class PullRequestIdentifier:
    number: int
    kind: Literal["pr"] = field(default="pr", init=False)

    @property
    def natural_key(self) -> str:
        return str(self.number)


@dataclass(frozen=True)
class BranchIdentifier:
    name: str
    kind: Literal["branch"] = field(default="branch", init=False)

    @property
    def natural_key(self) -> str:
        return self.name


@dataclass(frozen=True)
class DescriptionIdentifier:
    """Free-text task description awaiting issue creation."""

    text: str
    kind: Literal["description"] = field(default="description", init=False)

    def __post_init__(self) -> None:
        if not looks_like_description(self.text):
            raise ValueError(
                "description must be longer than "
                f"{DESCRIPTION_MIN_LENGTH} characters with more than "
                f"{DESCRIPTION_MIN_SPACES} spaces"
            )

    @property
    def natural_key(self) -> str:
        return self.text


ResolvedIdentifier = Union[
    IssueIdentifier, PullRequestIdentifier, BranchIdentifier, DescriptionIdentifier
]
NumberedIdentifier = Union[IssueIdentifier, PullRequestIdentifier]


@dataclass(frozen=True)
class WorkingTree:
    """A git worktree bound to one branch.

    Attributes:
        path: Absolute worktree path.
        branch: Branch name (``HEAD`` when detached).
        commit: Head commit id.
        bare: Whether this is the bare repository entry.
        detached: Whether HEAD is detached.
        locked: Whether the worktree is locked.
        lock_reason: Optional lock reason.
    """

    path: Path
    branch: str
    commit: str = ""
    bare: bool = False
    detached: bool = False
    locked: bool = False
    lock_reason: str | None = None


@dataclass(frozen=True)
class AllocatedLocation:
    path: Path
    port: int


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    name: str
    command: str
    port: int
    is_dev_server: bool


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one teardown stage."""

    type: OperationType
    success: bool
    message: str
    error: str | None = None


@dataclass
class SafetyCheck:
    warnings: list[str] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)

    @property
    def is_safe(self) -> bool:
        return not self.blockers


@dataclass
class CleanupReport:
    """Aggregated teardown outcome.

    ``operations`` preserves execution order and holds each stage type at most
    once. ``success`` is true exactly when no stage recorded an error.
    """

    identifier: str
    branch_name: str | None = None
    operations: list[OperationResult] = field(default_factory=list)
    errors: list[Exception] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def record(self, operation: OperationResult, error: Exception | None = None) -> None:
        """Append a stage outcome, optionally with the error it raised."""
        if any(existing.type == operation.type for existing in self.operations):
            raise ValueError(f"operation {operation.type!r} already recorded")
        self.operations.append(operation)
        if error is not None:
            self.errors.append(error)

    def operation(self, operation_type: OperationType) -> OperationResult | None:
        for item in self.operations:
            if item.type == operation_type:
                return item
        return None


@dataclass(frozen=True)
class GithubData:
    title: str | None = None
    body: str | None = None
    url: str | None = None
    state: str | None = None
    branch: str | None = None


@dataclass(frozen=True)
class WorkspaceRecord:
    """Result of creating or reusing a loom."""

    id: str
    path: Path
    branch: str
    identifier: ResolvedIdentifier
    port: int | None = None
    capabilities: tuple[Capability, ...] = ()
    github_data: GithubData | None = None
    database_branch: str | None = None
    cli_symlinks: tuple[str, ...] = ()
    reused: bool = False


@dataclass(frozen=True)
class DatabaseDeletionResult:
    """Outcome reported by a database provider for a branch deletion."""

    success: bool
    deleted: bool = False
    not_found: bool = False
    user_declined: bool = False
    error: str | None = None
    branch_name: str | None = None


class CreateOptions(BaseModel):
    """Options for creating a loom.

    Attributes:
        base_branch: Branch to fork new branches from (default: HEAD).
        skip_database: Skip database branch provisioning.
        launch: Run the launcher once provisioning completes.
        enable_claude: Ask the launcher to start the AI assistant.
        enable_code: Ask the launcher to open the editor.
        enable_dev_server: Ask the launcher to start the dev server.
        enable_terminal: Ask the launcher to open a terminal.
        issue_body: Body used when a description is turned into an issue.
        timeout_seconds: Per-command timeout for git and process tools.

    Example:
        >>> CreateOptions(skip_database=True).skip_database
        True
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    base_branch: str | None = None
    skip_database: bool = False
    launch: bool = True
    enable_claude: bool = True
    enable_code: bool = True
    enable_dev_server: bool = True
    enable_terminal: bool = False
    issue_body: str = ""
    timeout_seconds: float | None = Field(default=None, gt=0)

    @field_validator("base_branch", mode="before")
    @classmethod
    def normalize_base_branch(cls, value: object) -> object:
        if isinstance(value, str):
            normalized = value.strip()
            return normalized or None
        return value


class CleanupOptions(BaseModel):
    """Options for tearing down a loom.

    Attributes:
        dry_run: Report what would happen without mutating anything.
        force: Skip uncommitted-change gating and confirmation prompts.
        delete_branch: Delete the branch after removing the worktree.
        keep_database: Keep the database branch.
        timeout_seconds: Per-command timeout for git and process tools.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    dry_run: bool = False
    force: bool = False
    delete_branch: bool = False
    keep_database: bool = False
    timeout_seconds: float | None = Field(default=None, gt=0)


DEFAULT_PROTECTED_BRANCHES = ("main", "master", "develop")


class LoomsSettings(BaseModel):
    """Repository-level looms settings.

    Attributes:
        worktree_prefix: Naming prefix for loom directories. ``None`` uses
            ``<repo>-looms/``.
        protected_branches: Branches that are never cleaned up or deleted.
        main_branch: Primary branch name, added to the protected set.
        base_port: Port offset for dev-server port allocation.
        database_url_env_var: Env var holding the database connection string.
        copy_env_files: Env files copied from the main checkout into new looms.

    Example:
        >>> LoomsSettings.model_validate({"basePort": 4000}).base_port
        4000
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    worktree_prefix: str | None = Field(default=None, alias="worktreePrefix")
    protected_branches: list[str] = Field(
        default_factory=lambda: list(DEFAULT_PROTECTED_BRANCHES),
        alias="protectedBranches",
    )
    main_branch: str | None = Field(default=None, alias="mainBranch")
    base_port: int = Field(default=3000, ge=1, le=65535, alias="basePort")
    database_url_env_var: str = Field(default="DATABASE_URL", alias="databaseUrlEnvVar")
    copy_env_files: list[str] = Field(default_factory=lambda: [".env"], alias="copyEnvFiles")

    @field_validator("worktree_prefix", "main_branch", mode="before")
    @classmethod
    def normalize_optional(cls, value: object) -> object:
        if value is None:
            return None
        if isinstance(value, str):
            normalized = value.strip()
            return normalized or None
        return value

    @field_validator("database_url_env_var", mode="before")
    @classmethod
    def normalize_env_var(cls, value: object) -> object:
        if isinstance(value, str):
            normalized = value.strip()
            return normalized or "DATABASE_URL"
        return value

    def protected_branch_set(self) -> set[str]:
        """Return protected branches including the configured main branch."""
        protected = {branch for branch in self.protected_branches if branch}
        if self.main_branch:
            protected.add(self.main_branch)
        return protected


def identifier_id(identifier: ResolvedIdentifier) -> str:
    """Return the stable loom id for an identifier.

    Example:
        >>> identifier_id(IssueIdentifier(42))
        'issue-42'
    """
    return f"{identifier.kind}-{identifier.natural_key}"


def describe_identifier(identifier: ResolvedIdentifier) -> str:
    """Format an identifier for display.

    Example:
        >>> describe_identifier(PullRequestIdentifier(7))
        'PR #7'
    """
    if isinstance(identifier, IssueIdentifier):
        return f"Issue #{identifier.number}"
    if isinstance(identifier, PullRequestIdentifier):
        return f"PR #{identifier.number}"
    if isinstance(identifier, BranchIdentifier):
        return f"Branch '{identifier.name}'"
    return f"Description '{identifier.text}'"
