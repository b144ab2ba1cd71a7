"""Loom failure contracts.

Operations return typed outcomes on success and raise ``LoomsError`` on
expected input, lookup, conflict, or collaborator failures. Programmer bugs
raise normal exceptions. Partial failure during teardown is never raised; it
is reported structurally through ``CleanupReport``.
"""

from __future__ import annotations

from typing import Literal

LoomsErrorCode = Literal[
    "input_invalid",
    "not_found",
    "conflict",
    "external_failed",
    "timed_out",
]


class LoomsError(Exception):
    """Expected loom failure.

    Use ``raise LoomsError(...) from exc`` to chain a causing exception; it is
    available as ``__cause__``. Front ends catch ``LoomsError`` and render
    ``message`` plus the optional ``recovery_hint``.
    """

    def __init__(
        self,
        code: LoomsErrorCode,
        message: str,
        *,
        recovery_hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.recovery_hint = recovery_hint


class InputError(LoomsError):
    """Malformed or empty input. User-fixable, not retryable."""

    def __init__(self, message: str, *, recovery_hint: str | None = None) -> None:
        super().__init__("input_invalid", message, recovery_hint=recovery_hint)


class NotFoundError(LoomsError):
    """No matching resource exists."""

    def __init__(self, message: str, *, recovery_hint: str | None = None) -> None:
        super().__init__("not_found", message, recovery_hint=recovery_hint)


class ConflictError(LoomsError):
    """Existing state blocks the operation until forced or resolved."""

    def __init__(self, message: str, *, recovery_hint: str | None = None) -> None:
        super().__init__("conflict", message, recovery_hint=recovery_hint)


class ExternalError(LoomsError):
    """A collaborator (git, process tools, providers) failed."""

    def __init__(
        self,
        message: str,
        *,
        recovery_hint: str | None = None,
        code: LoomsErrorCode = "external_failed",
    ) -> None:
        super().__init__(code, message, recovery_hint=recovery_hint)


class EmptyInputError(InputError):
    def __init__(self) -> None:
        super().__init__("Missing required argument: identifier")


class InvalidBranchNameError(InputError):
    def __init__(self, name: str) -> None:
        super().__init__(
            f"Invalid branch name {name!r}. "
            "Use only letters, numbers, hyphens, underscores, and slashes",
        )
        self.name = name


class MissingBranchError(InputError):
    def __init__(self) -> None:
        super().__init__("Branch name is required")


class PortOverflowError(InputError):
    def __init__(self, port: int, base_port: int) -> None:
        super().__init__(
            f"Calculated port {port} exceeds maximum (65535)",
            recovery_hint=f"Use a lower base port (current: {base_port}) or number.",
        )
        self.port = port


class SettingsError(InputError):
    """Settings files could not be parsed or validated."""


class IdentifierNotFoundError(NotFoundError):
    def __init__(self, number: int) -> None:
        super().__init__(f"Could not find issue or PR #{number}")
        self.number = number


class WorktreeNotFoundError(NotFoundError):
    def __init__(self, target: str) -> None:
        super().__init__(f"No worktree found for: {target}")
        self.target = target


class PathExistsError(ConflictError):
    def __init__(self, path: str) -> None:
        super().__init__(
            f"Path already exists: {path}",
            recovery_hint="Remove the directory or retry with force.",
        )
        self.path = path


class BranchExistsError(ConflictError):
    def __init__(self, branch: str) -> None:
        super().__init__(
            f"Cannot create worktree: branch {branch!r} already exists",
            recovery_hint=f"Use 'git branch -D {branch}' to delete it first if needed.",
        )
        self.branch = branch


class UncommittedChangesError(ConflictError):
    def __init__(self, path: str) -> None:
        super().__init__(
            f"Worktree has uncommitted changes: {path}",
            recovery_hint="Commit or stash the changes, or retry with force.",
        )
        self.path = path


class WorktreeLockedError(ConflictError):
    def __init__(self, path: str, reason: str | None = None) -> None:
        detail = f" ({reason})" if reason else ""
        super().__init__(
            f"Worktree is locked{detail}: {path}",
            recovery_hint=f"Run 'git worktree unlock {path}' or retry with force.",
        )
        self.path = path
        self.reason = reason


class ProtectedBranchError(ConflictError):
    def __init__(self, branch: str) -> None:
        super().__init__(f"Cannot delete protected branch: {branch}")
        self.branch = branch


class UnmergedBranchError(ConflictError):
    def __init__(self, branch: str) -> None:
        super().__init__(
            f"Cannot delete unmerged branch {branch!r}",
            recovery_hint="Retry with force to delete anyway.",
        )
        self.branch = branch


class SafetyBlockedError(ConflictError):
    """Cleanup safety check found blockers."""

    def __init__(self, blockers: list[str]) -> None:
        joined = "\n\n".join(blockers)
        super().__init__(f"Cannot cleanup:\n\n{joined}")
        self.blockers = list(blockers)


class CommandFailedError(ExternalError):
    """An external command exited non-zero or was missing."""

    def __init__(
        self,
        message: str,
        *,
        argv: tuple[str, ...] = (),
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr


class CommandTimeoutError(ExternalError):
    """An external command exceeded its caller-specified timeout."""

    def __init__(self, argv: tuple[str, ...], timeout_seconds: float | None) -> None:
        command_text = " ".join(argv)
        super().__init__(
            f"command timed out after {timeout_seconds}s: {command_text}",
            code="timed_out",
        )
        self.argv = argv
        self.timeout_seconds = timeout_seconds


class ProcessTerminationError(ExternalError):
    def __init__(self, pid: int, detail: str) -> None:
        super().__init__(f"Failed to terminate process {pid}: {detail}")
        self.pid = pid


class ProvisioningError(ExternalError):
    """A creation-pipeline provisioning stage failed.

    The worktree created before the failing stage is left on disk.
    """

    def __init__(self, stage: str, detail: str, *, worktree_path: str | None = None) -> None:
        hint = None
        if worktree_path:
            hint = f"The worktree at {worktree_path} was kept; clean it up or retry."
        super().__init__(f"Provisioning stage {stage!r} failed: {detail}", recovery_hint=hint)
        self.stage = stage
        self.worktree_path = worktree_path
