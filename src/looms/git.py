"""Git helper functions used by looms.

All helpers run through ``looms.exec`` so callers can inject a command runner
and a timeout. A missing ``git`` executable raises ``CommandFailedError``.
"""

from pathlib import Path

from . import exec as exec_util
from .models import WorkingTree
from .services.errors import CommandFailedError

HEADS_PREFIX = "refs/heads/"
BARE_BRANCH = "main"
DETACHED_BRANCH = "HEAD"
UNKNOWN_BRANCH = "unknown"


def git_command(args: list[str], *, git_path: str | None = None) -> list[str]:
    """Build a git command using an optional executable path.

    Example:
        >>> git_command(["status"], git_path="/usr/bin/git")
        ['/usr/bin/git', 'status']
    """
    resolved = git_path.strip() if isinstance(git_path, str) else ""
    if not resolved:
        resolved = "git"
    return [resolved, *args]


def git_request(
    repo_dir: Path,
    args: list[str],
    *,
    git_path: str | None = None,
    timeout_seconds: float | None = None,
) -> exec_util.CommandRequest:
    return exec_util.CommandRequest(
        argv=tuple(git_command(["-C", str(repo_dir), *args], git_path=git_path)),
        timeout_seconds=timeout_seconds,
    )


def run_git(
    repo_dir: Path,
    args: list[str],
    *,
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
    timeout_seconds: float | None = None,
) -> exec_util.CommandResult:
    """Run git and raise ``CommandFailedError`` on a non-zero exit."""
    request = git_request(repo_dir, args, git_path=git_path, timeout_seconds=timeout_seconds)
    return exec_util.run_checked(request, runner=runner)


def capture_git(
    repo_dir: Path,
    args: list[str],
    *,
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
    timeout_seconds: float | None = None,
) -> exec_util.CommandResult:
    """Run git and return the result regardless of exit status."""
    request = git_request(repo_dir, args, git_path=git_path, timeout_seconds=timeout_seconds)
    result = exec_util.try_run(request, runner=runner)
    if result is None:
        raise CommandFailedError("missing required command: git", argv=request.argv)
    return result


def parse_worktree_list(output: str) -> list[WorkingTree]:
    """Parse ``git worktree list --porcelain`` output.

    Args:
        output: Porcelain output.

    Returns:
        Working trees in listing order; the main checkout comes first.

    Example:
        >>> trees = parse_worktree_list("worktree /r\\nHEAD abc\\nbranch refs/heads/main\\n")
        >>> (str(trees[0].path), trees[0].branch, trees[0].commit)
        ('/r', 'main', 'abc')
    """
    trees: list[WorkingTree] = []
    path: str | None = None
    fields: dict[str, object] = {}

    def flush() -> None:
        if path is None:
            return
        trees.append(
            WorkingTree(
                path=Path(path),
                branch=str(fields.get("branch", "")),
                commit=str(fields.get("commit", "")),
                bare=bool(fields.get("bare", False)),
                detached=bool(fields.get("detached", False)),
                locked=bool(fields.get("locked", False)),
                lock_reason=fields.get("lock_reason"),  # type: ignore[arg-type]
            )
        )

    for raw_line in output.splitlines():
        line = raw_line.strip()
        if line.startswith("worktree "):
            flush()
            path = line[len("worktree ") :].strip()
            fields = {}
            continue
        if path is None or not line:
            continue
        if line == "bare":
            fields["bare"] = True
            fields["branch"] = BARE_BRANCH
        elif line == "detached":
            fields["detached"] = True
            fields["branch"] = DETACHED_BRANCH
        elif line == "locked" or line.startswith("locked "):
            fields["locked"] = True
            reason = line[len("locked") :].strip()
            if reason:
                fields["lock_reason"] = reason
            fields["branch"] = fields.get("branch") or UNKNOWN_BRANCH
        elif line.startswith("HEAD "):
            fields["commit"] = line[len("HEAD ") :].strip()
        elif line.startswith("branch "):
            ref = line[len("branch ") :].strip()
            if ref.startswith(HEADS_PREFIX):
                ref = ref[len(HEADS_PREFIX) :]
            fields["branch"] = ref
    flush()
    return trees


def git_worktree_list(
    repo_dir: Path,
    *,
    verbose: bool = False,
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
    timeout_seconds: float | None = None,
) -> list[WorkingTree]:
    """List registered worktrees for a repository."""
    args = ["worktree", "list", "--porcelain"]
    if verbose:
        args.append("-v")
    result = run_git(
        repo_dir, args, git_path=git_path, runner=runner, timeout_seconds=timeout_seconds
    )
    return parse_worktree_list(result.stdout)


def git_repo_root(
    start: Path,
    *,
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
) -> Path | None:
    """Return the git repository root for a starting path.

    Returns:
        Repo root path or ``None`` if not inside a git repository.
    """
    result = capture_git(start, ["rev-parse", "--show-toplevel"], git_path=git_path, runner=runner)
    if result.returncode != 0:
        return None
    resolved = result.stdout.strip()
    if not resolved:
        return None
    return Path(resolved)


def git_ref_exists(
    repo_dir: Path,
    ref: str,
    *,
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
    timeout_seconds: float | None = None,
) -> bool:
    """Check whether a git ref exists.

    Args:
        repo_dir: Git repository directory.
        ref: Ref name (e.g., ``refs/heads/main``).
    """
    result = capture_git(
        repo_dir,
        ["show-ref", "--verify", "--quiet", ref],
        git_path=git_path,
        runner=runner,
        timeout_seconds=timeout_seconds,
    )
    return result.returncode == 0

def git_status_porcelain(
    repo_dir: Path,
    *,
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
    timeout_seconds: float | None = None,
) -> list[str]:
    """Return porcelain status lines for the working tree."""
    result = run_git(
        repo_dir,
        ["status", "--porcelain"],
        git_path=git_path,
        runner=runner,
        timeout_seconds=timeout_seconds,
    )
    return [line for line in result.stdout.splitlines() if line.strip()]
