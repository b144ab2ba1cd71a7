"""Working-tree store backed by ``git worktree``.

The store holds no cached state: every lookup re-reads the porcelain listing,
so the on-disk worktree set is always the source of truth.
"""

from __future__ import annotations

import re
import shutil
from collections.abc import Iterable
from pathlib import Path

from . import exec as exec_util
from . import git
from .environment import ENV_FILENAME
from .log import Logger
from .models import WorkingTree
from .services.errors import (
    CommandFailedError,
    MissingBranchError,
    NotFoundError,
    PathExistsError,
    UncommittedChangesError,
    UnmergedBranchError,
    WorktreeLockedError,
    WorktreeNotFoundError,
)

_UNMERGED_MARKER = "not fully merged"


def issue_branch_pattern(number: int) -> re.Pattern[str]:
    """Return the branch pattern matching a given issue number.

    The number must follow ``issue-`` at the start of the branch or after a
    ``/``, ``_`` or ``-``, and must not continue into a longer number.

    Example:
        >>> bool(issue_branch_pattern(12).search("feat/issue-12-x"))
        True
        >>> bool(issue_branch_pattern(12).search("issue-123"))
        False
    """
    return re.compile(rf"(?:^|[/_-])issue-{number}(?:-|$)")


def pr_path_pattern(number: int) -> re.Pattern[str]:
    return re.compile(rf"_pr_{number}$")


_ISSUE_PREFIXES = frozenset(
    (
        "issue issues feat feature features fix fixes bugfix hotfix pr pull test tests "
        "chore docs refactor perf style ci build revert"
    ).split()
)


def issue_branch_matches(branch: str, number: int) -> bool:
    """Return whether ``branch`` names work on issue ``number``.

    Broader than ``issue_branch_pattern``: the number may stand alone or follow
    a conventional prefix word, but never an arbitrary word or other digits.

    Example:
        >>> issue_branch_matches("fix/42-typo", 42)
        True
        >>> issue_branch_matches("release-42", 42)
        False
        >>> issue_branch_matches("issue-420", 42)
        False
    """
    match = re.search(rf"(?<!\d){number}(?!\d)", branch)
    if match is None:
        return False
    word = re.search(r"([A-Za-z]+)[-_/\s]*$", branch[: match.start()])
    return word is None or word.group(1).lower() in _ISSUE_PREFIXES


def _same_path(left: Path, right: Path) -> bool:
    return Path(left).resolve() == Path(right).resolve()


class WorkingTreeStore:
    """CRUD and discovery over the worktrees of one repository.

    Args:
        repo_root: Main repository checkout.
        runner: Optional command runner for git calls.
        git_path: Optional git executable path.
        logger: Optional logger.
        timeout_seconds: Per-command timeout.
        managed_files: Untracked files looms writes into each loom. They do not
            count as uncommitted changes.
    """

    def __init__(
        self,
        repo_root: Path,
        *,
        runner: exec_util.CommandRunner | None = None,
        git_path: str | None = None,
        logger: Logger | None = None,
        timeout_seconds: float | None = None,
        managed_files: Iterable[str] = (ENV_FILENAME,),
    ) -> None:
        self.repo_root = Path(repo_root)
        self.managed_files = frozenset(managed_files)
        self._runner = runner
        self._git_path = git_path
        self._logger = logger or Logger.default()
        self._timeout = timeout_seconds

    def _git(self, args: list[str], *, cwd: Path | None = None) -> exec_util.CommandResult:
        return git.run_git(
            cwd or self.repo_root,
            args,
            git_path=self._git_path,
            runner=self._runner,
            timeout_seconds=self._timeout,
        )

    def list(self, *, verbose: bool = False) -> list[WorkingTree]:
        """Return the registered worktrees, main checkout first."""
        return git.git_worktree_list(
            self.repo_root,
            verbose=verbose,
            git_path=self._git_path,
            runner=self._runner,
            timeout_seconds=self._timeout,
        )

    def get(self, path: Path) -> WorkingTree | None:
        for tree in self.list():
            if _same_path(tree.path, path):
                return tree
        return None

    def find_by_branch(self, name: str) -> WorkingTree | None:
        for tree in self.list():
            if tree.branch == name:
                return tree
        return None

    def find_by_issue_number(self, number: int) -> WorkingTree | None:
        pattern = issue_branch_pattern(number)
        for tree in self.list():
            if pattern.search(tree.branch):
                return tree
        return None

    def find_by_pr_number(self, number: int, branch_name: str | None = None) -> WorkingTree | None:
        """Find a PR worktree.

        An exact branch-name match always wins over a ``_pr_<n>`` directory
        suffix, so a stale directory name never shadows a renamed branch.
        """
        trees = self.list()
        if branch_name:
            for tree in trees:
                if tree.branch == branch_name:
                    return tree
        pattern = pr_path_pattern(number)
        for tree in trees:
            if pattern.search(tree.path.name):
                return tree
        return None

    def main_worktree_path(self) -> Path:
        trees = self.list()
        if not trees:
            return self.repo_root
        return trees[0].path

    def is_main_worktree(self, tree: WorkingTree) -> bool:
        return _same_path(tree.path, self.main_worktree_path())

    def _status_lines(self, path: Path) -> list[str]:
        if not Path(path).exists():
            return []
        return git.git_status_porcelain(
            Path(path),
            git_path=self._git_path,
            runner=self._runner,
            timeout_seconds=self._timeout,
        )

    def _is_managed_untracked(self, line: str) -> bool:
        if not line.startswith("?? "):
            return False
        return line[3:].strip().strip('"') in self.managed_files

    def has_uncommitted_changes(self, path: Path) -> bool:
        """Return whether ``path`` has changes other than untracked managed files."""
        return any(not self._is_managed_untracked(line) for line in self._status_lines(path))

    def branch_exists(self, name: str) -> bool:
        return git.git_ref_exists(
            self.repo_root,
            f"{git.HEADS_PREFIX}{name}",
            git_path=self._git_path,
            runner=self._runner,
            timeout_seconds=self._timeout,
        )

    def local_branches(self) -> list[str]:
        result = self._git(["for-each-ref", "--format=%(refname:short)", "refs/heads"])
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def find_branches_for_issue(
        self, number: int, *, exclude: Iterable[str] = ()
    ) -> list[str]:
        """Return local branches that look like work on issue ``number``."""
        skipped = set(exclude)
        return [
            branch
            for branch in self.local_branches()
            if branch not in skipped and issue_branch_matches(branch, number)
        ]

    def create(
        self,
        branch: str,
        path: Path,
        *,
        create_branch: bool = False,
        base_branch: str | None = None,
        force: bool = False,
    ) -> Path:
        """Create a worktree and return its absolute path.

        Raises:
            MissingBranchError: ``branch`` is empty.
            PathExistsError: ``path`` exists and ``force`` is not set.
        """
        if not branch or not branch.strip():
            raise MissingBranchError()
        absolute = Path(path).resolve()
        if absolute.exists():
            if not force:
                raise PathExistsError(str(absolute))
            self._logger.warning(f"Removing existing directory: {absolute}")
            shutil.rmtree(absolute)

        args = ["worktree", "add"]
        if create_branch:
            args.extend(["-b", branch])
        if force:
            args.append("--force")
        args.append(str(absolute))
        if not create_branch:
            args.append(branch)
        elif base_branch:
            args.append(base_branch)
        self._git(args)
        self._logger.debug(f"Created worktree {absolute} on {branch}")
        return absolute

    def _validate_removal(self, path: Path, *, force: bool) -> WorkingTree:
        tree = self.get(path)
        if tree is None:
            raise WorktreeNotFoundError(str(path))
        if tree.locked and not force:
            raise WorktreeLockedError(str(tree.path), tree.lock_reason)
        if not force and self.has_uncommitted_changes(tree.path):
            raise UncommittedChangesError(str(tree.path))
        return tree

    def remove(
        self,
        path: Path,
        *,
        force: bool = False,
        remove_directory: bool = False,
        dry_run: bool = False,
    ) -> str:
        """Remove a worktree, or describe the removal when ``dry_run`` is set.

        Dry-run and real removal share validation, so a successful dry-run
        means the real removal passes the same checks.

        Raises:
            WorktreeNotFoundError: No worktree is registered at ``path``.
            WorktreeLockedError: The tree is locked and ``force`` is not set.
            UncommittedChangesError: The tree is dirty and ``force`` is not set.
        """
        tree = self._validate_removal(path, force=force)
        if dry_run:
            actions = ["Remove worktree registration"]
            if remove_directory:
                actions.append("Remove directory from disk")
            return f"Would perform: {', '.join(actions)}"

        args = ["worktree", "remove"]
        # Status lines left after validation are managed files git would refuse.
        if force or self._status_lines(tree.path):
            args.append("--force")
        # A locked tree needs --force twice.
        if force and tree.locked:
            args.append("--force")
        args.append(str(tree.path))
        self._git(args)
        if remove_directory and tree.path.exists():
            shutil.rmtree(tree.path)
        return f"Removed worktree: {tree.path}"

    def is_branch_merged(self, name: str) -> bool:
        """Return whether ``name`` is an ancestor of the main checkout's HEAD."""
        result = git.capture_git(
            self.repo_root,
            ["merge-base", "--is-ancestor", f"{git.HEADS_PREFIX}{name}", "HEAD"],
            git_path=self._git_path,
            runner=self._runner,
            timeout_seconds=self._timeout,
        )
        return result.returncode == 0

    def validate_branch_deletion(self, name: str, *, force: bool = False) -> None:
        """Run the checks shared by real and dry-run branch deletion.

        Raises:
            MissingBranchError: ``name`` is empty.
            NotFoundError: The branch does not exist.
            UnmergedBranchError: The branch is not merged and ``force`` is unset.
        """
        if not name or not name.strip():
            raise MissingBranchError()
        if not self.branch_exists(name):
            raise NotFoundError(f"Branch not found: {name}")
        if not force and not self.is_branch_merged(name):
            raise UnmergedBranchError(name)

    def delete_branch(self, name: str, *, force: bool = False, dry_run: bool = False) -> str:
        """Delete a local branch, or describe the deletion when ``dry_run`` is set.

        Raises:
            UnmergedBranchError: The branch is not merged and ``force`` is unset.
        """
        self.validate_branch_deletion(name, force=force)
        if dry_run:
            return f"Would delete branch: {name}"
        try:
            self._git(["branch", "-D" if force else "-d", name])
        except CommandFailedError as exc:
            if _UNMERGED_MARKER in (exc.stderr or exc.message):
                raise UnmergedBranchError(name) from exc
            raise
        return f"Branch deleted: {name}"

    def lock(self, path: Path, reason: str | None = None) -> None:
        args = ["worktree", "lock"]
        if reason:
            args.extend(["--reason", reason])
        args.append(str(Path(path).resolve()))
        self._git(args)

    def unlock(self, path: Path) -> None:
        self._git(["worktree", "unlock", str(Path(path).resolve())])

    def fetch(self, remote: str = "origin") -> None:
        """Fetch remote refs so PR branches can be checked out."""
        self._git(["fetch", remote])

    def prune(self) -> None:
        """Drop registrations whose directories no longer exist."""
        self._git(["worktree", "prune", "-v"])
