# ruff: noqa: E402

from __future__ import annotations

import io
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from looms import exec as exec_util
from looms.log import Logger, LogLevel
from looms.models import (
    DatabaseDeletionResult,
    GithubData,
    IssueClassification,
    ProcessInfo,
    WorkingTree,
)
from looms.services.errors import ProcessTerminationError
from looms.worktrees import WorkingTreeStore


def quiet_logger(level: LogLevel = LogLevel.ERROR) -> Logger:
    return Logger(level, stdout=io.StringIO(), stderr=io.StringIO(), no_color=True)


def git_args(argv: tuple[str, ...]) -> tuple[str, ...]:
    """Strip the ``git -C <dir>`` prefix from a git command line."""
    if len(argv) >= 3 and argv[0] == "git" and argv[1] == "-C":
        return argv[3:]
    return argv


class FakeRunner:
    """Command runner answering from prefix rules; unmatched commands succeed."""

    def __init__(self) -> None:
        self.requests: list[exec_util.CommandRequest] = []
        self._rules: list[tuple[tuple[str, ...], dict[str, object]]] = []

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        missing: bool = False,
        timed_out: bool = False,
    ) -> FakeRunner:
        self._rules.append(
            (
                prefix,
                {
                    "returncode": returncode,
                    "stdout": stdout,
                    "stderr": stderr,
                    "missing": missing,
                    "timed_out": timed_out,
                },
            )
        )
        return self

    def run(self, request: exec_util.CommandRequest) -> exec_util.CommandResult | None:
        self.requests.append(request)
        args = git_args(request.argv)
        for prefix, rule in reversed(self._rules):
            if args[: len(prefix)] != prefix:
                continue
            if rule["missing"]:
                return None
            return exec_util.CommandResult(
                argv=request.argv,
                returncode=int(rule["returncode"]),  # type: ignore[call-overload]
                stdout=str(rule["stdout"]),
                stderr=str(rule["stderr"]),
                timed_out=bool(rule["timed_out"]),
            )
        return exec_util.CommandResult(argv=request.argv, returncode=0, stdout="", stderr="")

    @property
    def calls(self) -> list[tuple[str, ...]]:
        return [git_args(request.argv) for request in self.requests]

    def called(self, *prefix: str) -> bool:
        return any(call[: len(prefix)] == prefix for call in self.calls)


def porcelain(*trees: tuple[Path, str]) -> str:
    blocks = []
    for path, branch in trees:
        blocks.append(f"worktree {path}\nHEAD abc123\nbranch refs/heads/{branch}\n")
    return "\n".join(blocks)


class FakeStore(WorkingTreeStore):
    """Worktree store with an in-memory listing and scripted git state.

    Removal and branch deletion run through the real store code against a
    ``FakeRunner``.
    """

    def __init__(
        self,
        repo_root: Path,
        trees: list[WorkingTree] | None = None,
        *,
        runner: FakeRunner | None = None,
        dirty: set[Path] | None = None,
        branches: set[str] | None = None,
        populate: dict[str, str] | None = None,
    ) -> None:
        self.runner = runner or FakeRunner()
        super().__init__(repo_root, runner=self.runner, logger=quiet_logger())
        main = WorkingTree(path=Path(repo_root).resolve(), branch="main")
        self.trees = [main, *(trees or [])]
        self.dirty = {Path(path).resolve() for path in (dirty or set())}
        self.branches = set(branches or set())
        self.populate = dict(populate or {})
        self.created: list[dict[str, object]] = []
        self.fetched: list[str] = []

    def list(self, *, verbose: bool = False) -> list[WorkingTree]:
        return list(self.trees)

    def has_uncommitted_changes(self, path: Path) -> bool:
        return Path(path).resolve() in self.dirty

    def branch_exists(self, name: str) -> bool:
        return name in self.branches

    def local_branches(self) -> list[str]:
        return sorted(self.branches)

    def fetch(self, remote: str = "origin") -> None:
        self.fetched.append(remote)

    def create(
        self,
        branch: str,
        path: Path,
        *,
        create_branch: bool = False,
        base_branch: str | None = None,
        force: bool = False,
    ) -> Path:
        absolute = Path(path).resolve()
        absolute.mkdir(parents=True)
        for relative, content in self.populate.items():
            target = absolute / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        self.trees.append(WorkingTree(path=absolute, branch=branch))
        self.branches.add(branch)
        self.created.append(
            {
                "branch": branch,
                "path": absolute,
                "create_branch": create_branch,
                "base_branch": base_branch,
            }
        )
        return absolute


class FakeTracker:
    def __init__(
        self,
        kinds: dict[int, IssueClassification] | None = None,
        *,
        next_issue: int = 100,
    ) -> None:
        self.kinds = dict(kinds or {})
        self.next_issue = next_issue
        self.classify_calls: list[int] = []
        self.created: list[tuple[str, str]] = []

    def classify(self, number: int) -> IssueClassification:
        self.classify_calls.append(number)
        return self.kinds.get(number, "unknown")

    def create_issue(self, title: str, body: str) -> int:
        self.created.append((title, body))
        number = self.next_issue
        self.kinds[number] = "issue"
        self.next_issue += 1
        return number


class MetadataTracker(FakeTracker):
    """Tracker that also serves issue and PR metadata."""

    def __init__(
        self,
        kinds: dict[int, IssueClassification] | None = None,
        *,
        pr_branches: dict[int, str] | None = None,
        issue_branches: dict[int, str] | None = None,
    ) -> None:
        super().__init__(kinds)
        self.pr_branches = dict(pr_branches or {})
        self.issue_branches = dict(issue_branches or {})

    def fetch_issue(self, number: int) -> GithubData:
        return GithubData(title=f"Issue {number}", state="open")

    def fetch_pr(self, number: int) -> GithubData:
        return GithubData(title=f"PR {number}", branch=self.pr_branches.get(number))

    def branch_name_for_issue(self, number: int, title: str | None) -> str | None:
        return self.issue_branches.get(number)


class FakeProbe:
    def __init__(
        self,
        listeners: dict[int, ProcessInfo] | None = None,
        *,
        terminate_error: Exception | None = None,
        stays_bound: bool = False,
    ) -> None:
        self.listeners = dict(listeners or {})
        self.terminate_error = terminate_error
        self.stays_bound = stays_bound
        self.detected: list[int] = []
        self.terminated: list[int] = []

    def detect(self, port: int) -> ProcessInfo | None:
        self.detected.append(port)
        return self.listeners.get(port)

    def terminate(self, pid: int) -> bool:
        if self.terminate_error is not None:
            raise self.terminate_error
        self.terminated.append(pid)
        if not self.stays_bound:
            self.listeners = {
                port: info for port, info in self.listeners.items() if info.pid != pid
            }
        return True

    def verify_free(self, port: int) -> bool:
        return port not in self.listeners


def dev_server(port: int, pid: int = 4242) -> ProcessInfo:
    return ProcessInfo(
        pid=pid, name="node", command="node .bin/next dev", port=port, is_dev_server=True
    )


def termination_failure(pid: int = 4242) -> ProcessTerminationError:
    return ProcessTerminationError(pid, "Operation not permitted")


class FakeDatabaseProvider:
    def __init__(
        self,
        *,
        configured: bool = True,
        preview: bool = False,
        deletion: DatabaseDeletionResult | None = None,
    ) -> None:
        self.configured = configured
        self.preview = preview
        self.deletion = deletion
        self.created: list[str] = []
        self.deleted: list[tuple[str, bool]] = []

    def is_configured(self) -> bool:
        return self.configured

    def create_branch(self, name: str) -> str:
        self.created.append(name)
        return f"postgres://db.example/{name}"

    def delete_branch(self, name: str, *, is_preview: bool) -> DatabaseDeletionResult:
        self.deleted.append((name, is_preview))
        if self.deletion is not None:
            return self.deletion
        return DatabaseDeletionResult(success=True, deleted=True, branch_name=name)

    def is_preview_branch(self, name: str) -> bool:
        return self.preview


class RecordingConfirm:
    def __init__(self, answer: bool) -> None:
        self.answer = answer
        self.prompts: list[str] = []

    def __call__(self, text: str, default: bool = False) -> bool:
        self.prompts.append(text)
        return self.answer


class RecordingLauncher:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.launched: list[object] = []

    def launch(self, record: object, options: object) -> None:
        if self.error is not None:
            raise self.error
        self.launched.append(record)
