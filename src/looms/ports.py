"""Typed collaborator ports consumed by loom orchestration services.

Concrete VCS-hosting, database, and launcher clients live outside this
package; services receive them as constructor arguments.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from .models import (
    CreateOptions,
    DatabaseDeletionResult,
    IssueClassification,
    WorkspaceRecord,
)


class IssueTracker(Protocol):
    """Issue and pull-request lookup used by identifier resolution.

    Trackers may also offer ``fetch_issue(number)`` and ``fetch_pr(number)``
    returning ``GithubData``, and ``branch_name_for_issue(number, title)``.
    Services look these up with ``getattr`` and skip them when absent.
    """

    def classify(self, number: int) -> IssueClassification: ...

    def create_issue(self, title: str, body: str) -> int: ...


class DatabaseBranchProvider(Protocol):
    """Database branching backend (for example a serverless Postgres host)."""

    def is_configured(self) -> bool: ...

    def create_branch(self, name: str) -> str: ...

    def delete_branch(self, name: str, *, is_preview: bool) -> DatabaseDeletionResult: ...

    def is_preview_branch(self, name: str) -> bool: ...


class EnvironmentWriter(Protocol):
    """Per-loom environment file access."""

    def set_var(self, path: Path, key: str, value: str) -> None: ...

    def set_port(self, path: Path, port: int) -> None: ...

    def read(self, path: Path) -> dict[str, str]: ...

    def copy_if_missing(self, source: Path, destination: Path) -> bool: ...


class Launcher(Protocol):
    """Opens editors, terminals, dev-servers, or assistants for a loom."""

    def launch(self, record: WorkspaceRecord, options: CreateOptions) -> None: ...


class Confirm(Protocol):
    def __call__(self, text: str, default: bool = False) -> bool: ...
