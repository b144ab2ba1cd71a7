"""Identifier resolution for loom commands.

Raw user input is classified in strict priority order: free-text
descriptions first (they may contain digits), then PR shorthand, then bare
numbers (one tracker lookup), then branch names.
"""

from __future__ import annotations

import re

from .log import Logger
from .models import (
    BranchIdentifier,
    DescriptionIdentifier,
    IssueIdentifier,
    PullRequestIdentifier,
    ResolvedIdentifier,
    describe_identifier,
    looks_like_description,
)
from .ports import IssueTracker
from .services.errors import (
    EmptyInputError,
    IdentifierNotFoundError,
    InvalidBranchNameError,
)

PR_SHORTHAND = re.compile(r"^(?:pr|PR)[/-](\d+)$")
NUMERIC = re.compile(r"^#?(\d+)$")
BRANCH_NAME = re.compile(r"^[A-Za-z0-9/_-]+$")
ISSUE_IN_BRANCH = re.compile(r"(?:^|[/_-])issue-(\d+)(?:-|$)")

ISSUE_TITLE_LIMIT = 80


def _title_from_description(text: str) -> str:
    first_line = text.strip().splitlines()[0].strip()
    if len(first_line) <= ISSUE_TITLE_LIMIT:
        return first_line
    return first_line[: ISSUE_TITLE_LIMIT - 3].rstrip() + "..."


def validate_branch_name(name: str) -> str:
    """Return ``name`` if it is a usable branch name.

    Raises:
        InvalidBranchNameError: The name has characters outside ``[A-Za-z0-9/_-]``.

    Example:
        >>> validate_branch_name("feat/dark_mode")
        'feat/dark_mode'
    """
    if not BRANCH_NAME.match(name):
        raise InvalidBranchNameError(name)
    return name


class IdentifierResolver:
    """Classifies raw input into a ``ResolvedIdentifier``.

    Args:
        tracker: Issue tracker consulted only for bare numeric input and for
            promoting descriptions into issues.
        logger: Optional logger.
    """

    def __init__(self, tracker: IssueTracker, *, logger: Logger | None = None) -> None:
        self._tracker = tracker
        self._logger = logger or Logger.default()

    def resolve(self, raw: str) -> ResolvedIdentifier:
        """Classify ``raw``.

        Raises:
            EmptyInputError: The trimmed input is empty.
            IdentifierNotFoundError: A number is neither an issue nor a PR.
            InvalidBranchNameError: The input is not a valid branch name.
        """
        text = (raw or "").strip()
        if not text:
            raise EmptyInputError()

        if looks_like_description(text):
            return DescriptionIdentifier(text)

        pr_match = PR_SHORTHAND.match(text)
        if pr_match:
            return PullRequestIdentifier(int(pr_match.group(1)))

        numeric_match = NUMERIC.match(text)
        if numeric_match:
            number = int(numeric_match.group(1))
            kind = self._tracker.classify(number)
            self._logger.debug(f"Tracker classified #{number} as {kind}")
            if kind == "issue":
                return IssueIdentifier(number)
            if kind == "pr":
                return PullRequestIdentifier(number)
            raise IdentifierNotFoundError(number)

        return BranchIdentifier(validate_branch_name(text))

    def promote_description(
        self, description: DescriptionIdentifier, body: str = ""
    ) -> IssueIdentifier:
        """Create an issue for a description and return its identifier."""
        title = _title_from_description(description.text)
        issue_body = body or description.text
        number = self._tracker.create_issue(title, issue_body)
        self._logger.success(f"Created issue #{number}: {title}")
        return IssueIdentifier(number)

    @staticmethod
    def classify_local(raw: str) -> ResolvedIdentifier:
        """Classify input for teardown without consulting the tracker.

        Bare numbers are treated as issues, and ``issue-<n>`` inside a branch
        name selects that issue.

        Example:
            >>> IdentifierResolver.classify_local("feat/issue-12-x")
            IssueIdentifier(number=12, kind='issue')
        """
        text = (raw or "").strip()
        if not text:
            raise EmptyInputError()
        pr_match = PR_SHORTHAND.match(text)
        if pr_match:
            return PullRequestIdentifier(int(pr_match.group(1)))
        numeric_match = NUMERIC.match(text)
        if numeric_match:
            return IssueIdentifier(int(numeric_match.group(1)))
        issue_match = ISSUE_IN_BRANCH.search(text)
        if issue_match:
            return IssueIdentifier(int(issue_match.group(1)))
        return BranchIdentifier(validate_branch_name(text))

    @staticmethod
    def describe(identifier: ResolvedIdentifier) -> str:
        return describe_identifier(identifier)
