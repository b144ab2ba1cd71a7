"""Path and port allocation for looms.

Every loom path and port is derived deterministically from its identifier, so
repeated invocations (including after a crash) always land on the same
directory and dev-server port.
"""

import hashlib
import re
from pathlib import Path

from platformdirs import user_data_dir

from .models import (
    AllocatedLocation,
    BranchIdentifier,
    DescriptionIdentifier,
    IssueIdentifier,
    PullRequestIdentifier,
    ResolvedIdentifier,
)
from .services.errors import InputError, MissingBranchError, PortOverflowError

LOOMS_APP_NAME = "looms"
BIN_DIRNAME = "bin"
SETTINGS_DIRNAME = ".looms"
SETTINGS_FILENAME = "settings.json"
LOCAL_SETTINGS_FILENAME = "settings.local.json"
DEFAULT_PREFIX_SUFFIX = "-looms"
FALLBACK_PREFIX = "looms"
PREFIX_SEPARATORS = ("-", "_", "/")
DEFAULT_BASE_PORT = 3000
MAX_PORT = 65535
BRANCH_PORT_RANGE = 999

_SEPARATOR_CHARS = re.compile(r"[/_.]")
_NON_ALNUM_RUN = re.compile(r"[^a-z0-9]+")


def looms_data_dir() -> Path:
    """Return the base looms data directory.

    Example:
        >>> isinstance(looms_data_dir(), Path)
        True
    """
    return Path(user_data_dir(LOOMS_APP_NAME))


def looms_bin_dir() -> Path:
    """Return the directory holding versioned CLI symlinks.

    Example:
        >>> looms_bin_dir().name == BIN_DIRNAME
        True
    """
    return looms_data_dir() / BIN_DIRNAME


def settings_dir(repo_root: Path) -> Path:
    return repo_root / SETTINGS_DIRNAME


def settings_path(repo_root: Path) -> Path:
    return settings_dir(repo_root) / SETTINGS_FILENAME


def local_settings_path(repo_root: Path) -> Path:
    return settings_dir(repo_root) / LOCAL_SETTINGS_FILENAME


def sanitize_branch_name(name: str) -> str:
    """Convert a branch name into a filesystem-safe directory name.

    Args:
        name: Raw branch or derived name.

    Returns:
        Lower-case name with separators and other non-alphanumerics collapsed
        to single dashes and no leading or trailing dash.

    Example:
        >>> sanitize_branch_name("Feat/Dark_Mode.v2")
        'feat-dark-mode-v2'
    """
    lowered = name.lower()
    dashed = _SEPARATOR_CHARS.sub("-", lowered)
    collapsed = _NON_ALNUM_RUN.sub("-", dashed)
    return collapsed.strip("-")


def default_prefix(repo_root: Path) -> str:
    """Return the default naming prefix for a repository.

    Example:
        >>> default_prefix(Path("/src/app"))
        'app-looms'
    """
    basename = Path(repo_root).name
    if not basename:
        return FALLBACK_PREFIX
    return f"{basename}{DEFAULT_PREFIX_SUFFIX}"


def join_prefix(prefix: str, name: str) -> str:
    """Join a prefix and a name, inserting ``-`` unless the prefix ends in a separator.

    Example:
        >>> join_prefix("wt_", "issue-1")
        'wt_issue-1'
        >>> join_prefix("wt", "issue-1")
        'wt-issue-1'
    """
    if prefix.endswith(PREFIX_SEPARATORS):
        return f"{prefix}{name}"
    return f"{prefix}-{name}"


def derived_name(identifier: ResolvedIdentifier) -> str:
    """Return the unsanitized default branch name for an identifier."""
    if isinstance(identifier, IssueIdentifier):
        return f"issue-{identifier.number}"
    if isinstance(identifier, PullRequestIdentifier):
        return f"pr-{identifier.number}"
    if isinstance(identifier, BranchIdentifier):
        return identifier.name
    raise InputError(
        "Descriptions must be turned into issues before a path can be allocated",
    )


def allocate_path(
    identifier: ResolvedIdentifier,
    repo_root: Path,
    prefix: str | None = None,
    branch_name: str | None = None,
) -> Path:
    """Derive the loom directory for an identifier.

    Args:
        identifier: Resolved identifier.
        repo_root: Main repository checkout; looms are siblings of it.
        prefix: Optional naming prefix. ``None`` places looms inside a
            ``<repo>-looms`` directory next to the repository.
        branch_name: Actual branch name, when known.

    Returns:
        Absolute loom path.

    Example:
        >>> str(allocate_path(IssueIdentifier(42), Path("/src/app"), branch_name="issue-42"))
        '/src/app-looms/issue-42'
    """
    name = sanitize_branch_name(branch_name or derived_name(identifier))
    if not name:
        raise InputError(f"Cannot derive a directory name from {branch_name!r}")
    if isinstance(identifier, PullRequestIdentifier):
        name = f"{name}_pr_{identifier.number}"
    resolved_prefix = prefix if prefix else f"{default_prefix(repo_root)}/"
    parent = Path(repo_root).resolve().parent
    return parent / join_prefix(resolved_prefix, name)


def branch_port_offset(branch_name: str) -> int:
    """Return a deterministic port offset in ``[1, 999]`` for a branch.

    Example:
        >>> 1 <= branch_port_offset("feat/x") <= 999
        True
    """
    if not branch_name or not branch_name.strip():
        raise MissingBranchError()
    digest = hashlib.sha256(branch_name.encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % BRANCH_PORT_RANGE + 1


def allocate_port(identifier: ResolvedIdentifier, base_port: int = DEFAULT_BASE_PORT) -> int:
    """Derive the dev-server port for an identifier.

    Raises:
        PortOverflowError: The derived port exceeds 65535.
        InputError: The identifier is a description or an empty branch.

    Example:
        >>> allocate_port(IssueIdentifier(42))
        3042
    """
    if isinstance(identifier, (IssueIdentifier, PullRequestIdentifier)):
        if identifier.number < 0:
            raise InputError(f"Invalid number: {identifier.number}")
        port = base_port + identifier.number
    elif isinstance(identifier, BranchIdentifier):
        port = base_port + branch_port_offset(identifier.name)
    elif isinstance(identifier, DescriptionIdentifier):
        raise InputError(
            "Descriptions must be turned into issues before a port can be allocated",
        )
    else:
        raise TypeError(f"unsupported identifier: {identifier!r}")
    if port > MAX_PORT:
        raise PortOverflowError(port, base_port)
    return port


def allocate_location(
    identifier: ResolvedIdentifier,
    repo_root: Path,
    *,
    prefix: str | None = None,
    branch_name: str | None = None,
    base_port: int = DEFAULT_BASE_PORT,
) -> AllocatedLocation:
    """Derive both path and port for an identifier."""
    return AllocatedLocation(
        path=allocate_path(identifier, repo_root, prefix, branch_name),
        port=allocate_port(identifier, base_port),
    )
