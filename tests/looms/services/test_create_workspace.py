from __future__ import annotations

import json
from pathlib import Path

import pytest

from looms.capabilities import ProjectCapabilities
from looms.cli_isolation import CliIsolation
from looms.database import DatabaseManager
from looms.environment import DotenvEnvironmentWriter
from looms.identifiers import IdentifierResolver
from looms.models import (
    BranchIdentifier,
    CreateOptions,
    IssueIdentifier,
    LoomsSettings,
    PullRequestIdentifier,
    WorkingTree,
)
from looms.services.create_workspace import (
    CapabilityDetector,
    CreateWorkspaceRequest,
    CreateWorkspaceService,
)
from looms.services.errors import (
    BranchExistsError,
    IdentifierNotFoundError,
    InvalidBranchNameError,
    ProvisioningError,
)
from tests.looms.helpers import (
    FakeDatabaseProvider,
    FakeRunner,
    FakeStore,
    FakeTracker,
    MetadataTracker,
    RecordingLauncher,
    quiet_logger,
)


class ExplodingEnvironment(DotenvEnvironmentWriter):
    def set_port(self, path: Path, port: int) -> None:
        raise OSError("disk full")


def make_repo(tmp_path: Path, env: str | None = None) -> Path:
    repo = tmp_path / "shop"
    repo.mkdir()
    if env is not None:
        (repo / ".env").write_text(env, encoding="utf-8")
    return repo


def make_service(
    store: FakeStore,
    tracker: FakeTracker,
    *,
    environment: DotenvEnvironmentWriter | None = None,
    settings: LoomsSettings | None = None,
    database: DatabaseManager | None = None,
    cli_isolation: CliIsolation | None = None,
    launcher: RecordingLauncher | None = None,
    capability_detector: CapabilityDetector | None = None,
) -> CreateWorkspaceService:
    logger = quiet_logger()
    kwargs: dict[str, CapabilityDetector] = {}
    if capability_detector is not None:
        kwargs["capability_detector"] = capability_detector
    return CreateWorkspaceService(
        resolver=IdentifierResolver(tracker, logger=logger),
        tracker=tracker,
        store=store,
        environment=environment or DotenvEnvironmentWriter(logger=logger),
        settings=settings,
        database=database,
        cli_isolation=cli_isolation,
        launcher=launcher,
        logger=logger,
        **kwargs,
    )


def test_numeric_issue_creates_loom_next_to_repo(tmp_path: Path) -> None:
    repo = make_repo(tmp_path)
    store = FakeStore(repo)
    tracker = FakeTracker({42: "issue"})

    record = make_service(store, tracker).create("42")

    expected = tmp_path.resolve() / "shop-looms" / "issue-42"
    assert record.path == expected
    assert record.id == "issue-42"
    assert record.branch == "issue-42"
    assert record.identifier == IssueIdentifier(42)
    assert record.port == 3042
    assert record.reused is False
    assert tracker.classify_calls == [42]
    assert store.created[0]["create_branch"] is True
    assert (expected / ".env").read_text(encoding="utf-8").strip() == "PORT=3042"


def test_pr_shorthand_checks_out_pr_branch(tmp_path: Path) -> None:
    repo = make_repo(tmp_path)
    store = FakeStore(repo)
    tracker = MetadataTracker(pr_branches={7: "fix/Cart"})

    record = make_service(store, tracker).create("pr/7")

    assert tracker.classify_calls == []
    assert store.fetched == ["origin"]
    assert record.branch == "fix/Cart"
    assert record.path.name == "fix-cart_pr_7"
    assert record.port == 3007
    assert record.github_data is not None and record.github_data.title == "PR 7"
    assert store.created[0]["create_branch"] is False


def test_pr_without_metadata_uses_default_branch_name(tmp_path: Path) -> None:
    store = FakeStore(make_repo(tmp_path))
    record = make_service(store, FakeTracker()).create("pr-3")
    assert record.branch == "pr-3"
    assert record.path.name == "pr-3_pr_3"


def test_issue_branch_name_from_tracker(tmp_path: Path) -> None:
    store = FakeStore(make_repo(tmp_path))
    tracker = MetadataTracker({12: "issue"}, issue_branches={12: "feat/issue-12-login"})
    record = make_service(store, tracker).create("12")
    assert record.branch == "feat/issue-12-login"
    assert record.path.name == "feat-issue-12-login"
    assert record.github_data is not None and record.github_data.title == "Issue 12"


def test_branch_identifier_uses_base_branch(tmp_path: Path) -> None:
    store = FakeStore(make_repo(tmp_path))
    record = make_service(store, FakeTracker()).create(
        "feat/dark-mode", CreateOptions(base_branch="develop")
    )
    assert record.identifier == BranchIdentifier("feat/dark-mode")
    assert store.created[0]["base_branch"] == "develop"
    assert 3001 <= (record.port or 0) <= 3999


def test_description_becomes_issue(tmp_path: Path) -> None:
    store = FakeStore(make_repo(tmp_path))
    tracker = FakeTracker(next_issue=88)
    record = make_service(store, tracker).create(
        "add dark mode toggle to the settings page",
        CreateOptions(issue_body="Users asked for it."),
    )
    assert record.identifier == IssueIdentifier(88)
    assert record.port == 3088
    assert tracker.created == [
        ("add dark mode toggle to the settings page", "Users asked for it.")
    ]
    assert tracker.classify_calls == []


def test_existing_loom_is_reused_without_provisioning(tmp_path: Path) -> None:
    repo = make_repo(tmp_path)
    existing = tmp_path / "shop-looms" / "issue-42"
    existing.mkdir(parents=True)
    (existing / ".env").write_text("PORT=3999\n", encoding="utf-8")
    store = FakeStore(repo, [WorkingTree(path=existing, branch="feat/issue-42-login")])
    launcher = RecordingLauncher()

    record = make_service(store, FakeTracker({42: "issue"}), launcher=launcher).create("42")

    assert record.reused is True
    assert record.path == existing
    assert record.branch == "feat/issue-42-login"
    assert record.port == 3999
    assert store.created == []
    assert launcher.launched == []


def test_reuse_falls_back_to_allocated_port(tmp_path: Path) -> None:
    repo = make_repo(tmp_path)
    existing = tmp_path / "elsewhere"
    existing.mkdir()
    store = FakeStore(repo, [WorkingTree(path=existing, branch="issue-5")])
    record = make_service(store, FakeTracker({5: "issue"})).create("5")
    assert record.reused is True
    assert record.port == 3005


def test_existing_local_branch_conflicts(tmp_path: Path) -> None:
    store = FakeStore(make_repo(tmp_path), branches={"issue-42"})
    with pytest.raises(BranchExistsError) as excinfo:
        make_service(store, FakeTracker({42: "issue"})).create("42")
    assert excinfo.value.code == "conflict"
    assert store.created == []


def test_resolution_errors_propagate(tmp_path: Path) -> None:
    store = FakeStore(make_repo(tmp_path))
    service = make_service(store, FakeTracker())
    with pytest.raises(IdentifierNotFoundError):
        service.create("404")
    with pytest.raises(InvalidBranchNameError):
        service.create("bad name")
    assert store.created == []


def test_resolved_identifier_skips_tracker(tmp_path: Path) -> None:
    store = FakeStore(make_repo(tmp_path))
    tracker = FakeTracker()
    record = make_service(store, tracker)(
        CreateWorkspaceRequest(PullRequestIdentifier(9), CreateOptions())
    )
    assert record.id == "pr-9"
    assert tracker.classify_calls == []


def test_env_files_copied_from_main_checkout(tmp_path: Path) -> None:
    repo = make_repo(tmp_path, env="API_KEY=abc\nPORT=3000\n")
    store = FakeStore(repo)
    record = make_service(store, FakeTracker({1: "issue"})).create("1")
    values = DotenvEnvironmentWriter(logger=quiet_logger()).read(record.path / ".env")
    assert values == {"API_KEY": "abc", "PORT": "3001"}


def test_provisioning_failure_keeps_worktree(tmp_path: Path) -> None:
    store = FakeStore(make_repo(tmp_path))
    service = make_service(
        store,
        FakeTracker({42: "issue"}),
        environment=ExplodingEnvironment(logger=quiet_logger()),
    )

    with pytest.raises(ProvisioningError) as excinfo:
        service.create("42")

    error = excinfo.value
    assert error.stage == "environment"
    assert "disk full" in error.message
    assert isinstance(error.__cause__, OSError)
    created_path = store.created[0]["path"]
    assert isinstance(created_path, Path) and created_path.exists()
    assert any(tree.path == created_path for tree in store.list())
    assert error.recovery_hint is not None and str(created_path) in error.recovery_hint


def test_database_branch_provisioned(tmp_path: Path) -> None:
    repo = make_repo(tmp_path, env="DATABASE_URL=postgres://main\n")
    environment = DotenvEnvironmentWriter(logger=quiet_logger())
    provider = FakeDatabaseProvider()
    database = DatabaseManager(provider, environment, logger=quiet_logger())
    store = FakeStore(repo)

    record = make_service(
        store, FakeTracker({42: "issue"}), environment=environment, database=database
    ).create("42")

    assert provider.created == ["issue-42"]
    assert record.database_branch == "issue-42"
    values = environment.read(record.path / ".env")
    assert values["DATABASE_URL"] == "postgres://db.example/issue-42"
    assert values["PORT"] == "3042"


def test_database_stage_skipped_by_option(tmp_path: Path) -> None:
    repo = make_repo(tmp_path, env="DATABASE_URL=postgres://main\n")
    environment = DotenvEnvironmentWriter(logger=quiet_logger())
    provider = FakeDatabaseProvider()
    database = DatabaseManager(provider, environment, logger=quiet_logger())
    record = make_service(
        FakeStore(repo), FakeTracker({42: "issue"}), environment=environment, database=database
    ).create("42", CreateOptions(skip_database=True))
    assert provider.created == []
    assert record.database_branch is None


def test_database_failure_is_a_provisioning_error(tmp_path: Path) -> None:
    repo = make_repo(tmp_path, env="DATABASE_URL=postgres://main\n")
    environment = DotenvEnvironmentWriter(logger=quiet_logger())

    class BrokenProvider(FakeDatabaseProvider):
        def create_branch(self, name: str) -> str:
            raise RuntimeError("quota exceeded")

    database = DatabaseManager(BrokenProvider(), environment, logger=quiet_logger())
    with pytest.raises(ProvisioningError) as excinfo:
        make_service(
            FakeStore(repo), FakeTracker({1: "issue"}), environment=environment, database=database
        ).create("1")
    assert excinfo.value.stage == "database"


def test_cli_project_gets_versioned_symlinks(tmp_path: Path) -> None:
    package = {"name": "tool", "bin": {"tool": "dist/cli.js"}}
    store = FakeStore(
        make_repo(tmp_path),
        populate={"package.json": json.dumps(package), "dist/cli.js": "// cli\n"},
    )
    isolation = CliIsolation(bin_dir=tmp_path / "bin", runner=FakeRunner(), logger=quiet_logger())

    record = make_service(store, FakeTracker({42: "issue"}), cli_isolation=isolation).create("42")

    assert record.capabilities == ("cli",)
    assert record.cli_symlinks == ("tool-42",)
    assert (tmp_path / "bin" / "tool-42").is_symlink()


def test_cli_isolation_failure_is_not_fatal(tmp_path: Path) -> None:
    package = {"name": "tool", "bin": {"tool": "dist/missing.js"}}
    store = FakeStore(make_repo(tmp_path), populate={"package.json": json.dumps(package)})
    isolation = CliIsolation(bin_dir=tmp_path / "bin", runner=FakeRunner(), logger=quiet_logger())

    record = make_service(store, FakeTracker({42: "issue"}), cli_isolation=isolation).create("42")

    assert record.capabilities == ("cli",)
    assert record.cli_symlinks == ()


def test_capability_failure_is_a_provisioning_error(tmp_path: Path) -> None:
    store = FakeStore(make_repo(tmp_path), populate={"package.json": "{oops"})
    with pytest.raises(ProvisioningError) as excinfo:
        make_service(store, FakeTracker({42: "issue"})).create("42")
    assert excinfo.value.stage == "capabilities"


def test_launcher_runs_after_provisioning(tmp_path: Path) -> None:
    launcher = RecordingLauncher()
    store = FakeStore(make_repo(tmp_path))
    record = make_service(store, FakeTracker({42: "issue"}), launcher=launcher).create("42")
    assert launcher.launched == [record]


def test_launcher_disabled_by_options(tmp_path: Path) -> None:
    launcher = RecordingLauncher()
    service = make_service(
        FakeStore(make_repo(tmp_path)), FakeTracker({1: "issue"}), launcher=launcher
    )
    service.create("1", CreateOptions(launch=False))
    service.create(
        "feat/quiet",
        CreateOptions(
            enable_claude=False, enable_code=False, enable_dev_server=False, enable_terminal=False
        ),
    )
    assert launcher.launched == []


def test_launch_failure_is_a_provisioning_error(tmp_path: Path) -> None:
    launcher = RecordingLauncher(error=RuntimeError("no terminal"))
    with pytest.raises(ProvisioningError) as excinfo:
        make_service(
            FakeStore(make_repo(tmp_path)), FakeTracker({1: "issue"}), launcher=launcher
        ).create("1")
    assert excinfo.value.stage == "launch"


def test_custom_capability_detector_and_prefix(tmp_path: Path) -> None:
    store = FakeStore(make_repo(tmp_path))
    record = make_service(
        store,
        FakeTracker({3: "issue"}),
        settings=LoomsSettings(worktree_prefix="wt_", base_port=4000),
        capability_detector=lambda path: ProjectCapabilities(capabilities=("web",)),
    ).create("3")
    assert record.path == tmp_path.resolve() / "wt_issue-3"
    assert record.port == 4003
    assert record.capabilities == ("web",)
