# ruff: noqa: E402

import builtins
import sys
from pathlib import Path

import pytest
from _pytest.doctest import DoctestModule

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import looms.io as io

DOCTEST_MODULES = {
    ROOT / "src" / "looms" / "__init__.py",
    ROOT / "src" / "looms" / "capabilities.py",
    ROOT / "src" / "looms" / "cli_isolation.py",
    ROOT / "src" / "looms" / "config.py",
    ROOT / "src" / "looms" / "environment.py",
    ROOT / "src" / "looms" / "git.py",
    ROOT / "src" / "looms" / "identifiers.py",
    ROOT / "src" / "looms" / "models.py",
    ROOT / "src" / "looms" / "paths.py",
    ROOT / "src" / "looms" / "process.py",
    ROOT / "src" / "looms" / "worktrees.py",
}


@pytest.fixture(autouse=True)
def _no_prompts(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(io, "_use_questionary", lambda: False)

    def fail_input(prompt: str = "") -> str:
        raise AssertionError("prompted unexpectedly")

    monkeypatch.setattr(builtins, "input", fail_input)


def pytest_collect_file(
    parent: pytest.Collector, file_path: Path
) -> DoctestModule | None:
    path = file_path if isinstance(file_path, Path) else Path(str(file_path))
    if path in DOCTEST_MODULES:
        return DoctestModule.from_parent(parent, path=path)
    return None
