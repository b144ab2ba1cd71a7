from pathlib import Path

import pytest

from looms.environment import DotenvEnvironmentWriter, env_file_path, validate_env_key
from looms.services.errors import InputError
from tests.looms.helpers import quiet_logger


def make_writer() -> DotenvEnvironmentWriter:
    return DotenvEnvironmentWriter(logger=quiet_logger())


def test_set_port_creates_env_file(tmp_path: Path) -> None:
    env_file = env_file_path(tmp_path / "wt")
    make_writer().set_port(env_file, 3042)
    assert env_file.read_text(encoding="utf-8").strip() == "PORT=3042"


def test_set_var_preserves_other_lines(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("# shared settings\nAPI_KEY=abc\nPORT=3000\n", encoding="utf-8")
    writer = make_writer()
    writer.set_port(env_file, 3042)
    writer.set_var(env_file, "DATABASE_URL", "postgres://db/issue-42")

    text = env_file.read_text(encoding="utf-8")
    assert "# shared settings" in text
    assert writer.read(env_file) == {
        "API_KEY": "abc",
        "PORT": "3042",
        "DATABASE_URL": "postgres://db/issue-42",
    }


def test_read_missing_file_is_empty(tmp_path: Path) -> None:
    assert make_writer().read(tmp_path / ".env") == {}


def test_set_var_rejects_invalid_key(tmp_path: Path) -> None:
    with pytest.raises(InputError):
        make_writer().set_var(tmp_path / ".env", "1BAD", "x")
    with pytest.raises(InputError):
        validate_env_key("WITH-DASH")


def test_copy_if_missing(tmp_path: Path) -> None:
    source = tmp_path / "main" / ".env"
    source.parent.mkdir()
    source.write_text("API_KEY=abc\n", encoding="utf-8")
    destination = tmp_path / "wt" / ".env"
    writer = make_writer()

    assert writer.copy_if_missing(source, destination) is True
    assert destination.read_text(encoding="utf-8") == "API_KEY=abc\n"

    destination.write_text("API_KEY=local\n", encoding="utf-8")
    assert writer.copy_if_missing(source, destination) is False
    assert destination.read_text(encoding="utf-8") == "API_KEY=local\n"
    assert writer.copy_if_missing(tmp_path / "absent", tmp_path / "other") is False
