"""Settings loading for looms.

Settings live in ``<repo>/.looms/settings.json`` and may be overlaid by an
uncommitted ``<repo>/.looms/settings.local.json``. The local file wins key by
key at the top level.
"""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import ValidationError

from . import paths
from .models import LoomsSettings
from .services.errors import SettingsError


def load_json(path: Path) -> dict | None:
    """Load a JSON object from disk if the file exists.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed payload as a dict, or ``None`` if the file does not exist.

    Raises:
        SettingsError: The file is not valid JSON or not a JSON object.

    Example:
        >>> from pathlib import Path
        >>> load_json(Path("missing.json")) is None
        True
    """
    if not path.exists():
        return None
    try:
        with path.open("r", encoding="utf-8") as fh:
            payload = json.load(fh)
    except json.JSONDecodeError as exc:
        raise SettingsError(f"Invalid JSON in {path}: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise SettingsError(f"Settings file {path} must contain a JSON object")
    return payload


def merge_settings_payloads(base: dict | None, override: dict | None) -> dict:
    merged: dict = dict(base or {})
    merged.update(override or {})
    return merged


def parse_settings(payload: dict, *, source: str = "settings") -> LoomsSettings:
    """Validate a raw settings payload.

    Raises:
        SettingsError: The payload fails validation.
    """
    try:
        return LoomsSettings.model_validate(payload)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        raise SettingsError(f"Invalid {source}: {details}") from exc


def load_settings(repo_root: Path) -> LoomsSettings:
    """Load merged settings for a repository, falling back to defaults."""
    shared_path = paths.settings_path(repo_root)
    local_path = paths.local_settings_path(repo_root)
    shared = load_json(shared_path)
    local = load_json(local_path)
    if shared is None and local is None:
        return LoomsSettings()
    source = str(local_path if local is not None else shared_path)
    return parse_settings(merge_settings_payloads(shared, local), source=source)


def write_settings(path: Path, settings: LoomsSettings) -> None:
    """Write settings to disk using camel-case keys."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = settings.model_dump(by_alias=True, exclude_none=True)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)
        fh.write("\n")
