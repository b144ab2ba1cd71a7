"""Project capability detection from ``package.json``."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .models import Capability
from .services.errors import InputError

PACKAGE_JSON = "package.json"
WEB_DEPENDENCIES = frozenset(
    {
        "next",
        "vite",
        "express",
        "fastify",
        "koa",
        "nuxt",
        "svelte-kit",
        "@sveltejs/kit",
        "remix",
        "@remix-run/dev",
        "astro",
        "react-scripts",
        "webpack-dev-server",
        "@angular/core",
    }
)


class PackageJson(BaseModel):
    """Subset of ``package.json`` used for capability detection."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str | None = None
    bin: str | dict[str, str] | None = None
    scripts: dict[str, str] = Field(default_factory=dict)
    dependencies: dict[str, str] = Field(default_factory=dict)
    dev_dependencies: dict[str, str] = Field(default_factory=dict, alias="devDependencies")


@dataclass(frozen=True)
class ProjectCapabilities:
    capabilities: tuple[Capability, ...] = ()
    bin_entries: dict[str, str] = field(default_factory=dict)


def read_package_json(worktree: Path) -> PackageJson | None:
    """Load ``package.json`` from a worktree, or ``None`` when absent.

    Raises:
        InputError: The file is not valid JSON or has an unexpected shape.
    """
    path = Path(worktree) / PACKAGE_JSON
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        return PackageJson.model_validate(payload)
    except (json.JSONDecodeError, ValidationError) as exc:
        raise InputError(f"Invalid {path}: {exc}") from exc


def parse_bin_field(
    bin_field: str | dict[str, str] | None, package_name: str | None
) -> dict[str, str]:
    """Normalize the ``bin`` field into a name-to-path mapping.

    Example:
        >>> parse_bin_field("./dist/cli.js", "my-cli")
        {'my-cli': './dist/cli.js'}
    """
    if bin_field is None:
        return {}
    if isinstance(bin_field, str):
        if not package_name:
            return {}
        return {package_name.split("/")[-1]: bin_field}
    return dict(bin_field)


def has_web_dependencies(package: PackageJson) -> bool:
    names = set(package.dependencies) | set(package.dev_dependencies)
    return bool(names & WEB_DEPENDENCIES)


def detect_capabilities(worktree: Path) -> ProjectCapabilities:
    """Detect ``cli`` and ``web`` capabilities for a worktree.

    A missing ``package.json`` means no capabilities.
    """
    package = read_package_json(worktree)
    if package is None:
        return ProjectCapabilities()
    capabilities: list[Capability] = []
    if package.bin:
        capabilities.append("cli")
    if has_web_dependencies(package):
        capabilities.append("web")
    return ProjectCapabilities(
        capabilities=tuple(capabilities),
        bin_entries=parse_bin_field(package.bin, package.name),
    )
