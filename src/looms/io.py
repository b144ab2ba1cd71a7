"""Interactive prompts for loom operations."""

from __future__ import annotations

import sys

import questionary


def _use_questionary() -> bool:
    return sys.stdin.isatty() and sys.stdout.isatty()


def confirm(text: str, default: bool = False) -> bool:
    """Prompt for a yes/no confirmation.

    Args:
        text: Prompt label shown to the user.
        default: Default answer when the user presses enter.

    Returns:
        ``True`` when the user confirms.
    """
    if _use_questionary():
        response = questionary.confirm(text, default=default).ask()
        return bool(response)
    suffix = "[Y/n]" if default else "[y/N]"
    response = input(f"{text} {suffix}: ").strip().lower()
    if response == "":
        return default
    return response in {"y", "yes"}
