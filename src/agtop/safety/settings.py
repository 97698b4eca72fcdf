"""Typed agent settings documents and the merges into users' existing files."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class SettingsMergeError(RuntimeError):
    """Raised when an existing settings file cannot be read or understood."""


class HookCommand(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "command"
    command: str = ""


class HookMatcher(BaseModel):
    model_config = ConfigDict(extra="allow")

    matcher: str | None = None
    hooks: list[HookCommand] = Field(default_factory=list)

    def commands(self) -> set[str]:
        return {hook.command for hook in self.hooks if hook.command}


class PermissionLists(BaseModel):
    model_config = ConfigDict(extra="allow")

    allow: list[str] | None = None
    deny: list[str] | None = None


class ClaudeSettings(BaseModel):
    """The subset of Claude Code's settings.json that agtop manages.

    Unknown keys are carried through untouched.
    """

    model_config = ConfigDict(extra="allow")

    permissions: PermissionLists | None = None
    hooks: dict[str, list[HookMatcher]] | None = None

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


PermissionValue = Union[str, dict[str, str]]


class OpenCodeSettings(BaseModel):
    """The ``permission`` block of opencode.json; other keys pass through."""

    model_config = ConfigDict(extra="allow")

    permission: dict[str, PermissionValue] | None = None

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


def _append_unique(base: list[str] | None, extra: list[str]) -> list[str]:
    result = list(base or [])
    for item in extra:
        if item not in result:
            result.append(item)
    return result


def merge_claude_settings(existing: ClaudeSettings, ours: ClaudeSettings) -> ClaudeSettings:
    """Merge agtop's hooks and permissions into ``existing``.

    Hook entries are de-duplicated by command; permission lists by value.
    """

    merged = existing.model_copy(deep=True)

    if ours.permissions is not None:
        permissions = merged.permissions or PermissionLists()
        if ours.permissions.allow is not None:
            permissions.allow = _append_unique(permissions.allow, ours.permissions.allow)
        if ours.permissions.deny is not None:
            permissions.deny = _append_unique(permissions.deny, ours.permissions.deny)
        merged.permissions = permissions

    if ours.hooks:
        hooks = dict(merged.hooks or {})
        for event, entries in ours.hooks.items():
            current = list(hooks.get(event, []))
            known = set().union(*(entry.commands() for entry in current)) if current else set()
            for entry in entries:
                commands = entry.commands()
                if commands and commands & known:
                    continue
                current.append(entry.model_copy(deep=True))
                known |= commands
            hooks[event] = current
        merged.hooks = hooks

    return merged


def merge_opencode_settings(existing: OpenCodeSettings, ours: OpenCodeSettings) -> OpenCodeSettings:
    """Add agtop's permission entries without overriding user-defined ones."""

    merged = existing.model_copy(deep=True)
    if not ours.permission:
        return merged

    permission = dict(merged.permission or {})
    for tool, value in ours.permission.items():
        if tool not in permission:
            permission[tool] = value
            continue
        current = permission[tool]
        if isinstance(current, dict) and isinstance(value, dict):
            combined = dict(current)
            for key, verdict in value.items():
                combined.setdefault(key, verdict)
            permission[tool] = combined
    merged.permission = permission
    return merged


def _read_document(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        document = json.loads(path.read_text(encoding="utf-8") or "{}")
    except json.JSONDecodeError as exc:
        raise SettingsMergeError(f"parse {path}: {exc}") from exc
    if not isinstance(document, dict):
        raise SettingsMergeError(f"parse {path}: top-level value must be an object")
    return document


def load_claude_settings(path: Path) -> ClaudeSettings:
    try:
        return ClaudeSettings.model_validate(_read_document(Path(path)))
    except ValidationError as exc:
        raise SettingsMergeError(f"unsupported settings in {path}: {exc}") from exc


def load_opencode_settings(path: Path) -> OpenCodeSettings:
    try:
        return OpenCodeSettings.model_validate(_read_document(Path(path)))
    except ValidationError as exc:
        raise SettingsMergeError(f"unsupported settings in {path}: {exc}") from exc


def write_settings(path: Path, settings: ClaudeSettings | OpenCodeSettings) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings.to_document(), indent=2) + "\n", encoding="utf-8")


__all__ = [
    "ClaudeSettings",
    "HookCommand",
    "HookMatcher",
    "OpenCodeSettings",
    "PermissionLists",
    "SettingsMergeError",
    "load_claude_settings",
    "load_opencode_settings",
    "merge_claude_settings",
    "merge_opencode_settings",
    "write_settings",
]
