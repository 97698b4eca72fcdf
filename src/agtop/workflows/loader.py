"""Workflow loading: built-in defaults plus YAML files on disk."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .models import WorkflowSpec


class WorkflowLoadError(RuntimeError):
    """Raised when one or more workflow files cannot be parsed."""


class UnknownWorkflowError(WorkflowLoadError):
    """Raised when a run names a workflow that is not defined."""


DEFAULT_WORKFLOWS: dict[str, WorkflowSpec] = {
    spec.name: spec
    for spec in (
        WorkflowSpec(name="build", description="Implement and test", skills=["build", "test"]),
        WorkflowSpec(
            name="plan-build",
            description="Plan, implement and test",
            skills=["spec", "build", "test"],
        ),
        WorkflowSpec(
            name="sdlc",
            description="Full lifecycle",
            skills=["spec", "decompose", "build", "test", "review", "document"],
        ),
        WorkflowSpec(
            name="quick-fix",
            description="Small change, tested and committed",
            skills=["build", "test", "commit"],
        ),
    )
}

DEFAULT_WORKFLOW = "build"


class WorkflowLoader:
    """Loads workflows from YAML files, layered over the built-in defaults."""

    def __init__(self, search_paths: Iterable[Path] | None = None, *, include_defaults: bool = True) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]
        self._include_defaults = include_defaults

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, WorkflowSpec]:
        """Load every workflow.

        Files may hold a single workflow mapping or a list of them. Later
        search paths override earlier ones, and files override the defaults.
        """

        workflows: dict[str, WorkflowSpec] = {}
        if self._include_defaults:
            workflows.update({name: spec.model_copy(deep=True) for name, spec in DEFAULT_WORKFLOWS.items()})
        errors: list[str] = []

        for base in self._search_paths:
            files = [base] if base.is_file() else sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml"))
            for path in files:
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except (OSError, yaml.YAMLError) as exc:
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue
                items = document if isinstance(document, list) else [document]
                for item in items:
                    try:
                        spec = WorkflowSpec.model_validate(item)
                    except ValidationError as exc:
                        errors.append(f"Workflow validation error in {path}: {exc}")
                        continue
                    workflows[spec.name] = spec

        if errors:
            raise WorkflowLoadError("; ".join(errors))

        return workflows

    def get(self, name: str) -> WorkflowSpec:
        workflows = self.load_all()
        try:
            return workflows[name]
        except KeyError as exc:
            known = ", ".join(sorted(workflows)) or "none"
            raise UnknownWorkflowError(f"Workflow '{name}' not found (known: {known})") from exc


def load_workflows(search_paths: Iterable[Path] | None = None) -> dict[str, WorkflowSpec]:
    """Convenience wrapper for loading workflows from the provided paths."""

    return WorkflowLoader(search_paths).load_all()


__all__ = [
    "DEFAULT_WORKFLOW",
    "DEFAULT_WORKFLOWS",
    "UnknownWorkflowError",
    "WorkflowLoadError",
    "WorkflowLoader",
    "load_workflows",
]
