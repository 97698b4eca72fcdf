"""Workflow models describing how a run is driven through its skills."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

REVIEW_SKILL = "review"


class WorkflowSpec(BaseModel):
    """An ordered list of skills executed one agent invocation at a time."""

    name: str = Field(..., description="Unique workflow name, e.g. 'build'.")
    description: str = Field(default="", description="Human-friendly summary.")
    skills: list[str] = Field(..., description="Skills executed in order.")
    system_prompt: str = Field(default="", description="Preamble prepended to every skill prompt.")
    skill_prompts: dict[str, str] = Field(
        default_factory=dict,
        description="Per-skill instructions overriding the built-in ones.",
    )
    model: str | None = Field(default=None, description="Model override for this workflow.")
    allowed_tools: list[str] = Field(default_factory=list)
    max_turns: int | None = Field(default=None)
    permission_mode: str | None = Field(default=None)
    route: bool = Field(
        default=False,
        description="Start the run in the routing state until the agent reports in.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Workflow name must not be empty")
        return normalized

    @field_validator("skills", "allowed_tools", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        if isinstance(value, (list, tuple)):
            return [str(item).strip() for item in value]
        raise TypeError("skills and allowed_tools must be sequences of strings")

    @field_validator("skills")
    @classmethod
    def _require_skills(cls, value: list[str]) -> list[str]:
        if not value or any(not item for item in value):
            raise ValueError("Workflow must name at least one non-empty skill")
        return value

    @property
    def ends_with_review(self) -> bool:
        return self.skills[-1] == REVIEW_SKILL


__all__ = ["REVIEW_SKILL", "WorkflowSpec"]
