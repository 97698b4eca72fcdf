"""Workflow definitions and prompt assembly."""

from .loader import (
    DEFAULT_WORKFLOW,
    DEFAULT_WORKFLOWS,
    UnknownWorkflowError,
    WorkflowLoadError,
    WorkflowLoader,
    load_workflows,
)
from .models import REVIEW_SKILL, WorkflowSpec
from .prompt import (
    DEFAULT_SKILL_PROMPTS,
    FOLLOW_UP_SKILL,
    render_follow_up_prompt,
    render_skill_prompt,
    safety_section,
)

__all__ = [
    "DEFAULT_SKILL_PROMPTS",
    "DEFAULT_WORKFLOW",
    "DEFAULT_WORKFLOWS",
    "FOLLOW_UP_SKILL",
    "REVIEW_SKILL",
    "UnknownWorkflowError",
    "WorkflowLoadError",
    "WorkflowLoader",
    "WorkflowSpec",
    "load_workflows",
    "render_follow_up_prompt",
    "render_skill_prompt",
    "safety_section",
]
