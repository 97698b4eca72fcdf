"""Prompt assembly for skill invocations."""

from __future__ import annotations

from typing import Sequence

from ..run.models import Run
from .models import WorkflowSpec

FOLLOW_UP_SKILL = "follow-up"

DEFAULT_SKILL_PROMPTS: dict[str, str] = {
    "spec": "Write a concise implementation plan for the task below and save it as SPEC.md in the working directory.",
    "decompose": "Break the plan into small, ordered steps and record them in the plan file.",
    "build": "Implement the task below in the working directory, following any plan that is present.",
    "test": "Run the project's tests, fix any failures caused by the change, and summarize the results.",
    "review": (
        "Review the changes in this worktree against the task. Finish with a JSON object "
        '{"success": true} when the change is ready, or {"success": false, "issues": [...]} otherwise.'
    ),
    "document": "Update documentation affected by the change.",
    "commit": "Create atomic commits for all uncommitted changes using conventional commit messages.",
}


def safety_section(blocked_patterns: Sequence[str]) -> str:
    if not blocked_patterns:
        return ""
    lines = [
        "## Safety Constraints",
        "",
        "You MUST NOT execute any of the following command patterns under any circumstances:",
    ]
    lines.extend(f"- `{pattern}`" for pattern in blocked_patterns)
    lines.append("")
    lines.append(
        "If a task requires any of these operations, STOP and report that the operation is blocked by safety policy."
    )
    return "\n".join(lines) + "\n\n"


def _context_section(run: Run, previous_output: str = "") -> str:
    parts = ["## Context"]
    if run.worktree:
        parts.append(f"- Working directory: {run.worktree}")
    if run.branch:
        parts.append(f"- Branch: {run.branch}")
    if previous_output:
        parts.append("- Previous skill output:")
        parts.append(previous_output)
    return "\n".join(parts)


def render_skill_prompt(
    workflow: WorkflowSpec,
    skill: str,
    run: Run,
    *,
    blocked_patterns: Sequence[str] = (),
    previous_output: str = "",
) -> str:
    """Assemble the prompt for one skill of ``workflow``."""

    instructions = workflow.skill_prompts.get(skill) or DEFAULT_SKILL_PROMPTS.get(
        skill, f"Carry out the '{skill}' step for the task below."
    )
    sections = []
    if workflow.system_prompt:
        sections.append(workflow.system_prompt.strip())
    sections.append(f"# Skill: {skill}\n\n{instructions}")
    body = "\n\n".join(sections)
    return (
        safety_section(blocked_patterns)
        + body
        + "\n\n---\n\n"
        + _context_section(run, previous_output)
        + "\n\n## Task\n\n"
        + run.prompt
    )


def render_follow_up_prompt(run: Run, prompt: str, *, blocked_patterns: Sequence[str] = ()) -> str:
    """Prompt for a follow-up on a run awaiting review."""

    history = ""
    earlier = list(run.follow_up_prompts)
    if earlier and earlier[-1] == prompt:
        earlier.pop()
    if earlier:
        history = "\n\n## Earlier follow-ups\n\n" + "\n".join(f"- {item}" for item in earlier)
    return (
        safety_section(blocked_patterns)
        + _context_section(run)
        + f"\n\n## Original task\n\n{run.prompt}"
        + history
        + f"\n\n## Task\n\n{prompt}"
    )


__all__ = [
    "DEFAULT_SKILL_PROMPTS",
    "FOLLOW_UP_SKILL",
    "render_follow_up_prompt",
    "render_skill_prompt",
    "safety_section",
]
