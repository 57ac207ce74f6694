"""Prompt text the executor sends to workers.

Only the parts that affect control flow live here: the task framing, the
retry and resumption notices, the reflection demand, and advisory warnings.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Set

from .memory.schema import ImplementationPlan, ImplementationStep, StepStatus
from .tools.plan_step import UPDATE_PLAN_STEP_TOOL
from .tools.reflect import REFLECT_TOOL

SYSTEM_PROMPT = (
    "You are an autonomous coding worker executing an implementation plan step by step. "
    "Work on one step at a time, in order. Use the available tools to inspect and change files. "
    f"When a step is finished, call `{UPDATE_PLAN_STEP_TOOL}` with its 1-based index and status "
    "'completed'. If a step cannot be done, call it with status 'failed' and the error text. "
    f"When asked for a checkpoint, call `{REFLECT_TOOL}` before doing anything else."
)

_STATUS_MARKERS: Dict[StepStatus, str] = {
    StepStatus.PENDING: "[ ]",
    StepStatus.IN_PROGRESS: "[~]",
    StepStatus.COMPLETED: "[x]",
    StepStatus.SKIPPED: "[-]",
    StepStatus.FAILED: "[!]",
}


def status_marker(status: StepStatus) -> str:
    return _STATUS_MARKERS[status]


def _format_step(step: ImplementationStep) -> List[str]:
    lines = [f"{status_marker(step.status)} Step {step.index}: {step.title}"]
    if step.description:
        lines.append(f"    {step.description}")
    if step.files_to_create:
        lines.append(f"    Create: {', '.join(step.files_to_create)}")
    if step.files_to_modify:
        lines.append(f"    Modify: {', '.join(step.files_to_modify)}")
    return lines


def build_task_prompt(plan: ImplementationPlan) -> str:
    """Return the opening user message for a fresh run."""
    lines = [f"Task: {plan.task_description or plan.task_id}", "", "Implementation plan:"]
    for step in plan.steps:
        lines.extend(_format_step(step))
    next_step = plan.next_executable_step()
    if next_step is not None:
        lines.append("")
        lines.append(f"Start with step {next_step.index}: {next_step.title}.")
    return "\n".join(lines)


def build_resume_notice(plan: ImplementationPlan) -> str:
    """Return the synthetic notice appended when a saved transcript is restored."""
    completed = plan.completed_through()
    lines = ["The previous session was interrupted and has been restored."]
    if completed:
        lines.append(f"You already completed through step {completed}; do not redo it.")
    next_step = plan.next_executable_step()
    if next_step is not None:
        lines.append(f"Continue with step {next_step.index}: {next_step.title}.")
    return " ".join(lines)


def build_step_notice(step: ImplementationStep) -> str:
    """Return the notice sent when the executor moves on to ``step``."""
    if step.retry_count:
        return (
            f"Step {step.index} ({step.title}) is being retried "
            f"(attempt {step.retry_count + 1} of {step.max_retries + 1}). "
            f"The previous attempt failed with: {step.last_error_message}"
        )
    return f"Now working on step {step.index}: {step.title}."


def build_reflection_request(step: ImplementationStep, iterations_used: int) -> str:
    return (
        f"Checkpoint: you have spent {iterations_used} iterations on step {step.index}. "
        f"Before continuing, call `{REFLECT_TOOL}` with your progress_percent, confidence, "
        "blockers, and decision (continue, pivot, or escalate). No other tool is available "
        "until you do."
    )


def build_reflection_required_error() -> str:
    return f"Error: a `{REFLECT_TOOL}` checkpoint is required before any other tool can run."


def build_file_conflict_warning(conflicts: Dict[str, Set[str]]) -> str:
    details = "; ".join(
        f"{path} (in use by {', '.join(sorted(holders))})" for path, holders in sorted(conflicts.items())
    )
    return (
        f"Warning: other workers are currently touching files this step declares: {details}. "
        "Coordinate carefully; re-read these files before editing them."
    )


def build_ordering_warning(violations: Iterable[str]) -> str:
    return "Plan ordering warnings:\n" + "\n".join(f"- {violation}" for violation in violations)


__all__ = [
    "SYSTEM_PROMPT",
    "build_file_conflict_warning",
    "build_ordering_warning",
    "build_reflection_request",
    "build_reflection_required_error",
    "build_resume_notice",
    "build_step_notice",
    "build_task_prompt",
    "status_marker",
]
