"""Markdown rendering of implementation plans for humans."""

from __future__ import annotations

from typing import List

from ..memory.schema import ImplementationPlan, ImplementationStep
from ..prompts import status_marker


def _render_step(step: ImplementationStep) -> List[str]:
    lines = [f"### {status_marker(step.status)} Step {step.index}: {step.title}", ""]
    if step.description:
        lines.extend([step.description, ""])
    lines.append(f"- Status: {step.status.value}")
    if step.files_to_create:
        lines.append(f"- Files to create: {', '.join(f'`{path}`' for path in step.files_to_create)}")
    if step.files_to_modify:
        lines.append(f"- Files to modify: {', '.join(f'`{path}`' for path in step.files_to_modify)}")
    if step.retry_count:
        lines.append(f"- Retries: {step.retry_count}/{step.max_retries}")
    if step.metrics.iterations_used:
        lines.append(f"- Iterations used: {step.metrics.iterations_used}")
    if step.metrics.auto_completed:
        lines.append("- Completion: auto-detected from file outputs")
    if step.last_error_message:
        category = f" [{step.error_category.value}]" if step.error_category else ""
        lines.append(f"- Last error{category}: {step.last_error_message}")
    if step.output:
        lines.append(f"- Output: {step.output}")
    lines.append("")
    return lines


def render_plan_markdown(plan: ImplementationPlan) -> str:
    """Render ``plan`` with step status markers, metrics, and the execution log."""
    title = plan.task_description.splitlines()[0] if plan.task_description else plan.task_id
    metrics = plan.aggregated_metrics()
    lines = [
        f"# Implementation Plan: {title}",
        "",
        f"- Project: {plan.project_id}",
        f"- Task: {plan.task_id}",
        f"- Status: {plan.status.value}",
        f"- Progress: {plan.completed_steps_count}/{len(plan.steps)} steps ({plan.progress_percentage}%)",
        f"- Iterations used: {metrics.iterations_used}",
        f"- Created: {plan.created_at.isoformat()}",
        f"- Updated: {plan.updated_at.isoformat()}",
    ]
    if plan.error_message:
        lines.append(f"- Error: {plan.error_message}")
    lines.extend(["", "## Steps", ""])
    for step in plan.steps:
        lines.extend(_render_step(step))

    if plan.lessons_learned:
        lines.extend(["## Lessons Learned", ""])
        lines.extend(f"- {lesson}" for lesson in plan.lessons_learned)
        lines.append("")

    if plan.execution_log:
        lines.extend(["## Execution Log", ""])
        lines.extend(
            f"- {entry.timestamp.strftime('%Y-%m-%d %H:%M:%S')} {entry.message}"
            for entry in plan.execution_log
        )
        lines.append("")
    return "\n".join(lines)


__all__ = ["render_plan_markdown"]
