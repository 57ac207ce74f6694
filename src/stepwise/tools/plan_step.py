"""The ``update_plan_step`` tool through which workers report step outcomes."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Optional

from ..memory.schema import StepStatus
from ..planning.failures import FailureAction
from .base import Tool, ToolError

if TYPE_CHECKING:
    from ..planning.context import ExecutionContext

UPDATE_PLAN_STEP_TOOL = "update_plan_step"

_STATUS_CHOICES = {
    "completed": StepStatus.COMPLETED,
    "failed": StepStatus.FAILED,
    "skipped": StepStatus.SKIPPED,
}


def _parse_step_index(value: Any) -> int:
    if isinstance(value, bool):
        raise ToolError("'step_index' must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise ToolError("'step_index' must be an integer")


class UpdatePlanStepTool(Tool):
    """Marks a plan step completed, failed, or skipped."""

    name = UPDATE_PLAN_STEP_TOOL
    description = (
        "Update the status of a step in your implementation plan. Call this after finishing "
        "each step so progress is saved and the plan can be resumed if interrupted. "
        "Use 'failed' with the error text in 'output' when a step cannot be completed; "
        "transient failures are retried automatically."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "step_index": {
                "type": "integer",
                "description": "The step number (1-based) to update",
            },
            "status": {
                "type": "string",
                "enum": sorted(_STATUS_CHOICES),
                "description": "The new status for the step",
            },
            "output": {
                "type": "string",
                "description": "Brief summary of what was done or the reason for failure/skip",
            },
        },
        "required": ["step_index", "status"],
    }

    def execute(self, context: "ExecutionContext", arguments: Mapping[str, Any]) -> str:
        if "step_index" not in arguments:
            raise ToolError("'step_index' parameter is required")
        step_index = _parse_step_index(arguments["step_index"])

        raw_status = arguments.get("status")
        if not isinstance(raw_status, str) or not raw_status.strip():
            raise ToolError("'status' parameter is required")
        status = _STATUS_CHOICES.get(raw_status.strip().lower())
        if status is None:
            raise ToolError(
                f"Invalid status '{raw_status}'. Must be 'completed', 'failed', or 'skipped'."
            )

        raw_output = arguments.get("output")
        output: Optional[str] = str(raw_output) if raw_output is not None else None

        plan = context.plan
        if status == StepStatus.COMPLETED:
            context.complete_step(step_index, output)
            headline = f"Step {step_index} marked as completed"
        elif status == StepStatus.SKIPPED:
            context.skip_step(step_index, output)
            headline = f"Step {step_index} marked as skipped"
        else:
            outcome = context.fail_step(step_index, output)
            headline = outcome.describe()
            if outcome.action == FailureAction.RETRY:
                step = plan.step(step_index)
                headline += f"\nRetry {step.retry_count} of {step.max_retries} will start on your next turn."

        lines = [
            headline,
            f"Progress: {plan.completed_steps_count}/{len(plan.steps)} steps ({plan.progress_percentage}%)",
        ]
        next_step = plan.next_executable_step()
        if next_step is not None:
            lines.append("")
            lines.append(f"Next step: Step {next_step.index} - {next_step.title}")
        else:
            lines.append("")
            lines.append("All steps are finished. Plan execution is complete.")
        return "\n".join(lines)


__all__ = ["UPDATE_PLAN_STEP_TOOL", "UpdatePlanStepTool"]
