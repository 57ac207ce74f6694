"""The ``reflect`` tool that records a worker self-assessment checkpoint."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, List, Optional

from ..memory.schema import ReflectionDecision
from ..policy.intervention import render_guidance
from .base import Tool, ToolError

if TYPE_CHECKING:
    from ..planning.context import ExecutionContext

REFLECT_TOOL = "reflect"


def _parse_percent(arguments: Mapping[str, Any], key: str) -> int:
    if key not in arguments:
        raise ToolError(f"'{key}' parameter is required")
    value = arguments[key]
    parsed: Optional[int] = None
    if isinstance(value, bool):
        parsed = None
    elif isinstance(value, int):
        parsed = value
    elif isinstance(value, float) and value.is_integer():
        parsed = int(value)
    elif isinstance(value, str):
        try:
            parsed = int(value.strip().rstrip("%"))
        except ValueError:
            parsed = None
    if parsed is None:
        raise ToolError(f"'{key}' must be an integer")
    if parsed < 0 or parsed > 100:
        raise ToolError(f"'{key}' must be between 0 and 100")
    return parsed


def _parse_string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, Sequence):
        return [str(item) for item in value if str(item).strip()]
    raise ToolError("expected a list of strings")


class ReflectTool(Tool):
    """Records progress, confidence, blockers, and a decision for the active step."""

    name = REFLECT_TOOL
    description = (
        "Report a self-reflection checkpoint for the current step: how far along you are, "
        "what is blocking you, how confident you are that the approach will work, and whether "
        "to continue, pivot to a new approach, or escalate to the supervisor."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "progress_percent": {
                "type": "integer",
                "minimum": 0,
                "maximum": 100,
                "description": "Progress toward completing the current step (0-100)",
            },
            "files_done": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Files successfully created or modified so far",
            },
            "blockers": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Current obstacles or challenges",
            },
            "confidence": {
                "type": "integer",
                "minimum": 0,
                "maximum": 100,
                "description": "Confidence (0-100) that the current approach will succeed",
            },
            "decision": {
                "type": "string",
                "enum": ["continue", "pivot", "escalate"],
                "description": "Continue, pivot to a new approach, or escalate to the supervisor",
            },
            "notes": {
                "type": "string",
                "description": "Optional additional observations",
            },
        },
        "required": ["progress_percent", "confidence", "decision"],
    }

    def execute(self, context: "ExecutionContext", arguments: Mapping[str, Any]) -> str:
        progress = _parse_percent(arguments, "progress_percent")
        confidence = _parse_percent(arguments, "confidence")

        raw_decision = arguments.get("decision")
        if not isinstance(raw_decision, str) or not raw_decision.strip():
            raise ToolError("'decision' parameter is required")
        try:
            decision = ReflectionDecision(raw_decision.strip().upper())
        except ValueError as error:
            raise ToolError(
                f"Invalid decision '{raw_decision}'. Must be 'continue', 'pivot', or 'escalate'."
            ) from error

        notes = arguments.get("notes")
        reflection, signal = context.record_reflection(
            progress_percent=progress,
            confidence=confidence,
            decision=decision,
            files_done=_parse_string_list(arguments.get("files_done")),
            blockers=_parse_string_list(arguments.get("blockers")),
            notes=str(notes) if notes is not None else None,
        )
        return render_guidance(reflection, signal)


__all__ = ["REFLECT_TOOL", "ReflectTool"]
