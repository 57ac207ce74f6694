"""Tool contract plus the plan tools every worker receives."""

from .base import Tool, ToolError, ToolRegistry, ToolResult, extract_argument_paths
from .plan_step import UPDATE_PLAN_STEP_TOOL, UpdatePlanStepTool
from .reflect import REFLECT_TOOL, ReflectTool

__all__ = [
    "REFLECT_TOOL",
    "ReflectTool",
    "Tool",
    "ToolError",
    "ToolRegistry",
    "ToolResult",
    "UPDATE_PLAN_STEP_TOOL",
    "UpdatePlanStepTool",
    "extract_argument_paths",
]
