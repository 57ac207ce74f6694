"""Tool contract and registry used by the step executor."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..models.llm_client import ToolCall

if TYPE_CHECKING:
    from ..planning.context import ExecutionContext

LOGGER = logging.getLogger(__name__)

PATH_ARGUMENT_KEYS = ("path", "file_path", "filename", "target", "destination")
PATH_LIST_ARGUMENT_KEYS = ("paths", "files", "file_paths")


class ToolError(Exception):
    """Raised by a tool to report bad arguments back to the worker."""


class Tool:
    """Base class for tools exposed to the worker.

    Subclasses set ``name``, ``description`` and ``input_schema`` and implement
    :meth:`execute`, which receives the per-worker context (working directory
    included) and the named arguments, and returns result text.
    """

    name: str = ""
    description: str = ""
    input_schema: Dict[str, Any] = {"type": "object", "properties": {}}

    def schema(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }

    def execute(self, context: "ExecutionContext", arguments: Mapping[str, Any]) -> str:
        raise NotImplementedError("Subclasses must implement execute().")


@dataclass(slots=True)
class ToolResult:
    """Outcome of a single tool call, ready to be sent back as a tool_result block."""

    tool_use_id: str
    content: str
    is_error: bool = False
    paths: List[str] = field(default_factory=list)

    def to_block(self) -> Dict[str, Any]:
        block: Dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error:
            block["is_error"] = True
        return block


def extract_argument_paths(arguments: Mapping[str, Any]) -> List[str]:
    """Return file paths named by conventional argument keys."""
    paths: List[str] = []
    for key in PATH_ARGUMENT_KEYS:
        value = arguments.get(key)
        if isinstance(value, str) and value.strip():
            paths.append(value)
    for key in PATH_LIST_ARGUMENT_KEYS:
        value = arguments.get(key)
        if isinstance(value, Sequence) and not isinstance(value, str):
            paths.extend(item for item in value if isinstance(item, str) and item.strip())
    return paths


class ToolRegistry:
    """Name-indexed collection of tools with error-tolerant dispatch."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: Dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if not tool.name:
            raise ValueError(f"Tool {type(tool).__name__} has no name")
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def schemas(self, names: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        if names is None:
            return [tool.schema() for tool in self._tools.values()]
        wanted = set(names)
        return [tool.schema() for name, tool in self._tools.items() if name in wanted]

    def execute(self, context: "ExecutionContext", call: ToolCall) -> ToolResult:
        tool = self._tools.get(call.name)
        if tool is None:
            return ToolResult(call.id, f"Error: Unknown tool '{call.name}'", is_error=True)
        try:
            content = tool.execute(context, call.arguments)
        except Exception as error:
            LOGGER.warning("Tool %s failed for worker %s: %s", call.name, context.worker_id, error)
            return ToolResult(call.id, f"Error: {error}", is_error=True)
        return ToolResult(call.id, content, paths=extract_argument_paths(call.arguments))


__all__ = [
    "PATH_ARGUMENT_KEYS",
    "PATH_LIST_ARGUMENT_KEYS",
    "Tool",
    "ToolError",
    "ToolRegistry",
    "ToolResult",
    "extract_argument_paths",
]
