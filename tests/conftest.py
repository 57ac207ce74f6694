from __future__ import annotations

import copy
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from stepwise.memory.schema import ImplementationPlan, ImplementationStep  # noqa: E402
from stepwise.models.llm_client import LLMClient  # noqa: E402

Reply = Mapping[str, Any]
ReplyFactory = Callable[[Dict[str, Any]], Reply]


class ScriptedClient(LLMClient):
    """LLM client that replays canned provider replies and records every payload."""

    def __init__(self, replies: Sequence[Reply | ReplyFactory], *, fallback: Reply | None = None) -> None:
        super().__init__("scripted", max_attempts=1, retry_delay=0)
        self._replies: List[Reply | ReplyFactory] = list(replies)
        self._fallback = fallback or {"content": [], "stop_reason": "end_turn"}
        self.payloads: List[Dict[str, Any]] = []

    def _raw_invoke(self, payload: Dict[str, Any]) -> Mapping[str, Any]:
        self.payloads.append(copy.deepcopy(payload))
        if not self._replies:
            return self._fallback
        reply = self._replies.pop(0)
        return reply(payload) if callable(reply) else reply

    def offered_tools(self, turn: int) -> List[str]:
        return [tool["name"] for tool in self.payloads[turn].get("tools", [])]


def tool_use(name: str, arguments: Dict[str, Any], *, call_id: str = "call-1") -> Dict[str, Any]:
    return {
        "content": [{"type": "tool_use", "id": call_id, "name": name, "input": arguments}],
        "stop_reason": "tool_use",
    }


def complete_step(index: int, *, call_id: str | None = None) -> Dict[str, Any]:
    return tool_use(
        "update_plan_step",
        {"step_index": index, "status": "completed", "output": f"step {index} done"},
        call_id=call_id or f"complete-{index}",
    )


def end_turn(text: str = "Done.") -> Dict[str, Any]:
    return {"content": [{"type": "text", "text": text}], "stop_reason": "end_turn"}


def make_plan(step_count: int = 3, *, max_retries: int = 3, **step_fields: Dict[str, Any]) -> ImplementationPlan:
    """Build a READY-style plan whose steps can be customised by index (``step_2={...}``)."""
    steps = []
    for index in range(1, step_count + 1):
        fields: Dict[str, Any] = {"title": f"Step {index}", "max_retries": max_retries}
        fields.update(step_fields.get(f"step_{index}", {}))
        steps.append(ImplementationStep(index=index, **fields))
    return ImplementationPlan(
        task_id="task-1",
        project_id="proj",
        task_description="Build the widget service",
        steps=steps,
    )


@pytest.fixture()
def plan() -> ImplementationPlan:
    return make_plan()
