"""
Plan execution: dependency analysis, failure policy, completion checks, and the step loop.
"""

from importlib import import_module
from typing import Any

_EXPORTS = {
    "ExecutionOutcome": "stepwise.planning.executor",
    "ExecutionResult": "stepwise.planning.executor",
    "IterationBudget": "stepwise.planning.executor",
    "StepExecutor": "stepwise.planning.executor",
    "compute_iteration_budget": "stepwise.planning.executor",
    "render_plan_markdown": "stepwise.planning.render",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import the executor so tools can import planning helpers without cycles."""
    module_name = _EXPORTS.get(name)
    if module_name is not None:
        module = import_module(module_name)
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
