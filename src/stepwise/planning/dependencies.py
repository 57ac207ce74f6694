"""File-overlap dependency analysis between plan steps.

Steps form a totally ordered sequence, not a DAG. A step *depends on* an
earlier step when it is going to edit a file that the earlier step was
supposed to create, or when its title or description mentions one of those
files. The heuristics are plain functions so a structured strategy can be
swapped in through :data:`DependencyCheck`.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Dict, Iterable, List, Set

from ..memory.schema import ImplementationPlan, ImplementationStep, PlanStateError, StepStatus
from ..utils.paths import normalise_path, text_references_path

LOGGER = logging.getLogger(__name__)

DependencyCheck = Callable[[ImplementationStep, ImplementationStep], bool]


class CascadeMode(str, Enum):
    """How far a permanent failure propagates skips."""

    SINGLE_PASS = "single_pass"
    FIXED_POINT = "fixed_point"


def _path_set(paths: Iterable[str]) -> Set[str]:
    return {normalised for normalised in (normalise_path(path) for path in paths) if normalised}


def step_depends_on(step: ImplementationStep, upstream: ImplementationStep) -> bool:
    """Return True when ``step`` consumes a file ``upstream`` was meant to create."""
    outputs = _path_set(upstream.files_to_create)
    if not outputs:
        return False
    if outputs & _path_set(step.files_to_modify):
        return True
    text = f"{step.title}\n{step.description}"
    return any(text_references_path(text, output) for output in outputs)


def has_dependency(first: ImplementationStep, second: ImplementationStep) -> bool:
    """Return True when the two steps touch any common file in either direction."""
    first_create = _path_set(first.files_to_create)
    first_modify = _path_set(first.files_to_modify)
    second_create = _path_set(second.files_to_create)
    second_modify = _path_set(second.files_to_modify)
    return bool(
        (first_create & second_modify)
        or (first_modify & second_create)
        or (first_modify & second_modify)
        or (first_create & second_create)
    )


def find_ordering_violations(plan: ImplementationPlan) -> List[str]:
    """Describe steps that modify a file only created by a later step."""
    creators: Dict[str, int] = {}
    for step in plan.steps:
        for path in _path_set(step.files_to_create):
            creators.setdefault(path, step.index)

    violations: List[str] = []
    for step in plan.steps:
        for path in sorted(_path_set(step.files_to_modify)):
            creator = creators.get(path)
            if creator is not None and creator > step.index:
                violations.append(
                    f"Step {step.index} modifies {path} which is only created by later step {creator}"
                )
    return violations


def cascade_skip(
    plan: ImplementationPlan,
    failed: ImplementationStep,
    *,
    depends_on: DependencyCheck = step_depends_on,
    mode: CascadeMode = CascadeMode.SINGLE_PASS,
) -> List[int]:
    """Skip pending steps after ``failed`` that depend on it; return their indices.

    In ``SINGLE_PASS`` mode only direct dependents of ``failed`` are skipped.
    ``FIXED_POINT`` also skips steps that depend on a step skipped by this
    cascade. Blockers always precede the steps they block, so one forward scan
    reaches the fixed point. Running the cascade again is a no-op because
    skipped steps are no longer pending.
    """
    if failed.status != StepStatus.FAILED:
        raise PlanStateError(f"Step {failed.index} has not failed; nothing to cascade")

    reason = f"blocked by failed step {failed.index}"
    blockers: List[ImplementationStep] = [failed]
    skipped: List[int] = []
    for step in plan.steps[failed.index:]:
        if step.status != StepStatus.PENDING:
            continue
        if not any(depends_on(step, blocker) for blocker in blockers):
            continue
        plan.skip_step(step.index, reason)
        skipped.append(step.index)
        if mode == CascadeMode.FIXED_POINT:
            blockers.append(step)

    if skipped:
        LOGGER.warning(
            "Skipped step(s) %s of task %s: %s",
            ", ".join(str(index) for index in skipped),
            plan.task_id,
            reason,
        )
    return skipped


__all__ = [
    "CascadeMode",
    "DependencyCheck",
    "cascade_skip",
    "find_ordering_violations",
    "has_dependency",
    "step_depends_on",
]
