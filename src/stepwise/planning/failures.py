"""Retry-or-fail decision for step failures reported by a worker."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ..memory.schema import ErrorCategory, ImplementationPlan
from ..policy.errors import ErrorClassifier, classify_error
from .dependencies import CascadeMode, DependencyCheck, cascade_skip, step_depends_on

LOGGER = logging.getLogger(__name__)

NO_REASON = "No reason provided"


class FailureAction(str, Enum):
    RETRY = "RETRY"
    FAIL = "FAIL"


@dataclass(slots=True)
class FailureOutcome:
    """What happened to a step after a failure report."""

    step_index: int
    action: FailureAction
    category: ErrorCategory
    message: str
    skipped_steps: List[int] = field(default_factory=list)

    def describe(self) -> str:
        if self.action == FailureAction.RETRY:
            return f"Step {self.step_index} will be retried: {self.message}"
        text = f"Step {self.step_index} failed: {self.message}"
        if self.skipped_steps:
            skipped = ", ".join(str(index) for index in self.skipped_steps)
            text += f"\nSkipped dependent step(s): {skipped}"
        return text


def handle_step_failure(
    plan: ImplementationPlan,
    step_index: int,
    message: Optional[str],
    *,
    classifier: ErrorClassifier = classify_error,
    depends_on: DependencyCheck = step_depends_on,
    cascade_mode: CascadeMode = CascadeMode.SINGLE_PASS,
) -> FailureOutcome:
    """Classify ``message`` and either reset the step for retry or fail it.

    Transient failures with retries left send the step back to PENDING without
    moving the plan cursor. Anything else fails the step permanently and
    skips the pending steps that depend on its outputs.
    """
    step = plan.step(step_index)
    text = (message or "").strip() or NO_REASON
    category = classifier(text)

    if category == ErrorCategory.TRANSIENT and step.retry_count < step.max_retries:
        plan.retry_step(step_index, text, category)
        LOGGER.info(
            "Step %s of task %s hit a transient error; retry %s/%s: %s",
            step_index,
            plan.task_id,
            step.retry_count,
            step.max_retries,
            text,
        )
        return FailureOutcome(
            step_index=step_index,
            action=FailureAction.RETRY,
            category=category,
            message=text,
        )

    reason = f"max retries exhausted: {text}" if category == ErrorCategory.TRANSIENT else text
    plan.fail_step(step_index, reason, category)
    LOGGER.warning(
        "Step %s of task %s failed permanently [%s]: %s",
        step_index,
        plan.task_id,
        category.value,
        reason,
    )
    skipped = cascade_skip(plan, step, depends_on=depends_on, mode=cascade_mode)
    return FailureOutcome(
        step_index=step_index,
        action=FailureAction.FAIL,
        category=category,
        message=reason,
        skipped_steps=skipped,
    )


__all__ = ["FailureAction", "FailureOutcome", "handle_step_failure"]
