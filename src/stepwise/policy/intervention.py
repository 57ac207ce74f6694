"""Reflection checkpoint evaluation and intervention signalling.

Workers periodically report progress, confidence, blockers, and a decision
through the ``reflect`` tool. Each report is checked against an ordered rule
table; the first rule that matches names the :class:`InterventionReason`
attached to the report. Rules are evaluated independently, so a later rule
is still reachable whenever the earlier ones do not match.

``INTERVENTION_RULES``
    Ordered ``(reason, predicate)`` pairs. Escalation intent always comes
    first.

``ReflectionMonitor``
    Records reports on the plan, raises :class:`InterventionSignal` objects,
    and hands them to a registered callback so a supervisor can react without
    polling.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from ..memory.schema import (
    ImplementationPlan,
    InterventionReason,
    InterventionSignal,
    ReflectionDecision,
    ReflectionSignal,
    utc_now,
)

LOGGER = logging.getLogger(__name__)

InterventionCallback = Callable[[InterventionSignal], None]


@dataclass(slots=True)
class InterventionThresholds:
    """Tunable limits for the intervention rules."""

    low_confidence: int = 30
    declining_checkpoints: int = 3
    declining_drop: int = 20
    multiple_blockers: int = 3
    stalled_checkpoints: int = 3

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "InterventionThresholds":
        defaults = cls()
        if not data:
            return defaults
        values = {}
        for name in (
            "low_confidence",
            "declining_checkpoints",
            "declining_drop",
            "multiple_blockers",
            "stalled_checkpoints",
        ):
            raw = data.get(name, getattr(defaults, name))
            if isinstance(raw, bool) or not isinstance(raw, int):
                raise ValueError(f"intervention.{name} must be an integer, got {raw!r}")
            values[name] = raw
        return cls(**values)


InterventionRule = Callable[[ReflectionSignal, Sequence[ReflectionSignal], InterventionThresholds], bool]


def _agent_escalated(current: ReflectionSignal, history: Sequence[ReflectionSignal], thresholds: InterventionThresholds) -> bool:
    return current.decision == ReflectionDecision.ESCALATE


def _low_confidence(current: ReflectionSignal, history: Sequence[ReflectionSignal], thresholds: InterventionThresholds) -> bool:
    return current.confidence < thresholds.low_confidence


def _multiple_blockers(current: ReflectionSignal, history: Sequence[ReflectionSignal], thresholds: InterventionThresholds) -> bool:
    return len(current.blockers) >= thresholds.multiple_blockers


def _recent(history: Sequence[ReflectionSignal], checkpoints: int) -> Optional[Sequence[ReflectionSignal]]:
    """Return the ``checkpoints - 1`` reports preceding the current one, if available."""
    needed = max(checkpoints - 1, 1)
    if len(history) < needed:
        return None
    return history[-needed:]


def _declining_confidence(current: ReflectionSignal, history: Sequence[ReflectionSignal], thresholds: InterventionThresholds) -> bool:
    window = _recent(history, thresholds.declining_checkpoints)
    if window is None:
        return False
    return window[0].confidence - current.confidence >= thresholds.declining_drop


def _stalled_progress(current: ReflectionSignal, history: Sequence[ReflectionSignal], thresholds: InterventionThresholds) -> bool:
    window = _recent(history, thresholds.stalled_checkpoints)
    if window is None or current.progress_percent != 0:
        return False
    return all(entry.progress_percent == 0 for entry in window)


INTERVENTION_RULES: tuple[tuple[InterventionReason, InterventionRule], ...] = (
    (InterventionReason.AGENT_ESCALATED, _agent_escalated),
    (InterventionReason.LOW_CONFIDENCE, _low_confidence),
    (InterventionReason.MULTIPLE_BLOCKERS, _multiple_blockers),
    (InterventionReason.DECLINING_CONFIDENCE, _declining_confidence),
    (InterventionReason.STALLED_PROGRESS, _stalled_progress),
)

REASON_DESCRIPTIONS: dict[InterventionReason, str] = {
    InterventionReason.AGENT_ESCALATED: "You requested escalation to the supervisor.",
    InterventionReason.LOW_CONFIDENCE: "Confidence is below the acceptable threshold.",
    InterventionReason.MULTIPLE_BLOCKERS: "Multiple blockers are preventing progress.",
    InterventionReason.DECLINING_CONFIDENCE: "Confidence has been declining across checkpoints.",
    InterventionReason.STALLED_PROGRESS: "Progress has stalled across several checkpoints.",
}


def evaluate_reflection(
    current: ReflectionSignal,
    history: Sequence[ReflectionSignal],
    thresholds: Optional[InterventionThresholds] = None,
    rules: Iterable[tuple[InterventionReason, InterventionRule]] = INTERVENTION_RULES,
) -> Optional[InterventionReason]:
    """Return the first matching intervention reason for ``current``, if any.

    ``history`` holds the reports recorded before ``current``, oldest first.
    """
    limits = thresholds or InterventionThresholds()
    for reason, predicate in rules:
        if predicate(current, history, limits):
            return reason
    return None


def render_guidance(reflection: ReflectionSignal, signal: Optional[InterventionSignal] = None) -> str:
    """Return the acknowledgement and advice sent back to the worker."""
    lines = [
        "Reflection checkpoint recorded",
        "",
        f"Progress: {reflection.progress_percent}%",
        f"Confidence: {reflection.confidence}%",
        f"Decision: {reflection.decision.value.lower()}",
    ]
    if reflection.files_done:
        lines.append(f"Files completed: {', '.join(reflection.files_done)}")
    if reflection.blockers:
        lines.append(f"Blockers: {', '.join(reflection.blockers)}")
    lines.append("")

    if signal is not None:
        lines.append("INTERVENTION SIGNAL GENERATED")
        lines.append(f"Reason: {REASON_DESCRIPTIONS[signal.reason]}")
        lines.append("The supervisor has been notified and may intervene.")
        lines.append("")

    lines.append("Guidance:")
    if reflection.confidence >= 70:
        lines.append("High confidence - continue with the current approach.")
        if reflection.decision == ReflectionDecision.PIVOT:
            lines.append("You chose to pivot despite high confidence; make sure the change is necessary.")
    elif reflection.confidence >= 40:
        lines.append("Moderate confidence - proceed carefully and verify each change.")
        if reflection.blockers:
            lines.append("Resolve the listed blockers before moving on to new files.")
    else:
        lines.append("Low confidence - stop and reconsider the approach.")
        if reflection.decision == ReflectionDecision.CONTINUE:
            lines.append("Consider pivoting to a simpler approach or escalating if you remain stuck.")
    return "\n".join(lines)


class ReflectionMonitor:
    """Records reflection reports for one worker and raises interventions."""

    def __init__(
        self,
        *,
        worker_id: str,
        thresholds: Optional[InterventionThresholds] = None,
        callback: Optional[InterventionCallback] = None,
    ) -> None:
        self.worker_id = worker_id
        self.thresholds = thresholds or InterventionThresholds()
        self._callback = callback

    def record(
        self,
        plan: ImplementationPlan,
        *,
        step_index: int,
        iteration: int,
        progress_percent: int,
        confidence: int,
        decision: ReflectionDecision,
        files_done: Sequence[str] = (),
        blockers: Sequence[str] = (),
        notes: Optional[str] = None,
    ) -> tuple[ReflectionSignal, Optional[InterventionSignal]]:
        reflection = ReflectionSignal(
            step_index=step_index,
            iteration=iteration,
            progress_percent=progress_percent,
            confidence=confidence,
            decision=decision,
            files_done=list(files_done),
            blockers=list(blockers),
            notes=notes,
        )
        reason = evaluate_reflection(reflection, plan.reflections, self.thresholds)
        if reason is not None:
            reflection.intervention_triggered = True
            reflection.intervention_reason = reason
        plan.record_reflection(reflection)
        LOGGER.info(
            "Reflection from %s on step %s (iteration %s): %s%% progress, %s%% confidence, %s",
            self.worker_id,
            step_index,
            iteration,
            progress_percent,
            confidence,
            decision.value,
        )
        if reason is None:
            return reflection, None

        signal = InterventionSignal.from_reflection(
            reflection,
            worker_id=self.worker_id,
            task_id=plan.task_id,
            project_id=plan.project_id,
        )
        plan.add_log_entry(f"Intervention requested: {reason.value}")
        LOGGER.warning(
            "Intervention signal for worker %s on task %s: %s (confidence %s%%)",
            self.worker_id,
            plan.task_id,
            reason.value,
            confidence,
        )
        self._notify(signal)
        return reflection, signal

    def _notify(self, signal: InterventionSignal) -> None:
        if self._callback is None:
            return
        try:
            self._callback(signal)
        except Exception:
            LOGGER.exception(
                "Intervention callback failed for worker %s on task %s",
                signal.worker_id,
                signal.task_id,
            )


def latest_intervention(plan: ImplementationPlan, *, worker_id: Optional[str] = None) -> Optional[InterventionSignal]:
    """Rebuild the most recent intervention signal from the plan's reflections."""
    reflection = plan.latest_intervention()
    if reflection is None:
        return None
    return InterventionSignal.from_reflection(
        reflection,
        worker_id=worker_id or str(plan.metadata.get("worker_id", "")),
        task_id=plan.task_id,
        project_id=plan.project_id,
    )


def pending_intervention(plan: ImplementationPlan, *, worker_id: Optional[str] = None) -> Optional[InterventionSignal]:
    """Return the latest intervention signal unless it was already acknowledged."""
    signal = latest_intervention(plan, worker_id=worker_id)
    if signal is None or signal.acknowledged:
        return None
    return signal


def acknowledge_intervention(plan: ImplementationPlan, *, worker_id: Optional[str] = None) -> Optional[InterventionSignal]:
    """Mark the latest intervention as acknowledged and return the updated signal."""
    reflection = plan.latest_intervention()
    if reflection is None:
        return None
    if not reflection.acknowledged:
        reflection.acknowledged = True
        reflection.acknowledged_at = utc_now()
        reason = reflection.intervention_reason.value if reflection.intervention_reason else "UNKNOWN"
        plan.add_log_entry(f"Intervention acknowledged: {reason}")
    return latest_intervention(plan, worker_id=worker_id)


__all__ = [
    "INTERVENTION_RULES",
    "InterventionCallback",
    "InterventionRule",
    "InterventionThresholds",
    "REASON_DESCRIPTIONS",
    "ReflectionMonitor",
    "acknowledge_intervention",
    "evaluate_reflection",
    "latest_intervention",
    "pending_intervention",
    "render_guidance",
]
