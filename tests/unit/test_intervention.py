from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from conftest import make_plan

from stepwise.memory.schema import InterventionReason, ReflectionDecision, ReflectionSignal
from stepwise.policy.intervention import (
    InterventionThresholds,
    ReflectionMonitor,
    acknowledge_intervention,
    evaluate_reflection,
    latest_intervention,
    pending_intervention,
    render_guidance,
)


def _signal(
    *,
    progress: int = 50,
    confidence: int = 80,
    decision: ReflectionDecision = ReflectionDecision.CONTINUE,
    blockers: list[str] | None = None,
) -> ReflectionSignal:
    return ReflectionSignal(
        step_index=1,
        iteration=3,
        progress_percent=progress,
        confidence=confidence,
        decision=decision,
        blockers=blockers or [],
    )


def test_escalation_wins_over_every_other_rule() -> None:
    current = _signal(
        confidence=0,
        decision=ReflectionDecision.ESCALATE,
        blockers=[f"blocker {index}" for index in range(10)],
    )
    assert evaluate_reflection(current, []) == InterventionReason.AGENT_ESCALATED


def test_low_confidence_and_blocker_thresholds() -> None:
    assert evaluate_reflection(_signal(confidence=29), []) == InterventionReason.LOW_CONFIDENCE
    assert evaluate_reflection(_signal(confidence=30), []) is None
    three_blockers = _signal(blockers=["a", "b", "c"])
    assert evaluate_reflection(three_blockers, []) == InterventionReason.MULTIPLE_BLOCKERS
    assert evaluate_reflection(_signal(blockers=["a", "b"]), []) is None


def test_declining_confidence_needs_full_window() -> None:
    history = [_signal(confidence=90), _signal(confidence=80)]
    assert evaluate_reflection(_signal(confidence=70), history) == InterventionReason.DECLINING_CONFIDENCE
    assert evaluate_reflection(_signal(confidence=70), history[1:]) is None

    gentle = [_signal(confidence=85), _signal(confidence=80)]
    assert evaluate_reflection(_signal(confidence=70), gentle) is None


def test_stalled_progress_fires_when_earlier_rules_do_not() -> None:
    history = [_signal(progress=0), _signal(progress=0)]
    assert evaluate_reflection(_signal(progress=0), history) == InterventionReason.STALLED_PROGRESS
    assert evaluate_reflection(_signal(progress=10), history) is None

    thresholds = InterventionThresholds(stalled_checkpoints=4)
    assert evaluate_reflection(_signal(progress=0), history, thresholds) is None


def test_thresholds_from_mapping() -> None:
    thresholds = InterventionThresholds.from_mapping({"low_confidence": 50})
    assert thresholds.low_confidence == 50
    assert thresholds.multiple_blockers == 3
    with pytest.raises(ValueError, match="intervention.declining_drop"):
        InterventionThresholds.from_mapping({"declining_drop": "lots"})


def test_monitor_records_reflection_and_notifies_callback() -> None:
    plan = make_plan(2)
    callback = MagicMock()
    monitor = ReflectionMonitor(worker_id="worker-a", callback=callback)

    quiet, none_signal = monitor.record(
        plan, step_index=1, iteration=3, progress_percent=40, confidence=75, decision=ReflectionDecision.CONTINUE
    )
    assert none_signal is None
    assert not quiet.intervention_triggered
    callback.assert_not_called()

    reflection, signal = monitor.record(
        plan,
        step_index=1,
        iteration=6,
        progress_percent=40,
        confidence=10,
        decision=ReflectionDecision.PIVOT,
        blockers=["tests fail"],
    )

    assert signal is not None
    assert signal.reason == InterventionReason.LOW_CONFIDENCE
    assert signal.worker_id == "worker-a"
    assert signal.task_id == plan.task_id
    assert signal.source_reflection_id == reflection.id
    callback.assert_called_once_with(signal)
    assert plan.reflections == [quiet, reflection]
    assert plan.execution_log[-1].message == "Intervention requested: LOW_CONFIDENCE"


def test_callback_failure_does_not_propagate() -> None:
    plan = make_plan(1)
    callback = MagicMock(side_effect=RuntimeError("supervisor offline"))
    monitor = ReflectionMonitor(worker_id="worker-a", callback=callback)

    _, signal = monitor.record(
        plan, step_index=1, iteration=3, progress_percent=0, confidence=5, decision=ReflectionDecision.CONTINUE
    )

    assert signal is not None
    callback.assert_called_once()
    assert len(plan.reflections) == 1


def test_acknowledge_clears_pending_intervention() -> None:
    plan = make_plan(1)
    plan.metadata["worker_id"] = "worker-a"
    monitor = ReflectionMonitor(worker_id="worker-a")
    assert pending_intervention(plan) is None
    assert acknowledge_intervention(plan) is None

    monitor.record(
        plan, step_index=1, iteration=3, progress_percent=10, confidence=50, decision=ReflectionDecision.ESCALATE
    )
    pending = pending_intervention(plan)
    assert pending is not None
    assert pending.reason == InterventionReason.AGENT_ESCALATED
    assert pending.worker_id == "worker-a"

    acknowledged = acknowledge_intervention(plan)
    assert acknowledged is not None
    assert acknowledged.acknowledged
    assert acknowledged.acknowledged_at is not None
    assert pending_intervention(plan) is None
    latest = latest_intervention(plan)
    assert latest is not None and latest.acknowledged


def test_render_guidance_bands() -> None:
    high = render_guidance(_signal(confidence=90))
    assert high.startswith("Reflection checkpoint recorded")
    assert "High confidence" in high
    assert "INTERVENTION SIGNAL GENERATED" not in high

    moderate = render_guidance(_signal(confidence=50, blockers=["flaky test"]))
    assert "Moderate confidence" in moderate
    assert "Blockers: flaky test" in moderate

    plan = make_plan(1)
    reflection, signal = ReflectionMonitor(worker_id="w").record(
        plan, step_index=1, iteration=3, progress_percent=0, confidence=10, decision=ReflectionDecision.CONTINUE
    )
    low = render_guidance(reflection, signal)
    assert "INTERVENTION SIGNAL GENERATED" in low
    assert "Low confidence" in low
    assert "Consider pivoting" in low
