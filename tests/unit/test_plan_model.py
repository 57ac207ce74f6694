from __future__ import annotations

import pytest
from conftest import make_plan
from pydantic import ValidationError

from stepwise.memory.schema import (
    ErrorCategory,
    ImplementationPlan,
    ImplementationStep,
    PlanStateError,
    PlanStatus,
    StepNotFoundError,
    StepStatus,
)


def test_step_indices_must_be_contiguous() -> None:
    with pytest.raises(ValidationError):
        ImplementationPlan(
            task_id="t",
            project_id="p",
            steps=[ImplementationStep(index=1, title="a"), ImplementationStep(index=3, title="b")],
        )


def test_step_lookup_rejects_out_of_range_indices() -> None:
    plan = make_plan(2)
    assert plan.step(2).title == "Step 2"
    with pytest.raises(StepNotFoundError, match="Valid steps are 1 to 2"):
        plan.step(3)
    with pytest.raises(LookupError):
        plan.step(0)


def test_illegal_step_transitions_raise() -> None:
    plan = make_plan(2)
    plan.start_step(1)
    with pytest.raises(PlanStateError):
        plan.start_step(1)
    plan.complete_step(1)
    with pytest.raises(PlanStateError):
        plan.fail_step(1, "late failure", ErrorCategory.PERMANENT)
    with pytest.raises(PlanStateError):
        plan.skip_step(1, "too late")
    with pytest.raises(PlanStateError):
        plan.retry_step(1, "timeout", ErrorCategory.TRANSIENT)


def test_cursor_advances_only_past_finished_steps() -> None:
    plan = make_plan(4)
    plan.start_execution()
    with pytest.raises(PlanStateError):
        plan.advance_to_next_step()

    # Completing a later step first does not move the cursor.
    plan.start_step(2)
    plan.complete_step(2)
    assert plan.current_step_index == 0

    plan.start_step(1)
    plan.complete_step(1)
    assert plan.current_step_index == 2
    assert plan.current_step is plan.step(3)

    plan.skip_step(3, "not needed")
    assert plan.current_step_index == 3
    assert plan.progress_percentage == 75
    assert plan.completed_steps_count == 2
    assert plan.completed_through() == 3


def test_mark_completed_requires_terminal_steps() -> None:
    plan = make_plan(2)
    plan.start_execution()
    plan.start_step(1)
    plan.complete_step(1)
    with pytest.raises(PlanStateError, match="open steps: 2"):
        plan.mark_completed()

    plan.start_step(2)
    plan.complete_step(2, auto=True)
    plan.mark_completed()
    assert plan.status == PlanStatus.COMPLETED
    assert plan.lessons_learned == ["Step 2 (Step 2) was auto-completed from its file outputs"]
    with pytest.raises(PlanStateError):
        plan.start_execution()


def test_mark_failed_records_reason_and_lessons() -> None:
    plan = make_plan(2)
    plan.start_execution()
    plan.start_step(1)
    plan.retry_step(1, "timeout", ErrorCategory.TRANSIENT)
    plan.start_step(1)
    plan.complete_step(1)
    plan.start_step(2)
    plan.fail_step(2, "bad schema", ErrorCategory.PERMANENT)

    plan.mark_failed("1 step(s) failed")

    assert plan.status == PlanStatus.FAILED
    assert plan.error_message == "1 step(s) failed"
    assert plan.lessons_learned == [
        "Step 1 (Step 1) succeeded after 1 retry: timeout",
        "Step 2 (Step 2) failed [PERMANENT]: bad schema",
    ]
    assert plan.execution_log[-1].message == "Plan failed: 1 step(s) failed"


def test_retry_budget_is_enforced() -> None:
    plan = make_plan(1, max_retries=1)
    plan.start_step(1)
    plan.retry_step(1, "timeout", ErrorCategory.TRANSIENT)
    plan.start_step(1)
    with pytest.raises(PlanStateError, match="already used 1 of 1 retries"):
        plan.retry_step(1, "timeout", ErrorCategory.TRANSIENT)


def test_aggregated_metrics() -> None:
    plan = make_plan(3)
    plan.step(1).metrics.iterations_used = 4
    plan.step(1).metrics.estimated_tokens = 100
    plan.step(2).metrics.iterations_used = 2
    plan.start_step(1)
    plan.complete_step(1, auto=True)
    plan.start_step(2)
    plan.fail_step(2, "boom", ErrorCategory.PERMANENT)
    plan.skip_step(3, "blocked")

    metrics = plan.aggregated_metrics()

    assert metrics.total_steps == 3
    assert metrics.completed_steps == 1
    assert metrics.failed_steps == 1
    assert metrics.skipped_steps == 1
    assert metrics.auto_completed_steps == 1
    assert metrics.iterations_used == 6
    assert metrics.estimated_tokens == 100
    assert [step.index for step in plan.failed_steps()] == [2]
    assert plan.step(3).status == StepStatus.SKIPPED


def test_step_metrics_flag_failed_and_skipped_steps() -> None:
    plan = make_plan(3)
    plan.start_execution()
    plan.start_step(1)
    plan.fail_step(1, "bad schema", ErrorCategory.PERMANENT)
    plan.skip_step(2, "blocked by failed step 1")

    assert plan.step(1).metrics.failed is True
    assert plan.step(1).metrics.skipped is False
    assert plan.step(2).metrics.skipped is True
    assert plan.step(3).metrics.failed is False


def test_lessons_capture_quick_heavy_and_file_patterns() -> None:
    plan = make_plan(
        3,
        step_1={"files_to_create": ["src/a.py"]},
        step_3={"files_to_modify": ["src/a.py", "README.md"]},
    )
    plan.start_execution()
    plan.start_step(1)
    plan.step(1).metrics.iterations_used = 1
    plan.complete_step(1)
    plan.start_step(2)
    plan.step(2).metrics.iterations_used = 2
    plan.complete_step(2)
    plan.start_step(3)
    plan.retry_step(3, "timeout", ErrorCategory.TRANSIENT)
    plan.start_step(3)
    plan.step(3).metrics.iterations_used = 12
    plan.complete_step(3)

    plan.mark_completed()

    assert plan.lessons_learned == [
        "Step 3 (Step 3) succeeded after 1 retry: timeout",
        "Step 3 (Step 3) required 12 iterations; consider breaking similar steps down",
        "Steps of this task often complete in 1.5 iterations each",
        "This task created or modified 3 file(s) across 3 step(s)",
    ]


def test_single_quick_step_is_not_a_pattern() -> None:
    plan = make_plan(2)
    plan.start_execution()
    plan.start_step(1)
    plan.step(1).metrics.iterations_used = 2
    plan.complete_step(1)
    plan.start_step(2)
    plan.step(2).metrics.iterations_used = 5
    plan.complete_step(2)

    plan.mark_completed()

    assert plan.lessons_learned == []
