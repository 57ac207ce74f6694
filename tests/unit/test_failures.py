from __future__ import annotations

from conftest import make_plan

from stepwise.memory.schema import ErrorCategory, StepStatus
from stepwise.planning.failures import NO_REASON, FailureAction, handle_step_failure


def test_transient_failure_retries_until_budget_then_cascades() -> None:
    plan = make_plan(
        3,
        max_retries=2,
        step_2={"files_to_create": ["src/two.py"]},
        step_3={"files_to_modify": ["src/two.py"]},
    )
    plan.start_execution()
    plan.start_step(1)
    plan.complete_step(1)

    actions = []
    for _ in range(3):
        plan.start_step(2)
        outcome = handle_step_failure(plan, 2, "connection reset")
        actions.append(outcome.action)
        # The cursor never moves past a step that is being retried or has failed.
        assert plan.current_step_index == 1

    assert actions == [FailureAction.RETRY, FailureAction.RETRY, FailureAction.FAIL]
    second = plan.step(2)
    assert second.status == StepStatus.FAILED
    assert second.retry_count == 2
    assert second.error_category == ErrorCategory.TRANSIENT
    assert second.last_error_message == "max retries exhausted: connection reset"
    assert outcome.skipped_steps == [3]
    assert plan.step(3).status == StepStatus.SKIPPED
    assert plan.step(3).output == "blocked by failed step 2"
    assert plan.all_steps_terminal()
    assert plan.next_executable_step() is None


def test_retry_returns_step_to_pending() -> None:
    plan = make_plan(2)
    plan.start_execution()
    plan.start_step(1)

    outcome = handle_step_failure(plan, 1, "HTTP 429 rate limit")

    assert outcome.action == FailureAction.RETRY
    assert outcome.describe() == "Step 1 will be retried: HTTP 429 rate limit"
    step = plan.step(1)
    assert step.status == StepStatus.PENDING
    assert step.retry_count == 1
    assert step.started_at is None
    assert plan.next_executable_step() is step


def test_permanent_failure_fails_immediately() -> None:
    plan = make_plan(2, step_1={"files_to_create": ["app.py"]}, step_2={"files_to_modify": ["app.py"]})
    plan.start_execution()
    plan.start_step(1)

    outcome = handle_step_failure(plan, 1, "ImportError: no module named widgets")

    assert outcome.action == FailureAction.FAIL
    assert outcome.category == ErrorCategory.PERMANENT
    assert plan.step(1).retry_count == 0
    assert outcome.describe() == (
        "Step 1 failed: ImportError: no module named widgets\nSkipped dependent step(s): 2"
    )


def test_missing_message_is_permanent() -> None:
    plan = make_plan(1)
    plan.start_execution()
    plan.start_step(1)

    outcome = handle_step_failure(plan, 1, "   ")

    assert outcome.action == FailureAction.FAIL
    assert outcome.message == NO_REASON
    assert plan.step(1).last_error_message == NO_REASON
