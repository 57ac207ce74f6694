from __future__ import annotations

import pytest
from conftest import make_plan

from stepwise.memory.schema import ErrorCategory, PlanStateError, StepStatus
from stepwise.planning.dependencies import (
    CascadeMode,
    cascade_skip,
    find_ordering_violations,
    has_dependency,
    step_depends_on,
)


def _chain_plan():
    return make_plan(
        4,
        step_1={"files_to_create": ["src/a.py"]},
        step_2={"files_to_modify": ["src/a.py"], "files_to_create": ["src/b.py"]},
        step_3={"files_to_modify": ["./src/b.py"]},
        step_4={"files_to_create": ["src/c.py"]},
    )


def _fail_first(plan):
    plan.start_execution()
    plan.start_step(1)
    return plan.fail_step(1, "SyntaxError in src/a.py", ErrorCategory.PERMANENT)


def test_step_depends_on_modified_or_mentioned_outputs() -> None:
    plan = make_plan(
        3,
        step_1={"files_to_create": ["src/a.py"]},
        step_2={"files_to_modify": ["src\\a.py"]},
        step_3={"description": "Wire up a.py into the CLI entry point."},
    )
    first, second, third = plan.steps
    assert step_depends_on(second, first)
    assert step_depends_on(third, first)
    assert not step_depends_on(first, second)


def test_has_dependency_is_symmetric_on_shared_files() -> None:
    plan = _chain_plan()
    first, second, _, fourth = plan.steps
    assert has_dependency(first, second)
    assert has_dependency(second, first)
    assert not has_dependency(first, fourth)


def test_single_pass_cascade_skips_direct_dependents_only() -> None:
    plan = _chain_plan()
    failed = _fail_first(plan)

    skipped = cascade_skip(plan, failed)

    assert skipped == [2]
    assert plan.step(2).status == StepStatus.SKIPPED
    assert plan.step(2).output == "blocked by failed step 1"
    assert plan.step(3).status == StepStatus.PENDING
    assert plan.step(4).status == StepStatus.PENDING


def test_fixed_point_cascade_follows_transitive_dependents() -> None:
    plan = _chain_plan()
    failed = _fail_first(plan)

    skipped = cascade_skip(plan, failed, mode=CascadeMode.FIXED_POINT)

    assert skipped == [2, 3]
    assert plan.step(3).output == "blocked by failed step 1"
    assert plan.step(4).status == StepStatus.PENDING


def test_cascade_is_idempotent() -> None:
    plan = _chain_plan()
    failed = _fail_first(plan)
    cascade_skip(plan, failed)
    log_size = len(plan.execution_log)

    assert cascade_skip(plan, failed) == []
    assert len(plan.execution_log) == log_size


def test_cascade_requires_failed_step() -> None:
    plan = _chain_plan()
    with pytest.raises(PlanStateError):
        cascade_skip(plan, plan.step(1))


def test_find_ordering_violations_reports_late_creators() -> None:
    plan = make_plan(
        2,
        step_1={"files_to_modify": ["src/b.py"]},
        step_2={"files_to_create": ["src/b.py"]},
    )
    assert find_ordering_violations(plan) == [
        "Step 1 modifies src/b.py which is only created by later step 2"
    ]
    assert find_ordering_violations(_chain_plan()) == []
