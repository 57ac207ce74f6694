from __future__ import annotations

from conftest import make_plan

from stepwise.memory.schema import ErrorCategory
from stepwise.planning.render import render_plan_markdown
from stepwise.utils.slug import abbreviate_slug, plan_filename, short_hash, slugify


def test_slugify_normalises_and_limits_length() -> None:
    assert slugify("Build the Widget Service!") == "build-the-widget-service"
    assert slugify("   ", fallback="Task") == "task"
    long_slug = slugify("x" * 120, max_length=20)
    assert len(long_slug) == 20
    assert long_slug == abbreviate_slug("x" * 120, max_length=20)


def test_plan_filename_uses_leading_words_and_task_hash() -> None:
    digest = short_hash("task-42")
    assert len(digest) == 4
    assert plan_filename("Implement: Add **user** login flow", "task-42") == f"add-user-login-flow-{digest}"
    assert plan_filename("[API v2] Fix pagination", "task-42") == f"api-v2-fix-pagination-{digest}"
    assert plan_filename("", "task-42") == digest

    stem = plan_filename("word " * 30, "task-42")
    assert len(stem) <= 40 + 5


def test_render_plan_markdown_lists_steps_and_log() -> None:
    plan = make_plan(2, step_1={"files_to_create": ["src/app.py"]})
    plan.start_execution()
    plan.start_step(1)
    plan.complete_step(1, "created app", auto=True)
    plan.start_step(2)
    plan.fail_step(2, "bad schema", ErrorCategory.PERMANENT)
    plan.mark_failed("1 step(s) failed: 2 (bad schema)")

    text = render_plan_markdown(plan)

    assert text.startswith("# Implementation Plan: Build the widget service")
    assert "- Status: FAILED" in text
    assert "### [x] Step 1: Step 1" in text
    assert "- Files to create: `src/app.py`" in text
    assert "- Completion: auto-detected from file outputs" in text
    assert "### [!] Step 2: Step 2" in text
    assert "- Last error [PERMANENT]: bad schema" in text
    assert "## Lessons Learned" in text
    assert "## Execution Log" in text
    assert "Plan failed: 1 step(s) failed: 2 (bad schema)" in text
