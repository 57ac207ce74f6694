from __future__ import annotations

import os
import time

from conftest import make_plan

from stepwise.planning.validation import StepCompletionValidator


def _started_step(**fields):
    plan = make_plan(1, step_1=fields)
    step = plan.step(1)
    step.start()
    return step


def test_outputs_plausibly_done_requires_every_declared_file() -> None:
    step = _started_step(files_to_create=["src/app.py"], files_to_modify=["README.md"])
    validator = StepCompletionValidator()
    assert not validator.outputs_plausibly_done(step, {"src/app.py"})
    assert validator.outputs_plausibly_done(step, {"src/app.py", "README.md"})
    assert not validator.outputs_plausibly_done(_started_step(), {"src/app.py"})


def test_validate_checks_created_and_modified_files(tmp_path) -> None:
    step = _started_step(files_to_create=["src/app.py"], files_to_modify=["README.md"])
    validator = StepCompletionValidator()

    report = validator.validate(step, tmp_path, set())
    assert not report.success
    assert "expected file src/app.py was not created" in report.issues
    assert "file to modify README.md does not exist" in report.issues
    assert step.metrics.validation_attempts == 1

    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("print('hi')\n", encoding="utf-8")
    readme = tmp_path / "README.md"
    readme.write_text("# Widget\n", encoding="utf-8")
    os.utime(readme, (0, 0))

    stale = validator.validate(step, tmp_path, {"src/app.py"})
    assert stale.issues == ["file README.md was not modified during this step"]

    touched = validator.validate(step, tmp_path, {"src/app.py", "README.md"})
    assert touched.success
    assert touched.summary() == "all declared file expectations met"
    assert step.metrics.validation_attempts == 3


def test_validate_accepts_files_modified_after_step_start(tmp_path) -> None:
    (tmp_path / "config.toml").write_text("a = 1\n", encoding="utf-8")
    step = _started_step(files_to_modify=["config.toml"])
    (tmp_path / "config.toml").write_text("a = 2\n", encoding="utf-8")
    later = time.time() + 5
    os.utime(tmp_path / "config.toml", (later, later))

    assert StepCompletionValidator().validate(step, tmp_path, set()).success


def test_expected_content_must_appear_in_declared_files(tmp_path) -> None:
    (tmp_path / "app.py").write_text("def main():\n    return 1\n", encoding="utf-8")
    step = _started_step(files_to_create=["app.py"], expected_content=["def main", "argparse"])

    report = StepCompletionValidator().validate(step, tmp_path, {"app.py"})

    assert not report.success
    assert report.issues == ["expected content 'argparse' not found in declared files"]
    assert report.summary() == "expected content 'argparse' not found in declared files"


def test_steps_without_declared_files_never_validate(tmp_path) -> None:
    step = _started_step()
    report = StepCompletionValidator().validate(step, tmp_path, set())
    assert not report.success
    assert step.metrics.validation_attempts == 0


def test_created_file_that_predates_the_step_is_not_accepted(tmp_path) -> None:
    (tmp_path / "app.py").write_text("print('old')\n", encoding="utf-8")
    os.utime(tmp_path / "app.py", (0, 0))
    step = _started_step(files_to_create=["app.py"])
    validator = StepCompletionValidator()

    report = validator.validate(step, tmp_path, set())
    assert report.issues == ["file app.py predates this step and was not written by it"]

    assert validator.validate(step, tmp_path, {"app.py"}).success
