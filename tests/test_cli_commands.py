from __future__ import annotations

import json
import textwrap
from pathlib import Path

import yaml
from typer.testing import CliRunner

from stepwise.cli import app
from stepwise.memory.schema import PlanStatus, ReflectionDecision
from stepwise.memory.store import CheckpointStore
from stepwise.policy.intervention import ReflectionMonitor

PLAN_DOCUMENT = textwrap.dedent(
    """
    task_id: widget
    task_description: Build the widget service
    steps:
      - title: Create module
        files_to_create: [src/widget.py]
      - Add tests
    """
).strip()


def _bootstrap(tmp_path: Path) -> tuple[CliRunner, Path]:
    runner = CliRunner()
    config_path = tmp_path / "stepwise.yaml"
    result = runner.invoke(
        app, ["init", "--config", str(config_path), "--name", "Demo Project"], catch_exceptions=False
    )
    assert result.exit_code == 0, result.output
    assert "Created configuration" in result.output

    plan_path = tmp_path / "plan.yaml"
    plan_path.write_text(PLAN_DOCUMENT + "\n", encoding="utf-8")
    result = runner.invoke(
        app, ["import-plan", str(plan_path), "--config", str(config_path)], catch_exceptions=False
    )
    assert result.exit_code == 0, result.output
    assert "Imported plan widget for project demo-project with 2 steps" in result.output
    return runner, config_path


def test_init_writes_default_config(tmp_path) -> None:
    runner = CliRunner()
    config_path = tmp_path / "stepwise.yaml"
    runner.invoke(app, ["init", "--config", str(config_path), "--name", "Demo Project"], catch_exceptions=False)

    config = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    assert config["project"]["name"] == "demo-project"
    assert config["execution"]["total_iteration_budget"] == 30
    assert config["models"]["default"] == "offline"

    again = runner.invoke(app, ["init", "--config", str(config_path)], catch_exceptions=False)
    assert "already exists" in again.output


def test_import_show_and_list(tmp_path) -> None:
    runner, config_path = _bootstrap(tmp_path)

    duplicate = runner.invoke(
        app, ["import-plan", str(tmp_path / "plan.yaml"), "--config", str(config_path)]
    )
    assert duplicate.exit_code == 1
    assert "--replace" in duplicate.output

    shown = runner.invoke(app, ["show", "demo-project", "widget", "--config", str(config_path)])
    assert shown.exit_code == 0, shown.output
    assert "Plan demo-project/widget [READY]" in shown.output
    assert "[ ] 1. Create module" in shown.output
    assert "[ ] 2. Add tests" in shown.output

    listed = runner.invoke(app, ["list", "--config", str(config_path)])
    assert "- demo-project/widget [READY] 0/2 steps" in listed.output

    missing = runner.invoke(app, ["show", "demo-project", "nope", "--config", str(config_path)])
    assert missing.exit_code == 1
    assert "No plan stored" in missing.output


def test_run_offline_completes_plan(tmp_path) -> None:
    runner, config_path = _bootstrap(tmp_path)

    result = runner.invoke(
        app,
        ["run", "demo-project", "widget", "--config", str(config_path), "--no-use-remote"],
        catch_exceptions=False,
    )

    assert result.exit_code == 0, result.output
    assert "Using offline stub client." in result.output
    assert "Outcome: COMPLETED" in result.output
    assert "Progress: 2/2 steps (100%)" in result.output

    with CheckpointStore(tmp_path / "data" / "stepwise.sqlite") as store:
        plan = store.load_plan("demo-project", "widget")
    assert plan is not None
    assert plan.status == PlanStatus.COMPLETED

    markdown = runner.invoke(
        app, ["show", "demo-project", "widget", "--config", str(config_path), "--markdown"]
    )
    assert markdown.output.startswith("# Implementation Plan: Build the widget service")
    assert "- Status: COMPLETED" in markdown.output

    rerun = runner.invoke(app, ["run", "demo-project", "widget", "--config", str(config_path)])
    assert rerun.exit_code == 0
    assert "already COMPLETED" in rerun.output


def test_run_requires_api_key_for_remote_models(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("STEPWISE_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    runner, config_path = _bootstrap(tmp_path)
    config = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    config["models"]["default"] = "claude-sonnet-4-5"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")

    result = runner.invoke(app, ["run", "demo-project", "widget", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "No API key given" in result.output


def test_signals_show_and_acknowledge_interventions(tmp_path) -> None:
    runner, config_path = _bootstrap(tmp_path)
    db_path = tmp_path / "data" / "stepwise.sqlite"

    quiet = runner.invoke(app, ["signals", "demo-project", "widget", "--config", str(config_path), "--ack"])
    assert "No pending intervention." in quiet.output
    assert "Nothing to acknowledge." in quiet.output

    with CheckpointStore(db_path) as store:
        plan = store.load_plan("demo-project", "widget")
        assert plan is not None
        plan.metadata["worker_id"] = "worker-a"
        ReflectionMonitor(worker_id="worker-a").record(
            plan,
            step_index=1,
            iteration=3,
            progress_percent=20,
            confidence=60,
            decision=ReflectionDecision.ESCALATE,
        )
        store.save_plan(plan)

    as_json = runner.invoke(app, ["signals", "demo-project", "widget", "--config", str(config_path), "--json"])
    payload = json.loads(as_json.output)
    assert payload["reason"] == "AGENT_ESCALATED"
    assert payload["worker_id"] == "worker-a"

    acked = runner.invoke(app, ["signals", "demo-project", "widget", "--config", str(config_path), "--ack"])
    assert "Pending intervention: AGENT_ESCALATED at step 1" in acked.output
    assert "Acknowledged intervention AGENT_ESCALATED." in acked.output

    after = runner.invoke(app, ["signals", "demo-project", "widget", "--config", str(config_path)])
    assert "No pending intervention." in after.output
    assert "-> AGENT_ESCALATED" in after.output


def test_missing_config_is_rejected(tmp_path) -> None:
    runner = CliRunner()
    result = runner.invoke(app, ["list", "--config", str(tmp_path / "absent.yaml")])
    assert result.exit_code != 0
