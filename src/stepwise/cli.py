"""CLI commands for importing, inspecting, and executing implementation plans."""

from __future__ import annotations

import itertools
import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import typer
import yaml
from pydantic import ValidationError

from .config import (
    DEFAULT_CONFIG_NAME,
    ConfigError,
    ExecutionSettings,
    configure_logging,
    default_config,
    resolve_repo_root,
    write_config,
)
from .config import load_config as _read_config
from .memory.file_registry import FileActivityRegistry
from .memory.schema import ImplementationPlan, ImplementationStep, PlanStatus, StepStatus
from .memory.store import CheckpointStore
from .models import LLMClient, LLMClientError, MessagesClient
from .planning.executor import ExecutionOutcome, ExecutionResult, StepExecutor
from .planning.render import render_plan_markdown
from .policy.intervention import acknowledge_intervention, pending_intervention
from .prompts import status_marker
from .tools.plan_step import UPDATE_PLAN_STEP_TOOL
from .tools.reflect import REFLECT_TOOL
from .utils.slug import plan_filename, slugify

APP_HELP = "Resumable plan execution for LLM coding workers."

app = typer.Typer(help=APP_HELP)

_CONFIG_OPTION_HELP = "Path to the stepwise configuration file."


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")
    try:
        return _read_config(config_path)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


def _settings(config: Mapping[str, Any]) -> ExecutionSettings:
    try:
        return ExecutionSettings.from_config(config)
    except ConfigError as error:
        typer.echo(f"Invalid configuration: {error}")
        raise typer.Exit(code=1) from error


def _open_store(config: Mapping[str, Any], config_path: Path) -> CheckpointStore:
    """Open the checkpoint store, resolving relative paths against the config file."""
    try:
        return CheckpointStore.from_config(config, base_dir=config_path.parent)
    except (sqlite3.Error, OSError) as error:
        typer.echo(f"Failed to open checkpoint store: {error}")
        raise typer.Exit(code=1) from error


def _require_plan(store: CheckpointStore, project_id: str, task_id: str) -> ImplementationPlan:
    plan = store.load_plan(project_id, task_id)
    if plan is None:
        typer.echo(f"No plan stored for project '{project_id}' and task '{task_id}'.")
        raise typer.Exit(code=1)
    return plan


class _OfflineLLMClient(LLMClient):
    """Local stub that walks the plan deterministically for demos and tests.

    Each turn reports the next open step as completed. When only the reflection
    tool is offered it files a steady checkpoint instead, and once every step is
    terminal it ends the turn.
    """

    def __init__(self, plan: ImplementationPlan) -> None:
        super().__init__("offline", max_attempts=1)
        self._plan = plan
        self._ids = itertools.count(1)

    def _tool_use(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "type": "tool_use",
            "id": f"offline-{next(self._ids)}",
            "name": name,
            "input": arguments,
        }

    def _raw_invoke(self, payload: Dict[str, Any]) -> Mapping[str, Any]:
        offered = {tool.get("name") for tool in payload.get("tools") or []}
        if offered == {REFLECT_TOOL}:
            block = self._tool_use(
                REFLECT_TOOL,
                {"progress_percent": 50, "confidence": 80, "decision": "continue"},
            )
            return {"content": [block], "stop_reason": "tool_use"}

        step = self._plan.next_executable_step()
        if step is None:
            return {
                "content": [{"type": "text", "text": "All plan steps are finished."}],
                "stop_reason": "end_turn",
            }
        block = self._tool_use(
            UPDATE_PLAN_STEP_TOOL,
            {"step_index": step.index, "status": "completed", "output": "Completed by offline stub."},
        )
        return {
            "content": [{"type": "text", "text": f"Working on step {step.index}."}, block],
            "stop_reason": "tool_use",
        }


def _build_client(config: Mapping[str, Any], plan: ImplementationPlan, *, use_remote: bool) -> LLMClient:
    """Select either the real messages client or the offline stub."""
    models_cfg = config.get("models") or {}
    model_name = str(models_cfg.get("default", "offline"))
    model_name_key = model_name.lower()
    offline_model = model_name_key == "offline" or model_name_key.endswith("-offline")

    if use_remote and not offline_model:
        typer.echo(f"Using messages client ({model_name}).")
        client_kwargs: Dict[str, Any] = {}
        timeout_value = models_cfg.get("timeout")
        if isinstance(timeout_value, (int, float)) and timeout_value > 0:
            client_kwargs["timeout"] = float(timeout_value)
        max_attempts_value = models_cfg.get("max_attempts")
        if isinstance(max_attempts_value, int) and max_attempts_value > 0:
            client_kwargs["max_attempts"] = max_attempts_value
        retry_delay_value = models_cfg.get("retry_delay")
        if isinstance(retry_delay_value, (int, float)) and retry_delay_value >= 0:
            client_kwargs["retry_delay"] = float(retry_delay_value)
        max_tokens_value = models_cfg.get("max_tokens")
        if isinstance(max_tokens_value, int) and max_tokens_value > 0:
            client_kwargs["max_tokens"] = max_tokens_value
        base_url_value = models_cfg.get("base_url")
        if isinstance(base_url_value, str) and base_url_value.strip():
            client_kwargs["base_url"] = base_url_value.strip()
        api_key_value = models_cfg.get("api_key")
        if isinstance(api_key_value, str) and api_key_value.strip():
            client_kwargs["api_key"] = api_key_value.strip()
        try:
            return MessagesClient(model=model_name, **client_kwargs)
        except ValueError as error:
            if "api key" in str(error).lower():
                typer.echo(
                    "No API key given. Set STEPWISE_API_KEY or ANTHROPIC_API_KEY, "
                    "or re-run with --no-use-remote to use the offline stub."
                )
            else:
                typer.echo(f"Failed to initialise messages client: {error}")
            raise typer.Exit(code=1)
        except LLMClientError as error:
            typer.echo(f"Failed to initialise messages client: {error}")
            raise typer.Exit(code=1)

    if use_remote and offline_model:
        typer.echo(f"Model '{model_name}' is offline-only; using offline stub client.")
    else:
        typer.echo("Using offline stub client.")
    return _OfflineLLMClient(plan)


def _load_plan_document(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise typer.BadParameter(f"Plan file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse plan file: {error}")
        raise typer.Exit(code=1) from error
    if not isinstance(data, dict):
        typer.echo("Plan file must be a mapping at the top level.")
        raise typer.Exit(code=1)
    steps = data.get("steps")
    if not isinstance(steps, list) or not steps:
        typer.echo("Plan file must contain a non-empty 'steps' list.")
        raise typer.Exit(code=1)
    return data


def _build_plan(
    data: Mapping[str, Any],
    *,
    project_id: str,
    settings: ExecutionSettings,
) -> ImplementationPlan:
    description = str(data.get("task_description") or data.get("description") or "").strip()
    task_id = str(data.get("task_id") or "").strip() or slugify(description, fallback="task", max_length=40)
    steps: List[ImplementationStep] = []
    for position, raw in enumerate(data["steps"], start=1):
        entry: Dict[str, Any] = {"title": raw} if isinstance(raw, str) else dict(raw)
        entry.pop("index", None)
        entry.setdefault("max_retries", settings.max_retries)
        steps.append(ImplementationStep(index=position, **entry))
    return ImplementationPlan(
        task_id=task_id,
        project_id=project_id,
        task_description=description,
        plan_filename=plan_filename(description or task_id, task_id),
        status=PlanStatus.READY,
        steps=steps,
    )


def _render_plan_summary(plan: ImplementationPlan) -> None:
    typer.echo(f"Plan {plan.project_id}/{plan.task_id} [{plan.status.value}]")
    if plan.task_description:
        typer.echo(f"Task: {plan.task_description}")
    typer.echo(
        f"Progress: {plan.completed_steps_count}/{len(plan.steps)} steps ({plan.progress_percentage}%)"
    )
    for step in plan.steps:
        suffix = f" (retries {step.retry_count}/{step.max_retries})" if step.retry_count else ""
        typer.echo(f"  {status_marker(step.status)} {step.index}. {step.title}{suffix}")
        if step.last_error_message and step.status != StepStatus.COMPLETED:
            typer.echo(f"      ! {step.last_error_message}")
    if plan.error_message:
        typer.echo(f"Error: {plan.error_message}")


def _render_execution_result(result: ExecutionResult) -> None:
    plan = result.plan
    typer.echo(f"Outcome: {result.outcome.value}")
    typer.echo(
        f"Iterations: {result.iterations}/{result.budget.effective} "
        f"(per step {result.budget.per_step})"
    )
    typer.echo(
        f"Progress: {plan.completed_steps_count}/{len(plan.steps)} steps ({plan.progress_percentage}%)"
    )
    if result.auto_completed_steps:
        typer.echo(
            "Auto-completed steps: " + ", ".join(str(index) for index in result.auto_completed_steps)
        )
    for signal in result.interventions:
        typer.echo(f"Intervention: {signal.reason.value} at step {signal.step_index}")
    if result.error:
        typer.echo(f"Error: {result.error}")
    if result.resumable:
        typer.echo("Plan paused; run the same command again to resume.")


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help=_CONFIG_OPTION_HELP,
    ),
    name: Optional[str] = typer.Option(
        None,
        "--name",
        "-n",
        help="Project identifier used when importing plans.",
    ),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists():
        typer.echo(f"Configuration already exists at {config_path}.")
        return

    config_data = default_config()
    project_source = name or config_path.resolve().parent.name
    config_data["project"]["name"] = slugify(project_source, fallback="project", max_length=40)
    config_data["paths"]["config"] = config_path.name
    write_config(config_path, config_data)
    typer.echo(f"Created configuration at {config_path}.")


@app.command("import-plan")
def import_plan(
    plan_file: Path = typer.Argument(..., help="YAML or JSON file describing the plan steps."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
    project: Optional[str] = typer.Option(
        None,
        "--project",
        "-p",
        help="Project identifier (defaults to project.name from the config).",
    ),
    replace: bool = typer.Option(
        False,
        "--replace/--no-replace",
        help="Overwrite a stored plan with the same task id.",
    ),
) -> None:
    """Store a new implementation plan so it can be executed and resumed."""
    config_path = Path(config)
    config_data = load_config(config_path)
    settings = _settings(config_data)
    document = _load_plan_document(plan_file)

    project_id = (
        project
        or str(document.get("project_id") or "").strip()
        or str((config_data.get("project") or {}).get("name") or "").strip()
        or "default"
    )
    try:
        plan = _build_plan(document, project_id=project_id, settings=settings)
    except (ValidationError, TypeError) as error:
        typer.echo(f"Invalid plan file: {error}")
        raise typer.Exit(code=1) from error

    with _open_store(config_data, config_path) as store:
        if store.load_plan(plan.project_id, plan.task_id) is not None and not replace:
            typer.echo(
                f"Plan '{plan.task_id}' already exists for project '{plan.project_id}'. "
                "Use --replace to overwrite it."
            )
            raise typer.Exit(code=1)
        store.delete_conversation(plan.project_id, plan.task_id)
        store.save_plan(plan)

    typer.echo(
        f"Imported plan {plan.task_id} for project {plan.project_id} "
        f"with {len(plan.steps)} steps ({plan.plan_filename})."
    )


@app.command()
def show(
    project: str = typer.Argument(..., help="Project identifier."),
    task: str = typer.Argument(..., help="Task identifier."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
    markdown: bool = typer.Option(
        False,
        "--markdown/--no-markdown",
        help="Render the full plan as markdown.",
    ),
) -> None:
    """Show the status of a stored plan."""
    config_path = Path(config)
    config_data = load_config(config_path)
    with _open_store(config_data, config_path) as store:
        plan = _require_plan(store, project, task)
    if markdown:
        typer.echo(render_plan_markdown(plan))
    else:
        _render_plan_summary(plan)


@app.command("list")
def list_plans(
    project: Optional[str] = typer.Argument(None, help="Only list plans for this project."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
) -> None:
    """List stored plans."""
    config_path = Path(config)
    config_data = load_config(config_path)
    with _open_store(config_data, config_path) as store:
        plans = store.list_plans(project)
    if not plans:
        typer.echo("No plans stored.")
        return
    for plan in plans:
        typer.echo(
            f"- {plan.project_id}/{plan.task_id} [{plan.status.value}] "
            f"{plan.completed_steps_count}/{len(plan.steps)} steps"
        )


@app.command()
def run(
    project: str = typer.Argument(..., help="Project identifier."),
    task: str = typer.Argument(..., help="Task identifier."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
    use_remote: bool = typer.Option(
        True,
        "--use-remote/--no-use-remote",
        help="Call the messages API instead of the offline stub (requires API key).",
    ),
    worker: Optional[str] = typer.Option(None, "--worker", help="Worker identifier to record."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Execute (or resume) a stored plan."""
    config_path = Path(config)
    config_data = load_config(config_path)
    try:
        configure_logging(config_data, verbose=verbose)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    settings = _settings(config_data)
    repo_root = resolve_repo_root(config_data, config_path)

    with _open_store(config_data, config_path) as store:
        plan = _require_plan(store, project, task)
        if plan.status in (PlanStatus.COMPLETED, PlanStatus.FAILED):
            typer.echo(f"Plan {project}/{task} is already {plan.status.value}.")
            raise typer.Exit(code=0 if plan.status == PlanStatus.COMPLETED else 1)

        client = _build_client(config_data, plan, use_remote=use_remote)
        executor = StepExecutor(
            client,
            store,
            settings=settings,
            working_directory=repo_root,
            worker_id=worker,
            file_registry=FileActivityRegistry(),
        )
        result = executor.run(plan)

    _render_execution_result(result)
    if result.outcome in (ExecutionOutcome.FAILED, ExecutionOutcome.PROVIDER_ERROR):
        raise typer.Exit(code=1)


@app.command()
def signals(
    project: str = typer.Argument(..., help="Project identifier."),
    task: str = typer.Argument(..., help="Task identifier."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
    ack: bool = typer.Option(False, "--ack", help="Acknowledge the pending intervention."),
    as_json: bool = typer.Option(False, "--json", help="Print the pending intervention as JSON."),
) -> None:
    """Show reflection checkpoints and any pending intervention for a plan."""
    config_path = Path(config)
    config_data = load_config(config_path)
    with _open_store(config_data, config_path) as store:
        plan = _require_plan(store, project, task)
        worker_id = plan.metadata.get("worker_id")
        signal = pending_intervention(plan, worker_id=worker_id)

        if as_json:
            typer.echo(json.dumps(signal.model_dump(mode="json") if signal else None, indent=2))
        else:
            typer.echo(f"Reflections: {len(plan.reflections)}")
            for reflection in plan.reflections:
                flag = f" -> {reflection.intervention_reason.value}" if reflection.intervention_triggered else ""
                typer.echo(
                    f"- step {reflection.step_index} iter {reflection.iteration}: "
                    f"{reflection.progress_percent}% progress, {reflection.confidence}% confidence, "
                    f"{reflection.decision.value}{flag}"
                )
            if signal is None:
                typer.echo("No pending intervention.")
            else:
                typer.echo(
                    f"Pending intervention: {signal.reason.value} at step {signal.step_index} "
                    f"(confidence {signal.confidence}%)"
                )

        if ack:
            acknowledged = acknowledge_intervention(plan, worker_id=worker_id) if signal else None
            if acknowledged is None:
                typer.echo("Nothing to acknowledge.")
            else:
                store.save_plan(plan)
                typer.echo(f"Acknowledged intervention {acknowledged.reason.value}.")


if __name__ == "__main__":
    app()
