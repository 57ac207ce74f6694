"""Step execution loop that drives one worker through an implementation plan."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..config import ExecutionSettings
from ..memory.file_registry import FileActivityRegistry
from ..memory.schema import (
    ImplementationPlan,
    ImplementationStep,
    InterventionSignal,
    StepStatus,
)
from ..memory.store import CheckpointStore
from ..models.llm_client import LLMClient, LLMResponse, StopReason, ToolCall
from ..policy.errors import ErrorClassifier, classify_error
from ..policy.intervention import InterventionCallback, ReflectionMonitor
from ..prompts import (
    SYSTEM_PROMPT,
    build_file_conflict_warning,
    build_ordering_warning,
    build_reflection_request,
    build_reflection_required_error,
    build_resume_notice,
    build_step_notice,
    build_task_prompt,
)
from ..tools.base import Tool, ToolRegistry, ToolResult
from ..tools.plan_step import UpdatePlanStepTool
from ..tools.reflect import REFLECT_TOOL, ReflectTool
from ..utils.paths import normalise_path
from .context import ExecutionContext, StepEventKind
from .dependencies import DependencyCheck, find_ordering_violations, step_depends_on
from .validation import StepCompletionValidator

LOGGER = logging.getLogger(__name__)

# Serialisation failures surface as TypeError or ValueError (PydanticSerializationError).
_PERSISTENCE_ERRORS = (sqlite3.Error, OSError, TypeError, ValueError)


class ExecutionOutcome(str, Enum):
    """Why a call to :meth:`StepExecutor.run` returned."""

    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    INCOMPLETE = "INCOMPLETE"
    CANCELLED = "CANCELLED"
    BUDGET_EXHAUSTED = "BUDGET_EXHAUSTED"
    PROVIDER_ERROR = "PROVIDER_ERROR"


@dataclass(slots=True)
class IterationBudget:
    """Per-step and overall iteration limits for one run."""

    per_step: int
    effective: int
    step_count: int


def compute_iteration_budget(total: int, step_count: int, max_per_step: int) -> IterationBudget:
    """Give every step a fair share plus slack, capped so one step cannot take everything.

    ``per_step = min(total // step_count + 2, max_per_step)`` and the overall
    budget is ``per_step * step_count``.
    """
    steps = max(step_count, 1)
    per_step = max(min(total // steps + 2, max_per_step), 1)
    return IterationBudget(per_step=per_step, effective=per_step * steps, step_count=steps)


@dataclass(slots=True)
class ExecutionResult:
    """Summary returned after a run stops for any reason."""

    plan: ImplementationPlan
    outcome: ExecutionOutcome
    iterations: int
    budget: IterationBudget
    messages: List[Dict[str, Any]] = field(default_factory=list)
    interventions: List[InterventionSignal] = field(default_factory=list)
    auto_completed_steps: List[int] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def resumable(self) -> bool:
        return self.outcome in (
            ExecutionOutcome.INCOMPLETE,
            ExecutionOutcome.CANCELLED,
            ExecutionOutcome.BUDGET_EXHAUSTED,
            ExecutionOutcome.PROVIDER_ERROR,
        )


def _append_user_text(messages: List[Dict[str, Any]], text: str) -> None:
    """Attach ``text`` to the trailing user turn, or open a new one."""
    if messages and messages[-1].get("role") == "user":
        last = messages[-1]
        content = last.get("content")
        block = {"type": "text", "text": text}
        if isinstance(content, str):
            last["content"] = [{"type": "text", "text": content}, block]
        elif isinstance(content, list):
            content.append(block)
        else:
            last["content"] = [block]
        return
    messages.append({"role": "user", "content": text})


def _estimate_tokens(response: LLMResponse) -> int:
    if response.usage:
        return int(response.usage.get("input_tokens", 0)) + int(response.usage.get("output_tokens", 0))
    return (len(json.dumps(response.content)) + 3) // 4


class StepExecutor:
    """Runs the LLM conversation for one worker until the plan stops.

    The executor owns no plan state between runs. Each call to :meth:`run`
    builds a fresh :class:`ExecutionContext`, so one executor may be reused for
    many plans, and several executors may share a store and file registry.
    """

    def __init__(
        self,
        client: LLMClient,
        store: Optional[CheckpointStore] = None,
        *,
        tools: Iterable[Tool] = (),
        settings: Optional[ExecutionSettings] = None,
        working_directory: Path | str = ".",
        worker_id: Optional[str] = None,
        classifier: ErrorClassifier = classify_error,
        depends_on: DependencyCheck = step_depends_on,
        validator: Optional[StepCompletionValidator] = None,
        file_registry: Optional[FileActivityRegistry] = None,
        on_intervention: Optional[InterventionCallback] = None,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        self.client = client
        self.store = store
        self.settings = settings or ExecutionSettings()
        self.working_directory = Path(working_directory)
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.classifier = classifier
        self.depends_on = depends_on
        self.validator = validator or StepCompletionValidator()
        self.file_registry = file_registry
        self.on_intervention = on_intervention
        self.system_prompt = system_prompt

        self.tools = ToolRegistry(tools)
        if UpdatePlanStepTool.name not in self.tools:
            self.tools.register(UpdatePlanStepTool())
        if ReflectTool.name not in self.tools:
            self.tools.register(ReflectTool())

    # ---- public -------------------------------------------------------------------

    def resume(self, project_id: str, task_id: str, *, cancel_event: Optional[threading.Event] = None) -> ExecutionResult:
        """Load a stored plan and continue executing it."""
        if self.store is None:
            raise RuntimeError("resume() requires a CheckpointStore")
        plan = self.store.load_plan(project_id, task_id)
        if plan is None:
            raise LookupError(f"No plan stored for project {project_id!r}, task {task_id!r}")
        return self.run(plan, cancel_event=cancel_event)

    def run(self, plan: ImplementationPlan, *, cancel_event: Optional[threading.Event] = None) -> ExecutionResult:
        """Drive ``plan`` forward until it finishes, pauses, or must stop."""
        budget = compute_iteration_budget(
            self.settings.total_iteration_budget,
            len(plan.steps),
            self.settings.max_iterations_per_step,
        )
        context = ExecutionContext(
            plan=plan,
            worker_id=self.worker_id,
            working_directory=self.working_directory,
            monitor=ReflectionMonitor(
                worker_id=self.worker_id,
                thresholds=self.settings.thresholds,
                callback=self.on_intervention,
            ),
            classifier=self.classifier,
            depends_on=self.depends_on,
            cascade_mode=self.settings.cascade_mode,
        )
        plan.metadata["worker_id"] = self.worker_id
        plan.start_execution()
        messages = self._initial_messages(plan)
        self._persist(plan, messages)
        LOGGER.info(
            "Worker %s executing task %s (%s steps, %s iterations, %s per step)",
            self.worker_id,
            plan.task_id,
            len(plan.steps),
            budget.effective,
            budget.per_step,
        )

        iteration = 0
        step_iterations = 0
        reflection_due = False
        active: Optional[ImplementationStep] = None
        outcome: Optional[ExecutionOutcome] = None
        error: Optional[str] = None
        auto_completed: List[int] = []

        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    outcome = ExecutionOutcome.CANCELLED
                    plan.add_log_entry("Execution paused by cancellation request")
                    LOGGER.info("Worker %s paused task %s on request", self.worker_id, plan.task_id)
                    break

                step = plan.next_executable_step()
                if step is None:
                    break

                if iteration >= budget.effective:
                    outcome = ExecutionOutcome.BUDGET_EXHAUSTED
                    plan.add_log_entry(f"Iteration budget of {budget.effective} exhausted")
                    LOGGER.warning(
                        "Worker %s exhausted %s iterations on task %s",
                        self.worker_id,
                        budget.effective,
                        plan.task_id,
                    )
                    break

                if step is not active or step.status == StepStatus.PENDING:
                    self._activate_step(context, step, active, messages, announce=iteration > 0)
                    active = step
                    step_iterations = 0
                    reflection_due = False
                    self._persist(plan, messages)

                if step_iterations >= budget.per_step:
                    self._exhaust_step(context, step, step_iterations, messages, auto_completed)
                    self._persist(plan, messages)
                    continue

                iteration += 1
                step_iterations += 1
                context.iteration = iteration
                step.metrics.iterations_used += 1

                tool_schemas = (
                    self.tools.schemas([REFLECT_TOOL]) if reflection_due else self.tools.schemas()
                )
                response = self.client.send(messages, tool_schemas, self.system_prompt)
                step.metrics.estimated_tokens += _estimate_tokens(response)

                stop_reason = response.stop_reason
                if stop_reason is StopReason.TOOL_USE and not response.tool_calls:
                    LOGGER.warning("Provider reported tool_use without tool calls; treating as end_turn")
                    stop_reason = StopReason.END_TURN

                if stop_reason is StopReason.TOOL_USE:
                    messages.append(response.as_message())
                    results = self._run_tools(context, response.tool_calls, reflection_only=reflection_due)
                    messages.append({"role": "user", "content": [result.to_block() for result in results]})
                    events = context.drain_events()
                    if any(event.kind == StepEventKind.REFLECTION for event in events):
                        reflection_due = False

                    if step.status == StepStatus.IN_PROGRESS and self._infer_completion(
                        context, step, require_touch=True
                    ):
                        auto_completed.append(step.index)
                        events.extend(context.drain_events())
                        _append_user_text(messages, self._auto_completion_notice(plan, step))

                    if events:
                        self._persist(plan, messages)

                    if (
                        step.status == StepStatus.IN_PROGRESS
                        and not reflection_due
                        and step_iterations % self.settings.reflection_interval == 0
                    ):
                        reflection_due = True
                        _append_user_text(messages, build_reflection_request(step, step_iterations))
                    continue

                if stop_reason is StopReason.END_TURN:
                    messages.append(response.as_message())
                    if step.status == StepStatus.IN_PROGRESS and self._infer_completion(
                        context, step, require_touch=False
                    ):
                        auto_completed.append(step.index)
                        context.drain_events()
                    if plan.next_executable_step() is not None:
                        outcome = ExecutionOutcome.INCOMPLETE
                        plan.add_log_entry("Worker finished its turn with steps remaining")
                        LOGGER.warning(
                            "Worker %s ended task %s with %s step(s) still open",
                            self.worker_id,
                            plan.task_id,
                            sum(1 for entry in plan.steps if not entry.is_terminal),
                        )
                    break

                # Every other stop reason is fatal for this run.
                outcome = ExecutionOutcome.PROVIDER_ERROR
                error = response.error or f"provider stopped with '{response.raw_stop_reason or stop_reason.value}'"
                category = self.classifier(error)
                plan.add_log_entry(f"Execution stopped [{stop_reason.value}]: {error}")
                LOGGER.warning(
                    "Worker %s stopped task %s on %s (%s): %s",
                    self.worker_id,
                    plan.task_id,
                    stop_reason.value,
                    category.value,
                    error,
                )
                break
        finally:
            if self.file_registry is not None:
                self.file_registry.release(plan.project_id, self.worker_id)

        outcome = self._finalise(plan, outcome)
        self._persist(plan, messages)
        return ExecutionResult(
            plan=plan,
            outcome=outcome,
            iterations=iteration,
            budget=budget,
            messages=messages,
            interventions=list(context.interventions),
            auto_completed_steps=auto_completed,
            error=error,
        )

    # ---- helpers ------------------------------------------------------------------

    def _initial_messages(self, plan: ImplementationPlan) -> List[Dict[str, Any]]:
        checkpoint = None
        if self.store is not None:
            try:
                checkpoint = self.store.load_conversation(plan.project_id, plan.task_id)
            except _PERSISTENCE_ERRORS as error:
                LOGGER.warning("Failed to load conversation for task %s: %s", plan.task_id, error)

        if checkpoint is not None and checkpoint.messages:
            messages = checkpoint.to_messages()
            _append_user_text(messages, build_resume_notice(plan))
            plan.add_log_entry(
                f"Resumed from checkpoint saved at {checkpoint.saved_at.isoformat()} "
                f"({len(messages)} messages)"
            )
            LOGGER.info(
                "Worker %s resumed task %s after step %s",
                self.worker_id,
                plan.task_id,
                plan.completed_through(),
            )
            return messages

        prompt = build_task_prompt(plan)
        violations = find_ordering_violations(plan)
        if violations:
            for violation in violations:
                LOGGER.warning("Plan %s ordering: %s", plan.task_id, violation)
            prompt = f"{prompt}\n\n{build_ordering_warning(violations)}"
        return [{"role": "user", "content": prompt}]

    def _activate_step(
        self,
        context: ExecutionContext,
        step: ImplementationStep,
        previous: Optional[ImplementationStep],
        messages: List[Dict[str, Any]],
        *,
        announce: bool,
    ) -> None:
        if previous is not None and previous is not step and self.file_registry is not None:
            self.file_registry.release(context.project_id, self.worker_id, previous.declared_files)

        if step.status == StepStatus.PENDING:
            context.plan.start_step(step.index)
            LOGGER.info(
                "Worker %s started step %s of task %s%s",
                self.worker_id,
                step.index,
                context.task_id,
                f" (retry {step.retry_count})" if step.retry_count else "",
            )
        context.begin_step(step)

        notices: List[str] = []
        if announce or step.retry_count:
            notices.append(build_step_notice(step))
        if self.file_registry is not None and step.declared_files:
            conflicts = self.file_registry.claim(context.project_id, self.worker_id, step.declared_files)
            if conflicts:
                notices.append(build_file_conflict_warning(conflicts))
        for notice in notices:
            _append_user_text(messages, notice)

    def _run_tools(
        self,
        context: ExecutionContext,
        calls: Sequence[ToolCall],
        *,
        reflection_only: bool,
    ) -> List[ToolResult]:
        results: List[ToolResult] = []
        for call in calls:
            if reflection_only and call.name != REFLECT_TOOL:
                results.append(ToolResult(call.id, build_reflection_required_error(), is_error=True))
                continue
            result = self.tools.execute(context, call)
            if result.paths and not result.is_error:
                self._record_touches(context, result.paths)
            results.append(result)
        return results

    def _record_touches(self, context: ExecutionContext, paths: Sequence[str]) -> None:
        added = context.note_touched(paths)
        if self.file_registry is None or not added:
            return
        active = (
            context.plan.step(context.active_step_index) if context.active_step_index else None
        )
        creates = {normalise_path(path) for path in active.files_to_create} if active else set()
        for path in added:
            self.file_registry.record_touch(
                context.project_id, path, context.task_id, created=path in creates
            )

    def _infer_completion(
        self,
        context: ExecutionContext,
        step: ImplementationStep,
        *,
        require_touch: bool,
    ) -> bool:
        if not step.declared_files:
            return False
        if require_touch and not self.validator.outputs_plausibly_done(step, context.touched_paths):
            return False
        report = self.validator.validate(step, self.working_directory, context.touched_paths)
        if not report.success:
            LOGGER.debug(
                "Step %s of task %s not auto-completed: %s",
                step.index,
                context.task_id,
                report.summary(),
            )
            return False
        context.complete_step(step.index, f"Auto-completed: {report.summary()}", auto=True)
        LOGGER.info(
            "Step %s of task %s auto-completed from its declared files (worker %s never marked it done)",
            step.index,
            context.task_id,
            self.worker_id,
        )
        return True

    @staticmethod
    def _auto_completion_notice(plan: ImplementationPlan, step: ImplementationStep) -> str:
        text = (
            f"Step {step.index} ({step.title}) was marked completed automatically because "
            "all of its declared files are in place."
        )
        next_step = plan.next_executable_step()
        if next_step is not None:
            text += f" Continue with step {next_step.index}: {next_step.title}."
        return text

    def _exhaust_step(
        self,
        context: ExecutionContext,
        step: ImplementationStep,
        used: int,
        messages: List[Dict[str, Any]],
        auto_completed: List[int],
    ) -> None:
        if self._infer_completion(context, step, require_touch=False):
            auto_completed.append(step.index)
            context.drain_events()
            _append_user_text(messages, self._auto_completion_notice(context.plan, step))
            return
        outcome = context.fail_step(step.index, f"step iteration budget exhausted after {used} iterations")
        context.drain_events()
        _append_user_text(messages, outcome.describe())

    def _finalise(self, plan: ImplementationPlan, outcome: Optional[ExecutionOutcome]) -> ExecutionOutcome:
        if outcome is not None:
            return outcome
        if not plan.all_steps_terminal():
            return ExecutionOutcome.INCOMPLETE
        failed = plan.failed_steps()
        if failed:
            details = ", ".join(f"{step.index} ({step.last_error_message})" for step in failed)
            plan.mark_failed(f"{len(failed)} step(s) failed: {details}")
            LOGGER.warning("Task %s finished with failed steps: %s", plan.task_id, details)
            return ExecutionOutcome.FAILED
        plan.mark_completed()
        LOGGER.info("Task %s completed by worker %s", plan.task_id, self.worker_id)
        return ExecutionOutcome.COMPLETED

    def _persist(self, plan: ImplementationPlan, messages: Sequence[Dict[str, Any]]) -> None:
        if self.store is None:
            return
        try:
            self.store.save_plan(plan)
            self.store.save_conversation(plan, messages)
        except _PERSISTENCE_ERRORS as error:
            LOGGER.warning("Failed to persist checkpoint for task %s: %s", plan.task_id, error)


__all__ = [
    "ExecutionOutcome",
    "ExecutionResult",
    "IterationBudget",
    "StepExecutor",
    "compute_iteration_budget",
]
