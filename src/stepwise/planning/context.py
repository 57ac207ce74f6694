"""Per-worker execution context threaded through every tool invocation."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from ..memory.schema import (
    ImplementationPlan,
    ImplementationStep,
    InterventionSignal,
    ReflectionDecision,
    ReflectionSignal,
)
from ..policy.errors import ErrorClassifier, classify_error
from ..policy.intervention import ReflectionMonitor
from ..utils.paths import workspace_relative
from .dependencies import CascadeMode, DependencyCheck, step_depends_on
from .failures import FailureAction, FailureOutcome, handle_step_failure


class StepEventKind(str, Enum):
    COMPLETED = "COMPLETED"
    AUTO_COMPLETED = "AUTO_COMPLETED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"
    RETRY = "RETRY"
    REFLECTION = "REFLECTION"


@dataclass(slots=True)
class StepEvent:
    """State change produced while handling one batch of tool calls."""

    kind: StepEventKind
    step_index: int
    detail: str = ""


@dataclass(slots=True)
class ExecutionContext:
    """Everything a tool may read or change for the worker that invoked it.

    One context exists per worker run. Nothing here is shared between workers,
    so tools never consult module-level state to find the active plan.
    """

    plan: ImplementationPlan
    worker_id: str
    working_directory: Path
    monitor: ReflectionMonitor
    classifier: ErrorClassifier = classify_error
    depends_on: DependencyCheck = step_depends_on
    cascade_mode: CascadeMode = CascadeMode.SINGLE_PASS
    iteration: int = 0
    active_step_index: Optional[int] = None
    touched_paths: Set[str] = field(default_factory=set)
    events: List[StepEvent] = field(default_factory=list)
    interventions: List[InterventionSignal] = field(default_factory=list)

    @property
    def project_id(self) -> str:
        return self.plan.project_id

    @property
    def task_id(self) -> str:
        return self.plan.task_id

    def note_touched(self, paths: Iterable[str]) -> List[str]:
        """Record workspace-relative paths named by a tool call; return the new ones."""
        added: List[str] = []
        for raw in paths:
            relative = workspace_relative(raw, self.working_directory)
            if relative and relative not in self.touched_paths:
                self.touched_paths.add(relative)
                added.append(relative)
        return added

    def begin_step(self, step: ImplementationStep) -> None:
        self.active_step_index = step.index
        self.touched_paths.clear()

    def complete_step(self, index: int, output: Optional[str] = None, *, auto: bool = False) -> ImplementationStep:
        step = self.plan.complete_step(index, output, auto=auto)
        kind = StepEventKind.AUTO_COMPLETED if auto else StepEventKind.COMPLETED
        self.events.append(StepEvent(kind=kind, step_index=index, detail=output or ""))
        return step

    def skip_step(self, index: int, reason: Optional[str] = None) -> ImplementationStep:
        step = self.plan.skip_step(index, reason)
        self.events.append(StepEvent(kind=StepEventKind.SKIPPED, step_index=index, detail=reason or ""))
        return step

    def fail_step(self, index: int, message: Optional[str]) -> FailureOutcome:
        outcome = handle_step_failure(
            self.plan,
            index,
            message,
            classifier=self.classifier,
            depends_on=self.depends_on,
            cascade_mode=self.cascade_mode,
        )
        if outcome.action == FailureAction.RETRY:
            self.events.append(StepEvent(kind=StepEventKind.RETRY, step_index=index, detail=outcome.message))
        else:
            self.events.append(StepEvent(kind=StepEventKind.FAILED, step_index=index, detail=outcome.message))
            for skipped in outcome.skipped_steps:
                self.events.append(
                    StepEvent(kind=StepEventKind.SKIPPED, step_index=skipped, detail=f"blocked by failed step {index}")
                )
        return outcome

    def record_reflection(
        self,
        *,
        progress_percent: int,
        confidence: int,
        decision: ReflectionDecision,
        files_done: Sequence[str] = (),
        blockers: Sequence[str] = (),
        notes: Optional[str] = None,
    ) -> Tuple[ReflectionSignal, Optional[InterventionSignal]]:
        step_index = self.active_step_index or self.plan.completed_through() + 1
        reflection, signal = self.monitor.record(
            self.plan,
            step_index=step_index,
            iteration=self.iteration,
            progress_percent=progress_percent,
            confidence=confidence,
            decision=decision,
            files_done=files_done,
            blockers=blockers,
            notes=notes,
        )
        self.events.append(StepEvent(kind=StepEventKind.REFLECTION, step_index=step_index))
        if signal is not None:
            self.interventions.append(signal)
        return reflection, signal

    def drain_events(self) -> List[StepEvent]:
        events = list(self.events)
        self.events.clear()
        return events


__all__ = ["ExecutionContext", "StepEvent", "StepEventKind"]
