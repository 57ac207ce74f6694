"""Typed records for implementation plans, worker reflections, and transcripts."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


# Iteration thresholds used when summarising lessons learned.
QUICK_STEP_ITERATIONS = 3
HEAVY_STEP_ITERATIONS = 10


def _new_id() -> str:
    return uuid.uuid4().hex


class PlanStateError(RuntimeError):
    """Raised when a plan or step is driven through a transition it does not allow."""


class StepNotFoundError(PlanStateError, LookupError):
    """Raised when a step index does not exist in the plan."""


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class PlanStatus(str, Enum):
    """Lifecycle states for an implementation plan."""

    PLANNING = "PLANNING"
    READY = "READY"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class StepStatus(str, Enum):
    """Lifecycle states for a single plan step."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


TERMINAL_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED, StepStatus.FAILED})
_OPEN_STEP_STATUSES = (StepStatus.PENDING, StepStatus.IN_PROGRESS)


class ErrorCategory(str, Enum):
    """Retry eligibility of a step failure."""

    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"


class ReflectionDecision(str, Enum):
    """Course of action chosen by the worker at a reflection checkpoint."""

    CONTINUE = "CONTINUE"
    PIVOT = "PIVOT"
    ESCALATE = "ESCALATE"


class InterventionReason(str, Enum):
    """Why a reflection checkpoint escalated to the supervising process."""

    AGENT_ESCALATED = "AGENT_ESCALATED"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    MULTIPLE_BLOCKERS = "MULTIPLE_BLOCKERS"
    DECLINING_CONFIDENCE = "DECLINING_CONFIDENCE"
    STALLED_PROGRESS = "STALLED_PROGRESS"


class StepMetrics(RecordModel):
    """Execution counters collected while a step is worked on."""

    iterations_used: int = 0
    estimated_tokens: int = 0
    validation_attempts: int = 0
    auto_completed: bool = False
    failed: bool = False
    skipped: bool = False


class PlanLogEntry(RecordModel):
    """Timestamped line in the plan execution log."""

    timestamp: datetime = Field(default_factory=utc_now)
    message: str


class ImplementationStep(RecordModel):
    """One ordered unit of work with declared file inputs and outputs."""

    index: int = Field(ge=1)
    title: str
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    files_to_create: List[str] = Field(default_factory=list)
    files_to_modify: List[str] = Field(default_factory=list)
    expected_content: List[str] = Field(default_factory=list)
    output: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 3
    last_error_message: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    metrics: StepMetrics = Field(default_factory=StepMetrics)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES

    @property
    def declared_files(self) -> List[str]:
        """Return the created and modified paths without duplicates, creates first."""
        seen: set[str] = set()
        ordered: List[str] = []
        for path in [*self.files_to_create, *self.files_to_modify]:
            if path not in seen:
                seen.add(path)
                ordered.append(path)
        return ordered

    def _require_status(self, action: str, *allowed: StepStatus) -> None:
        if self.status not in allowed:
            raise PlanStateError(
                f"Cannot {action} step {self.index} while it is {self.status.value}"
            )

    def start(self) -> None:
        self._require_status("start", StepStatus.PENDING)
        self.status = StepStatus.IN_PROGRESS
        self.started_at = utc_now()
        self.completed_at = None

    def complete(self, output: Optional[str] = None, *, auto: bool = False) -> None:
        self._require_status("complete", *_OPEN_STEP_STATUSES)
        self.status = StepStatus.COMPLETED
        self.completed_at = utc_now()
        if output is not None:
            self.output = output
        self.metrics.auto_completed = auto

    def skip(self, reason: Optional[str] = None) -> None:
        self._require_status("skip", *_OPEN_STEP_STATUSES)
        self.status = StepStatus.SKIPPED
        self.completed_at = utc_now()
        if reason is not None:
            self.output = reason
        self.metrics.skipped = True

    def fail(self, message: str, category: ErrorCategory) -> None:
        self._require_status("fail", *_OPEN_STEP_STATUSES)
        self.status = StepStatus.FAILED
        self.completed_at = utc_now()
        self.metrics.failed = True
        self.last_error_message = message
        self.error_category = category
        self.output = message

    def reset_for_retry(self, message: str, category: ErrorCategory) -> None:
        """Return the step to PENDING after a retryable failure."""
        self._require_status("retry", *_OPEN_STEP_STATUSES)
        if self.retry_count >= self.max_retries:
            raise PlanStateError(
                f"Step {self.index} already used {self.retry_count} of {self.max_retries} retries"
            )
        self.retry_count += 1
        self.status = StepStatus.PENDING
        self.started_at = None
        self.last_error_message = message
        self.error_category = category


class ReflectionSignal(RecordModel):
    """Snapshot of the worker's self-assessment at one checkpoint."""

    id: str = Field(default_factory=_new_id)
    timestamp: datetime = Field(default_factory=utc_now)
    step_index: int
    iteration: int
    progress_percent: int = Field(ge=0, le=100)
    files_done: List[str] = Field(default_factory=list)
    blockers: List[str] = Field(default_factory=list)
    confidence: int = Field(ge=0, le=100)
    decision: ReflectionDecision = ReflectionDecision.CONTINUE
    notes: Optional[str] = None
    intervention_triggered: bool = False
    intervention_reason: Optional[InterventionReason] = None
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None


class InterventionSignal(RecordModel):
    """Escalation raised to the supervising process, derived from a reflection."""

    worker_id: str
    task_id: str
    project_id: str
    reason: InterventionReason
    step_index: int
    confidence: int
    blockers: List[str] = Field(default_factory=list)
    source_reflection_id: str
    created_at: datetime
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None

    @classmethod
    def from_reflection(
        cls,
        reflection: ReflectionSignal,
        *,
        worker_id: str,
        task_id: str,
        project_id: str,
    ) -> "InterventionSignal":
        if reflection.intervention_reason is None:
            raise ValueError(f"Reflection {reflection.id} did not trigger an intervention")
        return cls(
            worker_id=worker_id,
            task_id=task_id,
            project_id=project_id,
            reason=reflection.intervention_reason,
            step_index=reflection.step_index,
            confidence=reflection.confidence,
            blockers=list(reflection.blockers),
            source_reflection_id=reflection.id,
            created_at=reflection.timestamp,
            acknowledged=reflection.acknowledged,
            acknowledged_at=reflection.acknowledged_at,
        )


class PlanExecutionMetrics(RecordModel):
    """Aggregate counters across every step of a plan."""

    total_steps: int = 0
    completed_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    auto_completed_steps: int = 0
    total_retries: int = 0
    iterations_used: int = 0
    estimated_tokens: int = 0


class ImplementationPlan(RecordModel):
    """Ordered steps and execution state for one (project, task) pair."""

    task_id: str
    project_id: str
    task_description: str = ""
    plan_filename: str = ""
    status: PlanStatus = PlanStatus.PLANNING
    steps: List[ImplementationStep] = Field(default_factory=list)
    current_step_index: int = 0
    error_message: Optional[str] = None
    execution_log: List[PlanLogEntry] = Field(default_factory=list)
    reflections: List[ReflectionSignal] = Field(default_factory=list)
    lessons_learned: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _check_step_indices(self) -> "ImplementationPlan":
        for position, step in enumerate(self.steps, start=1):
            if step.index != position:
                raise ValueError(
                    f"Step indices must be 1-based and contiguous; found {step.index} at position {position}"
                )
        if self.current_step_index < 0:
            raise ValueError("current_step_index must not be negative")
        return self

    # Queries ------------------------------------------------------------------------
    def step(self, index: int) -> ImplementationStep:
        """Return the step with the given 1-based ``index``."""
        if index < 1 or index > len(self.steps):
            raise StepNotFoundError(
                f"Step {index} does not exist. Valid steps are 1 to {len(self.steps)}."
            )
        return self.steps[index - 1]

    @property
    def current_step(self) -> Optional[ImplementationStep]:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    @property
    def has_more_steps(self) -> bool:
        return self.current_step_index < len(self.steps)

    @property
    def completed_steps_count(self) -> int:
        return sum(1 for step in self.steps if step.status == StepStatus.COMPLETED)

    @property
    def progress_percentage(self) -> int:
        if not self.steps:
            return 0
        done = sum(
            1 for step in self.steps if step.status in (StepStatus.COMPLETED, StepStatus.SKIPPED)
        )
        return done * 100 // len(self.steps)

    def all_steps_terminal(self) -> bool:
        return all(step.is_terminal for step in self.steps)

    def next_executable_step(self) -> Optional[ImplementationStep]:
        """Return the first step still PENDING or IN_PROGRESS, if any."""
        for step in self.steps:
            if step.status in _OPEN_STEP_STATUSES:
                return step
        return None

    def completed_through(self) -> int:
        """Return K such that steps 1..K are all terminal."""
        count = 0
        for step in self.steps:
            if not step.is_terminal:
                break
            count += 1
        return count

    def failed_steps(self) -> List[ImplementationStep]:
        return [step for step in self.steps if step.status == StepStatus.FAILED]

    def latest_intervention(self) -> Optional[ReflectionSignal]:
        for reflection in reversed(self.reflections):
            if reflection.intervention_triggered:
                return reflection
        return None

    def aggregated_metrics(self) -> PlanExecutionMetrics:
        metrics = PlanExecutionMetrics(total_steps=len(self.steps))
        for step in self.steps:
            if step.status == StepStatus.COMPLETED:
                metrics.completed_steps += 1
            elif step.status == StepStatus.FAILED:
                metrics.failed_steps += 1
            elif step.status == StepStatus.SKIPPED:
                metrics.skipped_steps += 1
            if step.metrics.auto_completed:
                metrics.auto_completed_steps += 1
            metrics.total_retries += step.retry_count
            metrics.iterations_used += step.metrics.iterations_used
            metrics.estimated_tokens += step.metrics.estimated_tokens
        return metrics

    # Mutators -----------------------------------------------------------------------
    def touch(self) -> None:
        self.updated_at = utc_now()

    def add_log_entry(self, message: str) -> None:
        self.execution_log.append(PlanLogEntry(message=message))
        self.touch()

    def start_execution(self) -> None:
        """Move the plan into IN_PROGRESS, allowing re-entry for resumed runs."""
        if self.status in (PlanStatus.COMPLETED, PlanStatus.FAILED):
            raise PlanStateError(f"Plan {self.task_id} is already {self.status.value}")
        if self.status != PlanStatus.IN_PROGRESS:
            self.status = PlanStatus.IN_PROGRESS
            self.add_log_entry("Plan execution started")

    def advance_to_next_step(self) -> None:
        """Move the cursor past the current step once it is COMPLETED or SKIPPED."""
        current = self.current_step
        if current is None:
            raise PlanStateError("Cursor is already past the last step")
        if current.status not in (StepStatus.COMPLETED, StepStatus.SKIPPED):
            raise PlanStateError(
                f"Cannot advance past step {current.index} while it is {current.status.value}"
            )
        self.current_step_index += 1
        while (
            self.current_step is not None
            and self.current_step.status in (StepStatus.COMPLETED, StepStatus.SKIPPED)
        ):
            self.current_step_index += 1
        self.touch()

    def _advance_if_current(self, step: ImplementationStep) -> None:
        if self.current_step is step:
            self.advance_to_next_step()

    def start_step(self, index: int) -> ImplementationStep:
        step = self.step(index)
        step.start()
        if step.retry_count:
            self.add_log_entry(
                f"Step {index} ({step.title}) restarted (retry {step.retry_count}/{step.max_retries})"
            )
        else:
            self.add_log_entry(f"Step {index} ({step.title}) started")
        return step

    def complete_step(
        self, index: int, output: Optional[str] = None, *, auto: bool = False
    ) -> ImplementationStep:
        step = self.step(index)
        step.complete(output, auto=auto)
        label = "auto-completed" if auto else "completed"
        self.add_log_entry(f"Step {index} ({step.title}) {label}")
        self._advance_if_current(step)
        return step

    def skip_step(self, index: int, reason: Optional[str] = None) -> ImplementationStep:
        step = self.step(index)
        step.skip(reason)
        self.add_log_entry(f"Step {index} ({step.title}) skipped: {reason or 'No reason provided'}")
        self._advance_if_current(step)
        return step

    def fail_step(self, index: int, message: str, category: ErrorCategory) -> ImplementationStep:
        step = self.step(index)
        step.fail(message, category)
        self.add_log_entry(f"Step {index} ({step.title}) failed: {message}")
        return step

    def retry_step(self, index: int, message: str, category: ErrorCategory) -> ImplementationStep:
        step = self.step(index)
        step.reset_for_retry(message, category)
        self.add_log_entry(
            f"Step {index} ({step.title}) will be retried "
            f"({step.retry_count}/{step.max_retries}): {message}"
        )
        return step

    def record_reflection(self, reflection: ReflectionSignal) -> None:
        self.reflections.append(reflection)
        self.add_log_entry(
            f"Reflection checkpoint: {reflection.progress_percent}% progress, "
            f"{reflection.confidence}% confidence, decision: {reflection.decision.value}"
        )

    def mark_completed(self) -> None:
        if not self.all_steps_terminal():
            open_steps = ", ".join(
                str(step.index) for step in self.steps if not step.is_terminal
            )
            raise PlanStateError(f"Cannot complete plan with open steps: {open_steps}")
        self.status = PlanStatus.COMPLETED
        self.error_message = None
        self._capture_lessons_learned()
        self.add_log_entry("Plan completed")

    def mark_failed(self, reason: str) -> None:
        if self.status == PlanStatus.COMPLETED:
            raise PlanStateError(f"Plan {self.task_id} is already COMPLETED")
        self.status = PlanStatus.FAILED
        self.error_message = reason
        self._capture_lessons_learned()
        self.add_log_entry(f"Plan failed: {reason}")

    def _capture_lessons_learned(self) -> None:
        """Record resolved issues per step, then plan-wide successful patterns."""
        lessons: List[str] = []
        for step in self.steps:
            if step.status == StepStatus.COMPLETED and step.retry_count:
                lessons.append(
                    f"Step {step.index} ({step.title}) succeeded after {step.retry_count} "
                    f"retr{'y' if step.retry_count == 1 else 'ies'}: {step.last_error_message}"
                )
                if step.metrics.iterations_used > HEAVY_STEP_ITERATIONS:
                    lessons.append(
                        f"Step {step.index} ({step.title}) required {step.metrics.iterations_used} "
                        "iterations; consider breaking similar steps down"
                    )
            elif step.status == StepStatus.COMPLETED and step.metrics.auto_completed:
                lessons.append(
                    f"Step {step.index} ({step.title}) was auto-completed from its file outputs"
                )
            elif step.status == StepStatus.FAILED:
                lessons.append(
                    f"Step {step.index} ({step.title}) failed "
                    f"[{step.error_category.value if step.error_category else 'UNKNOWN'}]: "
                    f"{step.last_error_message}"
                )

        quick = [
            step.metrics.iterations_used
            for step in self.steps
            if step.status == StepStatus.COMPLETED
            and 0 < step.metrics.iterations_used <= QUICK_STEP_ITERATIONS
        ]
        if len(quick) > 1:
            lessons.append(
                f"Steps of this task often complete in {sum(quick) / len(quick):.1f} iterations each"
            )
        total_files = sum(len(step.files_to_create) + len(step.files_to_modify) for step in self.steps)
        if total_files:
            lessons.append(
                f"This task created or modified {total_files} file(s) across {len(self.steps)} step(s)"
            )
        self.lessons_learned = lessons


class ConversationMessage(RecordModel):
    """Role-tagged message whose content is kept as plain JSON data."""

    role: str
    content: Any


class ConversationCheckpoint(RecordModel):
    """Transcript snapshot that allows a worker to resume mid-plan."""

    task_id: str
    project_id: str
    step_index: int
    saved_at: datetime = Field(default_factory=utc_now)
    messages: List[ConversationMessage] = Field(default_factory=list)

    def to_messages(self) -> List[Dict[str, Any]]:
        return [{"role": message.role, "content": message.content} for message in self.messages]


__all__ = [
    "ConversationCheckpoint",
    "ConversationMessage",
    "ErrorCategory",
    "HEAVY_STEP_ITERATIONS",
    "ImplementationPlan",
    "ImplementationStep",
    "InterventionReason",
    "InterventionSignal",
    "PlanExecutionMetrics",
    "PlanLogEntry",
    "PlanStateError",
    "PlanStatus",
    "QUICK_STEP_ITERATIONS",
    "ReflectionDecision",
    "ReflectionSignal",
    "RecordModel",
    "StepMetrics",
    "StepNotFoundError",
    "StepStatus",
    "TERMINAL_STEP_STATUSES",
    "utc_now",
]
