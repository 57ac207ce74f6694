"""File-based validation used to infer that a step is finished.

When a worker writes every file a step declares but never reports the step
done, the executor runs these validators and auto-completes the step only if
all of them pass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import AbstractSet, List, Protocol, Sequence

from ..memory.schema import ImplementationStep
from ..utils.paths import normalise_path, resolve_in_workspace


@dataclass(slots=True)
class ValidationReport:
    """Aggregated result of running the step validators."""

    success: bool
    issues: List[str] = field(default_factory=list)

    def summary(self) -> str:
        if self.success:
            return "all declared file expectations met"
        return "; ".join(self.issues)


class StepValidator(Protocol):
    name: str

    def validate(
        self, step: ImplementationStep, workspace: Path, touched: AbstractSet[str]
    ) -> List[str]:
        """Return a list of issues; empty when the step satisfies this check."""
        ...


class FileCreationValidator:
    """Each created file must exist and have been written during the step.

    A file that was already on disk before the step started does not count.
    """

    name = "file_creation"

    def validate(
        self, step: ImplementationStep, workspace: Path, touched: AbstractSet[str]
    ) -> List[str]:
        issues: List[str] = []
        for path in step.files_to_create:
            target = resolve_in_workspace(path, workspace)
            if not target.is_file():
                issues.append(f"expected file {path} was not created")
            elif not _touched_during_step(step, path, target, touched):
                issues.append(f"file {path} predates this step and was not written by it")
        return issues


class FileModificationValidator:
    """Each modified file must exist and show evidence of a touch during the step."""

    name = "file_modification"

    def validate(
        self, step: ImplementationStep, workspace: Path, touched: AbstractSet[str]
    ) -> List[str]:
        issues: List[str] = []
        for path in step.files_to_modify:
            target = resolve_in_workspace(path, workspace)
            if not target.is_file():
                issues.append(f"file to modify {path} does not exist")
                continue
            if not _touched_during_step(step, path, target, touched):
                issues.append(f"file {path} was not modified during this step")
        return issues


class ContentExpectationValidator:
    name = "content_expectation"

    def validate(
        self, step: ImplementationStep, workspace: Path, touched: AbstractSet[str]
    ) -> List[str]:
        if not step.expected_content:
            return []
        contents: List[str] = []
        for path in step.declared_files:
            target = resolve_in_workspace(path, workspace)
            if target.is_file():
                contents.append(target.read_text(encoding="utf-8", errors="replace"))
        return [
            f"expected content {expected!r} not found in declared files"
            for expected in step.expected_content
            if not any(expected in text for text in contents)
        ]


def _modified_since(path: Path, started_at: datetime) -> bool:
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    return modified >= started_at


def _touched_during_step(
    step: ImplementationStep, path: str, target: Path, touched: AbstractSet[str]
) -> bool:
    if normalise_path(path) in touched:
        return True
    return step.started_at is not None and _modified_since(target, step.started_at)


DEFAULT_VALIDATORS: tuple[StepValidator, ...] = (
    FileCreationValidator(),
    FileModificationValidator(),
    ContentExpectationValidator(),
)


class StepCompletionValidator:
    """Decides when a step's file outputs look done and verifies them."""

    def __init__(self, validators: Sequence[StepValidator] = DEFAULT_VALIDATORS) -> None:
        self._validators = tuple(validators)

    @staticmethod
    def outputs_plausibly_done(step: ImplementationStep, touched: AbstractSet[str]) -> bool:
        """Return True when every declared file was named by a tool call this step."""
        declared = [normalise_path(path) for path in step.declared_files]
        return bool(declared) and all(path in touched for path in declared)

    def validate(
        self, step: ImplementationStep, workspace: Path, touched: AbstractSet[str]
    ) -> ValidationReport:
        if not step.declared_files:
            return ValidationReport(success=False, issues=["step declares no files to validate"])
        step.metrics.validation_attempts += 1
        issues: List[str] = []
        for validator in self._validators:
            issues.extend(validator.validate(step, workspace, touched))
        return ValidationReport(success=not issues, issues=issues)


__all__ = [
    "ContentExpectationValidator",
    "DEFAULT_VALIDATORS",
    "FileCreationValidator",
    "FileModificationValidator",
    "StepCompletionValidator",
    "StepValidator",
    "ValidationReport",
]
