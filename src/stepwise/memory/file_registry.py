"""Project-scoped registry of files that workers are currently touching.

The registry is advisory: :meth:`FileActivityRegistry.claim` reports which
other workers hold a path, but never refuses the claim. It is the only piece
of mutable state shared between concurrently running workers, so every
operation takes the registry lock.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from ..utils.paths import normalise_path
from .schema import utc_now

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class FileRecord:
    """History of which tasks created or modified a file."""

    path: str
    created_by: Optional[str] = None
    modified_by: List[str] = field(default_factory=list)
    last_touched_at: Optional[datetime] = None


@dataclass(slots=True)
class _ProjectState:
    holders: Dict[str, Set[str]] = field(default_factory=dict)
    records: Dict[str, FileRecord] = field(default_factory=dict)
    last_activity: Dict[str, datetime] = field(default_factory=dict)


class FileActivityRegistry:
    """Thread-safe advisory lock table shared by the workers of a process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._projects: Dict[str, _ProjectState] = {}

    def _project(self, project_id: str) -> _ProjectState:
        state = self._projects.get(project_id)
        if state is None:
            state = _ProjectState()
            self._projects[project_id] = state
        return state

    def claim(
        self, project_id: str, worker_id: str, paths: Iterable[str]
    ) -> Dict[str, Set[str]]:
        """Register ``worker_id`` on ``paths`` and return conflicting holders per path."""
        conflicts: Dict[str, Set[str]] = {}
        with self._lock:
            state = self._project(project_id)
            for raw in paths:
                path = normalise_path(raw)
                if not path:
                    continue
                holders = state.holders.setdefault(path, set())
                others = holders - {worker_id}
                if others:
                    conflicts[path] = set(others)
                holders.add(worker_id)
            state.last_activity[worker_id] = utc_now()
        if conflicts:
            LOGGER.warning(
                "Worker %s claimed files already in use in project %s: %s",
                worker_id,
                project_id,
                ", ".join(sorted(conflicts)),
            )
        return conflicts

    def release(self, project_id: str, worker_id: str, paths: Optional[Iterable[str]] = None) -> None:
        """Drop ``worker_id`` from ``paths`` (or from every path when omitted)."""
        with self._lock:
            state = self._projects.get(project_id)
            if state is None:
                return
            targets = (
                [normalise_path(path) for path in paths] if paths is not None else list(state.holders)
            )
            for path in targets:
                holders = state.holders.get(path)
                if not holders:
                    continue
                holders.discard(worker_id)
                if not holders:
                    del state.holders[path]
            if paths is None:
                state.last_activity.pop(worker_id, None)

    def holders(self, project_id: str, path: str) -> Set[str]:
        with self._lock:
            state = self._projects.get(project_id)
            if state is None:
                return set()
            return set(state.holders.get(normalise_path(path), set()))

    def is_file_in_use(self, project_id: str, path: str, *, exclude_worker: Optional[str] = None) -> bool:
        holders = self.holders(project_id, path)
        if exclude_worker is not None:
            holders.discard(exclude_worker)
        return bool(holders)

    def files_in_use(self, project_id: str, *, exclude_worker: Optional[str] = None) -> List[str]:
        with self._lock:
            state = self._projects.get(project_id)
            if state is None:
                return []
            return sorted(
                path
                for path, holders in state.holders.items()
                if holders - ({exclude_worker} if exclude_worker else set())
            )

    def record_touch(self, project_id: str, path: str, task_id: str, *, created: bool = False) -> FileRecord:
        """Remember that ``task_id`` created or modified ``path``."""
        key = normalise_path(path)
        with self._lock:
            state = self._project(project_id)
            record = state.records.get(key)
            if record is None:
                record = FileRecord(path=key)
                state.records[key] = record
            if created and record.created_by is None:
                record.created_by = task_id
            elif task_id not in record.modified_by and record.created_by != task_id:
                record.modified_by.append(task_id)
            record.last_touched_at = utc_now()
            return FileRecord(
                path=record.path,
                created_by=record.created_by,
                modified_by=list(record.modified_by),
                last_touched_at=record.last_touched_at,
            )

    def metadata(self, project_id: str) -> Dict[str, FileRecord]:
        with self._lock:
            state = self._projects.get(project_id)
            if state is None:
                return {}
            return {
                path: FileRecord(
                    path=record.path,
                    created_by=record.created_by,
                    modified_by=list(record.modified_by),
                    last_touched_at=record.last_touched_at,
                )
                for path, record in state.records.items()
            }

    def last_activity(self, project_id: str, worker_id: str) -> Optional[datetime]:
        with self._lock:
            state = self._projects.get(project_id)
            if state is None:
                return None
            return state.last_activity.get(worker_id)


__all__ = ["FileActivityRegistry", "FileRecord"]
