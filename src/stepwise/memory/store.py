"""Durable storage for plan snapshots and conversation checkpoints."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Mapping, Optional, Sequence

from .schema import (
    ConversationCheckpoint,
    ConversationMessage,
    ImplementationPlan,
    PlanStatus,
    utc_now,
)

DEFAULT_DB_PATH = Path("data/stepwise.sqlite")
LOGGER = logging.getLogger(__name__)


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _from_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp produced by `_as_iso`."""
    return datetime.fromisoformat(value)


def _dump_json(data: Any, *, default: Any) -> str:
    """Convert arbitrary JSON-like payloads into a persisted string."""
    serialisable = default if data is None else data
    return json.dumps(serialisable)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


class CheckpointStore:
    """SQLite-backed persistence keyed by ``(project_id, task_id)``.

    Every write is an idempotent upsert, so callers may save the same plan or
    transcript repeatedly. One store may be shared by several workers; access
    to the connection is serialised with a lock.
    """

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        self.db_path = Path(db_path).resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = self._open_connection()
        self._bootstrap()
        LOGGER.debug("Opened checkpoint store at %s", self.db_path)

    def close(self) -> None:
        if getattr(self, "_conn", None) is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "CheckpointStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.db_path), check_same_thread=False)
        connection.row_factory = sqlite3.Row
        return connection

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("CheckpointStore is closed")
        return self._conn

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, base_dir: Optional[Path] = None) -> "CheckpointStore":
        """Open the store named by ``paths.db_path`` (or ``paths.data``), relative to ``base_dir``."""
        paths = config.get("paths") or {}
        db_value = paths.get("db_path")
        if isinstance(db_value, str) and db_value.strip():
            db_path = Path(db_value.strip())
        else:
            db_path = Path(str(paths.get("data") or "data")) / "stepwise.sqlite"
        if base_dir is not None and not db_path.is_absolute():
            db_path = base_dir / db_path
        return cls(db_path)

    def _bootstrap(self) -> None:
        self.connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS plans (
                project_id TEXT NOT NULL,
                task_id TEXT NOT NULL,
                status TEXT NOT NULL,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (project_id, task_id)
            );
            CREATE INDEX IF NOT EXISTS idx_plans_status
                ON plans(project_id, status);

            CREATE TABLE IF NOT EXISTS conversations (
                project_id TEXT NOT NULL,
                task_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                messages TEXT NOT NULL,
                saved_at TEXT NOT NULL,
                PRIMARY KEY (project_id, task_id)
            );
            """
        )
        self.connection.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            connection = self.connection
            try:
                yield connection
                connection.commit()
            except Exception:
                connection.rollback()
                raise

    # Plan operations -----------------------------------------------------------------
    def save_plan(self, plan: ImplementationPlan) -> None:
        with self._transaction() as connection:
            connection.execute(
                """
                INSERT INTO plans (project_id, task_id, status, payload, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(project_id, task_id) DO UPDATE SET
                    status = excluded.status,
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (
                    plan.project_id,
                    plan.task_id,
                    plan.status.value,
                    plan.model_dump_json(),
                    _as_iso(plan.created_at),
                    _as_iso(plan.updated_at),
                ),
            )

    def load_plan(self, project_id: str, task_id: str) -> Optional[ImplementationPlan]:
        with self._lock:
            cursor = self.connection.execute(
                "SELECT payload FROM plans WHERE project_id = ? AND task_id = ?",
                (project_id, task_id),
            )
            row = cursor.fetchone()
        if not row:
            return None
        return ImplementationPlan.model_validate_json(row["payload"])

    def list_plans(
        self,
        project_id: Optional[str] = None,
        *,
        statuses: Optional[Sequence[PlanStatus]] = None,
    ) -> List[ImplementationPlan]:
        query = "SELECT payload FROM plans"
        clauses = []
        params: List[Any] = []
        if project_id:
            clauses.append("project_id = ?")
            params.append(project_id)
        if statuses:
            placeholders = ",".join("?" for _ in statuses)
            clauses.append(f"status IN ({placeholders})")
            params.extend(status.value for status in statuses)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at ASC, task_id ASC"

        with self._lock:
            rows = self.connection.execute(query, params).fetchall()
        return [ImplementationPlan.model_validate_json(row["payload"]) for row in rows]

    # Conversation operations ---------------------------------------------------------
    def save_conversation(
        self, plan: ImplementationPlan, messages: Sequence[Mapping[str, Any]]
    ) -> ConversationCheckpoint:
        checkpoint = ConversationCheckpoint(
            task_id=plan.task_id,
            project_id=plan.project_id,
            step_index=plan.current_step_index,
            saved_at=utc_now(),
            messages=[
                ConversationMessage(role=str(message["role"]), content=message.get("content"))
                for message in messages
            ],
        )
        payload = [message.model_dump(mode="json") for message in checkpoint.messages]
        with self._transaction() as connection:
            connection.execute(
                """
                INSERT INTO conversations (project_id, task_id, step_index, messages, saved_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(project_id, task_id) DO UPDATE SET
                    step_index = excluded.step_index,
                    messages = excluded.messages,
                    saved_at = excluded.saved_at
                """,
                (
                    checkpoint.project_id,
                    checkpoint.task_id,
                    checkpoint.step_index,
                    _dump_json(payload, default=[]),
                    _as_iso(checkpoint.saved_at),
                ),
            )
        return checkpoint

    def load_conversation(self, project_id: str, task_id: str) -> Optional[ConversationCheckpoint]:
        with self._lock:
            cursor = self.connection.execute(
                "SELECT * FROM conversations WHERE project_id = ? AND task_id = ?",
                (project_id, task_id),
            )
            row = cursor.fetchone()
        if not row:
            return None
        return ConversationCheckpoint(
            task_id=row["task_id"],
            project_id=row["project_id"],
            step_index=row["step_index"],
            saved_at=_from_iso(row["saved_at"]),
            messages=[
                ConversationMessage.model_validate(entry)
                for entry in _load_json(row["messages"], default=[])
            ],
        )

    def delete_conversation(self, project_id: str, task_id: str) -> bool:
        with self._transaction() as connection:
            cursor = connection.execute(
                "DELETE FROM conversations WHERE project_id = ? AND task_id = ?",
                (project_id, task_id),
            )
            return cursor.rowcount > 0


__all__ = ["CheckpointStore", "DEFAULT_DB_PATH"]
