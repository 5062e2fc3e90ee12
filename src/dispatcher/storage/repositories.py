"""Entity stores for tasks, delegations, suggestions, workflow runs and agents.

Each store wraps the shared :class:`Database` and converts rows to the
dataclasses in :mod:`dispatcher.models`. Status transitions that must happen at
most once are expressed as conditional UPDATEs so concurrent writers cannot
move an entity out of a terminal state.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Sequence
from typing import Any

from dispatcher.errors import NotFoundError
from dispatcher.models import (
    ACTIVE_DELEGATION_STATUSES,
    TERMINAL_DELEGATION_STATUSES,
    Delegation,
    DelegationStatus,
    Suggestion,
    SuggestionStatus,
    Task,
    WorkflowRun,
    WorkflowRunStatus,
    isoformat,
    utcnow,
)
from dispatcher.storage.database import Database

_UNSET: Any = object()


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> str:
    return isoformat(utcnow())


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _loads(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class TaskStore:
    """CRUD for tasks."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def create(
        self,
        title: str,
        description: str = "",
        priority: str = "medium",
        metadata: dict[str, Any] | None = None,
        parent_id: str | None = None,
    ) -> Task:
        task = Task(
            id=_new_id(),
            title=title,
            description=description or "",
            priority=priority,
            parent_id=parent_id,
            metadata=dict(metadata or {}),
        )
        self._insert(task)
        return task

    def create_if_absent(
        self,
        run_key: str,
        title: str,
        description: str = "",
        priority: str = "medium",
        metadata: dict[str, Any] | None = None,
    ) -> Task | None:
        """Create a task keyed by ``run_key``; return None if one already exists."""
        if self.find_by_run_key(run_key) is not None:
            return None
        task = Task(
            id=_new_id(),
            title=title,
            description=description or "",
            priority=priority,
            run_key=run_key,
            metadata={**(metadata or {}), "runKey": run_key},
        )
        try:
            self._insert(task)
        except sqlite3.IntegrityError:
            # Another worker inserted the same run_key between the check and the insert.
            return None
        return task

    def _insert(self, task: Task) -> None:
        now = _now()
        task.created_at = task.updated_at = now
        self.db.execute_insert(
            """
            INSERT INTO tasks (
                id, title, description, priority, status, assigned_agent,
                parent_id, run_key, metadata, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id,
                task.title,
                task.description,
                task.priority,
                task.status,
                task.assigned_agent,
                task.parent_id,
                task.run_key,
                _dumps(task.metadata),
                task.created_at,
                task.updated_at,
            ),
        )

    def get(self, task_id: str) -> Task | None:
        rows = self.db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return self._row_to_record(rows[0]) if rows else None

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def find_by_run_key(self, run_key: str) -> Task | None:
        rows = self.db.execute("SELECT * FROM tasks WHERE run_key = ?", (run_key,))
        return self._row_to_record(rows[0]) if rows else None

    def list(self, status: str | None = None, limit: int = 50) -> list[Task]:
        if status:
            rows = self.db.execute(
                "SELECT * FROM tasks WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                (status, limit),
            )
        else:
            rows = self.db.execute(
                "SELECT * FROM tasks ORDER BY created_at DESC LIMIT ?", (limit,)
            )
        return [self._row_to_record(row) for row in rows]

    def update(
        self,
        task_id: str,
        *,
        status: str | None = None,
        assigned_agent: Any = _UNSET,
        metadata_patch: dict[str, Any] | None = None,
        protect: Sequence[str] = (),
    ) -> bool:
        """
        Update status/assignee and shallow-merge ``metadata_patch``.

        When ``protect`` lists statuses, the write is skipped if the task is
        currently in one of them. Returns whether the row was written.
        """
        task = self.get(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        if task.status in protect:
            return False

        assignments = ["updated_at = ?"]
        params: list[Any] = [_now()]
        if status is not None:
            assignments.append("status = ?")
            params.append(status)
        if assigned_agent is not _UNSET:
            assignments.append("assigned_agent = ?")
            params.append(assigned_agent)
        if metadata_patch:
            assignments.append("metadata = ?")
            params.append(_dumps({**task.metadata, **metadata_patch}))

        sql = f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?"
        params.append(task_id)
        if protect:
            sql += f" AND status NOT IN ({_placeholders(protect)})"
            params.extend(protect)
        return self.db.execute_update(sql, tuple(params)) > 0

    def _row_to_record(self, row: Any) -> Task:
        return Task(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            priority=row["priority"],
            status=row["status"],
            assigned_agent=row["assigned_agent"],
            parent_id=row["parent_id"],
            run_key=row["run_key"],
            metadata=_loads(row["metadata"], {}),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class DelegationStore:
    """Delegation rows. Terminal rows are never rewritten."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def create(
        self,
        task_id: str,
        agent_name: str,
        intent: str,
        confidence: float,
        input_snapshot: dict[str, Any],
        model: str | None = None,
        provider: str | None = None,
    ) -> Delegation:
        delegation = Delegation(
            id=_new_id(),
            task_id=task_id,
            agent_name=agent_name,
            intent=intent,
            confidence=confidence,
            input=input_snapshot,
            model=model,
            provider=provider,
            created_at=_now(),
        )
        self.db.execute_insert(
            """
            INSERT INTO delegations (
                id, task_id, agent_name, status, intent, confidence,
                input, model, provider, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                delegation.id,
                delegation.task_id,
                delegation.agent_name,
                delegation.status,
                delegation.intent,
                delegation.confidence,
                _dumps(delegation.input),
                delegation.model,
                delegation.provider,
                delegation.created_at,
            ),
        )
        return delegation

    def get(self, delegation_id: str) -> Delegation | None:
        rows = self.db.execute("SELECT * FROM delegations WHERE id = ?", (delegation_id,))
        return self._row_to_record(rows[0]) if rows else None

    def require(self, delegation_id: str) -> Delegation:
        delegation = self.get(delegation_id)
        if delegation is None:
            raise NotFoundError("Delegation", delegation_id)
        return delegation

    def transition(
        self,
        delegation_id: str,
        status: str,
        *,
        result: Any = _UNSET,
        error: Any = _UNSET,
        started: bool = False,
        finished: bool = False,
        expected: Sequence[str] | None = None,
    ) -> bool:
        """
        Move a delegation to ``status``.

        The write only applies while the row is non-terminal and, if given,
        currently in one of the ``expected`` statuses.
        """
        now = _now()
        assignments = ["status = ?"]
        params: list[Any] = [status]
        if result is not _UNSET:
            assignments.append("result = ?")
            params.append(_dumps(result) if result is not None else None)
        if error is not _UNSET:
            assignments.append("error = ?")
            params.append(error)
        if started:
            assignments.append("started_at = ?")
            params.append(now)
        if finished:
            assignments.append("completed_at = ?")
            params.append(now)

        terminal = [s.value for s in TERMINAL_DELEGATION_STATUSES]
        sql = (
            f"UPDATE delegations SET {', '.join(assignments)} "
            f"WHERE id = ? AND status NOT IN ({_placeholders(terminal)})"
        )
        params.append(delegation_id)
        params.extend(terminal)
        if expected:
            sql += f" AND status IN ({_placeholders(expected)})"
            params.extend(expected)
        return self.db.execute_update(sql, tuple(params)) > 0

    def for_task(self, task_id: str) -> list[Delegation]:
        rows = self.db.execute(
            "SELECT * FROM delegations WHERE task_id = ? ORDER BY created_at DESC, rowid DESC",
            (task_id,),
        )
        return [self._row_to_record(row) for row in rows]

    def active(self, task_id: str | None = None) -> list[Delegation]:
        statuses = tuple(s.value for s in ACTIVE_DELEGATION_STATUSES)
        marks = ", ".join("?" * len(statuses))
        if task_id:
            rows = self.db.execute(
                f"SELECT * FROM delegations WHERE task_id = ? AND status IN ({marks}) "
                "ORDER BY created_at ASC",
                (task_id, *statuses),
            )
        else:
            rows = self.db.execute(
                f"SELECT * FROM delegations WHERE status IN ({marks}) ORDER BY created_at ASC",
                statuses,
            )
        return [self._row_to_record(row) for row in rows]

    def recent(self, limit: int = 20) -> list[Delegation]:
        rows = self.db.execute(
            "SELECT * FROM delegations ORDER BY created_at DESC LIMIT ?", (limit,)
        )
        return [self._row_to_record(row) for row in rows]

    def _row_to_record(self, row: Any) -> Delegation:
        return Delegation(
            id=row["id"],
            task_id=row["task_id"],
            agent_name=row["agent_name"],
            status=row["status"],
            intent=row["intent"],
            confidence=row["confidence"],
            input=_loads(row["input"], {}),
            result=_loads(row["result"], None),
            error=row["error"],
            model=row["model"],
            provider=row["provider"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            created_at=row["created_at"],
        )


class SuggestionStore:
    """Unified storage for generated and ingested suggestions."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def create(self, suggestion: Suggestion) -> tuple[Suggestion, bool]:
        """
        Insert a suggestion.

        Returns ``(record, created)``. If the fingerprint is already taken the
        existing row is returned with ``created=False``.
        """
        now = _now()
        suggestion.id = suggestion.id or _new_id()
        suggestion.created_at = suggestion.created_at or now
        suggestion.updated_at = now
        suggestion.available_at = suggestion.available_at or now
        try:
            self.db.execute_insert(
                """
                INSERT INTO suggestions (
                    id, agent_name, title, description, rationale, priority,
                    category, status, confidence, fingerprint, tags,
                    available_at, expires_at, data_source, conversation,
                    metadata, accepted_task_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    suggestion.id,
                    suggestion.agent_name,
                    suggestion.title,
                    suggestion.description,
                    suggestion.rationale,
                    suggestion.priority,
                    suggestion.category,
                    suggestion.status,
                    suggestion.confidence,
                    suggestion.fingerprint,
                    _dumps(suggestion.tags),
                    suggestion.available_at,
                    suggestion.expires_at,
                    suggestion.data_source,
                    _dumps(suggestion.conversation),
                    _dumps(suggestion.metadata),
                    suggestion.accepted_task_id,
                    suggestion.created_at,
                    suggestion.updated_at,
                ),
            )
        except sqlite3.IntegrityError:
            if suggestion.fingerprint:
                existing = self.get_by_fingerprint(suggestion.fingerprint)
                if existing is not None:
                    return existing, False
            raise
        return suggestion, True

    def get(self, suggestion_id: str) -> Suggestion | None:
        rows = self.db.execute("SELECT * FROM suggestions WHERE id = ?", (suggestion_id,))
        return self._row_to_record(rows[0]) if rows else None

    def require(self, suggestion_id: str) -> Suggestion:
        suggestion = self.get(suggestion_id)
        if suggestion is None:
            raise NotFoundError("Suggestion", suggestion_id)
        return suggestion

    def get_by_fingerprint(self, fingerprint: str) -> Suggestion | None:
        rows = self.db.execute(
            "SELECT * FROM suggestions WHERE fingerprint = ?", (fingerprint,)
        )
        return self._row_to_record(rows[0]) if rows else None

    def find_pending(self, agent_name: str, title: str) -> Suggestion | None:
        rows = self.db.execute(
            "SELECT * FROM suggestions WHERE agent_name = ? AND title = ? AND status = ? LIMIT 1",
            (agent_name, title, SuggestionStatus.PENDING.value),
        )
        return self._row_to_record(rows[0]) if rows else None

    def list(
        self,
        status: str | None = None,
        visible_at: str | None = None,
        agent_name: str | None = None,
        limit: int = 200,
    ) -> list[Suggestion]:
        clauses: list[str] = []
        params: list[Any] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if visible_at:
            clauses.append("available_at <= ?")
            params.append(visible_at)
        if agent_name:
            clauses.append("agent_name = ?")
            params.append(agent_name)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = self.db.execute(
            f"SELECT * FROM suggestions {where} ORDER BY created_at DESC LIMIT ?",
            tuple(params),
        )
        return [self._row_to_record(row) for row in rows]

    def update(
        self,
        suggestion_id: str,
        *,
        expected_status: str | None = None,
        **fields: Any,
    ) -> bool:
        """Write ``fields``; skipped unless the current status equals ``expected_status``."""
        json_fields = {"tags", "conversation", "metadata"}
        assignments = ["updated_at = ?"]
        params: list[Any] = [_now()]
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            params.append(_dumps(value) if name in json_fields else value)
        sql = f"UPDATE suggestions SET {', '.join(assignments)} WHERE id = ?"
        params.append(suggestion_id)
        if expected_status is not None:
            sql += " AND status = ?"
            params.append(expected_status)
        return self.db.execute_update(sql, tuple(params)) > 0

    def expire_stale(self, now: str) -> int:
        return self.db.execute_update(
            "UPDATE suggestions SET status = ?, updated_at = ? "
            "WHERE status = ? AND expires_at IS NOT NULL AND expires_at < ?",
            (SuggestionStatus.EXPIRED.value, now, SuggestionStatus.PENDING.value, now),
        )

    def counts(self) -> list[tuple[str, str, int]]:
        rows = self.db.execute(
            "SELECT agent_name, status, COUNT(*) AS n FROM suggestions GROUP BY agent_name, status"
        )
        return [(row["agent_name"], row["status"], row["n"]) for row in rows]

    def _row_to_record(self, row: Any) -> Suggestion:
        return Suggestion(
            id=row["id"],
            agent_name=row["agent_name"],
            title=row["title"],
            description=row["description"],
            rationale=row["rationale"],
            priority=row["priority"],
            category=row["category"],
            status=row["status"],
            confidence=row["confidence"],
            fingerprint=row["fingerprint"],
            tags=_loads(row["tags"], []),
            available_at=row["available_at"],
            expires_at=row["expires_at"],
            data_source=row["data_source"],
            conversation=_loads(row["conversation"], []),
            metadata=_loads(row["metadata"], {}),
            accepted_task_id=row["accepted_task_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class WorkflowRunStore:
    """Append-only audit log of workflow step executions."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def create(self, workflow_name: str, metadata: dict[str, Any] | None = None) -> WorkflowRun:
        run = self.draft(workflow_name, metadata)
        self.save(run)
        return run

    def draft(self, workflow_name: str, metadata: dict[str, Any] | None = None) -> WorkflowRun:
        """A pending run that has not been written yet."""
        now = _now()
        return WorkflowRun(
            id=_new_id(),
            workflow_name=workflow_name,
            started_at=now,
            metadata=dict(metadata or {}),
            created_at=now,
        )

    def save(self, run: WorkflowRun) -> None:
        """Insert ``run`` as it stands, terminal fields included."""
        self.db.execute_insert(
            """
            INSERT INTO workflow_runs (
                id, workflow_name, status, error, started_at, completed_at,
                metadata, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.id,
                run.workflow_name,
                run.status,
                run.error,
                run.started_at,
                run.completed_at,
                _dumps(run.metadata),
                run.created_at,
            ),
        )

    def finish(
        self,
        run: WorkflowRun,
        status: WorkflowRunStatus,
        error: str | None = None,
        metadata_patch: dict[str, Any] | None = None,
    ) -> bool:
        """Move a pending run to its terminal status exactly once."""
        run.metadata = {**run.metadata, **(metadata_patch or {})}
        run.status = status.value
        run.error = error
        run.completed_at = _now()
        return (
            self.db.execute_update(
                """
                UPDATE workflow_runs
                SET status = ?, error = ?, completed_at = ?, metadata = ?
                WHERE id = ? AND status = ?
                """,
                (
                    run.status,
                    error,
                    run.completed_at,
                    _dumps(run.metadata),
                    run.id,
                    WorkflowRunStatus.PENDING.value,
                ),
            )
            > 0
        )

    def get(self, run_id: str) -> WorkflowRun | None:
        rows = self.db.execute("SELECT * FROM workflow_runs WHERE id = ?", (run_id,))
        return self._row_to_record(rows[0]) if rows else None

    def list(self, limit: int = 50, workflow_name: str | None = None) -> list[WorkflowRun]:
        if workflow_name:
            rows = self.db.execute(
                "SELECT * FROM workflow_runs WHERE workflow_name = ? "
                "ORDER BY created_at DESC LIMIT ?",
                (workflow_name, limit),
            )
        else:
            rows = self.db.execute(
                "SELECT * FROM workflow_runs ORDER BY created_at DESC LIMIT ?", (limit,)
            )
        return [self._row_to_record(row) for row in rows]

    def _row_to_record(self, row: Any) -> WorkflowRun:
        return WorkflowRun(
            id=row["id"],
            workflow_name=row["workflow_name"],
            status=row["status"],
            error=row["error"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            metadata=_loads(row["metadata"], {}),
            created_at=row["created_at"],
        )


class AgentStore:
    """Persisted snapshots of the agent directory."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def upsert(
        self,
        name: str,
        display_name: str,
        description: str,
        keywords: Sequence[str],
        auto_registered: bool,
    ) -> None:
        self.db.execute_insert(
            """
            INSERT INTO agents (name, display_name, description, keywords, auto_registered)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                display_name = excluded.display_name,
                description = excluded.description,
                keywords = excluded.keywords,
                auto_registered = excluded.auto_registered
            """,
            (name, display_name, description, _dumps(list(keywords)), int(auto_registered)),
        )

    def all(self) -> list[dict[str, Any]]:
        rows = self.db.execute("SELECT * FROM agents ORDER BY registered_at ASC, name ASC")
        return [
            {
                "name": row["name"],
                "display_name": row["display_name"],
                "description": row["description"],
                "keywords": _loads(row["keywords"], []),
                "auto_registered": bool(row["auto_registered"]),
            }
            for row in rows
        ]
