"""
Core Data Models

Dataclasses for the entities the dispatcher persists: tasks, delegations,
suggestions and workflow runs. Status vocabularies are string enums so they
serialize directly into SQLite and JSON.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class Priority(StrEnum):
    """Task and suggestion priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @classmethod
    def coerce(cls, value: Any, default: Priority | None = None) -> Priority:
        """Map arbitrary input onto a priority, falling back to ``default``."""
        try:
            return cls(str(value).lower())
        except ValueError:
            return default or cls.MEDIUM


class TaskStatus(StrEnum):
    PENDING = "pending"
    DELEGATED = "delegated"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


class DelegationStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    REVIEW = "review"


TERMINAL_DELEGATION_STATUSES = (DelegationStatus.COMPLETED, DelegationStatus.FAILED)
ACTIVE_DELEGATION_STATUSES = (DelegationStatus.QUEUED, DelegationStatus.RUNNING)


class SuggestionStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    SAVED = "saved"


class WorkflowRunStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(UTC)


def isoformat(moment: datetime) -> str:
    """Serialize a timestamp so that string order matches time order."""
    return moment.astimezone(UTC).isoformat(timespec="microseconds")


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


@dataclass
class Task:
    """A unit of work that can be delegated to an agent."""

    id: str
    title: str
    description: str = ""
    priority: str = Priority.MEDIUM.value
    status: str = TaskStatus.PENDING.value
    assigned_agent: str | None = None
    parent_id: str | None = None
    run_key: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self) -> None:
        if not self.title or not self.title.strip():
            raise ValueError("title must not be empty")
        self.priority = Priority.coerce(self.priority).value

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Delegation:
    """One attempt at handing a task to an agent."""

    id: str
    task_id: str
    agent_name: str
    status: str = DelegationStatus.QUEUED.value
    intent: str = ""
    confidence: float = 0.0
    input: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] | None = None
    error: str | None = None
    model: str | None = None
    provider: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    created_at: str = ""

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0.0, 1.0], got {self.confidence}")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DELEGATION_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Suggestion:
    """A proactive proposal surfaced by an agent, generated or ingested."""

    id: str
    agent_name: str
    title: str
    description: str = ""
    rationale: str = ""
    priority: str = Priority.MEDIUM.value
    category: str = "general"
    status: str = SuggestionStatus.PENDING.value
    confidence: float | None = None
    fingerprint: str | None = None
    tags: list[str] = field(default_factory=list)
    available_at: str = ""
    expires_at: str | None = None
    data_source: str | None = None
    conversation: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    accepted_task_id: str | None = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class WorkflowRun:
    """Audit record of one (workflow, step) execution."""

    id: str
    workflow_name: str
    status: str = WorkflowRunStatus.PENDING.value
    error: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
