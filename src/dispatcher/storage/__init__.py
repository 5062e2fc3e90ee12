"""SQLite persistence: the WAL database and per-entity stores."""

from .database import Database
from .repositories import (
    AgentStore,
    DelegationStore,
    SuggestionStore,
    TaskStore,
    WorkflowRunStore,
)

__all__ = [
    "AgentStore",
    "Database",
    "DelegationStore",
    "SuggestionStore",
    "TaskStore",
    "WorkflowRunStore",
]
