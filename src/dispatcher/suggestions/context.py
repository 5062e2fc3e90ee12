"""Per-agent context bundles fed to suggestion prompts and prerequisite checks."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from dispatcher.agents.directory import AgentDirectory
from dispatcher.gateway.retrieval import Retriever, WebFetcher
from dispatcher.models import TaskStatus, isoformat, utcnow
from dispatcher.storage.repositories import DelegationStore, TaskStore

logger = logging.getLogger(__name__)

SECRET_KEYS = (
    "SMTP_HOST",
    "SMTP_PORT",
    "SMTP_USER",
    "SMTP_PASS",
    "EMAIL_FROM",
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "XAI_API_KEY",
    "OPENROUTER_API_KEY",
)

CODEBASE_QUERY = "TODO FIXME HACK refactor test coverage bug"
CODEBASE_K = 10
TASK_LIMIT = 50
DELEGATION_LIMIT = 20
MARKET_SNAPSHOT_MAX_CHARS = 5000


@dataclass
class AgentContext:
    """Everything an agent may look at when proposing suggestions."""

    agent_name: str
    current_tasks: list[dict[str, Any]] = field(default_factory=list)
    agents: list[dict[str, Any]] = field(default_factory=list)
    recent_delegations: list[dict[str, Any]] = field(default_factory=list)
    secrets_status: dict[str, bool] = field(default_factory=dict)
    data_source: str = "general"
    codebase_snippets: list[str] = field(default_factory=list)
    market_snapshot: str | None = None
    email_configured: bool = False
    pending_tasks: list[dict[str, Any]] = field(default_factory=list)
    pending_count: int = 0
    in_progress_count: int = 0
    timestamp: str = ""
    # False when web and codebase lookups were skipped.
    remote: bool = True

    def has_secret(self, key: str) -> bool:
        return bool(self.secrets_status.get(key))


def secrets_status(environ: Mapping[str, str] | None = None) -> dict[str, bool]:
    """Which secrets are configured. Values are never read into the context."""
    environ = os.environ if environ is None else environ
    return {key: bool(environ.get(key)) for key in SECRET_KEYS}


class ContextBuilder:
    def __init__(
        self,
        tasks: TaskStore,
        delegations: DelegationStore,
        directory: AgentDirectory,
        retriever: Retriever | None = None,
        fetcher: WebFetcher | None = None,
        market_data_url: str = "",
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.tasks = tasks
        self.delegations = delegations
        self.directory = directory
        self.retriever = retriever
        self.fetcher = fetcher
        self.market_data_url = market_data_url
        self.environ = environ

    def build(self, agent_name: str, remote: bool = True) -> AgentContext:
        """
        Collect the context for ``agent_name``.

        With ``remote=False`` the market data fetch and codebase search are
        skipped, so the build only touches local storage and the environment.
        """
        tasks = [
            {
                "id": t.id,
                "title": t.title,
                "description": t.description[:200],
                "status": t.status,
                "priority": t.priority,
                "assigned_agent": t.assigned_agent,
                "created_at": t.created_at,
            }
            for t in self.tasks.list(limit=TASK_LIMIT)
        ]
        context = AgentContext(
            agent_name=agent_name,
            current_tasks=tasks,
            agents=[
                {"name": p.name, "display_name": p.display_name, "keywords": list(p.keywords)}
                for p in self.directory.profiles()
            ],
            recent_delegations=[
                {
                    "task_id": d.task_id,
                    "agent_name": d.agent_name,
                    "status": d.status,
                    "intent": d.intent,
                    "confidence": d.confidence,
                    "completed_at": d.completed_at,
                }
                for d in self.delegations.recent(DELEGATION_LIMIT)
            ],
            secrets_status=secrets_status(self.environ),
            timestamp=isoformat(utcnow()),
            remote=remote,
        )

        if agent_name == "coding-agent":
            if remote:
                context.codebase_snippets = self._codebase_snippets()
            context.data_source = "rag-codebase-scan"
        elif agent_name == "email-agent":
            context.email_configured = context.has_secret("SMTP_HOST") and context.has_secret(
                "SMTP_USER"
            )
            context.data_source = "email-config-check"
        elif agent_name == "investment-agent":
            if remote:
                context.market_snapshot = self._market_snapshot()
            context.data_source = "web-market-data"
        elif agent_name == "social-media-agent":
            context.data_source = "task-analysis"
        elif agent_name == "time-management-agent":
            context.pending_tasks = [t for t in tasks if t["status"] == TaskStatus.PENDING]
            context.pending_count = len(context.pending_tasks)
            context.in_progress_count = sum(
                1 for t in tasks if t["status"] == TaskStatus.IN_PROGRESS
            )
            context.data_source = "task-priority-analysis"
        return context

    def _codebase_snippets(self) -> list[str]:
        if self.retriever is None:
            return []
        try:
            return self.retriever.retrieve(CODEBASE_QUERY, CODEBASE_K)
        except Exception as e:
            logger.warning("Codebase search failed: %s", e)
            return []

    def _market_snapshot(self) -> str | None:
        if self.fetcher is None or not self.market_data_url:
            return None
        body = self.fetcher.fetch(self.market_data_url)
        return body[:MARKET_SNAPSHOT_MAX_CHARS] if body else None
