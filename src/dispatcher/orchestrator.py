"""Orchestrator - wires storage, agents, delegation, suggestions and workflows together."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from dispatcher.agents.directory import AgentDirectory
from dispatcher.background import BackgroundExecutor
from dispatcher.config import Settings, get_settings
from dispatcher.delegation.machine import DelegationMachine
from dispatcher.gateway.generation import GenerationGateway, OllamaGateway
from dispatcher.gateway.retrieval import HttpRetriever, Retriever, WebFetcher
from dispatcher.models import Task, WorkflowRun, utcnow
from dispatcher.storage.database import Database
from dispatcher.storage.repositories import (
    AgentStore,
    DelegationStore,
    SuggestionStore,
    TaskStore,
    WorkflowRunStore,
)
from dispatcher.suggestions.context import ContextBuilder
from dispatcher.suggestions.pipeline import SuggestionPipeline
from dispatcher.suggestions.scheduler import SuggestionScheduler
from dispatcher.workflows.loader import WorkflowLoader
from dispatcher.workflows.runner import WorkflowRunner

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    One process-scoped service graph.

    Construction opens the database and loads the agent directory; nothing
    runs in the background until :meth:`start`.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        gateway: GenerationGateway | None = None,
        retriever: Retriever | None = None,
        fetcher: WebFetcher | None = None,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.db = Database(self.settings.data_dir)
        self.db.ensure_tables()

        self.tasks = TaskStore(self.db)
        self.delegations = DelegationStore(self.db)
        self.suggestion_store = SuggestionStore(self.db)
        self.workflow_runs = WorkflowRunStore(self.db)

        self.directory = AgentDirectory(AgentStore(self.db))
        self.directory.load()

        self.gateway = gateway or OllamaGateway(
            self.settings.ollama_url, default_timeout=self.settings.gateway_timeout_s
        )
        if retriever is None and self.settings.rag_url:
            retriever = HttpRetriever(self.settings.rag_url)
        self.retriever = retriever
        self.fetcher = fetcher or WebFetcher()

        self.background = BackgroundExecutor(self.settings.background_workers)
        self.machine = DelegationMachine(
            self.tasks,
            self.delegations,
            self.directory,
            self.gateway,
            self.background,
            self.settings,
            retriever=self.retriever,
        )
        self.suggestions = SuggestionPipeline(
            self.suggestion_store,
            self.tasks,
            ContextBuilder(
                self.tasks,
                self.delegations,
                self.directory,
                retriever=self.retriever,
                fetcher=self.fetcher,
                market_data_url=self.settings.market_data_url,
                environ=environ,
            ),
            self.gateway,
            self.machine,
            self.background,
            self.settings,
            clock=clock,
        )
        self.scheduler = SuggestionScheduler(
            self.suggestions.run_cycle,
            interval=self.settings.suggestion_interval_s,
            initial_delay=self.settings.suggestion_initial_delay_s,
        )
        self.workflow_loader = WorkflowLoader(
            self.settings.resolved_workflows_dir(), max_files=self.settings.workflows_max
        )
        self.workflows = WorkflowRunner(
            self.tasks,
            self.workflow_runs,
            self.machine,
            self.workflow_loader,
            concurrency=self.settings.workflow_concurrency,
            retries=self.settings.workflow_retries,
            enabled=self.settings.startup_workflows_enabled,
            clock=clock,
        )

    def create_task(
        self,
        title: str,
        description: str = "",
        priority: str = "medium",
        metadata: dict[str, Any] | None = None,
    ) -> Task:
        task = self.tasks.create(title, description, priority, metadata)
        logger.info("Created task %s: %s", task.id, task.title)
        return task

    def start(self) -> list[WorkflowRun]:
        """Start the suggestion scheduler and run startup workflows."""
        if self.settings.suggestion_scheduler_enabled:
            self.scheduler.start()
        try:
            return self.workflows.run_startup()
        except Exception:
            logger.exception("Startup workflows failed")
            return []

    def stop(self, wait: bool = True) -> None:
        self.scheduler.stop()
        self.background.shutdown(wait=wait)
