"""
Workflow Runner — Bounded, Idempotent Step Execution

Expands auto workflows into one queue item per step and drains the queue on
a fixed-size thread pool. Each step runs at most once per UTC day: the task
it creates carries a unique ``run_key`` of ``workflow:step:YYYY-MM-DD``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime

from dispatcher.delegation.machine import DelegationMachine
from dispatcher.models import WorkflowRun, WorkflowRunStatus, utcnow
from dispatcher.storage.repositories import TaskStore, WorkflowRunStore
from dispatcher.workflows.loader import WorkflowDefinition, WorkflowLoader, WorkflowStep

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueItem:
    workflow: WorkflowDefinition
    step: WorkflowStep


def run_key(workflow_name: str, step_title: str, moment: datetime) -> str:
    return f"{workflow_name}:{step_title}:{moment.date().isoformat()}"


class WorkflowRunner:
    def __init__(
        self,
        tasks: TaskStore,
        runs: WorkflowRunStore,
        machine: DelegationMachine,
        loader: WorkflowLoader,
        concurrency: int = 2,
        retries: int = 1,
        enabled: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.tasks = tasks
        self.runs = runs
        self.machine = machine
        self.loader = loader
        self.concurrency = max(1, concurrency)
        self.retries = max(0, retries)
        self.enabled = enabled
        self._clock = clock

    def run_startup(self) -> list[WorkflowRun]:
        """Run every auto startup workflow found on disk."""
        if not self.enabled:
            logger.info("Startup workflows disabled; skipping")
            return []
        workflows = self.loader.load_workflows()
        if not workflows:
            logger.info("No startup workflows found")
            return []
        return self.run(workflows)

    def run(self, workflows: list[WorkflowDefinition]) -> list[WorkflowRun]:
        queue = [
            QueueItem(workflow, step)
            for workflow in workflows
            if workflow.auto
            for step in workflow.steps
        ]
        logger.info("Auto workflows queued steps=%d", len(queue))
        if not queue:
            return []
        # map() hands each item to exactly one worker; leaving the block waits for all.
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="workflow") as pool:
            return list(pool.map(self._process, queue))

    def _process(self, item: QueueItem) -> WorkflowRun:
        workflow, step = item.workflow, item.step
        metadata = {"stepTitle": step.title, "agent": workflow.agent}
        recorded = True
        try:
            run = self.runs.create(workflow.name, metadata=metadata)
        except Exception as e:
            logger.error(
                "Failed to record workflow run for %s: %s; running step anyway", workflow.name, e
            )
            run = self.runs.draft(workflow.name, metadata=metadata)
            recorded = False

        succeeded = False
        last_error = "unknown error"
        for attempt in range(1, self.retries + 2):
            try:
                self._attempt(run, workflow, step, attempt)
            except Exception as e:
                last_error = str(e) or e.__class__.__name__
                logger.warning(
                    "Workflow step failed (%s) attempt %d: %s", workflow.name, attempt, last_error
                )
            else:
                succeeded = True
                break
        if not succeeded:
            try:
                self.runs.finish(
                    run,
                    WorkflowRunStatus.FAILED,
                    error=last_error,
                    metadata_patch={"attempts": self.retries + 1},
                )
            except Exception as e:
                logger.error("Failed to record workflow failure for %s: %s", workflow.name, e)
        if not recorded:
            # The draft already carries its outcome; write it in one go.
            try:
                self.runs.save(run)
            except Exception as e:
                logger.error("Failed to record workflow run for %s: %s", workflow.name, e)
        return run

    def _attempt(
        self, run: WorkflowRun, workflow: WorkflowDefinition, step: WorkflowStep, attempt: int
    ) -> None:
        key = run_key(workflow.name, step.title, self._clock())
        task = self.tasks.create_if_absent(
            key,
            title=step.title,
            description=step.description or workflow.description or workflow.name,
            priority=step.priority or workflow.priority,
            metadata={**step.metadata, "workflow": workflow.name, "workflowRunId": run.id},
        )
        if task is None:
            existing = self.tasks.find_by_run_key(key)
            # A task left behind by an earlier attempt of this run is retried, not skipped.
            if existing is None or existing.metadata.get("workflowRunId") != run.id:
                self.runs.finish(
                    run,
                    WorkflowRunStatus.COMPLETED,
                    metadata_patch={"skipped": "existing task", "attempts": attempt},
                )
                return
            task = existing
        else:
            logger.info("Created startup task %s for workflow %s", task.id, workflow.name)
        self.machine.delegate(task.id, force_agent=workflow.agent, autonomous=True)
        self.runs.finish(
            run,
            WorkflowRunStatus.COMPLETED,
            metadata_patch={"taskId": task.id, "attempts": attempt},
        )
        logger.info("Delegated startup workflow step: %s -> %s", workflow.name, workflow.agent)
