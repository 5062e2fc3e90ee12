"""
Delegation Machine — Task Routing and Outcome Resolution

Owns the lifecycle of a delegation:

    queued -> running -> completed | review | failed
    review -> completed (approve) | failed (reject)

``delegate`` returns as soon as the delegation is durably queued; the
gateway call runs on the background executor. Results are normalized, gated
for human review (low confidence or urgent priority) and written to both the
delegation and its task. Terminal delegations are never rewritten, so a
cancel or reject that lands first wins over a late result.

Usage:
    machine = DelegationMachine(tasks, delegations, directory, gateway, background, settings)
    ack = machine.delegate(task_id)
    machine.history(task_id)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from typing import Any

from dispatcher.agents.directory import AgentDirectory
from dispatcher.background import BackgroundExecutor
from dispatcher.config import Settings
from dispatcher.delegation.classifier import Classification, classify
from dispatcher.delegation.prompts import (
    build_agent_prompt,
    previous_result_context,
    with_context,
    with_snippets,
)
from dispatcher.delegation.results import needs_clarification, normalize_result
from dispatcher.errors import InvalidStateError
from dispatcher.gateway.generation import GenerationGateway
from dispatcher.gateway.retrieval import Retriever
from dispatcher.models import (
    Delegation,
    DelegationStatus,
    Priority,
    Task,
    TaskStatus,
    isoformat,
    utcnow,
)
from dispatcher.storage.repositories import DelegationStore, TaskStore

logger = logging.getLogger(__name__)

WAIT_TIMEOUT_ERROR = "Wait timeout exceeded"
DEFAULT_REJECT_REASON = "Rejected by user"
DEFAULT_CANCEL_REASON = "Cancelled by user"
SUPERSEDED_ERROR = "Superseded by a newer delegation"

# Task statuses a late delegation outcome must not overwrite.
_TASK_LOCKED = (TaskStatus.CANCELLED.value, TaskStatus.ARCHIVED.value)
_SUCCESS = (DelegationStatus.COMPLETED.value, DelegationStatus.REVIEW.value)


@dataclass
class DelegationAck:
    """Returned by :meth:`DelegationMachine.delegate` before execution starts."""

    delegation_id: str
    task_id: str
    agent_name: str
    intent: str
    confidence: float
    status: str = DelegationStatus.QUEUED.value

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StepOutcome:
    """Outcome of running one delegation against the gateway."""

    agent_name: str
    delegation_id: str
    status: str
    result: dict[str, Any] | None = None
    error: str | None = None
    superseded: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status in _SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ChainResult:
    status: str
    results: list[StepOutcome] = field(default_factory=list)
    final_result: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "results": [r.to_dict() for r in self.results],
            "final_result": self.final_result,
        }


@dataclass
class ParallelResult:
    status: str
    results: list[StepOutcome] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "results": [r.to_dict() for r in self.results]}


def _snapshot(task: Task, **extra_metadata: Any) -> dict[str, Any]:
    return {
        "title": task.title,
        "description": task.description,
        "priority": task.priority,
        "metadata": {**task.metadata, **extra_metadata},
    }


def _combined_status(outcomes: list[StepOutcome]) -> str:
    succeeded = [o for o in outcomes if o.succeeded]
    if not succeeded:
        return TaskStatus.FAILED.value
    if any(o.status == DelegationStatus.REVIEW for o in succeeded):
        return TaskStatus.REVIEW.value
    return TaskStatus.COMPLETED.value


class DelegationMachine:
    """Classifies, queues, executes and resolves delegations."""

    def __init__(
        self,
        tasks: TaskStore,
        delegations: DelegationStore,
        directory: AgentDirectory,
        gateway: GenerationGateway,
        background: BackgroundExecutor,
        settings: Settings,
        retriever: Retriever | None = None,
    ) -> None:
        self.tasks = tasks
        self.delegations = delegations
        self.directory = directory
        self.gateway = gateway
        self.background = background
        self.settings = settings
        self.retriever = retriever

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def needs_review(self, confidence: float, priority: str | None) -> bool:
        return confidence < self.settings.review_confidence_threshold or priority == Priority.URGENT

    def classify_task(self, task: Task) -> Classification:
        return classify(
            task.title,
            task.description,
            self.directory,
            gateway=self.gateway,
            model=self.settings.classifier_model,
            timeout=self.settings.classifier_timeout_s,
            generalist=self.settings.generalist_agent,
        )

    def classify_preview(self, task_id: str) -> Classification:
        """Classify without creating a delegation or touching the task."""
        return self.classify_task(self.tasks.require(task_id))

    def capabilities(self) -> list[dict[str, Any]]:
        return [profile.to_dict() for profile in self.directory.profiles()]

    def _ensure_agent(self, agent_name: str) -> None:
        if agent_name != self.settings.generalist_agent and agent_name not in self.directory:
            self.directory.register(agent_name)

    def _provider(self, provider: str | None) -> str:
        return provider or getattr(self.gateway, "provider", None) or "ollama"

    # ------------------------------------------------------------------
    # Single delegation
    # ------------------------------------------------------------------

    def delegate(
        self,
        task_id: str,
        force_agent: str | None = None,
        model: str | None = None,
        provider: str | None = None,
        autonomous: bool = True,
    ) -> DelegationAck:
        """Queue a delegation for ``task_id`` and schedule its execution."""
        task = self.tasks.require(task_id)
        if force_agent:
            classification = Classification(force_agent, "manual-assignment", 1.0)
        else:
            classification = self.classify_task(task)
        self._ensure_agent(classification.agent_name)

        snapshot = _snapshot(task)
        snapshot["autonomous"] = autonomous
        delegation = self.delegations.create(
            task.id,
            classification.agent_name,
            classification.intent,
            classification.confidence,
            snapshot,
            model=model or self.settings.agent_model,
            provider=self._provider(provider),
        )
        self.tasks.update(
            task.id,
            status=TaskStatus.DELEGATED.value,
            assigned_agent=classification.agent_name,
        )
        logger.info(
            "Task %s delegated to %s (confidence: %.2f)",
            task.id,
            classification.agent_name,
            classification.confidence,
        )

        self.background.submit(self.execute_delegate, delegation.id)
        return DelegationAck(
            delegation_id=delegation.id,
            task_id=task.id,
            agent_name=classification.agent_name,
            intent=classification.intent,
            confidence=classification.confidence,
        )

    def execute_delegate(self, delegation_id: str, context: str = "") -> StepOutcome | None:
        """Run a queued delegation and resolve its task. Never raises."""
        delegation = self.delegations.get(delegation_id)
        if delegation is None:
            logger.warning("Delegation %s vanished before execution", delegation_id)
            return None

        outcome = self._execute_step(
            delegation,
            context,
            on_start=lambda: self.tasks.update(
                delegation.task_id, status=TaskStatus.IN_PROGRESS.value, protect=_TASK_LOCKED
            ),
        )
        if outcome.superseded:
            logger.info("Delegation %s was resolved elsewhere; task left as is", delegation_id)
            return outcome

        if outcome.succeeded:
            self.tasks.update(
                delegation.task_id,
                status=outcome.status,
                metadata_patch={"lastDelegation": self._summary(outcome)},
                protect=_TASK_LOCKED,
            )
        else:
            self.tasks.update(
                delegation.task_id,
                status=TaskStatus.FAILED.value,
                metadata_patch={"lastError": self._error_digest(outcome)},
                protect=_TASK_LOCKED,
            )
        logger.info("Delegation %s finished with status: %s", delegation_id, outcome.status)
        return outcome

    def _execute_step(
        self,
        delegation: Delegation,
        context: str = "",
        on_start: Callable[[], Any] | None = None,
    ) -> StepOutcome:
        if not self.delegations.transition(
            delegation.id,
            DelegationStatus.RUNNING.value,
            started=True,
            expected=[DelegationStatus.QUEUED.value],
        ):
            return self._superseded(delegation)
        if on_start is not None:
            on_start()

        try:
            result = self._perform(delegation, context)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.error("Delegation %s failed: %s", delegation.id, error)
            if not self.delegations.transition(
                delegation.id, DelegationStatus.FAILED.value, error=error, finished=True
            ):
                return self._superseded(delegation)
            return StepOutcome(
                delegation.agent_name, delegation.id, DelegationStatus.FAILED.value, error=error
            )

        review = needs_clarification(result) or self.needs_review(
            delegation.confidence, delegation.input.get("priority")
        )
        status = DelegationStatus.REVIEW.value if review else DelegationStatus.COMPLETED.value
        if not self.delegations.transition(
            delegation.id, status, result=result, finished=True
        ):
            return self._superseded(delegation)

        self._create_follow_ups(delegation, result.get("nextTasks") or [])
        return StepOutcome(delegation.agent_name, delegation.id, status, result=result)

    def _perform(self, delegation: Delegation, context: str) -> dict[str, Any]:
        snapshot = delegation.input
        prompt = with_context(build_agent_prompt(delegation.agent_name, snapshot), context)
        prompt = with_snippets(prompt, self._retrieve(snapshot))
        text = self.gateway.generate(
            delegation.model or self.settings.agent_model,
            prompt,
            self.settings.gateway_timeout_s,
        )
        return normalize_result(text)

    def _retrieve(self, snapshot: dict[str, Any]) -> list[str]:
        if self.retriever is None or self.settings.retrieval_k <= 0:
            return []
        query = f"{snapshot.get('title', '')} {snapshot.get('description', '')}".strip()
        try:
            return self.retriever.retrieve(query, self.settings.retrieval_k)
        except Exception as e:
            logger.warning("Failed to fetch context snippets: %s", e)
            return []

    def _superseded(self, delegation: Delegation) -> StepOutcome:
        current = self.delegations.get(delegation.id)
        status = current.status if current else DelegationStatus.FAILED.value
        return StepOutcome(
            delegation.agent_name,
            delegation.id,
            status,
            result=current.result if current else None,
            error=current.error if current else None,
            superseded=True,
        )

    def _create_follow_ups(self, delegation: Delegation, next_tasks: list[dict[str, Any]]) -> None:
        if not next_tasks:
            return
        logger.info("Agent generated %d follow-up task(s) for %s", len(next_tasks), delegation.task_id)
        parent_title = delegation.input.get("title", "")
        for item in next_tasks:
            try:
                task = self.tasks.create(
                    title=item["title"],
                    description=item.get("description") or f'Follow-up to "{parent_title}"',
                    priority=Priority.coerce(item.get("priority")).value,
                    parent_id=delegation.task_id,
                    metadata={
                        "source": "agent-generated",
                        "parentDelegationId": delegation.id,
                        "originalPrompt": item.get("description"),
                    },
                )
            except ValueError as e:
                logger.error("Failed to create follow-up task: %s", e)
                continue
            logger.info("Created follow-up task: %s - %s", task.id, task.title)

    @staticmethod
    def _summary(outcome: StepOutcome) -> dict[str, Any]:
        result = outcome.result or {}
        return {
            "delegationId": outcome.delegation_id,
            "agentName": outcome.agent_name,
            "status": outcome.status,
            "result": result.get("plan", ""),
            "completedAt": isoformat(utcnow()),
            "needsClarification": needs_clarification(result),
            "questions": result.get("questions"),
        }

    @staticmethod
    def _error_digest(outcome: StepOutcome) -> dict[str, Any]:
        return {
            "delegationId": outcome.delegation_id,
            "error": outcome.error,
            "at": isoformat(utcnow()),
        }

    # ------------------------------------------------------------------
    # Human actions
    # ------------------------------------------------------------------

    def approve(self, delegation_id: str) -> Delegation:
        delegation = self.delegations.require(delegation_id)
        if delegation.status != DelegationStatus.REVIEW:
            raise InvalidStateError(f"Delegation {delegation_id} is not in review status")
        if not self.delegations.transition(
            delegation_id,
            DelegationStatus.COMPLETED.value,
            finished=True,
            expected=[DelegationStatus.REVIEW.value],
        ):
            raise InvalidStateError(f"Delegation {delegation_id} changed state concurrently")
        self.tasks.update(
            delegation.task_id, status=TaskStatus.COMPLETED.value, protect=_TASK_LOCKED
        )
        return self.delegations.require(delegation_id)

    def reject(self, delegation_id: str, reason: str | None = None) -> Delegation:
        delegation = self.delegations.require(delegation_id)
        if delegation.is_terminal:
            raise InvalidStateError(
                f"Delegation {delegation_id} is already {delegation.status}"
            )
        if not self.delegations.transition(
            delegation_id,
            DelegationStatus.FAILED.value,
            error=reason or DEFAULT_REJECT_REASON,
            finished=True,
        ):
            raise InvalidStateError(f"Delegation {delegation_id} changed state concurrently")
        self.tasks.update(
            delegation.task_id,
            status=TaskStatus.PENDING.value,
            assigned_agent=None,
            protect=_TASK_LOCKED,
        )
        return self.delegations.require(delegation_id)

    def cancel_task(self, task_id: str, reason: str | None = None) -> dict[str, Any]:
        """Cancel a task and fail its queued/running delegations."""
        task = self.tasks.require(task_id)
        reason = reason or DEFAULT_CANCEL_REASON
        cancelled_at = isoformat(utcnow())

        # Lock the task first so a result landing in between cannot overwrite it.
        self.tasks.update(
            task.id,
            status=TaskStatus.CANCELLED.value,
            assigned_agent=None,
            metadata_patch={
                "lastError": {
                    "delegationId": None,
                    "error": reason,
                    "at": cancelled_at,
                    "cancelled": True,
                }
            },
        )
        cancelled = 0
        for delegation in self.delegations.active(task.id):
            if self.delegations.transition(
                delegation.id, DelegationStatus.FAILED.value, error=reason, finished=True
            ):
                cancelled += 1
        logger.info("Task %s cancelled (%d active delegation(s) failed)", task.id, cancelled)
        return {
            "taskId": task.id,
            "cancelledAt": cancelled_at,
            "reason": reason,
            "cancelledDelegations": cancelled,
        }

    def archive(self, task_id: str) -> Task:
        self.tasks.update(task_id, status=TaskStatus.ARCHIVED.value)
        return self.tasks.require(task_id)

    def retry(
        self,
        task_id: str,
        force_agent: str | None = None,
        model: str | None = None,
        provider: str | None = None,
    ) -> DelegationAck:
        """Reset a task to pending and delegate it again."""
        task = self.tasks.require(task_id)
        if self.delegations.active(task.id):
            raise InvalidStateError(f"Task {task_id} already has an active delegation")
        # Review outcomes of earlier attempts can no longer be approved or rejected.
        for delegation in self.delegations.for_task(task.id):
            if delegation.status == DelegationStatus.REVIEW:
                self.delegations.transition(
                    delegation.id,
                    DelegationStatus.FAILED.value,
                    error=SUPERSEDED_ERROR,
                    expected=[DelegationStatus.REVIEW.value],
                )
        self.tasks.update(task.id, status=TaskStatus.PENDING.value, assigned_agent=None)
        return self.delegate(task.id, force_agent=force_agent, model=model, provider=provider)

    def clarify(self, task_id: str, answers: list[str] | str) -> DelegationAck:
        """Record clarification answers and re-delegate with them in the prompt."""
        task = self.tasks.require(task_id)
        if isinstance(answers, str):
            answers = [answers]
        answers = [a for a in answers if a and a.strip()]
        if not answers:
            raise InvalidStateError("At least one clarification answer is required")
        now = isoformat(utcnow())
        clarifications = list(task.metadata.get("clarifications") or [])
        clarifications.extend({"answer": answer, "at": now} for answer in answers)
        self.tasks.update(task.id, metadata_patch={"clarifications": clarifications})
        return self.retry(task.id, force_agent=task.assigned_agent)

    def history(self, task_id: str) -> list[Delegation]:
        self.tasks.require(task_id)
        return self.delegations.for_task(task_id)

    def active(self) -> list[Delegation]:
        return self.delegations.active()

    # ------------------------------------------------------------------
    # Multi-agent
    # ------------------------------------------------------------------

    def delegate_chain(
        self,
        task_id: str,
        agents: list[str],
        continue_on_error: bool = False,
        model: str | None = None,
        provider: str | None = None,
    ) -> ChainResult:
        """
        Run ``agents`` one after another on the same task.

        Each agent sees the previous successful agent's result as context.
        The first failure stops the chain unless ``continue_on_error``.
        """
        if not agents:
            raise InvalidStateError("A chain needs at least one agent")
        task = self.tasks.require(task_id)
        for agent in agents:
            self._ensure_agent(agent)

        outcomes: list[StepOutcome] = []
        previous: StepOutcome | None = None
        failed_step: int | None = None
        for index, agent in enumerate(agents, start=1):
            snapshot = _snapshot(
                task,
                handoff={
                    "step": index,
                    "total": len(agents),
                    "fromPrevious": previous.agent_name if previous else None,
                },
            )
            delegation = self.delegations.create(
                task.id,
                agent,
                f"multi-agent-handoff-{index}",
                1.0,
                snapshot,
                model=model or self.settings.agent_model,
                provider=self._provider(provider),
            )
            self.tasks.update(
                task.id,
                status=TaskStatus.IN_PROGRESS.value,
                assigned_agent=agent,
                protect=_TASK_LOCKED,
            )
            context = (
                previous_result_context(previous.agent_name, previous.result)
                if previous is not None
                else ""
            )
            outcome = self._execute_step(delegation, context)
            outcomes.append(outcome)
            logger.info("Chain step %d/%d (%s): %s", index, len(agents), agent, outcome.status)

            if outcome.succeeded:
                previous = outcome
            elif not continue_on_error:
                failed_step = index
                break

        final = previous.result if previous is not None else None
        if failed_step is not None:
            status = TaskStatus.FAILED.value
            failed = outcomes[-1]
            self.tasks.update(
                task.id,
                status=status,
                metadata_patch={
                    "handoff": {
                        "failedAtStep": failed_step,
                        "error": failed.error,
                        "agents": agents,
                    },
                    "lastError": self._error_digest(failed),
                },
                protect=_TASK_LOCKED,
            )
        else:
            status = _combined_status(outcomes)
            patch: dict[str, Any] = {
                "handoff": {
                    "completed": status != TaskStatus.FAILED,
                    "agents": agents,
                    "finalResult": (final or {}).get("plan"),
                }
            }
            if previous is not None:
                patch["lastDelegation"] = self._summary(previous)
            self.tasks.update(
                task.id,
                status=status,
                assigned_agent=" -> ".join(agents),
                metadata_patch=patch,
                protect=_TASK_LOCKED,
            )
        return ChainResult(status=status, results=outcomes, final_result=final)

    def delegate_parallel(
        self,
        task_id: str,
        agents: list[str],
        max_wait: float | None = None,
        model: str | None = None,
        provider: str | None = None,
    ) -> ParallelResult:
        """
        Run ``agents`` concurrently against the same task snapshot.

        Agents still running after ``max_wait`` seconds have their delegation
        failed with :data:`WAIT_TIMEOUT_ERROR`.
        """
        if not agents:
            raise InvalidStateError("Parallel execution needs at least one agent")
        task = self.tasks.require(task_id)
        for agent in agents:
            self._ensure_agent(agent)
        max_wait = max_wait if max_wait is not None else self.settings.parallel_max_wait_s

        snapshot = _snapshot(task)
        delegations = [
            self.delegations.create(
                task.id,
                agent,
                "parallel-execution",
                1.0,
                snapshot,
                model=model or self.settings.agent_model,
                provider=self._provider(provider),
            )
            for agent in agents
        ]
        self.tasks.update(
            task.id,
            status=TaskStatus.IN_PROGRESS.value,
            assigned_agent=f"parallel:{','.join(agents)}",
            protect=_TASK_LOCKED,
        )

        pool = ThreadPoolExecutor(max_workers=len(delegations), thread_name_prefix="parallel")
        futures = [(pool.submit(self._execute_step, d), d) for d in delegations]
        done, _ = wait([future for future, _ in futures], timeout=max_wait)
        pool.shutdown(wait=False)

        outcomes: list[StepOutcome] = []
        for future, delegation in futures:
            if future in done:
                outcomes.append(future.result())
                continue
            if self.delegations.transition(
                delegation.id,
                DelegationStatus.FAILED.value,
                error=WAIT_TIMEOUT_ERROR,
                finished=True,
            ):
                logger.warning("Parallel agent %s exceeded %.1fs", delegation.agent_name, max_wait)
                outcomes.append(
                    StepOutcome(
                        delegation.agent_name,
                        delegation.id,
                        DelegationStatus.FAILED.value,
                        error=WAIT_TIMEOUT_ERROR,
                    )
                )
            else:
                outcomes.append(self._superseded(delegation))

        status = _combined_status(outcomes)
        self.tasks.update(
            task.id,
            status=status,
            metadata_patch={
                "parallelExecution": {
                    "agents": agents,
                    "results": [
                        {
                            "agentName": o.agent_name,
                            "delegationId": o.delegation_id,
                            "status": o.status,
                            "error": o.error,
                        }
                        for o in outcomes
                    ],
                }
            },
            protect=_TASK_LOCKED,
        )
        return ParallelResult(status=status, results=outcomes)
