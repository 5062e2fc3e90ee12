"""
Suggestion Pipeline — From Agent Output to Human Decision

Two entry points feed one store:

- generation: a periodic cycle asks each agent for up to three suggestions
  built from its scoped context, or records setup requests when the agent's
  prerequisites are missing;
- ingestion: external producers push suggestions, which are rate limited,
  fingerprinted, prerequisite-gated and debounced before they become visible.

Visible pending suggestions can be clustered and scored, accepted into
tasks (and delegated back to the suggesting agent), edited, rejected,
saved for later, or discussed with the agent.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from dispatcher.background import BackgroundExecutor
from dispatcher.config import Settings
from dispatcher.delegation.machine import DelegationAck, DelegationMachine
from dispatcher.errors import GatewayError, InvalidStateError
from dispatcher.gateway.extract import extract_json_array, extract_json_object
from dispatcher.gateway.generation import GenerationGateway
from dispatcher.models import (
    Priority,
    Suggestion,
    SuggestionStatus,
    Task,
    isoformat,
    utcnow,
)
from dispatcher.storage.repositories import SuggestionStore, TaskStore
from dispatcher.suggestions.clustering import ScoredCluster, cluster_suggestions
from dispatcher.suggestions.context import ContextBuilder
from dispatcher.suggestions.prerequisites import (
    SetupRequest,
    check_prerequisites,
    has_prerequisites,
)
from dispatcher.suggestions.prompts import SUGGESTION_PROMPTS, build_reply_prompt
from dispatcher.suggestions.ratelimit import SlidingWindowLimiter

logger = logging.getLogger(__name__)

MAX_GENERATED = 3
GENERATED_CONFIDENCE = 0.7
SETUP_CONFIDENCE = 1.0
PREREQUISITE_SOURCE = "prerequisite-check"
INGEST_SOURCE = "ingest"

REPLY_ACK = "Thanks for the info! I'll use this in my next analysis."
REPLY_FALLBACK = "Got it, thanks! I'll factor this into my next suggestions."
REPLY_MAX_CHARS = 500


class IngestOutcome(StrEnum):
    CREATED = "created"
    EXISTING = "existing"
    RATE_LIMITED = "rate_limited"
    SETUP_REQUIRED = "setup_required"


@dataclass
class IngestResult:
    outcome: IngestOutcome
    suggestion: Suggestion | None = None
    setup: list[Suggestion] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "suggestion": self.suggestion.to_dict() if self.suggestion else None,
            "setup": [s.to_dict() for s in self.setup],
        }


@dataclass
class AcceptResult:
    suggestion: Suggestion
    task: Task
    delegation: DelegationAck | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "suggestion": self.suggestion.to_dict(),
            "task": self.task.to_dict(),
            "delegation": self.delegation.to_dict() if self.delegation else None,
        }


def fingerprint(title: str, body: str, agent_name: str) -> str:
    return hashlib.sha256(f"{title}::{body}::{agent_name}".encode()).hexdigest()


class SuggestionPipeline:
    """Generation, ingestion and lifecycle of agent suggestions."""

    def __init__(
        self,
        suggestions: SuggestionStore,
        tasks: TaskStore,
        contexts: ContextBuilder,
        gateway: GenerationGateway,
        machine: DelegationMachine,
        background: BackgroundExecutor,
        settings: Settings,
        limiter: SlidingWindowLimiter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.suggestions = suggestions
        self.tasks = tasks
        self.contexts = contexts
        self.gateway = gateway
        self.machine = machine
        self.background = background
        self.settings = settings
        self.limiter = limiter or SlidingWindowLimiter(
            burst_limit=settings.rate_burst_limit,
            burst_window_s=settings.rate_burst_window_s,
            window_limit=settings.rate_minute_limit,
            window_s=settings.rate_minute_window_s,
        )
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _expiry(self) -> str:
        return isoformat(self._now() + timedelta(hours=self.settings.suggestion_ttl_hours))

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def agents(self) -> list[str]:
        return list(SUGGESTION_PROMPTS)

    def generate_for_agent(self, agent_name: str) -> list[Suggestion]:
        """Create new suggestions for one agent. Gateway and parse failures yield []."""
        builder = SUGGESTION_PROMPTS.get(agent_name)
        if builder is None:
            logger.warning("No suggestion prompt for agent: %s", agent_name)
            return []

        context = self.contexts.build(agent_name)
        missing = check_prerequisites(agent_name, context)
        if missing:
            created = [s for s, new in self._persist_setup(agent_name, missing) if new]
            logger.info("%s: %d setup suggestion(s) (missing prerequisites)", agent_name, len(created))
            return created

        try:
            raw = self.gateway.generate(
                self.settings.suggestion_model, builder(context), self.settings.gateway_timeout_s
            )
        except GatewayError as e:
            logger.warning("Suggestion generation failed for %s: %s", agent_name, e)
            return []

        items = extract_json_array(raw)
        if items is None:
            logger.warning("No JSON array found in %s response", agent_name)
            return []

        now = isoformat(self._now())
        expires_at = self._expiry()
        results: list[Suggestion] = []
        for item in items[:MAX_GENERATED]:
            if not isinstance(item, dict):
                continue
            title = item.get("title")
            if not isinstance(title, str) or not title.strip():
                continue
            title = title.strip()[:255]
            if self.suggestions.find_pending(agent_name, title) is not None:
                continue
            suggestion, _ = self.suggestions.create(
                Suggestion(
                    id="",
                    agent_name=agent_name,
                    title=title,
                    description=str(item.get("description") or "")[:2000],
                    rationale=str(item.get("rationale") or "")[:1000],
                    priority=Priority.coerce(item.get("priority")).value,
                    category=str(item.get("category") or "general")[:100],
                    confidence=GENERATED_CONFIDENCE,
                    available_at=now,
                    expires_at=expires_at,
                    data_source=context.data_source,
                    metadata={"model": self.settings.suggestion_model},
                    created_at=now,
                )
            )
            results.append(suggestion)

        logger.info("Generated %d suggestion(s) for %s", len(results), agent_name)
        return results

    def _persist_setup(
        self, agent_name: str, requests: list[SetupRequest]
    ) -> list[tuple[Suggestion, bool]]:
        now = isoformat(self._now())
        expires_at = self._expiry()
        persisted = []
        for request in requests:
            existing = self.suggestions.find_pending(agent_name, request.title)
            if existing is not None:
                persisted.append((existing, False))
                continue
            suggestion, _ = self.suggestions.create(
                Suggestion(
                    id="",
                    agent_name=agent_name,
                    title=request.title,
                    description=request.description,
                    rationale=request.rationale,
                    priority=request.priority,
                    category=request.category,
                    confidence=SETUP_CONFIDENCE,
                    available_at=now,
                    expires_at=expires_at,
                    data_source=PREREQUISITE_SOURCE,
                    metadata={"type": "setup-request"},
                    created_at=now,
                )
            )
            persisted.append((suggestion, True))
        return persisted

    def expire_stale(self) -> int:
        expired = self.suggestions.expire_stale(isoformat(self._now()))
        if expired:
            logger.info("Expired %d stale suggestion(s)", expired)
        return expired

    def run_cycle(self) -> list[Suggestion]:
        """Expire stale suggestions, then generate for every agent in turn."""
        logger.info("Starting suggestion cycle")
        try:
            self.expire_stale()
        except Exception as e:
            logger.warning("Failed to expire old suggestions: %s", e)

        created: list[Suggestion] = []
        for agent_name in self.agents():
            try:
                created.extend(self.generate_for_agent(agent_name))
            except Exception as e:
                logger.error("Cycle error for %s: %s", agent_name, e)
        logger.info("Suggestion cycle complete: %d new suggestion(s)", len(created))
        return created

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest(
        self,
        title: str,
        body: str,
        agent_name: str,
        confidence: float | None = None,
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> IngestResult:
        if not (title or "").strip() or not (body or "").strip() or not agent_name:
            raise ValueError("title, body and agent_name are required")

        if not self.limiter.allow(agent_name):
            logger.warning("Rate limit exceeded for agent %s", agent_name)
            return IngestResult(IngestOutcome.RATE_LIMITED)

        digest = fingerprint(title, body, agent_name)
        existing = self.suggestions.get_by_fingerprint(digest)
        if existing is not None:
            return IngestResult(IngestOutcome.EXISTING, suggestion=existing)

        if has_prerequisites(agent_name):
            missing = check_prerequisites(
                agent_name, self.contexts.build(agent_name, remote=False)
            )
            if missing:
                setup = [s for s, _ in self._persist_setup(agent_name, missing)]
                return IngestResult(IngestOutcome.SETUP_REQUIRED, setup=setup)

        now = self._now()
        suggestion, created = self.suggestions.create(
            Suggestion(
                id="",
                agent_name=agent_name,
                title=title,
                description=body,
                confidence=confidence,
                fingerprint=digest,
                tags=list(tags or []),
                available_at=isoformat(now + timedelta(seconds=self.settings.debounce_s)),
                data_source=INGEST_SOURCE,
                metadata=dict(metadata or {}),
                created_at=isoformat(now),
            )
        )
        outcome = IngestOutcome.CREATED if created else IngestOutcome.EXISTING
        return IngestResult(outcome, suggestion=suggestion)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def list_visible(self, status: str | None = None, agent_name: str | None = None) -> list[Suggestion]:
        return self.suggestions.list(
            status=status, visible_at=isoformat(self._now()), agent_name=agent_name
        )

    def summary(
        self, status: str | None = SuggestionStatus.PENDING.value, min_score: float | None = None
    ) -> list[ScoredCluster]:
        clusters = cluster_suggestions(self.list_visible(status), now=self._now())
        if min_score is not None:
            clusters = [c for c in clusters if c.score >= min_score]
        return clusters

    def stats(self) -> dict[str, Any]:
        statuses = [s.value for s in SuggestionStatus]
        totals = dict.fromkeys(statuses, 0)
        by_agent: dict[str, dict[str, int]] = {}
        for agent_name, status, count in self.suggestions.counts():
            totals[status] = totals.get(status, 0) + count
            bucket = by_agent.setdefault(agent_name, {**dict.fromkeys(statuses, 0), "total": 0})
            bucket[status] = bucket.get(status, 0) + count
            bucket["total"] += count
        total = sum(totals.values())
        accepted = totals[SuggestionStatus.ACCEPTED]
        return {
            "total": total,
            **totals,
            "acceptanceRate": round(accepted / total * 100) if total else 0,
            "byAgent": by_agent,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _require_status(self, suggestion_id: str, status: SuggestionStatus) -> Suggestion:
        suggestion = self.suggestions.require(suggestion_id)
        if suggestion.status != status:
            raise InvalidStateError(f"Suggestion {suggestion_id} is not {status.value}")
        return suggestion

    def _transition(
        self, suggestion_id: str, source: SuggestionStatus, **fields: Any
    ) -> Suggestion:
        if not self.suggestions.update(suggestion_id, expected_status=source.value, **fields):
            raise InvalidStateError(f"Suggestion {suggestion_id} is no longer {source.value}")
        return self.suggestions.require(suggestion_id)

    def accept(self, suggestion_id: str, delegate: bool = True) -> AcceptResult:
        """Turn a pending suggestion into a task and hand it to the suggesting agent."""
        suggestion = self._require_status(suggestion_id, SuggestionStatus.PENDING)
        self._transition(
            suggestion_id, SuggestionStatus.PENDING, status=SuggestionStatus.ACCEPTED.value
        )
        try:
            task = self.tasks.create(
                title=suggestion.title,
                description=suggestion.description,
                priority=suggestion.priority,
                metadata={
                    "fromSuggestion": suggestion.id,
                    "agentName": suggestion.agent_name,
                    "rationale": suggestion.rationale,
                    "category": suggestion.category,
                },
            )
        except Exception:
            # Put the suggestion back so it can be edited or accepted again.
            self.suggestions.update(
                suggestion_id,
                expected_status=SuggestionStatus.ACCEPTED.value,
                status=SuggestionStatus.PENDING.value,
            )
            raise
        self.suggestions.update(suggestion_id, accepted_task_id=task.id)

        ack = None
        if delegate:
            try:
                ack = self.machine.delegate(task.id, force_agent=suggestion.agent_name)
            except Exception as e:
                logger.warning("Auto-delegation failed for suggestion %s: %s", suggestion_id, e)
        return AcceptResult(self.suggestions.require(suggestion_id), task, ack)

    def approve(self, suggestion_id: str) -> AcceptResult:
        """Accept without delegating; the task stays pending."""
        return self.accept(suggestion_id, delegate=False)

    def edit_and_accept(
        self,
        suggestion_id: str,
        title: str | None = None,
        description: str | None = None,
        priority: str | None = None,
    ) -> AcceptResult:
        self._require_status(suggestion_id, SuggestionStatus.PENDING)
        edits: dict[str, Any] = {}
        if title:
            edits["title"] = title
        if description:
            edits["description"] = description
        if priority:
            edits["priority"] = Priority.coerce(priority).value
        if edits:
            self._transition(suggestion_id, SuggestionStatus.PENDING, **edits)
        return self.accept(suggestion_id)

    def reject(self, suggestion_id: str, reason: str | None = None) -> Suggestion:
        suggestion = self._require_status(suggestion_id, SuggestionStatus.PENDING)
        return self._transition(
            suggestion_id,
            SuggestionStatus.PENDING,
            status=SuggestionStatus.REJECTED.value,
            metadata={**suggestion.metadata, "rejectionReason": reason},
        )

    def save(self, suggestion_id: str) -> Suggestion:
        self._require_status(suggestion_id, SuggestionStatus.PENDING)
        return self._transition(
            suggestion_id, SuggestionStatus.PENDING, status=SuggestionStatus.SAVED.value
        )

    def restore(self, suggestion_id: str) -> Suggestion:
        self._require_status(suggestion_id, SuggestionStatus.SAVED)
        return self._transition(
            suggestion_id, SuggestionStatus.SAVED, status=SuggestionStatus.PENDING.value
        )

    def reply(self, suggestion_id: str, text: str) -> Suggestion:
        """
        Record the user's reply and schedule the agent's answer.

        Returns immediately with the user turn appended; the agent turn
        arrives later on the conversation log.
        """
        if not text or not text.strip():
            raise ValueError("reply text is required")
        suggestion = self._require_status(suggestion_id, SuggestionStatus.PENDING)
        conversation = [
            *suggestion.conversation,
            {"role": "user", "text": text, "at": isoformat(self._now())},
        ]
        updated = self._transition(
            suggestion_id, SuggestionStatus.PENDING, conversation=conversation
        )
        self.background.submit(self._agent_reply, suggestion_id, text)
        return updated

    def _agent_reply(self, suggestion_id: str, text: str) -> None:
        suggestion = self.suggestions.get(suggestion_id)
        if suggestion is None:
            return
        reply = REPLY_FALLBACK
        action = "none"
        overrides: dict[str, Any] = {}
        try:
            raw = self.gateway.generate(
                self.settings.suggestion_model,
                build_reply_prompt(suggestion, text),
                self.settings.gateway_timeout_s,
            )
        except GatewayError as e:
            logger.warning("Reply generation failed for suggestion %s: %s", suggestion_id, e)
        else:
            parsed = extract_json_object(raw)
            if parsed is not None:
                reply = str(parsed.get("reply") or REPLY_ACK)
                action = str(parsed.get("actionNeeded") or "none")
                if isinstance(parsed.get("updatedTitle"), str) and parsed["updatedTitle"].strip():
                    overrides["title"] = parsed["updatedTitle"].strip()[:255]
                if isinstance(parsed.get("updatedDescription"), str) and parsed["updatedDescription"].strip():
                    overrides["description"] = parsed["updatedDescription"].strip()[:2000]
            else:
                reply = raw.strip()[:REPLY_MAX_CHARS] or REPLY_ACK

        # Re-read so user turns added while the gateway ran are kept.
        current = self.suggestions.get(suggestion_id)
        if current is None:
            return
        conversation = [
            *current.conversation,
            {"role": "agent", "text": reply, "at": isoformat(self._now()), "actionNeeded": action},
        ]
        if current.status != SuggestionStatus.PENDING:
            overrides = {}
        self.suggestions.update(suggestion_id, conversation=conversation, **overrides)
