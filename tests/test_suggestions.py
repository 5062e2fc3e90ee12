"""
Tests for the suggestion pipeline.

Covers: rate limiting, ingestion (fingerprint, debounce, prerequisites),
generation cycles, clustering and the suggestion lifecycle.
"""

import json
import threading
from datetime import UTC, datetime, timedelta

import pytest
from conftest import Clock, FakeFetcher, FakeRetriever, settle

from dispatcher.errors import GatewayError, InvalidStateError, NotFoundError
from dispatcher.models import Suggestion, isoformat
from dispatcher.suggestions import (
    AgentContext,
    IngestOutcome,
    SlidingWindowLimiter,
    SuggestionScheduler,
    check_prerequisites,
    cluster_suggestions,
    fingerprint,
    score_suggestion,
)
from dispatcher.suggestions.clustering import jaccard, tokenize
from dispatcher.suggestions.context import secrets_status
from dispatcher.suggestions.pipeline import REPLY_FALLBACK

EMAIL_ENV = {
    "SMTP_HOST": "smtp.example.com",
    "SMTP_PORT": "587",
    "SMTP_USER": "me",
    "SMTP_PASS": "secret",
    "EMAIL_FROM": "me@example.com",
}

THREE_IDEAS = json.dumps(
    [
        {"title": "Block focus time", "description": "d1", "priority": "high", "category": "focus"},
        {"title": "Batch small tasks", "description": "d2"},
        {"title": "Review deadlines", "description": "d3", "priority": "whenever"},
        {"title": "Fourth idea", "description": "d4"},
    ]
)


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


# ═══════════════════════════════════════════════════════════════════════════
# RATE LIMITING
# ═══════════════════════════════════════════════════════════════════════════


class TestSlidingWindowLimiter:
    def test_burst_limit(self) -> None:
        limiter = SlidingWindowLimiter(clock=FakeMonotonic())
        results = [limiter.allow("agent") for _ in range(6)]
        assert results == [True] * 5 + [False]

    def test_burst_window_slides(self) -> None:
        clock = FakeMonotonic()
        limiter = SlidingWindowLimiter(clock=clock)
        for _ in range(5):
            limiter.allow("agent")
        clock.now = 10.5
        assert limiter.allow("agent")

    def test_denied_hits_are_not_recorded(self) -> None:
        clock = FakeMonotonic()
        limiter = SlidingWindowLimiter(burst_limit=1, burst_window_s=10.0, clock=clock)
        assert limiter.allow("agent")
        clock.now = 5.0
        assert not limiter.allow("agent")
        clock.now = 10.5
        assert limiter.allow("agent")

    def test_long_window_limit(self) -> None:
        clock = FakeMonotonic()
        limiter = SlidingWindowLimiter(
            burst_limit=10, burst_window_s=1.0, window_limit=3, window_s=60.0, clock=clock
        )
        results = []
        for _ in range(4):
            results.append(limiter.allow("agent"))
            clock.now += 2.0
        assert results == [True, True, True, False]
        clock.now = 60.5
        assert limiter.allow("agent")

    def test_reset(self) -> None:
        limiter = SlidingWindowLimiter(burst_limit=1, clock=FakeMonotonic())
        limiter.allow("agent")
        limiter.reset("agent")
        assert limiter.allow("agent")

    def test_keys_are_independent(self) -> None:
        limiter = SlidingWindowLimiter(burst_limit=1, clock=FakeMonotonic())
        assert limiter.allow("a")
        assert limiter.allow("b")
        assert not limiter.allow("a")


# ═══════════════════════════════════════════════════════════════════════════
# INGESTION
# ═══════════════════════════════════════════════════════════════════════════


class TestIngest:
    def test_created(self, orchestrator) -> None:
        result = orchestrator.suggestions.ingest(
            "Try a new CI cache", "Builds are slow", "research-agent", confidence=0.8, tags=["ci"]
        )
        assert result.outcome == IngestOutcome.CREATED
        suggestion = result.suggestion
        assert suggestion.status == "pending"
        assert suggestion.data_source == "ingest"
        assert suggestion.expires_at is None
        assert suggestion.tags == ["ci"]
        assert suggestion.fingerprint == fingerprint("Try a new CI cache", "Builds are slow", "research-agent")

    def test_fingerprint_idempotence(self, orchestrator) -> None:
        first = orchestrator.suggestions.ingest("Same", "Body", "research-agent")
        second = orchestrator.suggestions.ingest("Same", "Body", "research-agent")
        assert second.outcome == IngestOutcome.EXISTING
        assert second.suggestion.id == first.suggestion.id
        assert len(orchestrator.suggestion_store.list()) == 1

    def test_rate_limited(self, orchestrator) -> None:
        outcomes = [
            orchestrator.suggestions.ingest(f"Idea {i}", "Body", "research-agent").outcome
            for i in range(6)
        ]
        assert outcomes.count(IngestOutcome.CREATED) <= 5
        assert outcomes.count(IngestOutcome.RATE_LIMITED) >= 1

    def test_rate_limit_is_per_agent(self, orchestrator) -> None:
        for i in range(5):
            orchestrator.suggestions.ingest(f"Idea {i}", "Body", "research-agent")
        result = orchestrator.suggestions.ingest("Idea", "Body", "travel-agent")
        assert result.outcome == IngestOutcome.CREATED

    def test_missing_fields(self, orchestrator) -> None:
        with pytest.raises(ValueError):
            orchestrator.suggestions.ingest("", "Body", "research-agent")

    def test_blank_fields(self, orchestrator) -> None:
        with pytest.raises(ValueError):
            orchestrator.suggestions.ingest("   ", "Body", "research-agent")
        with pytest.raises(ValueError):
            orchestrator.suggestions.ingest("Title", "\n\t", "research-agent")
        assert orchestrator.suggestion_store.list() == []

    def test_debounce_visibility(self, make_orchestrator, settings) -> None:
        clock = Clock(datetime.now(UTC))
        orch = make_orchestrator(
            settings=settings.model_copy(update={"debounce_s": 5.0}), clock=clock
        )
        orch.suggestions.ingest("Later", "Body", "research-agent")
        assert orch.suggestions.list_visible() == []
        clock.advance(seconds=4)
        assert orch.suggestions.list_visible() == []
        clock.advance(seconds=2)
        assert [s.title for s in orch.suggestions.list_visible()] == ["Later"]

    def test_email_without_smtp_requires_setup(self, orchestrator) -> None:
        result = orchestrator.suggestions.ingest("Send digest", "Weekly", "email-agent")
        assert result.outcome == IngestOutcome.SETUP_REQUIRED
        assert result.suggestion is None
        titles = [s.title for s in result.setup]
        assert titles == ["Configure email credentials", "Set your sender email address"]
        assert all(s.status == "pending" for s in result.setup)
        assert all(s.data_source == "prerequisite-check" for s in result.setup)
        visible = [s.title for s in orchestrator.suggestions.list_visible("pending")]
        assert "Configure email credentials" in visible
        assert "Send digest" not in visible

    def test_setup_requests_are_not_duplicated(self, orchestrator) -> None:
        orchestrator.suggestions.ingest("Send digest", "Weekly", "email-agent")
        again = orchestrator.suggestions.ingest("Send other", "Daily", "email-agent")
        assert again.outcome == IngestOutcome.SETUP_REQUIRED
        assert len(orchestrator.suggestion_store.list(agent_name="email-agent")) == 2

    def test_email_with_smtp(self, make_orchestrator) -> None:
        orch = make_orchestrator(environ=EMAIL_ENV)
        result = orch.suggestions.ingest("Send digest", "Weekly", "email-agent")
        assert result.outcome == IngestOutcome.CREATED

    def test_investment_ingest_stays_offline(self, make_orchestrator) -> None:
        fetcher = FakeFetcher(None)
        orch = make_orchestrator(fetcher=fetcher)
        orch.create_task("Review crypto portfolio")
        result = orch.suggestions.ingest("Rebalance", "Too much BTC", "investment-agent")
        assert result.outcome == IngestOutcome.CREATED
        assert fetcher.urls == []

    def test_investment_ingest_still_needs_goals(self, make_orchestrator) -> None:
        orch = make_orchestrator(fetcher=FakeFetcher('{"bitcoin": {"usd": 1}}'))
        result = orch.suggestions.ingest("Rebalance", "Too much BTC", "investment-agent")
        assert result.outcome == IngestOutcome.SETUP_REQUIRED
        assert [s.title for s in result.setup] == ["Tell me about your investment goals"]

    def test_coding_ingest_skips_codebase_search(self, make_orchestrator) -> None:
        retriever = FakeRetriever()
        orch = make_orchestrator(retriever=retriever)
        result = orch.suggestions.ingest("Add retries", "Flaky uploads", "coding-agent")
        assert result.outcome == IngestOutcome.CREATED
        assert retriever.queries == []


# ═══════════════════════════════════════════════════════════════════════════
# GENERATION
# ═══════════════════════════════════════════════════════════════════════════


class TestGeneration:
    def test_time_management_needs_tasks(self, orchestrator, gateway) -> None:
        created = orchestrator.suggestions.generate_for_agent("time-management-agent")
        assert [s.title for s in created] == ["Add your tasks so I can help prioritize"]
        assert created[0].category == "context-needed"
        assert gateway.calls == []

    def test_generates_up_to_three(self, orchestrator, gateway) -> None:
        orchestrator.create_task("Prepare board deck", priority="high")
        gateway.replies = [THREE_IDEAS]
        created = orchestrator.suggestions.generate_for_agent("time-management-agent")

        assert [s.title for s in created] == [
            "Block focus time",
            "Batch small tasks",
            "Review deadlines",
        ]
        assert created[0].priority == "high"
        assert created[2].priority == "medium"
        assert all(s.data_source == "task-priority-analysis" for s in created)
        assert all(s.expires_at for s in created)
        assert "- [high] Prepare board deck" in gateway.prompts[-1]

    def test_pending_duplicates_are_skipped(self, orchestrator, gateway) -> None:
        orchestrator.create_task("Prepare board deck")
        gateway.replies = [THREE_IDEAS, THREE_IDEAS]
        orchestrator.suggestions.generate_for_agent("time-management-agent")
        assert orchestrator.suggestions.generate_for_agent("time-management-agent") == []

    def test_gateway_error_yields_nothing(self, orchestrator, gateway) -> None:
        orchestrator.create_task("Prepare board deck")
        gateway.replies = [GatewayError("down")]
        assert orchestrator.suggestions.generate_for_agent("time-management-agent") == []

    def test_unparseable_reply_yields_nothing(self, orchestrator, gateway) -> None:
        orchestrator.create_task("Prepare board deck")
        gateway.replies = ["I have no ideas today."]
        assert orchestrator.suggestions.generate_for_agent("time-management-agent") == []

    def test_coding_uses_codebase_snippets(self, make_orchestrator, gateway) -> None:
        retriever = FakeRetriever(["# TODO: handle retries"])
        orch = make_orchestrator(retriever=retriever)
        gateway.replies = [json.dumps([{"title": "Handle retries"}])]
        created = orch.suggestions.generate_for_agent("coding-agent")
        assert [s.title for s in created] == ["Handle retries"]
        assert created[0].data_source == "rag-codebase-scan"
        assert "[1] # TODO: handle retries" in gateway.prompts[-1]

    def test_investment_prerequisites(self, make_orchestrator) -> None:
        orch = make_orchestrator(fetcher=FakeFetcher(None))
        created = orch.suggestions.generate_for_agent("investment-agent")
        assert sorted(s.title for s in created) == [
            "Enable web access for market data",
            "Tell me about your investment goals",
        ]

    def test_investment_with_market_data(self, make_orchestrator, gateway) -> None:
        fetcher = FakeFetcher('{"bitcoin": {"usd": 1}}')
        orch = make_orchestrator(fetcher=fetcher)
        orch.create_task("Review crypto portfolio")
        gateway.replies = [json.dumps([{"title": "Rebalance"}])]
        created = orch.suggestions.generate_for_agent("investment-agent")
        assert [s.title for s in created] == ["Rebalance"]
        assert fetcher.urls == ["http://market.test/prices"]
        assert '"bitcoin"' in gateway.prompts[-1]

    def test_cycle_without_context_only_asks_for_setup(self, orchestrator, gateway) -> None:
        created = orchestrator.suggestions.run_cycle()
        assert gateway.calls == []
        by_agent = {}
        for s in created:
            by_agent.setdefault(s.agent_name, []).append(s.title)
        assert sorted(by_agent) == [
            "coding-agent",
            "email-agent",
            "investment-agent",
            "social-media-agent",
            "time-management-agent",
        ]
        assert orchestrator.suggestions.run_cycle() == []

    def test_cycle_expires_stale(self, make_orchestrator) -> None:
        clock = Clock(datetime.now(UTC))
        orch = make_orchestrator(clock=clock)
        created = orch.suggestions.generate_for_agent("time-management-agent")
        clock.advance(hours=25)
        orch.suggestions.run_cycle()
        assert orch.suggestion_store.require(created[0].id).status == "expired"


def test_prerequisites_for_unknown_agent() -> None:
    assert check_prerequisites("research-agent", AgentContext(agent_name="research-agent")) == []


def test_secrets_status_hides_values() -> None:
    status = secrets_status({"SMTP_HOST": "smtp.example.com", "SMTP_PASS": ""})
    assert status["SMTP_HOST"] is True
    assert status["SMTP_PASS"] is False
    assert "smtp.example.com" not in json.dumps(status)


# ═══════════════════════════════════════════════════════════════════════════
# CLUSTERING
# ═══════════════════════════════════════════════════════════════════════════


def _suggestion(title: str, agent: str = "a", tags=None, confidence=0.8, created=None, **metadata):
    created = created or datetime.now(UTC)
    return Suggestion(
        id=title.lower().replace(" ", "-"),
        agent_name=agent,
        title=title,
        tags=list(tags or []),
        confidence=confidence,
        metadata=metadata,
        created_at=isoformat(created),
    )


class TestClustering:
    def test_tokenize(self) -> None:
        assert tokenize("Fix the API-key, now!") == ["fix", "the", "api", "key", "now"]

    def test_jaccard(self) -> None:
        assert jaccard(["a", "b"], ["b", "c"]) == pytest.approx(1 / 3)
        assert jaccard([], []) == 0.0

    def test_similar_titles_cluster(self) -> None:
        clusters = cluster_suggestions(
            [
                _suggestion("Update invoice template", agent="a"),
                _suggestion("Update the invoice template now", agent="b"),
                _suggestion("Plan team offsite"),
            ]
        )
        assert [c.id for c in clusters] == ["cluster-1", "cluster-2"]
        assert len(clusters[0].suggestions) == 2
        assert clusters[0].agents == ["a", "b"]

    def test_shared_tags_cluster(self) -> None:
        clusters = cluster_suggestions(
            [
                _suggestion("Update invoice template", tags=["finance"]),
                _suggestion("Completely different words", tags=["finance", "q3"]),
            ]
        )
        assert len(clusters) == 1
        assert clusters[0].tags == ["finance", "q3"]

    def test_scores(self) -> None:
        now = datetime.now(UTC)
        fresh = _suggestion("Fresh", confidence=0.8, created=now)
        trusted_less = _suggestion("Half trust", confidence=0.8, created=now, trustWeight=0.5)
        old = _suggestion("Old", confidence=0.8, created=now - timedelta(hours=10))
        unknown = _suggestion("Unknown", confidence=None, created=now)
        assert score_suggestion(fresh, now) == pytest.approx(0.8)
        assert score_suggestion(trusted_less, now) == pytest.approx(0.4)
        assert score_suggestion(old, now) == pytest.approx(0.4)
        assert score_suggestion(unknown, now) == pytest.approx(0.5)

    def test_cluster_score_is_mean(self) -> None:
        now = datetime.now(UTC)
        clusters = cluster_suggestions(
            [
                _suggestion("Update invoice template", confidence=0.8, created=now),
                _suggestion("Update invoice template again", confidence=0.4, created=now),
            ],
            now=now,
        )
        assert clusters[0].score == pytest.approx(0.6)
        assert clusters[0].summary == "Update invoice template"
        payload = clusters[0].to_dict()
        assert payload["topRepresentative"]["title"] == "Update invoice template"
        assert payload["suggestions"][0]["score"] == 0.8

    def test_summary_min_score(self, orchestrator) -> None:
        orchestrator.suggestions.ingest("High", "Body one", "research-agent", confidence=0.9)
        orchestrator.suggestions.ingest("Low", "Body two", "research-agent", confidence=0.1)
        clusters = orchestrator.suggestions.summary(min_score=0.5)
        assert [c.summary for c in clusters] == ["High"]


# ═══════════════════════════════════════════════════════════════════════════
# LIFECYCLE
# ═══════════════════════════════════════════════════════════════════════════


class TestLifecycle:
    def _pending(self, orchestrator, title: str = "Try a new CI cache"):
        return orchestrator.suggestions.ingest(title, "Builds are slow", "research-agent").suggestion

    def test_accept_creates_and_delegates(self, orchestrator) -> None:
        suggestion = self._pending(orchestrator)
        result = orchestrator.suggestions.accept(suggestion.id)
        settle(orchestrator)

        assert result.suggestion.status == "accepted"
        assert result.suggestion.accepted_task_id == result.task.id
        assert result.task.metadata["fromSuggestion"] == suggestion.id
        assert result.delegation.agent_name == "research-agent"
        assert orchestrator.tasks.require(result.task.id).status == "completed"

    def test_accept_twice(self, orchestrator) -> None:
        suggestion = self._pending(orchestrator)
        orchestrator.suggestions.accept(suggestion.id)
        with pytest.raises(InvalidStateError):
            orchestrator.suggestions.accept(suggestion.id)
        settle(orchestrator)

    def test_failed_accept_leaves_suggestion_pending(self, orchestrator) -> None:
        suggestion, _ = orchestrator.suggestion_store.create(
            Suggestion(id="", agent_name="research-agent", title="   ")
        )
        with pytest.raises(ValueError):
            orchestrator.suggestions.accept(suggestion.id)

        loaded = orchestrator.suggestion_store.require(suggestion.id)
        assert loaded.status == "pending"
        assert loaded.accepted_task_id is None
        assert orchestrator.tasks.list() == []

    def test_approve_keeps_task_pending(self, orchestrator) -> None:
        suggestion = self._pending(orchestrator)
        result = orchestrator.suggestions.approve(suggestion.id)
        assert result.delegation is None
        assert orchestrator.tasks.require(result.task.id).status == "pending"

    def test_edit_and_accept(self, orchestrator) -> None:
        suggestion = self._pending(orchestrator)
        result = orchestrator.suggestions.edit_and_accept(
            suggestion.id, title="Cache pip wheels in CI", priority="high"
        )
        settle(orchestrator)
        assert result.task.title == "Cache pip wheels in CI"
        assert result.task.priority == "high"

    def test_reject(self, orchestrator) -> None:
        suggestion = self._pending(orchestrator)
        rejected = orchestrator.suggestions.reject(suggestion.id, "Not now")
        assert rejected.status == "rejected"
        assert rejected.metadata["rejectionReason"] == "Not now"
        with pytest.raises(InvalidStateError):
            orchestrator.suggestions.accept(suggestion.id)

    def test_save_and_restore(self, orchestrator) -> None:
        suggestion = self._pending(orchestrator)
        assert orchestrator.suggestions.save(suggestion.id).status == "saved"
        assert orchestrator.suggestions.list_visible("pending") == []
        assert orchestrator.suggestions.restore(suggestion.id).status == "pending"
        with pytest.raises(InvalidStateError):
            orchestrator.suggestions.restore(suggestion.id)

    def test_unknown_suggestion(self, orchestrator) -> None:
        with pytest.raises(NotFoundError):
            orchestrator.suggestions.reject("missing")

    def test_reply_with_json(self, orchestrator, gateway) -> None:
        suggestion = self._pending(orchestrator)
        gateway.replies = [
            json.dumps(
                {
                    "reply": "Good call, narrowing it down.",
                    "updatedTitle": "Cache dependencies in CI",
                    "updatedDescription": None,
                    "actionNeeded": "accept",
                }
            )
        ]
        updated = orchestrator.suggestions.reply(suggestion.id, "Only the pip cache please")
        assert [turn["role"] for turn in updated.conversation] == ["user"]
        settle(orchestrator)

        loaded = orchestrator.suggestion_store.require(suggestion.id)
        assert [turn["role"] for turn in loaded.conversation] == ["user", "agent"]
        assert loaded.conversation[1]["text"] == "Good call, narrowing it down."
        assert loaded.conversation[1]["actionNeeded"] == "accept"
        assert loaded.title == "Cache dependencies in CI"
        assert loaded.description == "Builds are slow"
        assert 'The user replied: "Only the pip cache please"' in gateway.prompts[-1]

    def test_reply_plain_text(self, orchestrator, gateway) -> None:
        suggestion = self._pending(orchestrator)
        gateway.replies = ["Sure, will do."]
        orchestrator.suggestions.reply(suggestion.id, "ok")
        settle(orchestrator)
        loaded = orchestrator.suggestion_store.require(suggestion.id)
        assert loaded.conversation[-1]["text"] == "Sure, will do."

    def test_reply_gateway_failure(self, orchestrator, gateway) -> None:
        suggestion = self._pending(orchestrator)
        gateway.replies = [GatewayError("down")]
        orchestrator.suggestions.reply(suggestion.id, "ok")
        settle(orchestrator)
        loaded = orchestrator.suggestion_store.require(suggestion.id)
        assert loaded.conversation[-1]["text"] == REPLY_FALLBACK

    def test_reply_does_not_retitle_resolved(self, orchestrator, gateway) -> None:
        suggestion = self._pending(orchestrator)
        gate = threading.Event()

        def slow(prompt: str) -> str:
            gate.wait(5)
            return json.dumps({"reply": "r", "updatedTitle": "Changed"})

        gateway.replies = [slow]
        orchestrator.suggestions.reply(suggestion.id, "ok")
        orchestrator.suggestions.reject(suggestion.id)
        gate.set()
        settle(orchestrator)
        loaded = orchestrator.suggestion_store.require(suggestion.id)
        assert loaded.status == "rejected"
        assert loaded.title == "Try a new CI cache"
        assert loaded.conversation[-1]["role"] == "agent"

    def test_reply_requires_text(self, orchestrator) -> None:
        suggestion = self._pending(orchestrator)
        with pytest.raises(ValueError):
            orchestrator.suggestions.reply(suggestion.id, "  ")

    def test_stats(self, orchestrator) -> None:
        a = self._pending(orchestrator, "One")
        b = self._pending(orchestrator, "Two")
        self._pending(orchestrator, "Three")
        orchestrator.suggestions.approve(a.id)
        orchestrator.suggestions.reject(b.id)

        stats = orchestrator.suggestions.stats()
        assert stats["total"] == 3
        assert stats["accepted"] == 1
        assert stats["rejected"] == 1
        assert stats["pending"] == 1
        assert stats["acceptanceRate"] == 33
        assert stats["byAgent"]["research-agent"]["total"] == 3


# ═══════════════════════════════════════════════════════════════════════════
# SCHEDULER
# ═══════════════════════════════════════════════════════════════════════════


class TestScheduler:
    def test_runs_repeatedly_and_survives_errors(self) -> None:
        calls = []
        done = threading.Event()

        def cycle() -> None:
            calls.append(1)
            if len(calls) >= 3:
                done.set()
            raise RuntimeError("cycle failed")

        scheduler = SuggestionScheduler(cycle, interval=0.01, initial_delay=0.0)
        scheduler.start()
        try:
            assert done.wait(5)
        finally:
            scheduler.stop()
        assert not scheduler.running
        assert scheduler.runs >= 3

    def test_stop_before_first_cycle(self) -> None:
        calls = []
        scheduler = SuggestionScheduler(lambda: calls.append(1), interval=60, initial_delay=60)
        scheduler.start()
        assert scheduler.running
        scheduler.stop()
        assert calls == []
