"""Tests for the agent directory and the task classifier."""

import time
from pathlib import Path

from conftest import FakeGateway

from dispatcher.agents import AgentDirectory, AgentProfile
from dispatcher.agents.directory import CAPABILITIES, display_name_for
from dispatcher.delegation.classifier import (
    FALLBACK_CONFIDENCE,
    LLM_CONFIDENCE,
    build_router_prompt,
    classify,
    match_agent_reply,
    score_keywords,
)
from dispatcher.errors import GatewayError
from dispatcher.storage import AgentStore, Database


class TestAgentDirectory:
    def test_builtin_agents(self) -> None:
        directory = AgentDirectory()
        assert directory.names() == [
            "email-agent",
            "coding-agent",
            "investment-agent",
            "social-media-agent",
            "time-management-agent",
        ]
        assert directory.total_keywords() == 68

    def test_display_name(self) -> None:
        assert display_name_for("time-management-agent") == "Time Management Agent"

    def test_register_unknown_agent(self) -> None:
        directory = AgentDirectory()
        profile = directory.register("research-agent")
        assert profile.auto_registered
        assert profile.description == "Specialized research-agent agent"
        assert profile.keywords == ()
        assert "research-agent" in directory
        assert len(directory) == 6

    def test_register_is_idempotent(self) -> None:
        directory = AgentDirectory()
        first = directory.register("research-agent")
        assert directory.register("research-agent") is first

    def test_registered_agents_persist(self, tmp_path: Path) -> None:
        db = Database(data_dir=tmp_path / "dispatcher")
        db.ensure_tables()
        AgentDirectory(AgentStore(db)).register("research-agent")

        reloaded = AgentDirectory(AgentStore(db))
        assert reloaded.load() == 1
        assert reloaded.get("research-agent").auto_registered


class TestKeywordPhase:
    def test_fix_login_bug_routes_to_coding(self) -> None:
        result = classify("Fix login bug", "NPE on submit", AgentDirectory())
        assert result.agent_name == "coding-agent"
        assert result.intent == "keyword-match (score: 2)"
        assert result.confidence == 0.65
        assert result.confidence >= 0.5

    def test_deterministic(self) -> None:
        directory = AgentDirectory()
        results = {
            classify("Send weekly newsletter email", "", directory) for _ in range(5)
        }
        assert len(results) == 1
        assert results.pop().agent_name == "email-agent"

    def test_multi_word_keywords_score_two(self) -> None:
        scores = score_keywords("book a time block", AgentDirectory())
        assert scores == {"time-management-agent": 2}

    def test_confidence_is_capped(self) -> None:
        result = classify(
            "Refactor the backend api module, debug the frontend script and deploy",
            "fix bug in database function, implement test",
            AgentDirectory(),
        )
        assert result.agent_name == "coding-agent"
        assert result.confidence == 0.95

    def test_ties_go_to_first_registered(self) -> None:
        directory = AgentDirectory(
            profiles={
                "alpha": AgentProfile("alpha", "Alpha", "", ("shared", "words")),
                "beta": AgentProfile("beta", "Beta", "", ("shared", "words")),
            }
        )
        assert classify("shared words", "", directory).agent_name == "alpha"

    def test_single_keyword_is_not_enough(self) -> None:
        # "deploy" scores 1; with no gateway the generalist takes it.
        result = classify("Deploy", "", AgentDirectory())
        assert result.agent_name == "general"
        assert result.intent == "default-fallback"
        assert result.confidence == FALLBACK_CONFIDENCE


class TestModelPhase:
    def test_model_reply_is_matched(self) -> None:
        gateway = FakeGateway(replies=["coding"])
        result = classify("Something vague", "", AgentDirectory(), gateway=gateway)
        assert result.agent_name == "coding-agent"
        assert result.intent == "llm-classified"
        assert result.confidence == LLM_CONFIDENCE

    def test_router_prompt_lists_agents(self) -> None:
        prompt = build_router_prompt("Title", "", AgentDirectory(), "general")
        for name in CAPABILITIES:
            assert f"- {name}:" in prompt
        assert "- general:" in prompt
        assert "Task description: No description" in prompt

    def test_unmatched_reply_falls_back(self) -> None:
        gateway = FakeGateway(replies=["banana"])
        result = classify("Something vague", "", AgentDirectory(), gateway=gateway)
        assert result.agent_name == "general"
        assert result.confidence == FALLBACK_CONFIDENCE

    def test_gateway_error_falls_back(self) -> None:
        gateway = FakeGateway(replies=[GatewayError("connection refused")])
        result = classify("Something vague", "", AgentDirectory(), gateway=gateway)
        assert result.agent_name == "general"

    def test_timeout_falls_back(self) -> None:
        def slow(prompt: str) -> str:
            time.sleep(1.0)
            return "coding-agent"

        gateway = FakeGateway(replies=[slow])
        started = time.monotonic()
        result = classify("Something vague", "", AgentDirectory(), gateway=gateway, timeout=0.1)
        assert time.monotonic() - started < 0.9
        assert result.agent_name == "general"
        assert result.intent == "default-fallback"

    def test_keyword_match_skips_gateway(self) -> None:
        gateway = FakeGateway()
        classify("Fix login bug", "", AgentDirectory(), gateway=gateway)
        assert gateway.calls == []


class TestMatchAgentReply:
    def test_exact(self) -> None:
        assert match_agent_reply("email-agent", ["email-agent", "general"]) == "email-agent"

    def test_noise_is_stripped(self) -> None:
        assert match_agent_reply('  "Social-Media-Agent".\n', ["social-media-agent"]) == (
            "social-media-agent"
        )

    def test_generalist(self) -> None:
        assert match_agent_reply("general", ["email-agent", "general"]) == "general"

    def test_empty(self) -> None:
        assert match_agent_reply("  ", ["email-agent"]) is None
