"""
Prerequisite Checks — What an Agent Needs Before It Can Help

Each built-in agent declares the context it cannot work without. A failed
check yields setup requests that are surfaced to the user as suggestions in
place of generated ones.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

from dispatcher.suggestions.context import AgentContext

_INVESTMENT_TERMS = re.compile(r"invest|stock|portfolio|crypto|market|trade", re.IGNORECASE)
_SOCIAL_TERMS = re.compile(r"social|post|tweet|linkedin|content|brand|marketing", re.IGNORECASE)


@dataclass(frozen=True)
class SetupRequest:
    title: str
    description: str
    rationale: str
    priority: str = "medium"
    category: str = "setup"


def _task_text(context: AgentContext) -> list[str]:
    return [f"{t['title']} {t.get('description') or ''}" for t in context.current_tasks]


def _email(context: AgentContext) -> list[SetupRequest]:
    missing = []
    if not all(context.has_secret(k) for k in ("SMTP_HOST", "SMTP_USER", "SMTP_PASS")):
        missing.append(
            SetupRequest(
                title="Configure email credentials",
                description=(
                    "I need SMTP credentials to connect to your email. Please set "
                    "SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASS and EMAIL_FROM so I can "
                    "read your inbox, draft replies and send emails on your behalf."
                ),
                rationale="Without email credentials I cannot access your inbox or send messages.",
                priority="high",
            )
        )
    if not context.has_secret("EMAIL_FROM"):
        missing.append(
            SetupRequest(
                title="Set your sender email address",
                description=(
                    "Please set EMAIL_FROM (e.g. you@company.com). This is the address "
                    "I will send emails from."
                ),
                rationale="I need to know which address to use as the sender.",
            )
        )
    return missing


def _investment(context: AgentContext) -> list[SetupRequest]:
    missing = []
    if not any(_INVESTMENT_TERMS.search(text) for text in _task_text(context)):
        missing.append(
            SetupRequest(
                title="Tell me about your investment goals",
                description=(
                    "I need context to help you. Create a task describing your portfolio, "
                    'investment strategy or specific questions, for example "Review my '
                    'crypto portfolio: 2 BTC, 10 ETH, $5k in index funds".'
                ),
                rationale="I have no investment-related tasks or portfolio data to analyze yet.",
                category="context-needed",
            )
        )
    if context.remote and not context.market_snapshot:
        missing.append(
            SetupRequest(
                title="Enable web access for market data",
                description=(
                    "I need web access to fetch live market prices and financial news. "
                    "Check that the market data URL is reachable from this host."
                ),
                rationale="Without market data access I cannot provide timely investment insights.",
            )
        )
    return missing


def _coding(context: AgentContext) -> list[SetupRequest]:
    if not context.remote or context.codebase_snippets:
        return []
    return [
        SetupRequest(
            title="Connect your codebase for analysis",
            description=(
                "I need access to your code to find improvements. Make sure the "
                "retrieval service is running and has indexed your workspace."
            ),
            rationale="The retrieval service returned no code snippets, so I cannot analyze your codebase.",
            priority="high",
        )
    ]


def _social(context: AgentContext) -> list[SetupRequest]:
    if any(_SOCIAL_TERMS.search(text) for text in _task_text(context)):
        return []
    return [
        SetupRequest(
            title="Share your social media goals",
            description=(
                "Create a task describing what you want to achieve on social media, "
                'for example "Build LinkedIn presence for my SaaS product". Tell me '
                "which platforms you use and your target audience."
            ),
            rationale="I have no social media tasks or brand context to work with yet.",
            category="context-needed",
        )
    ]


def _time_management(context: AgentContext) -> list[SetupRequest]:
    if context.current_tasks:
        return []
    return [
        SetupRequest(
            title="Add your tasks so I can help prioritize",
            description=(
                "I need to see your task list to suggest time management improvements. "
                "Start by adding your current tasks, projects and deadlines."
            ),
            rationale="Your task list is empty, so I have no workload to analyze.",
            category="context-needed",
        )
    ]


CHECKS: dict[str, Callable[[AgentContext], list[SetupRequest]]] = {
    "email-agent": _email,
    "investment-agent": _investment,
    "coding-agent": _coding,
    "social-media-agent": _social,
    "time-management-agent": _time_management,
}


def has_prerequisites(agent_name: str) -> bool:
    return agent_name in CHECKS


def check_prerequisites(agent_name: str, context: AgentContext) -> list[SetupRequest]:
    """Setup requests for whatever ``agent_name`` is missing; empty when ready."""
    check = CHECKS.get(agent_name)
    return check(context) if check else []
