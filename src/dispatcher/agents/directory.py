"""
Agent Directory — Capability Profiles for Routing

Holds the name → profile map the classifier scores against. Built-in profiles
are loaded at boot; agents first seen in a delegation are auto-registered and
persisted so they survive restarts.

Usage:
    from dispatcher.agents import AgentDirectory

    directory = AgentDirectory(store)
    directory.load()
    directory.register("research-agent")
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from typing import Any

from dispatcher.storage.repositories import AgentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentProfile:
    """What an agent is good at, as seen by the classifier."""

    name: str
    display_name: str
    description: str = ""
    keywords: tuple[str, ...] = field(default_factory=tuple)
    auto_registered: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["keywords"] = list(self.keywords)
        return data


def display_name_for(name: str) -> str:
    """``time-management-agent`` -> ``Time Management Agent``."""
    return " ".join(part[:1].upper() + part[1:] for part in name.split("-") if part)


def _builtin(name: str, description: str, keywords: list[str]) -> AgentProfile:
    return AgentProfile(
        name=name,
        display_name=display_name_for(name),
        description=description,
        keywords=tuple(keywords),
    )


CAPABILITIES: dict[str, AgentProfile] = {
    profile.name: profile
    for profile in (
        _builtin(
            "email-agent",
            "Handles email operations: sending, reading, drafting, scheduling meetings via email",
            [
                "email", "mail", "send", "inbox", "reply", "forward", "newsletter",
                "smtp", "meeting invite", "calendar invite",
            ],
        ),
        _builtin(
            "coding-agent",
            "Handles coding tasks: writing code, debugging, code review, deployment, testing",
            [
                "code", "program", "debug", "fix bug", "bug", "fix", "implement",
                "refactor", "test", "deploy", "api", "database", "frontend",
                "backend", "script", "function", "class", "module",
            ],
        ),
        _builtin(
            "investment-agent",
            "Handles investment tasks: research, analysis, portfolio management, market monitoring",
            [
                "invest", "stock", "portfolio", "market", "trade", "crypto",
                "dividend", "roi", "financial", "asset", "fund", "etf", "bond",
                "analysis", "valuation",
            ],
        ),
        _builtin(
            "social-media-agent",
            "Handles social media: content creation, scheduling, engagement tracking, analytics",
            [
                "social", "post", "tweet", "instagram", "linkedin", "facebook",
                "content", "engagement", "followers", "hashtag", "schedule post",
                "analytics", "brand",
            ],
        ),
        _builtin(
            "time-management-agent",
            "Handles time management: scheduling, reminders, prioritization, calendar management",
            [
                "schedule", "calendar", "reminder", "deadline", "priority",
                "time block", "meeting", "appointment", "todo", "plan day",
                "weekly review", "focus",
            ],
        ),
    )
}


class AgentDirectory:
    """
    Thread-safe map of agent name to :class:`AgentProfile`.

    Iteration order is registration order, which the classifier uses to
    break score ties.
    """

    def __init__(
        self,
        store: AgentStore | None = None,
        profiles: dict[str, AgentProfile] | None = None,
    ) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._profiles: dict[str, AgentProfile] = dict(
            CAPABILITIES if profiles is None else profiles
        )

    def load(self) -> int:
        """Merge persisted agents into the map. Returns how many were added."""
        if self._store is None:
            return 0
        added = 0
        with self._lock:
            for row in self._store.all():
                if row["name"] in self._profiles:
                    continue
                self._profiles[row["name"]] = AgentProfile(
                    name=row["name"],
                    display_name=row["display_name"],
                    description=row["description"],
                    keywords=tuple(row["keywords"]),
                    auto_registered=row["auto_registered"],
                )
                added += 1
        if added:
            logger.info("Loaded %d persisted agent(s)", added)
        return added

    def register(self, name: str, profile: AgentProfile | None = None) -> AgentProfile:
        """
        Add ``name`` to the directory if it is not already present.

        Without an explicit profile the built-in one is used when known,
        otherwise a keyword-less placeholder.
        """
        with self._lock:
            existing = self._profiles.get(name)
            if existing is not None and profile is None:
                return existing
            if profile is None:
                builtin = CAPABILITIES.get(name)
                profile = AgentProfile(
                    name=name,
                    display_name=display_name_for(name),
                    description=builtin.description if builtin else f"Specialized {name} agent",
                    keywords=builtin.keywords if builtin else (),
                    auto_registered=True,
                )
            self._profiles[name] = profile

        if self._store is not None:
            self._store.upsert(
                profile.name,
                profile.display_name,
                profile.description,
                profile.keywords,
                profile.auto_registered,
            )
        logger.info("Registered agent %s", name)
        return profile

    def get(self, name: str) -> AgentProfile | None:
        with self._lock:
            return self._profiles.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return list(self._profiles)

    def profiles(self) -> list[AgentProfile]:
        with self._lock:
            return list(self._profiles.values())

    def total_keywords(self) -> int:
        with self._lock:
            return sum(len(p.keywords) for p in self._profiles.values())

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._profiles

    def __len__(self) -> int:
        with self._lock:
            return len(self._profiles)
