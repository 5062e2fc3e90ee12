"""Shared fixtures: isolated settings, a scripted gateway and a wired orchestrator."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from dispatcher.config import Settings
from dispatcher.orchestrator import Orchestrator


class FakeGateway:
    """
    Generation gateway that replays scripted replies.

    Each reply is a string, an exception instance (raised) or a callable
    taking the prompt. When the script runs out ``default`` is returned.
    """

    provider = "fake"

    def __init__(self, replies: list[Any] | None = None, default: str = '{"plan": "done"}') -> None:
        self.replies = list(replies or [])
        self.default = default
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def generate(self, model: str, prompt: str, timeout: float | None = None) -> str:
        with self._lock:
            self.calls.append((model, prompt))
            reply: Any = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(prompt)
        return reply

    @property
    def prompts(self) -> list[str]:
        return [prompt for _, prompt in self.calls]


class FakeRetriever:
    def __init__(self, snippets: list[str] | None = None) -> None:
        self.snippets = list(snippets or [])
        self.queries: list[tuple[str, int]] = []

    def retrieve(self, query: str, k: int) -> list[str]:
        self.queries.append((query, k))
        return self.snippets[:k]


class FakeFetcher:
    def __init__(self, body: str | None = None) -> None:
        self.body = body
        self.urls: list[str] = []

    def fetch(self, url: str) -> str | None:
        self.urls.append(url)
        return self.body


class Clock:
    """Settable UTC clock for debounce, expiry and run-key tests."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        data_dir=tmp_path / "dispatcher",
        suggestion_scheduler_enabled=False,
        startup_workflows_enabled=False,
        debounce_s=0.0,
        rag_url="",
        market_data_url="http://market.test/prices",
        classifier_timeout_s=5.0,
        gateway_timeout_s=5.0,
        parallel_max_wait_s=5.0,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def make_orchestrator(
    settings: Settings, gateway: FakeGateway
) -> Iterator[Callable[..., Orchestrator]]:
    created: list[Orchestrator] = []

    def factory(**overrides: Any) -> Orchestrator:
        overrides.setdefault("settings", settings)
        overrides.setdefault("gateway", gateway)
        overrides.setdefault("fetcher", FakeFetcher())
        overrides.setdefault("environ", {})
        orch = Orchestrator(**overrides)
        created.append(orch)
        return orch

    yield factory
    for orch in created:
        orch.stop(wait=True)


@pytest.fixture
def orchestrator(make_orchestrator: Callable[..., Orchestrator]) -> Orchestrator:
    return make_orchestrator()


def settle(orch: Orchestrator, timeout: float = 5.0) -> None:
    """Wait until all background work of ``orch`` has finished."""
    assert orch.background.wait_idle(timeout), "background work did not finish"
