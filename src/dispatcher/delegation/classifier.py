"""
Task Classifier — Keyword Scoring with Model Fallback

Decides which agent should handle a task in three phases:

1. Keyword scoring against each profile in the directory. Single-word
   keywords score 1, multi-word keywords score 2. A top score of at least 2
   wins outright.
2. If a gateway is available, ask the classifier model to name one agent,
   under a hard timeout.
3. Fall back to the generalist agent with low confidence.

Usage:
    from dispatcher.delegation.classifier import classify

    result = classify("Fix login bug", "NPE on submit", directory)
    result.agent_name  # "coding-agent"
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any

from dispatcher.agents.directory import AgentDirectory
from dispatcher.errors import GatewayError
from dispatcher.gateway.generation import GenerationGateway

logger = logging.getLogger(__name__)

KEYWORD_THRESHOLD = 2
KEYWORD_CONFIDENCE_CAP = 0.95
LLM_CONFIDENCE = 0.7
FALLBACK_CONFIDENCE = 0.3

_NON_AGENT_CHARS = re.compile(r"[^a-z-]")


@dataclass(frozen=True)
class Classification:
    agent_name: str
    intent: str
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def score_keywords(text: str, directory: AgentDirectory) -> dict[str, int]:
    """Keyword score per agent, in directory order; agents scoring 0 are omitted."""
    text = text.lower()
    scores: dict[str, int] = {}
    for profile in directory.profiles():
        score = 0
        for keyword in profile.keywords:
            if keyword.lower() in text:
                score += 2 if " " in keyword else 1
        if score > 0:
            scores[profile.name] = score
    return scores


def _keyword_phase(title: str, description: str, directory: AgentDirectory) -> Classification | None:
    scores = score_keywords(f"{title} {description or ''}", directory)
    if not scores:
        return None
    # max() keeps the first agent on ties, so directory order decides.
    best = max(scores, key=lambda name: scores[name])
    top = scores[best]
    if top < KEYWORD_THRESHOLD:
        return None
    total = directory.total_keywords() or 1
    confidence = round(min(KEYWORD_CONFIDENCE_CAP, 0.5 + top / total * 5), 2)
    return Classification(best, f"keyword-match (score: {top})", confidence)


def build_router_prompt(
    title: str, description: str, directory: AgentDirectory, generalist: str
) -> str:
    agent_list = "\n".join(
        f"- {profile.name}: {profile.description}" for profile in directory.profiles()
    )
    return (
        "You are a task router. Given a task, respond with ONLY the agent name "
        "that should handle it.\n\n"
        f"Available agents:\n{agent_list}\n"
        f"- {generalist}: For tasks that don't clearly fit any specialized agent\n\n"
        f"Task title: {title}\n"
        f"Task description: {description or 'No description'}\n\n"
        'Respond with ONLY the agent name (e.g., "coding-agent"). Nothing else.'
    )


def match_agent_reply(reply: str, candidates: list[str]) -> str | None:
    """Map a free-text model reply onto one of ``candidates``."""
    normalized = _NON_AGENT_CHARS.sub("", reply.strip().lower())
    if not normalized:
        return None
    for name in candidates:
        short = name.removesuffix("-agent")
        if normalized == name or name in normalized or (short and short in normalized):
            return name
    return None


def _model_phase(
    title: str,
    description: str,
    directory: AgentDirectory,
    gateway: GenerationGateway,
    model: str,
    timeout: float,
    generalist: str,
) -> Classification | None:
    prompt = build_router_prompt(title, description, directory, generalist)
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="classifier")
    try:
        future = pool.submit(gateway.generate, model, prompt, timeout)
        reply = future.result(timeout=timeout)
    except TimeoutError:
        logger.warning("Model classification timed out after %.1fs", timeout)
        return None
    except GatewayError as e:
        logger.warning("Model classification failed: %s", e)
        return None
    finally:
        pool.shutdown(wait=False)

    candidates = [*directory.names(), generalist]
    matched = match_agent_reply(reply or "", candidates)
    if matched is None:
        logger.warning("Model reply %r matched no agent", (reply or "")[:80])
        return None
    return Classification(matched, "llm-classified", LLM_CONFIDENCE)


def classify(
    title: str,
    description: str,
    directory: AgentDirectory,
    gateway: GenerationGateway | None = None,
    model: str = "gemma3:1b",
    timeout: float = 30.0,
    generalist: str = "general",
) -> Classification:
    """Pick an agent for a task. Never raises for gateway problems."""
    result = _keyword_phase(title, description, directory)
    if result is not None:
        return result

    if gateway is not None:
        result = _model_phase(title, description, directory, gateway, model, timeout, generalist)
        if result is not None:
            return result

    return Classification(generalist, "default-fallback", FALLBACK_CONFIDENCE)
