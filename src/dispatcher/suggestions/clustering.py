"""
Suggestion Clustering — Lexical Grouping and Scoring

Groups visible suggestions by token overlap (Jaccard >= 0.5 against a
cluster's accumulated vocabulary) or shared tags, then scores each item by
confidence, trust weight and recency.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from dispatcher.models import Suggestion, parse_timestamp, utcnow

SIMILARITY_THRESHOLD = 0.5
DEFAULT_CONFIDENCE = 0.5
DEFAULT_TRUST_WEIGHT = 1.0
RECENCY_FLOOR = 0.5
RECENCY_HALF_MINUTES = 60.0

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")


def tokenize(text: str | None) -> list[str]:
    return _NON_ALNUM.sub(" ", (text or "").lower()).split()


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def score_suggestion(suggestion: Suggestion, now: datetime | None = None) -> float:
    """confidence * trustWeight * recency, clamped to [0, 1]."""
    now = now or utcnow()
    confidence = suggestion.confidence if suggestion.confidence is not None else DEFAULT_CONFIDENCE
    trust = suggestion.metadata.get("trustWeight", DEFAULT_TRUST_WEIGHT)
    try:
        trust = float(trust)
    except (TypeError, ValueError):
        trust = DEFAULT_TRUST_WEIGHT
    created = parse_timestamp(suggestion.created_at) or now
    age_minutes = max(0.0, (now - created).total_seconds() / 60.0)
    recency = max(RECENCY_FLOOR, math.exp(-age_minutes / RECENCY_HALF_MINUTES))
    return max(0.0, min(1.0, confidence * trust * recency))


@dataclass
class Cluster:
    id: str
    tokens: set[str] = field(default_factory=set)
    tags: set[str] = field(default_factory=set)
    items: list[Suggestion] = field(default_factory=list)


@dataclass
class ScoredCluster:
    id: str
    summary: str
    score: float
    agents: list[str]
    tags: list[str]
    top_representative: Suggestion | None
    suggestions: list[tuple[Suggestion, float]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "summary": self.summary,
            "score": self.score,
            "agents": self.agents,
            "tags": self.tags,
            "topRepresentative": (
                self.top_representative.to_dict() if self.top_representative else None
            ),
            "suggestions": [
                {
                    "id": s.id,
                    "title": s.title,
                    "body": s.description,
                    "agentName": s.agent_name,
                    "confidence": s.confidence,
                    "score": round(score, 3),
                    "status": s.status,
                    "createdAt": s.created_at,
                    "metadata": s.metadata,
                }
                for s, score in self.suggestions
            ],
        }


def cluster_suggestions(
    suggestions: Iterable[Suggestion], now: datetime | None = None
) -> list[ScoredCluster]:
    """Greedy single-pass clustering in input order."""
    now = now or utcnow()
    clusters: list[Cluster] = []
    for suggestion in suggestions:
        tokens = tokenize(f"{suggestion.title} {suggestion.description}")
        tags = set(suggestion.tags or [])
        for cluster in clusters:
            if jaccard(tokens, cluster.tokens) >= SIMILARITY_THRESHOLD or tags & cluster.tags:
                cluster.items.append(suggestion)
                cluster.tokens.update(tokens)
                cluster.tags.update(tags)
                break
        else:
            clusters.append(
                Cluster(
                    id=f"cluster-{len(clusters) + 1}",
                    tokens=set(tokens),
                    tags=tags,
                    items=[suggestion],
                )
            )

    scored_clusters = []
    for cluster in clusters:
        scored = sorted(
            ((item, score_suggestion(item, now)) for item in cluster.items),
            key=lambda pair: pair[1],
            reverse=True,
        )
        top = scored[0][0] if scored else None
        mean = sum(score for _, score in scored) / max(1, len(scored))
        scored_clusters.append(
            ScoredCluster(
                id=cluster.id,
                summary=top.title if top else "Cluster",
                score=round(mean, 3),
                agents=list(dict.fromkeys(item.agent_name for item in cluster.items)),
                tags=sorted(cluster.tags),
                top_representative=top,
                suggestions=scored,
            )
        )
    return scored_clusters
