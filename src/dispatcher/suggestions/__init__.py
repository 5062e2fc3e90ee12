"""
Suggestions — Proactive Proposals from Agents

Core Components:
- context: per-agent context bundles
- prerequisites: setup requests for agents missing what they need
- prompts: generation and reply prompts
- ratelimit: per-agent sliding-window limiter
- clustering: lexical clustering and scoring
- pipeline: generation, ingestion and lifecycle
- scheduler: periodic cycle driver
"""

from .clustering import ScoredCluster, cluster_suggestions, score_suggestion
from .context import AgentContext, ContextBuilder
from .pipeline import (
    AcceptResult,
    IngestOutcome,
    IngestResult,
    SuggestionPipeline,
    fingerprint,
)
from .prerequisites import SetupRequest, check_prerequisites
from .ratelimit import SlidingWindowLimiter
from .scheduler import SuggestionScheduler

__all__ = [
    "AcceptResult",
    "AgentContext",
    "ContextBuilder",
    "IngestOutcome",
    "IngestResult",
    "ScoredCluster",
    "SetupRequest",
    "SlidingWindowLimiter",
    "SuggestionPipeline",
    "SuggestionScheduler",
    "check_prerequisites",
    "cluster_suggestions",
    "fingerprint",
    "score_suggestion",
]
