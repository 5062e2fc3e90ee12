"""
Delegation — Routing Tasks to Agents

Core Components:
- classifier: keyword scoring with model fallback
- prompts: agent-specific prompt templates
- results: normalization of free-form agent output
- machine: delegation lifecycle, review gate, chains and parallel fan-out
"""

from .classifier import Classification, classify
from .machine import (
    ChainResult,
    DelegationAck,
    DelegationMachine,
    ParallelResult,
    StepOutcome,
)
from .results import normalize_result

__all__ = [
    "ChainResult",
    "Classification",
    "DelegationAck",
    "DelegationMachine",
    "ParallelResult",
    "StepOutcome",
    "classify",
    "normalize_result",
]
