"""Declarative startup workflows and their bounded runner."""

from .loader import WorkflowDefinition, WorkflowLoader, WorkflowStep
from .runner import WorkflowRunner, run_key

__all__ = [
    "WorkflowDefinition",
    "WorkflowLoader",
    "WorkflowRunner",
    "WorkflowStep",
    "run_key",
]
