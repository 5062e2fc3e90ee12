"""Request bodies for the HTTP API. Fields accept camelCase or snake_case keys."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class TaskCreate(RequestModel):
    title: str = Field(min_length=1)
    description: str = ""
    priority: str = "medium"
    metadata: dict[str, Any] = Field(default_factory=dict)


class CancelRequest(RequestModel):
    reason: str | None = None


class DelegateRequest(RequestModel):
    agent_name: str | None = None
    model: str | None = None
    provider: str | None = None
    autonomous: bool = True


class RetryRequest(RequestModel):
    agent_name: str | None = None
    model: str | None = None
    provider: str | None = None


class ClarifyRequest(RequestModel):
    # A single answer or a list of answers.
    answers: list[str] | str


class RejectRequest(RequestModel):
    reason: str | None = None


class ChainRequest(RequestModel):
    agents: list[str] = Field(min_length=1)
    continue_on_error: bool = False
    model: str | None = None
    provider: str | None = None


class ParallelRequest(RequestModel):
    agents: list[str] = Field(min_length=1)
    max_wait: float | None = Field(default=None, gt=0.0)
    model: str | None = None
    provider: str | None = None


class IngestRequest(RequestModel):
    title: str
    body: str
    agent_name: str
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class AcceptRequest(RequestModel):
    """Optional edits applied before the suggestion becomes a task."""

    title: str | None = None
    description: str | None = None
    priority: str | None = None


class ReplyRequest(RequestModel):
    text: str = Field(min_length=1)


class AutoRequest(RequestModel):
    auto: bool


class WorkflowRunRequest(RequestModel):
    """Names of the workflows to run now; every workflow on disk when empty."""

    names: list[str] = Field(default_factory=list)
