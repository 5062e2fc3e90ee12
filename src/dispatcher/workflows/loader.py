"""
Workflow Definitions — Declarative Startup Steps on Disk

A workflow is a JSON file naming one agent and a list of steps; each step
becomes a task delegated to that agent. Only ``schedule == "startup"``
workflows are loaded, and only ``auto`` ones are run.

Example file::

    {
      "name": "daily-review",
      "agent": "time-management-agent",
      "steps": [{"title": "Review today's calendar"}],
      "auto": true
    }
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dispatcher.errors import NotFoundError, WorkflowValidationError
from dispatcher.models import Priority

logger = logging.getLogger(__name__)

STARTUP_SCHEDULE = "startup"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def _priority(value: Any, where: str) -> str | None:
    if value is None:
        return None
    try:
        return Priority(str(value).lower()).value
    except ValueError:
        raise WorkflowValidationError(f"{where}: invalid priority {value!r}") from None


@dataclass
class WorkflowStep:
    title: str
    description: str | None = None
    priority: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any, index: int) -> WorkflowStep:
        if not isinstance(data, dict):
            raise WorkflowValidationError(f"step {index} is not an object")
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            raise WorkflowValidationError(f"step {index} missing title")
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise WorkflowValidationError(f"step {index} metadata must be an object")
        return cls(
            title=title,
            description=data.get("description"),
            priority=_priority(data.get("priority"), f"step {index}"),
            metadata=metadata,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"title": self.title}
        if self.description is not None:
            data["description"] = self.description
        if self.priority is not None:
            data["priority"] = self.priority
        if self.metadata:
            data["metadata"] = self.metadata
        return data


@dataclass
class WorkflowDefinition:
    name: str
    agent: str
    steps: list[WorkflowStep]
    auto: bool = True
    schedule: str = STARTUP_SCHEDULE
    description: str | None = None
    priority: str = Priority.MEDIUM.value

    @classmethod
    def from_dict(cls, data: Any) -> WorkflowDefinition:
        """Validate and build a definition; raises WorkflowValidationError."""
        if not isinstance(data, dict):
            raise WorkflowValidationError("workflow is not an object")
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise WorkflowValidationError("missing name")
        agent = data.get("agent")
        if not isinstance(agent, str) or not agent.strip():
            raise WorkflowValidationError("missing agent")
        steps = data.get("steps")
        if not isinstance(steps, list) or not steps:
            raise WorkflowValidationError("steps must be a non-empty array")
        return cls(
            name=name,
            agent=agent,
            steps=[WorkflowStep.from_dict(step, i) for i, step in enumerate(steps, start=1)],
            auto=data.get("auto") is not False,
            schedule=data.get("schedule") or STARTUP_SCHEDULE,
            description=data.get("description"),
            priority=_priority(data.get("priority"), "workflow") or Priority.MEDIUM.value,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "agent": self.agent,
            "steps": [step.to_dict() for step in self.steps],
            "auto": self.auto,
            "schedule": self.schedule,
            "priority": self.priority,
        }
        if self.description is not None:
            data["description"] = self.description
        return data

    def summary(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description or self.name,
            "agent": self.agent,
            "auto": self.auto,
            "schedule": self.schedule,
            "stepCount": len(self.steps),
        }


def safe_name(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name)


class WorkflowLoader:
    """Reads and writes workflow JSON files in one directory."""

    def __init__(self, directory: Path, max_files: int = 20) -> None:
        self.directory = directory
        self.max_files = max_files

    def _path(self, name: str) -> Path:
        return self.directory / f"{safe_name(name)}.json"

    def load_workflows(self) -> list[WorkflowDefinition]:
        """Valid startup workflows; invalid files are logged and skipped."""
        self.directory.mkdir(parents=True, exist_ok=True)
        files = sorted(p for p in self.directory.glob("*.json") if p.is_file())[: self.max_files]
        logger.info(
            "Scanning %s, found files: %s",
            self.directory,
            ", ".join(p.name for p in files) or "none",
        )
        workflows = []
        for path in files:
            try:
                workflow = WorkflowDefinition.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, json.JSONDecodeError, WorkflowValidationError) as e:
                logger.warning("Invalid workflow file %s: %s", path.name, e)
                continue
            if workflow.schedule != STARTUP_SCHEDULE:
                continue
            workflows.append(workflow)
        return workflows

    def list_workflows(self) -> list[dict[str, Any]]:
        return [workflow.summary() for workflow in self.load_workflows()]

    def save_workflow(self, data: dict[str, Any]) -> Path:
        workflow = WorkflowDefinition.from_dict(data)
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(workflow.name)
        path.write_text(json.dumps(workflow.to_dict(), indent=2), encoding="utf-8")
        logger.info("Saved workflow file %s", path)
        return path

    def read_workflow(self, name: str) -> WorkflowDefinition:
        path = self._path(name)
        if not path.is_file():
            raise NotFoundError("Workflow", name)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise WorkflowValidationError(f"{path.name} is not valid JSON: {e}") from e
        return WorkflowDefinition.from_dict(data)

    def set_auto(self, name: str, auto: bool) -> WorkflowDefinition:
        workflow = self.read_workflow(name)
        workflow.auto = bool(auto)
        self._path(name).write_text(json.dumps(workflow.to_dict(), indent=2), encoding="utf-8")
        return workflow
