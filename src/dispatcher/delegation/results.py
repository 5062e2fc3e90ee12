"""Normalize free-form agent output into a stable result payload."""

from __future__ import annotations

import json
import re
from typing import Any

from dispatcher.gateway.extract import extract_json_object

PLAN_MAX_CHARS = 8000

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]+")


def sanitize_text(text: Any, fallback: str = "") -> str:
    if not isinstance(text, str):
        return fallback
    return _CONTROL_CHARS.sub("", text)[:PLAN_MAX_CHARS]


def _questions(payload: dict[str, Any]) -> list[str] | None:
    raw = payload.get("questions")
    if isinstance(raw, list):
        return [str(q) for q in raw if q] or None
    if raw:
        return [str(raw)]
    return None


def _next_tasks(payload: dict[str, Any]) -> list[dict[str, Any]]:
    raw = payload.get("nextTasks")
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict) and isinstance(item.get("title"), str)]


def normalize_result(text: str) -> dict[str, Any]:
    """
    Build the persisted result from raw model output.

    JSON found anywhere in the text is mined for ``finalAnswer``, ``plan``,
    ``code`` or ``result`` (first present wins); otherwise the whole
    payload is serialized. Plain text is kept as the plan.
    """
    payload = extract_json_object(text)
    if payload is None:
        return {
            "plan": sanitize_text(text),
            "status": "completed",
            "questions": None,
            "nextTasks": [],
            "payload": None,
        }

    plan = next(
        (payload[key] for key in ("finalAnswer", "plan", "code", "result") if payload.get(key)),
        None,
    )
    if plan is not None and not isinstance(plan, str):
        plan = json.dumps(plan, default=str)
    return {
        "plan": sanitize_text(plan, fallback=sanitize_text(json.dumps(payload, default=str))),
        "status": str(payload.get("status") or "completed"),
        "questions": _questions(payload),
        "nextTasks": _next_tasks(payload),
        "payload": payload,
    }


def needs_clarification(result: dict[str, Any]) -> bool:
    return result.get("status") == "needs_clarification" or bool(result.get("questions"))
