"""Tolerant JSON extraction from free-form model output."""

from __future__ import annotations

import json
import re
from typing import Any

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def _candidates(text: str) -> list[str]:
    fenced = [m.strip() for m in _FENCE.findall(text)]
    return [*fenced, text]


def _scan(text: str, opener: str) -> Any | None:
    """Decode the first JSON value starting at an ``opener`` that parses."""
    decoder = json.JSONDecoder()
    start = text.find(opener)
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find(opener, start + 1)
            continue
        return value
    return None


def extract_json_array(text: str | None) -> list[Any] | None:
    """Return the first JSON array embedded in ``text``, or None."""
    if not text:
        return None
    for candidate in _candidates(text):
        value = _scan(candidate, "[")
        if isinstance(value, list):
            return value
    return None


def extract_json_object(text: str | None) -> dict[str, Any] | None:
    """Return the first JSON object embedded in ``text``, or None."""
    if not text:
        return None
    for candidate in _candidates(text):
        value = _scan(candidate, "{")
        if isinstance(value, dict):
            return value
    return None
