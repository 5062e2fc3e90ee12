"""Agent-specific prompt templates for delegated tasks."""

from __future__ import annotations

import json
from typing import Any

_INSTRUCTIONS: dict[str, tuple[str, str]] = {
    "email-agent": (
        "You are an email assistant.",
        "Analyze this task and provide:\n"
        "1. Draft email content (if sending)\n"
        "2. Suggested recipients\n"
        "3. Subject line\n"
        "4. Any follow-up actions needed",
    ),
    "coding-agent": (
        "You are a senior software engineer.",
        "Analyze this task and provide your response as a JSON object with this structure:\n"
        '{"summary": "brief description of what you did", '
        '"files": [{"path": "relative/path/to/file.ext", "action": "create|modify|delete", '
        '"language": "python|typescript|etc", "content": "the full file content or code changes", '
        '"description": "what this file change does"}], '
        '"testStrategy": "how to verify these changes", "risks": "potential issues"}\n\n'
        "Respond ONLY with the JSON object. Use real file paths relative to the "
        "project root. Provide complete, runnable code.",
    ),
    "investment-agent": (
        "You are a financial analyst and investment advisor.",
        "Analyze this task and provide:\n"
        "1. Market analysis relevant to the task\n"
        "2. Risk assessment\n"
        "3. Recommended actions with rationale\n"
        "4. Key metrics to monitor\n"
        "5. Timeline for execution",
    ),
    "social-media-agent": (
        "You are a social media strategist.",
        "Analyze this task and provide:\n"
        "1. Content strategy and messaging\n"
        "2. Platform-specific recommendations\n"
        "3. Optimal posting schedule\n"
        "4. Engagement tactics\n"
        "5. Metrics to track",
    ),
    "time-management-agent": (
        "You are a productivity and time management expert.",
        "Analyze this task and provide:\n"
        "1. Priority assessment\n"
        "2. Time estimation\n"
        "3. Suggested schedule/time blocks\n"
        "4. Dependencies and prerequisites\n"
        "5. Reminders and deadlines to set",
    ),
}

_DEFAULT_INSTRUCTIONS = (
    "You are a helpful assistant.",
    "Analyze this task and provide a detailed plan with actionable steps.",
)

_FOLLOW_UP_HINT = (
    "If further work is needed, you may include a JSON field "
    '"nextTasks": [{"title": "...", "description": "...", "priority": "low|medium|high|urgent"}].'
)


def format_clarifications(clarifications: Any) -> str:
    if not isinstance(clarifications, list) or not clarifications:
        return ""
    blocks = []
    for idx, item in enumerate(clarifications, start=1):
        answer = item.get("answer", item) if isinstance(item, dict) else item
        blocks.append(f"# Clarification {idx}\n{answer}")
    return "\n\n".join(blocks)


def build_agent_prompt(agent_name: str, snapshot: dict[str, Any]) -> str:
    """
    Render the prompt for ``agent_name`` from a task snapshot.

    The snapshot carries ``title``, ``description``, ``priority`` and
    ``metadata``; clarification answers are read from
    ``metadata["clarifications"]``.
    """
    role, instructions = _INSTRUCTIONS.get(agent_name, _DEFAULT_INSTRUCTIONS)
    metadata = snapshot.get("metadata") or {}
    base = (
        f"Task: {snapshot.get('title', '')}\n"
        f"Description: {snapshot.get('description') or 'No description'}\n"
        f"Priority: {snapshot.get('priority', 'medium')}"
    )
    clarifications = format_clarifications(metadata.get("clarifications"))
    if clarifications:
        base += f"\n\nUser Clarifications:\n{clarifications}"
    return f"{role} {base}\n\n{instructions}\n\n{_FOLLOW_UP_HINT}"


def previous_result_context(previous_agent: str, previous_result: Any) -> str:
    """Render a prior chain step's result as context for the next agent."""
    rendered = json.dumps(previous_result, indent=2, default=str)
    return f"Previous agent ({previous_agent}) completed:\n{rendered}"


def with_context(prompt: str, context: str) -> str:
    return f"{context}\n\n---\n\n{prompt}" if context else prompt


def with_snippets(prompt: str, snippets: list[str]) -> str:
    if not snippets:
        return prompt
    joined = "\n".join(f"[Context] {snippet}" for snippet in snippets)
    return f"{prompt}\n\nRelevant Context:\n{joined}"
