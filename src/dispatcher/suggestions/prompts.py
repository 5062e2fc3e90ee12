"""Prompt builders for suggestion generation and suggestion conversations."""

from __future__ import annotations

from collections.abc import Callable

from dispatcher.models import Suggestion, TaskStatus
from dispatcher.suggestions.context import AgentContext

_FORMAT = (
    "Respond with a JSON array of suggestions. Each suggestion must have: "
    "title, description, rationale, priority (low/medium/high/urgent), category.\n"
    "Example: {example}\n"
    "Respond ONLY with the JSON array, no other text."
)


def _tasks(context: AgentContext, with_description: bool = False, skip_completed: bool = False) -> str:
    lines = []
    for task in context.current_tasks:
        if skip_completed and task["status"] == TaskStatus.COMPLETED:
            continue
        line = f"- [{task['status']}] {task['title']}"
        if with_description:
            line += f": {task.get('description') or ''}"
        lines.append(line)
    return "\n".join(lines) or "None"


def _coding(context: AgentContext) -> str:
    snippets = "\n\n".join(
        f"[{i}] {snippet}" for i, snippet in enumerate(context.codebase_snippets, start=1)
    )
    example = (
        '[{"title": "Add unit tests for auth module", "description": "The auth module has '
        'no test coverage", "rationale": "Found no test files for auth/", "priority": "high", '
        '"category": "testing"}]'
    )
    return (
        "You are a senior software engineer reviewing a codebase. Based on the code "
        "snippets and current tasks, suggest 1-3 actionable improvements.\n\n"
        f"Current tasks:\n{_tasks(context, skip_completed=True)}\n\n"
        f"Code snippets from the workspace:\n{snippets or 'No code context available'}\n\n"
        + _FORMAT.format(example=example)
    )


def _email(context: AgentContext) -> str:
    configured = "Yes" if context.email_configured else "No - suggest setting up email first"
    smtp = "configured" if context.has_secret("SMTP_HOST") else "missing"
    example = (
        '[{"title": "Send weekly status update", "description": "Draft and send a weekly '
        'progress email to stakeholders", "rationale": "No status emails sent this week", '
        '"priority": "medium", "category": "communication"}]'
    )
    return (
        "You are an email and communications assistant. Based on the current tasks and "
        "email configuration status, suggest 1-3 email-related actions.\n\n"
        f"Email configured: {configured}\n"
        f"Current tasks:\n{_tasks(context, with_description=True)}\n"
        f"Secrets status: SMTP={smtp}\n\n" + _FORMAT.format(example=example)
    )


def _investment(context: AgentContext) -> str:
    market = (context.market_snapshot or "")[:500] or "No market data available"
    openai = "yes" if context.has_secret("OPENAI_API_KEY") else "no"
    openrouter = "yes" if context.has_secret("OPENROUTER_API_KEY") else "no"
    example = (
        '[{"title": "Review crypto portfolio allocation", "description": "Bitcoin and '
        'Ethereum prices have shifted significantly", "rationale": "Market volatility '
        'detected", "priority": "high", "category": "portfolio-review"}]'
    )
    return (
        "You are a financial analyst. Based on available market data and the user's "
        "task history, suggest 1-3 investment-related actions.\n\n"
        f"Market snapshot: {market}\n"
        f"API keys available: OpenAI={openai}, OpenRouter={openrouter}\n\n"
        + _FORMAT.format(example=example)
    )


def _social(context: AgentContext) -> str:
    example = (
        '[{"title": "Share project milestone on LinkedIn", "description": "Post about the '
        'new release", "rationale": "Building in public increases engagement", '
        '"priority": "medium", "category": "content-creation"}]'
    )
    return (
        "You are a social media strategist. Based on the user's current projects and "
        "tasks, suggest 1-3 social media content or engagement actions.\n\n"
        f"Current projects/tasks:\n{_tasks(context)}\n\n" + _FORMAT.format(example=example)
    )


def _time_management(context: AgentContext) -> str:
    pending = "\n".join(f"- [{t['priority']}] {t['title']}" for t in context.pending_tasks)
    example = (
        '[{"title": "Prioritize urgent tasks first", "description": "3 urgent tasks are '
        'still pending, schedule focused time blocks", "rationale": "Urgent items risk '
        'missing deadlines", "priority": "urgent", "category": "prioritization"}]'
    )
    return (
        "You are a productivity expert. Based on the user's pending tasks and workload, "
        "suggest 1-3 time management improvements.\n\n"
        f"Pending tasks ({context.pending_count}):\n{pending or 'None'}\n"
        f"In-progress tasks: {context.in_progress_count}\n"
        f"Total tasks: {len(context.current_tasks)}\n\n" + _FORMAT.format(example=example)
    )


SUGGESTION_PROMPTS: dict[str, Callable[[AgentContext], str]] = {
    "coding-agent": _coding,
    "email-agent": _email,
    "investment-agent": _investment,
    "social-media-agent": _social,
    "time-management-agent": _time_management,
}


def build_reply_prompt(suggestion: Suggestion, reply_text: str) -> str:
    """Role-play prompt for the agent's answer to a user reply on a suggestion."""
    role = suggestion.agent_name.replace("-", " ")
    return (
        f"You are the {role}. You previously suggested:\n\n"
        f"Title: {suggestion.title}\n"
        f"Description: {suggestion.description}\n"
        f"Rationale: {suggestion.rationale}\n"
        f"Category: {suggestion.category}\n\n"
        f'The user replied: "{reply_text}"\n\n'
        "Based on their reply, do ONE of the following:\n"
        "1. If they provided information you needed (credentials, goals, context), "
        "acknowledge it and suggest a concrete next action.\n"
        "2. If they have a question, answer it helpfully.\n"
        "3. If they want to modify the suggestion, provide an updated version.\n\n"
        'Respond with a JSON object: {"reply": "your response to the user", '
        '"updatedTitle": "optional new title or null", '
        '"updatedDescription": "optional new description or null", '
        '"actionNeeded": "none|accept|setup"}\n'
        "Respond ONLY with the JSON object."
    )
