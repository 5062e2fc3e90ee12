"""CLI entry point for the Agent Dispatcher."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from dispatcher import __version__

if TYPE_CHECKING:
    from dispatcher.models import Suggestion, WorkflowRun
    from dispatcher.orchestrator import Orchestrator

console = Console()

STATUS_COLORS = {
    "completed": "green",
    "review": "yellow",
    "failed": "red",
    "cancelled": "red",
    "pending": "cyan",
    "accepted": "green",
    "rejected": "red",
}


@click.group()
@click.version_option(version=__version__, prog_name="dispatch")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Data directory (defaults to DISPATCHER_DATA_DIR or ~/.dispatcher)",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Log level",
)
@click.pass_context
def main(ctx: click.Context, data_dir: Path | None, log_level: str) -> None:
    """Agent Dispatcher — route tasks to specialized agents."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir


def _color(status: str) -> str:
    color = STATUS_COLORS.get(status, "dim")
    return f"[{color}]{status}[/{color}]"


def _get_orchestrator(ctx: click.Context) -> Orchestrator:
    """Build the service graph for this invocation; stopped when the command ends."""
    from dispatcher.config import Settings, get_settings
    from dispatcher.orchestrator import Orchestrator

    data_dir = ctx.obj.get("data_dir") if ctx.obj else None
    settings = Settings(data_dir=data_dir) if data_dir else get_settings()
    orch = Orchestrator(settings)
    ctx.call_on_close(orch.stop)
    return orch


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Initialize the dispatcher: data directory, database and workflows folder."""
    orch = _get_orchestrator(ctx)
    workflows_dir = orch.settings.resolved_workflows_dir()
    workflows_dir.mkdir(parents=True, exist_ok=True)
    console.print(f"[green]Dispatcher initialized at {orch.settings.data_dir}[/green]")
    console.print(f"  Database:  {orch.db.db_path}")
    console.print(f"  Workflows: {workflows_dir}")
    console.print(f"  Agents:    {', '.join(orch.directory.names())}")


@main.command()
@click.option("--port", default=3848, help="Port to listen on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.pass_context
def serve(ctx: click.Context, port: int, host: str) -> None:
    """Start the HTTP API with the suggestion scheduler and startup workflows."""
    import uvicorn

    from dispatcher.api.server import create_app

    orch = _get_orchestrator(ctx)
    uvicorn.run(create_app(orch), host=host, port=port)


@main.command()
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.pass_context
def classify(ctx: click.Context, title: str, description: str) -> None:
    """Show which agent a task would be routed to, without delegating."""
    from dispatcher.delegation.classifier import classify as classify_task

    orch = _get_orchestrator(ctx)
    result = classify_task(
        title,
        description,
        orch.directory,
        gateway=orch.gateway,
        model=orch.settings.classifier_model,
        timeout=orch.settings.classifier_timeout_s,
        generalist=orch.settings.generalist_agent,
    )
    review = orch.machine.needs_review(result.confidence, None)
    console.print(f"[bold]Agent:[/bold] {result.agent_name}")
    console.print(f"[bold]Intent:[/bold] {result.intent}")
    console.print(f"[bold]Confidence:[/bold] {result.confidence:.2f}")
    console.print(f"[bold]Review:[/bold] {'required' if review else 'not required'}")


@main.group()
def task() -> None:
    """Manage tasks."""


@task.command("add")
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.option(
    "--priority",
    "-p",
    type=click.Choice(["low", "medium", "high", "urgent"]),
    default="medium",
    help="Task priority",
)
@click.pass_context
def task_add(ctx: click.Context, title: str, description: str, priority: str) -> None:
    """Create a task."""
    orch = _get_orchestrator(ctx)
    created = orch.create_task(title, description, priority)
    console.print(f"[green]Created task {created.id}[/green]: {created.title} ({created.priority})")


@task.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--limit", default=20, help="Number of tasks to show")
@click.pass_context
def task_list(ctx: click.Context, status: str | None, limit: int) -> None:
    """List recent tasks."""
    orch = _get_orchestrator(ctx)
    tasks = orch.tasks.list(status=status, limit=limit)
    if not tasks:
        console.print("[dim]No tasks yet. Add one with: dispatch task add TITLE[/dim]")
        return

    table = Table(title="Tasks")
    table.add_column("ID", style="cyan")
    table.add_column("Title", max_width=40)
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Agent", style="green")
    for t in tasks:
        table.add_row(t.id[:12], t.title[:40], t.priority, _color(t.status), t.assigned_agent or "-")
    console.print(table)


@main.command()
@click.argument("task_id")
@click.option("--agent", "-a", default=None, help="Skip classification and use this agent")
@click.option("--model", default=None, help="Model for the agent")
@click.option("--wait", "wait_s", default=0.0, help="Seconds to wait for the outcome")
@click.pass_context
def delegate(
    ctx: click.Context, task_id: str, agent: str | None, model: str | None, wait_s: float
) -> None:
    """Delegate a task to an agent."""
    from dispatcher.errors import DispatcherError

    orch = _get_orchestrator(ctx)
    try:
        ack = orch.machine.delegate(task_id, force_agent=agent, model=model)
    except DispatcherError as e:
        raise click.ClickException(str(e)) from e

    console.print(
        f"[bold cyan]Delegated[/bold cyan] {ack.task_id} -> {ack.agent_name} "
        f"({ack.intent}, {ack.confidence:.0%} confidence)"
    )
    if wait_s <= 0:
        console.print("[dim]Queued; pass --wait to print the outcome.[/dim]")
        return

    if not orch.background.wait_idle(timeout=wait_s):
        console.print(f"[yellow]Still running after {wait_s:.0f}s[/yellow]")
        return
    delegation = orch.delegations.require(ack.delegation_id)
    console.print(f"Status: {_color(delegation.status)}")
    if delegation.error:
        console.print(f"[red]Error:[/red] {delegation.error}")
    elif delegation.result:
        console.print(delegation.result.get("plan", ""))


@main.command()
@click.argument("task_id")
@click.pass_context
def history(ctx: click.Context, task_id: str) -> None:
    """Show the delegations of a task, newest first."""
    from dispatcher.errors import NotFoundError

    orch = _get_orchestrator(ctx)
    try:
        delegations = orch.machine.history(task_id)
    except NotFoundError as e:
        raise click.ClickException(str(e)) from e

    if not delegations:
        console.print("[dim]No delegations for this task yet.[/dim]")
        return

    table = Table(title=f"Delegations for {task_id}")
    table.add_column("Delegation", style="cyan")
    table.add_column("Agent", style="green")
    table.add_column("Intent")
    table.add_column("Confidence")
    table.add_column("Status")
    table.add_column("Created")
    for d in delegations:
        table.add_row(
            d.id[:12],
            d.agent_name,
            d.intent,
            f"{d.confidence:.2f}",
            _color(d.status),
            d.created_at[:19],
        )
    console.print(table)


@main.group()
def suggestions() -> None:
    """Proactive agent suggestions."""


def _print_suggestions(items: list[Suggestion], title: str) -> None:
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Agent", style="green")
    table.add_column("Title", max_width=50)
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Source")
    for s in items:
        table.add_row(
            s.id[:12], s.agent_name, s.title[:50], s.priority, _color(s.status), s.data_source or "-"
        )
    console.print(table)


@suggestions.command("cycle")
@click.pass_context
def suggestions_cycle(ctx: click.Context) -> None:
    """Run one generation cycle across all agents."""
    orch = _get_orchestrator(ctx)
    created = orch.suggestions.run_cycle()
    if not created:
        console.print("[dim]No new suggestions this cycle.[/dim]")
        return
    _print_suggestions(created, "New Suggestions")


@suggestions.command("list")
@click.option("--status", default="pending", help="Filter by status")
@click.option("--agent", default=None, help="Filter by agent")
@click.pass_context
def suggestions_list(ctx: click.Context, status: str, agent: str | None) -> None:
    """List visible suggestions."""
    orch = _get_orchestrator(ctx)
    items = orch.suggestions.list_visible(status, agent)
    if not items:
        console.print("[dim]No suggestions to show.[/dim]")
        return
    _print_suggestions(items, "Suggestions")


@suggestions.command("summary")
@click.option("--status", default="pending", help="Filter by status")
@click.option("--min-score", type=float, default=None, help="Hide clusters scoring below this")
@click.pass_context
def suggestions_summary(ctx: click.Context, status: str, min_score: float | None) -> None:
    """Cluster similar suggestions and rank them."""
    orch = _get_orchestrator(ctx)
    clusters = orch.suggestions.summary(status, min_score)
    if not clusters:
        console.print("[dim]No suggestions to summarize.[/dim]")
        return

    table = Table(title="Suggestion Clusters")
    table.add_column("Cluster", style="cyan")
    table.add_column("Summary", max_width=50)
    table.add_column("Score", style="bold")
    table.add_column("Agents", style="green")
    table.add_column("Size")
    for c in clusters:
        table.add_row(c.id, c.summary[:50], f"{c.score:.3f}", ", ".join(c.agents), str(len(c.suggestions)))
    console.print(table)


@main.group()
def workflows() -> None:
    """Startup workflows."""


def _print_runs(runs: list[WorkflowRun], title: str) -> None:
    table = Table(title=title)
    table.add_column("Run", style="cyan")
    table.add_column("Workflow", style="green")
    table.add_column("Step", max_width=40)
    table.add_column("Status")
    table.add_column("Detail", max_width=40)
    for run in runs:
        detail = run.error or run.metadata.get("taskId") or run.metadata.get("skipped") or ""
        table.add_row(
            run.id[:12],
            run.workflow_name,
            str(run.metadata.get("stepTitle", ""))[:40],
            _color(run.status),
            str(detail)[:40],
        )
    console.print(table)


@workflows.command("list")
@click.pass_context
def workflows_list(ctx: click.Context) -> None:
    """List workflow definitions on disk."""
    orch = _get_orchestrator(ctx)
    items = orch.workflow_loader.list_workflows()
    if not items:
        console.print(f"[dim]No workflows in {orch.workflow_loader.directory}[/dim]")
        return

    table = Table(title="Workflows")
    table.add_column("Name", style="cyan")
    table.add_column("Agent", style="green")
    table.add_column("Steps")
    table.add_column("Auto")
    table.add_column("Description", max_width=40)
    for w in items:
        table.add_row(
            w["name"], w["agent"], str(w["stepCount"]), "yes" if w["auto"] else "no", w["description"][:40]
        )
    console.print(table)


@workflows.command("run")
@click.argument("names", nargs=-1)
@click.pass_context
def workflows_run(ctx: click.Context, names: tuple[str, ...]) -> None:
    """Run auto workflows now (all of them, or only NAMES)."""
    from dispatcher.errors import DispatcherError

    orch = _get_orchestrator(ctx)
    try:
        if names:
            selected = [orch.workflow_loader.read_workflow(name) for name in names]
        else:
            selected = orch.workflow_loader.load_workflows()
    except DispatcherError as e:
        raise click.ClickException(str(e)) from e

    runs = orch.workflows.run(selected)
    if not runs:
        console.print("[dim]Nothing to run.[/dim]")
        return
    _print_runs(runs, "Workflow Runs")


@workflows.command("runs")
@click.option("--limit", default=20, help="Number of runs to show")
@click.option("--workflow", default=None, help="Filter by workflow name")
@click.pass_context
def workflows_runs(ctx: click.Context, limit: int, workflow: str | None) -> None:
    """Show recent workflow run records."""
    orch = _get_orchestrator(ctx)
    runs = orch.workflow_runs.list(limit=limit, workflow_name=workflow)
    if not runs:
        console.print("[dim]No workflow runs recorded yet.[/dim]")
        return
    _print_runs(runs, "Workflow Runs")
