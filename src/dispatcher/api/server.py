"""
HTTP API — FastAPI Surface over the Orchestrator

Thin routes over the delegation machine, suggestion pipeline and workflow
runner. Route handlers that touch storage or the gateway are plain ``def``
so FastAPI runs them on its threadpool.

Usage:
    app = create_app(Orchestrator())
    dispatch-api --port 3848
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import click
from fastapi import FastAPI, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from dispatcher import __version__
from dispatcher.api.schemas import (
    AcceptRequest,
    AutoRequest,
    CancelRequest,
    ChainRequest,
    ClarifyRequest,
    DelegateRequest,
    IngestRequest,
    ParallelRequest,
    RejectRequest,
    ReplyRequest,
    RetryRequest,
    TaskCreate,
    WorkflowRunRequest,
)
from dispatcher.errors import NotFoundError
from dispatcher.orchestrator import Orchestrator
from dispatcher.suggestions.pipeline import IngestOutcome

logger = logging.getLogger(__name__)

_INGEST_STATUS = {
    IngestOutcome.CREATED: status.HTTP_201_CREATED,
    IngestOutcome.EXISTING: status.HTTP_200_OK,
    IngestOutcome.SETUP_REQUIRED: status.HTTP_202_ACCEPTED,
    IngestOutcome.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
}


def create_app(orchestrator: Orchestrator | None = None, manage_lifecycle: bool = True) -> FastAPI:
    """
    Build the API around ``orchestrator``.

    With ``manage_lifecycle`` the app starts the scheduler and startup
    workflows when the server starts, and stops background work on shutdown.
    """
    orch = orchestrator or Orchestrator()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if manage_lifecycle:
            await run_in_threadpool(orch.start)
        try:
            yield
        finally:
            if manage_lifecycle:
                await run_in_threadpool(orch.stop)

    app = FastAPI(
        title="Agent Dispatcher API",
        version=__version__,
        description="Task delegation, proactive suggestions and startup workflows",
        lifespan=lifespan,
    )
    app.state.orchestrator = orch
    app.state.started = time.monotonic()

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": str(exc)})

    # InvalidStateError and WorkflowValidationError are ValueErrors.
    @app.exception_handler(ValueError)
    async def bad_request(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        """Health check."""
        uptime = time.monotonic() - app.state.started
        return {
            "status": "ok",
            "version": __version__,
            "uptime_seconds": round(uptime, 1),
            "agents": len(orch.directory),
            "backgroundPending": orch.background.pending,
        }

    # -- tasks ---------------------------------------------------------

    @app.post("/tasks", status_code=status.HTTP_201_CREATED)
    def create_task(body: TaskCreate) -> dict[str, Any]:
        task = orch.create_task(body.title, body.description, body.priority, body.metadata)
        return task.to_dict()

    @app.get("/tasks")
    def list_tasks(status: str | None = None, limit: int = 50) -> dict[str, Any]:
        tasks = [t.to_dict() for t in orch.tasks.list(status=status, limit=limit)]
        return {"tasks": tasks, "count": len(tasks)}

    @app.get("/tasks/{task_id}")
    def get_task(task_id: str) -> dict[str, Any]:
        return orch.tasks.require(task_id).to_dict()

    @app.post("/tasks/{task_id}/cancel")
    def cancel_task(task_id: str, body: CancelRequest | None = None) -> dict[str, Any]:
        return orch.machine.cancel_task(task_id, body.reason if body else None)

    @app.post("/tasks/{task_id}/archive")
    def archive_task(task_id: str) -> dict[str, Any]:
        return orch.machine.archive(task_id).to_dict()

    # -- delegation ----------------------------------------------------

    @app.get("/delegate/active")
    def active_delegations() -> dict[str, Any]:
        active = [d.to_dict() for d in orch.machine.active()]
        return {"delegations": active, "count": len(active)}

    @app.get("/delegate/capabilities")
    def capabilities() -> dict[str, Any]:
        agents = orch.machine.capabilities()
        return {"agents": agents, "count": len(agents)}

    @app.post("/delegate/{task_id}", status_code=status.HTTP_202_ACCEPTED)
    def delegate(task_id: str, body: DelegateRequest | None = None) -> dict[str, Any]:
        body = body or DelegateRequest()
        ack = orch.machine.delegate(
            task_id,
            force_agent=body.agent_name,
            model=body.model,
            provider=body.provider,
            autonomous=body.autonomous,
        )
        return ack.to_dict()

    @app.post("/delegate/{task_id}/classify")
    def classify(task_id: str) -> dict[str, Any]:
        return orch.machine.classify_preview(task_id).to_dict()

    @app.get("/delegate/{task_id}/delegations")
    def task_delegations(task_id: str) -> dict[str, Any]:
        history = [d.to_dict() for d in orch.machine.history(task_id)]
        return {"delegations": history, "count": len(history)}

    @app.post("/delegate/{task_id}/retry", status_code=status.HTTP_202_ACCEPTED)
    def retry(task_id: str, body: RetryRequest | None = None) -> dict[str, Any]:
        body = body or RetryRequest()
        ack = orch.machine.retry(
            task_id, force_agent=body.agent_name, model=body.model, provider=body.provider
        )
        return ack.to_dict()

    @app.post("/delegate/{task_id}/clarify", status_code=status.HTTP_202_ACCEPTED)
    def clarify(task_id: str, body: ClarifyRequest) -> dict[str, Any]:
        return orch.machine.clarify(task_id, body.answers).to_dict()

    @app.post("/delegate/{task_id}/delegate/chain")
    def delegate_chain(task_id: str, body: ChainRequest) -> dict[str, Any]:
        result = orch.machine.delegate_chain(
            task_id,
            body.agents,
            continue_on_error=body.continue_on_error,
            model=body.model,
            provider=body.provider,
        )
        return result.to_dict()

    @app.post("/delegate/{task_id}/delegate/parallel")
    def delegate_parallel(task_id: str, body: ParallelRequest) -> dict[str, Any]:
        result = orch.machine.delegate_parallel(
            task_id,
            body.agents,
            max_wait=body.max_wait,
            model=body.model,
            provider=body.provider,
        )
        return result.to_dict()

    @app.post("/delegations/{delegation_id}/approve")
    def approve_delegation(delegation_id: str) -> dict[str, Any]:
        return orch.machine.approve(delegation_id).to_dict()

    @app.post("/delegations/{delegation_id}/reject")
    def reject_delegation(delegation_id: str, body: RejectRequest | None = None) -> dict[str, Any]:
        return orch.machine.reject(delegation_id, body.reason if body else None).to_dict()

    # -- suggestions ---------------------------------------------------

    @app.post("/suggestions/ingest")
    def ingest(body: IngestRequest) -> JSONResponse:
        result = orch.suggestions.ingest(
            body.title,
            body.body,
            body.agent_name,
            confidence=body.confidence,
            tags=body.tags,
            metadata=body.metadata,
        )
        return JSONResponse(status_code=_INGEST_STATUS[result.outcome], content=result.to_dict())

    @app.get("/suggestions")
    def list_suggestions(
        status: str | None = None, agent: str | None = None
    ) -> dict[str, Any]:
        suggestions = [s.to_dict() for s in orch.suggestions.list_visible(status, agent)]
        return {"suggestions": suggestions, "count": len(suggestions)}

    @app.get("/suggestions/summary")
    def suggestion_summary(
        status: str | None = "pending", min_score: float | None = None
    ) -> dict[str, Any]:
        clusters = [c.to_dict() for c in orch.suggestions.summary(status, min_score)]
        return {"clusters": clusters, "count": len(clusters)}

    @app.get("/suggestions/stats")
    def suggestion_stats() -> dict[str, Any]:
        return orch.suggestions.stats()

    @app.post("/suggestions/cycle")
    def suggestion_cycle() -> dict[str, Any]:
        created = [s.to_dict() for s in orch.suggestions.run_cycle()]
        return {"created": created, "count": len(created)}

    @app.post("/suggestions/{suggestion_id}/approve")
    def approve_suggestion(suggestion_id: str) -> dict[str, Any]:
        return orch.suggestions.approve(suggestion_id).to_dict()

    @app.post("/suggestions/{suggestion_id}/accept")
    def accept_suggestion(
        suggestion_id: str, body: AcceptRequest | None = None
    ) -> dict[str, Any]:
        if body and (body.title or body.description or body.priority):
            result = orch.suggestions.edit_and_accept(
                suggestion_id, body.title, body.description, body.priority
            )
        else:
            result = orch.suggestions.accept(suggestion_id)
        return result.to_dict()

    @app.post("/suggestions/{suggestion_id}/reject")
    def reject_suggestion(
        suggestion_id: str, body: RejectRequest | None = None
    ) -> dict[str, Any]:
        return orch.suggestions.reject(suggestion_id, body.reason if body else None).to_dict()

    @app.post("/suggestions/{suggestion_id}/reply", status_code=status.HTTP_202_ACCEPTED)
    def reply_suggestion(suggestion_id: str, body: ReplyRequest) -> dict[str, Any]:
        return orch.suggestions.reply(suggestion_id, body.text).to_dict()

    @app.post("/suggestions/{suggestion_id}/save")
    def save_suggestion(suggestion_id: str) -> dict[str, Any]:
        return orch.suggestions.save(suggestion_id).to_dict()

    @app.post("/suggestions/{suggestion_id}/restore")
    def restore_suggestion(suggestion_id: str) -> dict[str, Any]:
        return orch.suggestions.restore(suggestion_id).to_dict()

    # -- workflows -----------------------------------------------------

    @app.get("/workflows")
    def list_workflows() -> dict[str, Any]:
        workflows = orch.workflow_loader.list_workflows()
        return {"workflows": workflows, "count": len(workflows)}

    @app.post("/workflows", status_code=status.HTTP_201_CREATED)
    def save_workflow(body: dict[str, Any]) -> dict[str, Any]:
        path = orch.workflow_loader.save_workflow(body)
        return {"name": body["name"], "path": str(path)}

    @app.get("/workflows/runs")
    def workflow_runs(workflow: str | None = None, limit: int = 50) -> dict[str, Any]:
        runs = [r.to_dict() for r in orch.workflow_runs.list(limit=limit, workflow_name=workflow)]
        return {"runs": runs, "count": len(runs)}

    @app.post("/workflows/run")
    def run_workflows(body: WorkflowRunRequest | None = None) -> dict[str, Any]:
        names = body.names if body else []
        if names:
            workflows = [orch.workflow_loader.read_workflow(name) for name in names]
        else:
            workflows = orch.workflow_loader.load_workflows()
        runs = [r.to_dict() for r in orch.workflows.run(workflows)]
        return {"runs": runs, "count": len(runs)}

    @app.patch("/workflows/{name}/auto")
    def set_workflow_auto(name: str, body: AutoRequest) -> dict[str, Any]:
        return orch.workflow_loader.set_auto(name, body.auto).summary()

    return app


@click.command()
@click.option("--port", default=3848, help="Port to listen on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
def main(port: int, host: str) -> None:
    """Start the Dispatcher API server."""
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    uvicorn.run(create_app(), host=host, port=port)
