"""FastAPI application exposing the workflow orchestrator.

Endpoints:
- POST /workflows: Submit an issue; the workflow runs in the background
- GET /workflows/active: Workflows currently in flight
- GET /workflows/completed: Recently finished workflows
- GET /workflows/{issue_number}: Active or most recent workflow for an issue
- DELETE /workflows/{issue_number}: Cancel an active workflow
- GET /health: Health verdict derived from workflow statistics
- GET /metrics: Prometheus metrics

When create_app() is not handed an orchestrator, the lifespan builds one
from WorkflowSettings, importing the configured collaborators.
"""

import asyncio
import importlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from fastapi import FastAPI, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry
from pydantic import BaseModel, Field

from src.workflow.collaborators.github import GitHubPRGenerator
from src.workflow.config import WorkflowSettings, get_settings
from src.workflow.errors import DuplicateWorkflowError, WorkflowNotFoundError
from src.workflow.events.emitter import create_event_emitter
from src.workflow.events.metrics import generate_metrics_output
from src.workflow.github.client import GitHubClient
from src.workflow.logging_config import configure_logging
from src.workflow.orchestrator import WorkflowOrchestrator
from src.workflow.state.history import CompletedWorkflow
from src.workflow.state.models import WorkflowRecord, WorkflowState


logger = logging.getLogger(__name__)


class WorkflowRequest(BaseModel):
    """Body of POST /workflows."""

    issue_number: int = Field(..., gt=0)
    title: str = Field(default="")
    body: str = Field(default="")


class WorkflowSummary(BaseModel):
    """Operator view of an in-flight workflow."""

    issue_number: int
    workflow_id: str
    state: WorkflowState
    started_at: datetime
    elapsed: float
    attempt_counts: Dict[str, int]
    consecutive_failures: int
    cancel_requested: bool

    @classmethod
    def from_record(cls, record: WorkflowRecord) -> "WorkflowSummary":
        return cls(
            issue_number=record.issue_number,
            workflow_id=record.workflow_id,
            state=record.state,
            started_at=record.started_at,
            elapsed=record.elapsed,
            attempt_counts=dict(record.attempt_counts),
            consecutive_failures=record.consecutive_failures,
            cancel_requested=record.cancel_reason is not None,
        )


def _redact_secret(value: str, visible_chars: int = 4) -> str:
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: WorkflowSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info(
        "Workflow configuration",
        extra={
            "analysis_timeout": settings.analysis_timeout,
            "resolution_timeout": settings.resolution_timeout,
            "review_timeout": settings.review_timeout,
            "pr_generation_timeout": settings.pr_generation_timeout,
            "max_workflow_time": settings.max_workflow_time,
            "retry_attempts": settings.retry_attempts,
            "human_intervention_threshold": settings.human_intervention_threshold,
            "issue_analyzer": settings.issue_analyzer,
            "autonomous_resolver": settings.autonomous_resolver,
            "code_reviewer": settings.code_reviewer,
            "pr_generator": settings.pr_generator or "github",
            "github_base_url": settings.github_base_url,
            "github_token": _redact_secret(settings.github_token),
            "github_repository": f"{settings.github_owner}/{settings.github_repo}",
            "event_sinks": settings.event_sinks,
        },
    )


def load_collaborator(path: str) -> Any:
    """Import and instantiate a collaborator from a "module:attribute" path.

    The attribute may be a class or a zero-argument factory; an object that
    is not callable is used as is.

    Raises:
        ValueError: If the path is malformed.
        ImportError: If the module cannot be imported.
        AttributeError: If the attribute does not exist.
    """
    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"collaborator path must be 'module:attribute', got {path!r}")
    target = getattr(importlib.import_module(module_name), attribute)
    return target() if callable(target) else target


def build_orchestrator(
    settings: WorkflowSettings,
) -> Tuple[WorkflowOrchestrator, Optional[GitHubClient]]:
    """Wire a WorkflowOrchestrator from settings.

    Returns:
        The orchestrator and the GitHub client it owns, if any.

    Raises:
        RuntimeError: If a required collaborator is not configured.
    """
    missing = [
        name
        for name in ("issue_analyzer", "autonomous_resolver", "code_reviewer")
        if not getattr(settings, name)
    ]
    if missing:
        env_names = ", ".join(f"WORKFLOW_{name.upper()}" for name in missing)
        raise RuntimeError(f"Collaborators not configured: {env_names}")

    github_client: Optional[GitHubClient] = None
    if settings.pr_generator:
        pr_generator = load_collaborator(settings.pr_generator)
    elif settings.github_token:
        github_client = GitHubClient(
            token=settings.github_token,
            base_url=settings.github_base_url,
        )
        pr_generator = GitHubPRGenerator(
            client=github_client,
            owner=settings.github_owner,
            repo=settings.github_repo,
            base_branch=settings.github_base_branch,
        )
    else:
        raise RuntimeError(
            "Collaborators not configured: WORKFLOW_PR_GENERATOR or WORKFLOW_GITHUB_TOKEN"
        )

    orchestrator = WorkflowOrchestrator(
        issue_analyzer=load_collaborator(settings.issue_analyzer),
        autonomous_resolver=load_collaborator(settings.autonomous_resolver),
        code_reviewer=load_collaborator(settings.code_reviewer),
        pr_generator=pr_generator,
        config=settings.to_workflow_config(),
        event_emitter=create_event_emitter(settings.event_sink_types),
    )
    return orchestrator, github_client


def create_app(
    orchestrator: Optional[WorkflowOrchestrator] = None,
    metrics_registry: Optional[CollectorRegistry] = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        orchestrator: Orchestrator to serve. Built from settings at
            startup when None.
        metrics_registry: Prometheus registry rendered at /metrics. The
            default registry when None.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        github_client: Optional[GitHubClient] = None

        if app.state.orchestrator is None:
            settings = get_settings()
            configure_logging(settings.log_level, settings.json_logs)
            logger.info("Workflow service starting up")
            _log_configuration(settings)
            app.state.orchestrator, github_client = build_orchestrator(settings)

        logger.info("Workflow service started")

        yield

        logger.info("Workflow service shutting down")

        tasks: Set[asyncio.Task] = app.state.tasks
        for task in list(tasks):
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await app.state.orchestrator.event_emitter.close()
        if github_client is not None:
            await github_client.close()

        logger.info("Workflow service shutdown complete")

    app = FastAPI(
        title="Issue Workflow Orchestrator",
        description="Drives issues through analysis, resolution, review and PR generation",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.metrics_registry = metrics_registry
    app.state.tasks = set()

    def get_orchestrator(request: Request) -> WorkflowOrchestrator:
        current = request.app.state.orchestrator
        if current is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Orchestrator not initialized",
            )
        return current

    @app.post("/workflows", status_code=status.HTTP_202_ACCEPTED)
    async def submit_workflow(payload: WorkflowRequest, request: Request):
        """Start a workflow for an issue in the background.

        Responds 409 when the issue already has an active workflow.
        """
        current = get_orchestrator(request)
        if payload.issue_number in current.registry:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=str(DuplicateWorkflowError(payload.issue_number)),
            )

        task = asyncio.create_task(
            current.process_issue(payload.issue_number, payload.title, payload.body)
        )
        tasks: Set[asyncio.Task] = request.app.state.tasks
        tasks.add(task)
        task.add_done_callback(tasks.discard)

        # Let the task run up to registration so duplicates surface here
        await asyncio.sleep(0)
        if task.done() and not task.cancelled():
            exc = task.exception()
            if isinstance(exc, DuplicateWorkflowError):
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))

        return {"status": "accepted", "issue_number": payload.issue_number}

    @app.get("/workflows/active", response_model=List[WorkflowSummary])
    async def active_workflows(request: Request):
        current = get_orchestrator(request)
        return [WorkflowSummary.from_record(r) for r in current.get_active_workflows()]

    @app.get("/workflows/completed", response_model=List[CompletedWorkflow])
    async def completed_workflows(
        request: Request,
        limit: Optional[int] = Query(default=None, ge=1),
    ):
        return get_orchestrator(request).get_completed_workflows(limit)

    @app.get("/workflows/{issue_number}")
    async def get_workflow(issue_number: int, request: Request):
        """Return the active workflow for an issue, or its most recent result."""
        try:
            workflow = get_orchestrator(request).get_workflow(issue_number)
        except WorkflowNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))

        if isinstance(workflow, WorkflowRecord):
            return {
                "active": True,
                "workflow": WorkflowSummary.from_record(workflow).model_dump(mode="json"),
            }
        return {"active": False, "workflow": workflow.model_dump(mode="json")}

    @app.delete("/workflows/{issue_number}", status_code=status.HTTP_202_ACCEPTED)
    async def cancel_workflow(issue_number: int, request: Request):
        current = get_orchestrator(request)
        if not current.cancel_workflow(issue_number, "Cancelled via API"):
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"No active workflow for issue #{issue_number}",
            )
        return {"status": "cancelling", "issue_number": issue_number}

    @app.get("/health")
    async def health(request: Request):
        """Liveness endpoint carrying the workflow health verdict."""
        return get_orchestrator(request).get_system_health().model_dump(mode="json")

    @app.get("/metrics")
    async def metrics(request: Request):
        """Prometheus metrics endpoint."""
        return Response(
            content=generate_metrics_output(request.app.state.metrics_registry),
            media_type=CONTENT_TYPE_LATEST,
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.workflow.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
    )
