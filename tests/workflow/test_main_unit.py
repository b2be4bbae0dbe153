"""Unit tests for the workflow service endpoints and wiring."""

import math
import time
from collections import OrderedDict
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from src.workflow import main
from src.workflow.collaborators import (
    GitHubPRGenerator,
    IssueAnalysis,
    PullRequest,
    ResolutionResult,
    ReviewResult,
)
from src.workflow.config import WorkflowConfig, WorkflowSettings
from src.workflow.events import LoggingEventEmitter
from src.workflow.executor import RetryPolicy
from src.workflow.github import GitHubClient
from src.workflow.orchestrator import WorkflowOrchestrator
from src.workflow.state import WorkflowRecord


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def collaborators():
    mock = AsyncMock()
    mock.analyze_issue.return_value = IssueAnalysis(feasible=True, confidence=0.9)
    mock.resolve_issue.return_value = ResolutionResult(success=True)
    mock.review_changes.return_value = ReviewResult(approved=True, score=0.9)
    mock.create_pull_request.return_value = PullRequest(
        number=8, title="Fix #5", url="https://github.com/acme/widgets/pull/8"
    )
    return mock


@pytest.fixture
def orchestrator(collaborators):
    return WorkflowOrchestrator(
        issue_analyzer=collaborators,
        autonomous_resolver=collaborators,
        code_reviewer=collaborators,
        pr_generator=collaborators,
        config=WorkflowConfig(retry_policy=RetryPolicy(base_delay=0, max_delay=0)),
    )


@pytest.fixture
def client(orchestrator):
    app = main.create_app(orchestrator, metrics_registry=CollectorRegistry())
    with TestClient(app) as test_client:
        yield test_client


def _wait_for_completion(client: TestClient, issue_number: int, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        response = client.get(f"/workflows/{issue_number}")
        if response.status_code == 200 and not response.json()["active"]:
            return response.json()["workflow"]
        time.sleep(0.01)
    raise AssertionError(f"workflow for issue #{issue_number} did not finish")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


class TestSubmitWorkflow:

    def test_accepts_and_runs_in_background(self, client):
        response = client.post("/workflows", json={"issue_number": 5, "title": "Crash"})

        assert response.status_code == 202
        assert response.json() == {"status": "accepted", "issue_number": 5}

        workflow = _wait_for_completion(client, 5)
        assert workflow["final_state"] == "completed"
        assert workflow["outcome"] == "pr_created"
        assert workflow["success"] is True

        completed = client.get("/workflows/completed").json()
        assert [w["issue_number"] for w in completed] == [5]

    @pytest.mark.parametrize(
        "payload",
        [{"issue_number": 0}, {"issue_number": -4}, {"title": "no number"}, {"issue_number": "x"}],
    )
    def test_invalid_payload(self, client, payload):
        assert client.post("/workflows", json=payload).status_code == 422

    def test_duplicate_is_conflict(self, client, orchestrator):
        orchestrator.registry.register(WorkflowRecord(issue_number=9))

        response = client.post("/workflows", json={"issue_number": 9})

        assert response.status_code == 409
        assert "#9" in response.json()["detail"]


class TestInspectWorkflows:

    def test_active_workflow(self, client, orchestrator):
        record = WorkflowRecord(issue_number=11, title="Slow page")
        orchestrator.registry.register(record)

        active = client.get("/workflows/active").json()
        single = client.get("/workflows/11").json()

        assert [w["workflow_id"] for w in active] == [record.workflow_id]
        assert active[0]["state"] == "pending"
        assert single["active"] is True
        assert single["workflow"]["cancel_requested"] is False

    def test_unknown_workflow(self, client):
        response = client.get("/workflows/404")

        assert response.status_code == 404
        assert response.json()["detail"] == "No workflow for issue #404"

    def test_completed_limit_is_validated(self, client):
        assert client.get("/workflows/completed?limit=0").status_code == 422


class TestCancelWorkflow:

    def test_cancel_active_workflow(self, client, orchestrator):
        record = WorkflowRecord(issue_number=12)
        orchestrator.registry.register(record)

        response = client.delete("/workflows/12")

        assert response.status_code == 202
        assert response.json() == {"status": "cancelling", "issue_number": 12}
        assert record.cancel_reason == "Cancelled via API"
        assert client.get("/workflows/12").json()["workflow"]["cancel_requested"] is True

    def test_cancel_unknown_workflow(self, client):
        assert client.delete("/workflows/12").status_code == 404


class TestHealthAndMetrics:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["statistics"]["total_workflows"] == 0

    def test_metrics(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


class TestLoadCollaborator:

    def test_class_is_instantiated(self):
        assert isinstance(main.load_collaborator("collections:OrderedDict"), OrderedDict)

    def test_non_callable_is_returned(self):
        assert main.load_collaborator("math:pi") == math.pi

    @pytest.mark.parametrize("path", ["collections", "collections:", ":OrderedDict"])
    def test_malformed_path(self, path):
        with pytest.raises(ValueError):
            main.load_collaborator(path)

    def test_missing_attribute(self):
        with pytest.raises(AttributeError):
            main.load_collaborator("collections:NoSuchThing")


class TestBuildOrchestrator:

    def _settings(self, **overrides) -> WorkflowSettings:
        values = dict(
            issue_analyzer="unittest.mock:AsyncMock",
            autonomous_resolver="unittest.mock:AsyncMock",
            code_reviewer="unittest.mock:AsyncMock",
            event_sinks="logging",
            retry_attempts=4,
        )
        values.update(overrides)
        return WorkflowSettings(**values)

    def test_missing_collaborators(self):
        with pytest.raises(RuntimeError) as exc_info:
            main.build_orchestrator(WorkflowSettings())

        assert "WORKFLOW_ISSUE_ANALYZER" in str(exc_info.value)

    def test_missing_pr_generator(self):
        with pytest.raises(RuntimeError):
            main.build_orchestrator(self._settings())

    def test_custom_pr_generator(self):
        orchestrator, github_client = main.build_orchestrator(
            self._settings(pr_generator="unittest.mock:AsyncMock")
        )

        assert github_client is None
        assert isinstance(orchestrator.pr_generator, AsyncMock)
        assert orchestrator.config.retry_attempts == 4
        assert isinstance(orchestrator.event_emitter, LoggingEventEmitter)

    def test_github_pr_generator(self):
        orchestrator, github_client = main.build_orchestrator(
            self._settings(
                github_token="ghp_x", github_owner="acme", github_repo="widgets"
            )
        )

        assert isinstance(github_client, GitHubClient)
        assert isinstance(orchestrator.pr_generator, GitHubPRGenerator)
        assert orchestrator.pr_generator.client is github_client
        assert orchestrator.pr_generator.repo == "widgets"

    def test_lifespan_builds_from_environment(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_ISSUE_ANALYZER", "unittest.mock:AsyncMock")
        monkeypatch.setenv("WORKFLOW_AUTONOMOUS_RESOLVER", "unittest.mock:AsyncMock")
        monkeypatch.setenv("WORKFLOW_CODE_REVIEWER", "unittest.mock:AsyncMock")
        monkeypatch.setenv("WORKFLOW_PR_GENERATOR", "unittest.mock:AsyncMock")
        monkeypatch.setenv("WORKFLOW_EVENT_SINKS", "logging")
        monkeypatch.setattr(main, "configure_logging", MagicMock())

        app = main.create_app(metrics_registry=CollectorRegistry())
        with TestClient(app) as test_client:
            assert isinstance(app.state.orchestrator, WorkflowOrchestrator)
            assert test_client.get("/health").status_code == 200

        main.configure_logging.assert_called_once_with("INFO", True)

    def test_redact_secret(self):
        assert main._redact_secret("ghp_abcdef") == "ghp_******"
        assert main._redact_secret("abc") == "***"
