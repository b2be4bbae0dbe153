"""Unit tests for workflow configuration."""

import os

import pytest
from pydantic import ValidationError

from src.workflow.config import WorkflowConfig, WorkflowSettings, get_settings
from src.workflow.events import EventSinkType


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep WORKFLOW_* variables from the host out of these tests."""
    for name in list(os.environ):
        if name.startswith("WORKFLOW_"):
            monkeypatch.delenv(name, raising=False)


class TestWorkflowConfig:

    def test_defaults(self):
        config = WorkflowConfig()

        assert config.analysis_timeout == 30.0
        assert config.resolution_timeout == 300.0
        assert config.review_timeout == 60.0
        assert config.pr_generation_timeout == 30.0
        assert config.max_workflow_time == 600.0
        assert config.retry_attempts == 2
        assert config.max_attempts == 3
        assert config.human_intervention_threshold == 3
        assert config.retry_policy.retryable_errors == []

    @pytest.mark.parametrize(
        "field,value",
        [
            ("analysis_timeout", 0),
            ("resolution_timeout", -1),
            ("max_workflow_time", 0),
            ("retry_attempts", -1),
            ("human_intervention_threshold", 0),
            ("min_analysis_confidence", 1.5),
            ("history_size", 0),
        ],
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            WorkflowConfig(**{field: value})

    def test_zero_retries_means_one_attempt(self):
        assert WorkflowConfig(retry_attempts=0).max_attempts == 1


class TestWorkflowSettings:

    def test_defaults(self):
        settings = get_settings()

        assert settings.event_sink_types == [EventSinkType.LOGGING, EventSinkType.METRICS]
        assert settings.log_level == "INFO"
        assert settings.port == 8080
        assert settings.issue_analyzer is None

    def test_reads_prefixed_environment(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_ANALYSIS_TIMEOUT", "12.5")
        monkeypatch.setenv("WORKFLOW_RETRY_ATTEMPTS", "4")
        monkeypatch.setenv("WORKFLOW_RETRYABLE_ERRORS", "Connection, rate*limit ,")
        monkeypatch.setenv("WORKFLOW_ISSUE_ANALYZER", "acme.agents:Analyzer")
        monkeypatch.setenv("WORKFLOW_LOG_LEVEL", "debug")

        settings = WorkflowSettings()

        assert settings.analysis_timeout == 12.5
        assert settings.retry_attempts == 4
        assert settings.issue_analyzer == "acme.agents:Analyzer"
        assert settings.log_level == "DEBUG"

        config = settings.to_workflow_config()
        assert config.analysis_timeout == 12.5
        assert config.max_attempts == 5
        assert config.retry_policy.retryable_errors == ["connection", "rate*limit"]

    def test_retry_policy_is_built(self):
        config = WorkflowSettings(
            retry_base_delay=0.5, retry_max_delay=4.0, retry_multiplier=3.0
        ).to_workflow_config()

        assert config.retry_policy.base_delay == 0.5
        assert config.retry_policy.max_delay == 4.0
        assert config.retry_policy.multiplier == 3.0

    @pytest.mark.parametrize(
        "field,value",
        [
            ("analysis_timeout", 0),
            ("retry_attempts", -2),
            ("human_intervention_threshold", 0),
            ("event_sinks", "logging,statsd"),
            ("log_level", "verbose"),
            ("port", 70000),
        ],
    )
    def test_invalid_settings(self, field, value):
        with pytest.raises(ValidationError):
            WorkflowSettings(**{field: value})

    def test_single_event_sink(self):
        assert WorkflowSettings(event_sinks="metrics").event_sink_types == [
            EventSinkType.METRICS
        ]

    def test_github_token_requires_repository(self):
        with pytest.raises(ValidationError):
            WorkflowSettings(github_token="ghp_x")

        settings = WorkflowSettings(
            github_token="ghp_x", github_owner="acme", github_repo="widgets"
        )
        assert settings.github_repo == "widgets"

    def test_custom_pr_generator_skips_github_checks(self):
        settings = WorkflowSettings(github_token="ghp_x", pr_generator="acme.prs:Generator")

        assert settings.github_owner == ""
