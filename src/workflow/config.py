"""Workflow configuration.

This module defines two layers of configuration:
- WorkflowConfig: Validated runtime policy handed to the orchestrator
  (timeouts, retry budget, escalation threshold, feasibility policy)
- WorkflowSettings: Service configuration read from environment variables
  with the WORKFLOW_ prefix, which builds a WorkflowConfig

All durations are in seconds.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.workflow.events.emitter import EventSinkType
from src.workflow.executor import RetryPolicy


class WorkflowConfig(BaseModel):
    """Runtime policy for the workflow orchestrator.

    Attributes:
        analysis_timeout: Per-attempt timeout for issue analysis.
        resolution_timeout: Per-attempt timeout for resolution.
        review_timeout: Per-attempt timeout for code review.
        pr_generation_timeout: Per-attempt timeout for PR generation.
        max_workflow_time: Upper bound on a whole workflow.
        retry_attempts: Retries per stage after the first attempt.
        human_intervention_threshold: Consecutive stage failures that
            escalate a workflow.
        retry_policy: Backoff and retryable-error configuration.
        min_analysis_confidence: Analyses below this confidence are
            treated as not feasible.
        reject_critical_complexity: Treat critical-complexity analyses as
            not feasible.
        history_size: Completed workflows kept in memory.
    """

    analysis_timeout: float = Field(default=30.0, gt=0)
    resolution_timeout: float = Field(default=300.0, gt=0)
    review_timeout: float = Field(default=60.0, gt=0)
    pr_generation_timeout: float = Field(default=30.0, gt=0)
    max_workflow_time: float = Field(default=600.0, gt=0)

    retry_attempts: int = Field(default=2, ge=0)
    human_intervention_threshold: int = Field(default=3, ge=1)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)

    min_analysis_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reject_critical_complexity: bool = Field(default=False)

    history_size: int = Field(default=1000, ge=1)

    @property
    def max_attempts(self) -> int:
        """Attempts per stage, the first one included."""
        return self.retry_attempts + 1


class WorkflowSettings(BaseSettings):
    """Workflow service configuration from environment variables.

    All environment variables are prefixed with WORKFLOW_ (e.g.,
    WORKFLOW_GITHUB_TOKEN).

    Collaborators are referenced by import path in "module:attribute"
    form. The attribute may be a class or a zero-argument factory.
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Orchestration policy
    # -------------------------------------------------------------------------
    analysis_timeout: float = 30.0
    resolution_timeout: float = 300.0
    review_timeout: float = 60.0
    pr_generation_timeout: float = 30.0
    max_workflow_time: float = 600.0
    retry_attempts: int = 2
    human_intervention_threshold: int = 3

    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_multiplier: float = 2.0
    # Comma-separated exception message patterns; empty retries everything
    retryable_errors: str = ""

    min_analysis_confidence: float = 0.0
    reject_critical_complexity: bool = False
    history_size: int = 1000

    # -------------------------------------------------------------------------
    # Collaborators
    # -------------------------------------------------------------------------
    issue_analyzer: Optional[str] = None
    autonomous_resolver: Optional[str] = None
    code_reviewer: Optional[str] = None
    # Falls back to the GitHub PR generator when unset
    pr_generator: Optional[str] = None

    # -------------------------------------------------------------------------
    # GitHub Configuration
    # -------------------------------------------------------------------------
    github_token: str = ""
    github_base_url: str = "https://api.github.com"
    github_owner: str = ""
    github_repo: str = ""
    github_base_branch: str = "main"

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------
    # Comma-separated event sink names (logging, metrics)
    event_sinks: str = "logging,metrics"
    json_logs: bool = True
    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator(
        "analysis_timeout",
        "resolution_timeout",
        "review_timeout",
        "pr_generation_timeout",
        "max_workflow_time",
    )
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate that timeouts are positive."""
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:
        if v < 0:
            raise ValueError("retry_attempts cannot be negative")
        return v

    @field_validator("human_intervention_threshold")
    @classmethod
    def validate_threshold(cls, v: int) -> int:
        if v < 1:
            raise ValueError("human_intervention_threshold must be at least 1")
        return v

    @field_validator("event_sinks")
    @classmethod
    def validate_event_sinks(cls, v: str) -> str:
        """Validate that every configured sink is known."""
        known = {sink.value for sink in EventSinkType}
        for name in _split_csv(v):
            if name not in known:
                raise ValueError(f"unknown event sink: {name}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"invalid log level: {v}")
        return level

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @model_validator(mode="after")
    def validate_github(self) -> "WorkflowSettings":
        """The built-in PR generator needs a token and a repository."""
        if self.pr_generator is None and self.github_token:
            if not self.github_owner or not self.github_repo:
                raise ValueError(
                    "github_owner and github_repo are required with github_token"
                )
        return self

    @property
    def event_sink_types(self) -> List[EventSinkType]:
        return [EventSinkType(name) for name in _split_csv(self.event_sinks)]

    def to_workflow_config(self) -> WorkflowConfig:
        """Build the orchestrator's runtime policy from these settings."""
        return WorkflowConfig(
            analysis_timeout=self.analysis_timeout,
            resolution_timeout=self.resolution_timeout,
            review_timeout=self.review_timeout,
            pr_generation_timeout=self.pr_generation_timeout,
            max_workflow_time=self.max_workflow_time,
            retry_attempts=self.retry_attempts,
            human_intervention_threshold=self.human_intervention_threshold,
            retry_policy=RetryPolicy(
                base_delay=self.retry_base_delay,
                max_delay=self.retry_max_delay,
                multiplier=self.retry_multiplier,
                retryable_errors=_split_csv(self.retryable_errors),
            ),
            min_analysis_confidence=self.min_analysis_confidence,
            reject_critical_complexity=self.reject_critical_complexity,
            history_size=self.history_size,
        )


def _split_csv(value: str) -> List[str]:
    return [part.strip().lower() for part in value.split(",") if part.strip()]


def get_settings() -> WorkflowSettings:
    """Create and return a WorkflowSettings instance.

    Raises:
        pydantic.ValidationError: If a field is invalid.
    """
    return WorkflowSettings()
