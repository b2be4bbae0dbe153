"""Workflow orchestrator for autonomous issue resolution.

Drives a GitHub issue through analysis, resolution, review and pull
request generation, providing:
- Per-stage timeouts and retries with exponential backoff
- An explicit workflow state machine with validated transitions
- Duplicate protection for issues already in progress
- Escalation to a human after repeated failures
- Workflow events for logging and Prometheus metrics
- A FastAPI service for submitting and inspecting workflows
"""
