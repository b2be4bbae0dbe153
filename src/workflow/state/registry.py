"""Registry of in-flight workflows.

The registry maps issue numbers to the record of the workflow currently
processing them. It is the single source of truth for which issues are
in flight and the guard against duplicate submissions.

All operations are synchronous and complete under a lock that is never
held across an ``await``, so registration and eviction are atomic with
respect to every other coroutine and thread.
"""

import logging
import threading
from typing import Dict, List, Optional

from src.workflow.errors import DuplicateWorkflowError
from src.workflow.state.models import WorkflowRecord


logger = logging.getLogger(__name__)


class ActiveWorkflowRegistry:
    """Mapping of issue number to the active WorkflowRecord."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[int, WorkflowRecord] = {}

    def register(self, record: WorkflowRecord) -> None:
        """Register a record as the active workflow for its issue.

        Raises:
            DuplicateWorkflowError: If the issue already has an active
                workflow.
        """
        with self._lock:
            if record.issue_number in self._records:
                raise DuplicateWorkflowError(record.issue_number)
            self._records[record.issue_number] = record

        logger.debug(
            "Registered workflow",
            extra={
                "issue_number": record.issue_number,
                "workflow_id": record.workflow_id,
            },
        )

    def deregister(self, issue_number: int, workflow_id: Optional[str] = None) -> bool:
        """Remove the active workflow for an issue.

        Calling this for an issue that is not registered is a no-op.

        Args:
            issue_number: The issue to evict.
            workflow_id: When given, only evict if the registered record
                has this id, so a finished run never evicts a newer one.

        Returns:
            True if a record was removed.
        """
        with self._lock:
            record = self._records.get(issue_number)
            if record is None:
                return False
            if workflow_id is not None and record.workflow_id != workflow_id:
                return False
            del self._records[issue_number]

        logger.debug(
            "Deregistered workflow",
            extra={"issue_number": issue_number, "workflow_id": record.workflow_id},
        )
        return True

    def get(self, issue_number: int) -> Optional[WorkflowRecord]:
        with self._lock:
            return self._records.get(issue_number)

    def get_active_workflows(self) -> List[WorkflowRecord]:
        """Return a snapshot of the active records."""
        with self._lock:
            return list(self._records.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, issue_number: object) -> bool:
        with self._lock:
            return issue_number in self._records
