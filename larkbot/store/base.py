"""Abstract base for job stores.

A store keeps job records plus two indexes: the pending queue (job id ->
enqueue timestamp, popped oldest first) and a per-user history list. It
holds no business logic beyond keeping those indexes consistent with each
job's status.
"""

import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from larkbot.errors import ValidationError
from larkbot.models import (
    COMPLETED,
    FAILED,
    PENDING,
    PROCESSING,
    QUESTIONING,
    QUEUED_STATUSES,
    Job,
)

CREATE_STATUSES = (PENDING, QUESTIONING)
CLAIMABLE_STATUSES = (PENDING, FAILED, COMPLETED)


def now_ms() -> int:
    return int(time.time() * 1000)


def new_job_id() -> str:
    return uuid.uuid4().hex


def in_queue(status: str) -> bool:
    """True for statuses whose jobs live in the pending queue index."""
    return status in QUEUED_STATUSES


class JobStore(ABC):
    """Durable job records, pending queue and user history.

    get/update/claim on an unknown id return None; callers treat that as a
    no-op signal.
    """

    def __init__(self, clock=now_ms) -> None:
        self._clock = clock

    def _build_job(self, fields: Dict[str, Any]) -> Job:
        status = fields.get("status", PENDING)
        if status not in CREATE_STATUSES:
            raise ValidationError(
                f"New jobs must be pending or questioning, got {status}",
                [{"path": "status", "message": "pending or questioning"}],
            )
        data = {k: v for k, v in fields.items() if k not in ("id", "created_at")}
        data["status"] = status
        return Job.model_validate({**data, "id": new_job_id(), "created_at": self._clock()})

    @staticmethod
    def _merge(job: Job, changes: Dict[str, Any]) -> Job:
        changes = {k: v for k, v in changes.items() if k not in ("id", "created_at")}
        return Job.model_validate({**job.model_dump(), **changes})

    @abstractmethod
    def create(self, **fields: Any) -> Job:
        """Persist a new job (assigns id and created_at).

        Enqueues it unless it is questioning and appends it to the user's
        history.
        """
        ...

    @abstractmethod
    def get(self, job_id: str) -> Job | None:
        """Load a job by id."""
        ...

    @abstractmethod
    def update(self, job_id: str, **changes: Any) -> Job | None:
        """Merge changes into the job.

        On a status change the job leaves the pending queue if it was
        pending/processing and re-enters it with a fresh score if the new
        status is pending.
        """
        ...

    @abstractmethod
    def list_for_user(self, user_id: str, limit: int = 10) -> List[Job]:
        """User's most recent jobs, newest first."""
        ...

    @abstractmethod
    def find_by_thread(self, thread_id: str) -> Job | None:
        """First job created in a chat thread, if any.

        Later jobs in the same thread do not replace it, so a reply in the
        thread always finds the job that asked the questions.
        """
        ...

    @abstractmethod
    def dequeue_oldest_pending(self) -> Job | None:
        """Atomically pop the oldest queue entry and mark that job processing.

        At most one concurrent caller receives a given job.
        """
        ...

    @abstractmethod
    def claim(self, job_id: str) -> Job | None:
        """Take a specific job for processing outside the queue order.

        Pending jobs are removed from the queue atomically (None if another
        caller got there first); failed/completed jobs are taken as is.
        Questioning and processing jobs are not claimable.
        """
        ...

    @abstractmethod
    def pending_count(self) -> int:
        """Number of entries in the pending queue."""
        ...

    def _processing_changes(self, job: Job | None = None) -> Dict[str, Any]:
        changes: Dict[str, Any] = {"status": PROCESSING, "started_at": self._clock()}
        if job is not None and job.status in (COMPLETED, FAILED):
            # Re-running a finished job: the old outcome no longer applies
            changes.update(result=None, completed_at=None)
        return changes
