"""Error taxonomy shared by the orchestrator and its collaborators.

Collaborators (planner, applier, notifier, store) raise these at their
boundary; the orchestrator decides between retry, terminal failure and no-op
from ``retryable`` alone.
"""

from typing import Any, Dict, List


class BotError(Exception):
    """Base class for all bot errors."""

    code = "BOT_ERROR"
    retryable = False

    def __init__(self, message: str, context: Dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, "details": self.context}


class ValidationError(BotError):
    """Bad input shape; rejected before a job is created."""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        errors: List[Dict[str, str]] | None = None,
        context: Dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, context)
        self.errors = errors or []


class ConfigurationError(BotError):
    """Missing or rejected credentials. Cannot self-heal, never retried."""

    code = "CONFIG_ERROR"


class TransportError(BotError):
    """Network or HTTP failure talking to a collaborator."""

    code = "TRANSPORT_ERROR"
    retryable = True

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        context: Dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, {**(context or {}), "status_code": status_code})
        self.status_code = status_code


class ParseError(BotError):
    """AI response does not match the expected structure. A re-prompt may succeed."""

    code = "PARSE_ERROR"
    retryable = True

    def __init__(self, message: str, raw_content: str | None = None) -> None:
        super().__init__(message, {"raw_content": (raw_content or "")[:500]})


class RateLimitError(BotError):
    """Explicit backoff signal from a collaborator."""

    code = "RATE_LIMIT_EXCEEDED"
    retryable = True

    def __init__(self, service: str, retry_after: float | None = None) -> None:
        super().__init__(
            f"{service} API rate limit exceeded",
            {"service": service, "retry_after": retry_after},
        )
        self.service = service
        self.retry_after = retry_after


class ConflictError(BotError):
    """Source-control merge conflict. Terminal, shown separately from other failures."""

    code = "MERGE_CONFLICT"

    def __init__(self, conflicting_files: List[str] | None = None) -> None:
        files = list(conflicting_files or [])
        super().__init__(
            f"Merge conflicts detected. Conflicting files: {', '.join(files) or 'unknown'}",
            {"conflicting_files": files},
        )
        self.conflicting_files = files


class NotFoundError(BotError):
    """Referenced job or branch is absent."""

    code = "NOT_FOUND"


class BranchNotFoundError(NotFoundError):
    code = "BRANCH_NOT_FOUND"

    def __init__(self, branch: str, repo: str) -> None:
        super().__init__(
            f"Branch '{branch}' does not exist in repository '{repo}'",
            {"branch": branch, "repo": repo},
        )
        self.branch = branch
        self.repo = repo


class JobNotFoundError(NotFoundError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}", {"job_id": job_id})
        self.job_id = job_id


def is_retryable(exc: BaseException) -> bool:
    """True if the failure may go away on a later attempt.

    Unclassified exceptions count as retryable.
    """
    if isinstance(exc, BotError):
        return exc.retryable
    return True


def retry_after_of(exc: BaseException) -> float | None:
    """Suggested delay in seconds carried by a rate-limit error, if any."""
    if isinstance(exc, RateLimitError):
        return exc.retry_after
    return None
