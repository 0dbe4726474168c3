"""Abstract base class for change appliers (source-control hosts)."""

from abc import ABC, abstractmethod
from typing import Any, Dict

from larkbot.models import ApplyOutcome, ChangeSet


class ChangeApplier(ABC):
    """Applies a change-set to a hosted repository as a branch + pull request."""

    @abstractmethod
    def apply(
        self,
        repo_url: str,
        change_set: ChangeSet,
        target_branch: str | None,
        mode: str,
    ) -> ApplyOutcome:
        """Commit the change-set upstream.

        mode "create-pr": new branch from target_branch, then a pull request.
        mode "update-branch": commit onto target_branch; open a pull request
        only if none is open for it, else comment on the existing one.

        Raises:
            ConflictError: the change would conflict with the base branch
            BranchNotFoundError: update-branch target does not exist
            ConfigurationError: missing or rejected credentials
            TransportError, RateLimitError: transient failures
        """
        pass

    def fetch_repository_files(
        self,
        repo_url: str,
        branch: str | None = None,
        max_files: int = 20,
    ) -> Dict[str, str]:
        """Return a small snapshot (path -> content) of source files for planner context."""
        return {}

    def quota_status(self) -> Dict[str, Any] | None:
        """Remaining API quota of the host, None when it is not tracked."""
        return None
