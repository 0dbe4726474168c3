"""Input checks for chat messages, branch specs, repository URLs and file paths.

Raises larkbot.errors.ValidationError; nothing here touches the job store.
"""

import re
from typing import NamedTuple

from larkbot.errors import ValidationError

MAX_MESSAGE_LENGTH = 10000
MAX_BRANCH_LENGTH = 255
MAX_PATH_LENGTH = 500

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_BRANCH_SPEC_RE = re.compile(r"^branch:\s*(\S+)\s+(.+)", re.IGNORECASE | re.DOTALL)
_BRANCH_NAME_RE = re.compile(r"^[\w./-]+$")
_HELP_RE = re.compile(r"^\s*(help|about|usage|\?)\s*$", re.IGNORECASE)
_LIST_RE = re.compile(r"^\s*(jobs|list|status)\s*$", re.IGNORECASE)
_REPO_URL_PATTERNS = [
    re.compile(r"^https://github\.com/([\w.-]+)/([\w.-]+?)(?:\.git)?/?$"),
    re.compile(r"^git@github\.com:([\w.-]+)/([\w.-]+?)(?:\.git)?$"),
]


class BranchSpec(NamedTuple):
    """Instruction split into target branch and remaining text."""

    branch: str | None
    message: str
    mode: str


def sanitize_message(text: str | None) -> str:
    """Strip control characters (keeps newlines and tabs) and surrounding whitespace."""
    if text is None:
        raise ValidationError("Message must not be empty", [{"path": "message", "message": "required"}])
    cleaned = _CONTROL_CHARS_RE.sub("", text).strip()
    if not cleaned:
        raise ValidationError("Message must not be empty", [{"path": "message", "message": "empty"}])
    if len(cleaned) > MAX_MESSAGE_LENGTH:
        raise ValidationError(
            f"Message must be at most {MAX_MESSAGE_LENGTH} characters",
            [{"path": "message", "message": "too long"}],
        )
    return cleaned


def is_help_request(text: str) -> bool:
    return bool(_HELP_RE.match(text or ""))


def is_list_request(text: str) -> bool:
    return bool(_LIST_RE.match(text or ""))


def check_branch_name(name: str) -> str:
    """Return name if it is a usable git branch name."""
    if not name or len(name) > MAX_BRANCH_LENGTH:
        raise ValidationError(
            "Branch name must be 1-255 characters",
            [{"path": "branch", "message": "length"}],
        )
    if not _BRANCH_NAME_RE.match(name) or name.startswith("/") or name.endswith("/") or ".." in name:
        raise ValidationError(
            f"Invalid branch name: {name}",
            [{"path": "branch", "message": "letters, digits, '-', '_', '.', '/' only"}],
        )
    return name


def parse_branch_spec(text: str) -> BranchSpec:
    """Split 'branch: feature-x do something' into (feature-x, 'do something', update-branch).

    Without the prefix the whole text is the instruction and a new PR is created.
    """
    m = _BRANCH_SPEC_RE.match(text)
    if not m:
        return BranchSpec(branch=None, message=text, mode="create-pr")
    return BranchSpec(branch=check_branch_name(m.group(1)), message=m.group(2).strip(), mode="update-branch")


def parse_repo_url(repo_url: str) -> str:
    """Return 'owner/repo' for a GitHub https or ssh URL."""
    for pattern in _REPO_URL_PATTERNS:
        m = pattern.match((repo_url or "").strip())
        if m:
            return f"{m.group(1)}/{m.group(2)}"
    raise ValidationError(
        f"Invalid GitHub repository URL: {repo_url}",
        [{"path": "repo_url", "message": "expected github.com/owner/repo"}],
        {"url": repo_url},
    )


def check_file_path(path: str) -> str:
    """Reject absolute paths and path traversal in planner-produced file paths."""
    if not path or len(path) > MAX_PATH_LENGTH:
        raise ValueError("file path must be 1-500 characters")
    if ".." in path.split("/"):
        raise ValueError("path traversal is not allowed")
    if path.startswith("/"):
        raise ValueError("path must be relative")
    return path
