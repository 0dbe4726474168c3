"""GitHub REST API change applier."""

import base64
import logging
import re
import time
from typing import Any, Callable, Dict, List

import requests

from larkbot.applier.base import ChangeApplier
from larkbot.applier.rate_limit import GitHubRateLimit
from larkbot.errors import (
    BotError,
    BranchNotFoundError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    RateLimitError,
    TransportError,
)
from larkbot.models import MODE_CREATE_PR, MODE_UPDATE_BRANCH, ApplyOutcome, ChangeSet, FileChange
from larkbot.validation import parse_repo_url

BRANCH_PREFIX = "ai/changes-"
MAX_FILE_CHARS = 50000

LOG = logging.getLogger("larkbot.applier.github")

IGNORE_DIRS = ("node_modules", "dist", "build", ".next", ".nuxt", "target", "coverage", ".git", ".vscode", ".idea")
IGNORE_SUFFIXES = (
    ".log", ".lock", ".min.js", ".min.css", ".png", ".jpg", ".jpeg", ".gif",
    ".svg", ".ico", ".pdf", ".zip", ".tar", ".gz",
)  # fmt: skip
IGNORE_NAMES = ("package-lock.json", "yarn.lock", "pnpm-lock.yaml", ".ds_store")
ALLOWED_SUFFIXES = (
    ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".py", ".rb", ".go", ".rs",
    ".java", ".kt", ".swift", ".cpp", ".c", ".h", ".cs", ".php", ".html", ".css",
    ".scss", ".less", ".json", ".yaml", ".yml", ".toml", ".md", ".txt", ".sh",
    ".bash", ".zsh", ".fish", ".env", ".example", ".gitignore", ".dockerfile",
)  # fmt: skip
ALLOWED_NAMES = ("dockerfile", "makefile", "cmakelists")
_COMMON_DIR_RE = re.compile(r"^(src|lib|app)/")


def to_base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    out = []
    while number:
        number, rem = divmod(number, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def should_include_file(path: str) -> bool:
    """True for source/config files worth showing the planner; skips vendored,
    built and binary files."""
    lower = path.lower()
    parts = lower.split("/")
    if any(d in parts[:-1] for d in IGNORE_DIRS):
        return False
    name = parts[-1]
    if name in IGNORE_NAMES or lower.endswith(IGNORE_SUFFIXES):
        return False
    if lower.endswith(ALLOWED_SUFFIXES) or name in ALLOWED_NAMES:
        return True
    if _COMMON_DIR_RE.match(lower):
        return True
    return "/" not in path and "." not in path


class GitHubApplier(ChangeApplier):
    """Commits change-sets through the Git data API (blobs, tree, commit, ref)."""

    def __init__(
        self,
        token: str | None = None,
        api_url: str = "https://api.github.com",
        timeout: int = 30,
        rate_limit: GitHubRateLimit | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.rate_limit = rate_limit or GitHubRateLimit()
        self._clock = clock
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
        )
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        self.rate_limit.check()
        url = f"{self.api_url}{path}"
        try:
            resp = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"GitHub request failed: {e}") from e
        self.rate_limit.update(resp.headers or {})
        if resp.status_code == 401:
            raise ConfigurationError("GitHub rejected the token (401)")
        if resp.status_code == 429 or (resp.status_code == 403 and self.rate_limit.remaining == 0):
            raise RateLimitError("github", self._retry_after(resp))
        if resp.status_code == 404:
            raise NotFoundError(f"Not found: {path}", {"path": path})
        if resp.status_code >= 400:
            msg = resp.text
            try:
                data = resp.json()
                if isinstance(data, dict) and "message" in data:
                    msg = data["message"]
            except ValueError:
                pass
            raise TransportError(f"GitHub API error {resp.status_code}: {msg}", resp.status_code)
        return resp

    def _retry_after(self, resp: requests.Response) -> float | None:
        value = (resp.headers or {}).get("retry-after")
        try:
            if value is not None:
                return float(value)
        except (TypeError, ValueError):
            pass
        if self.rate_limit.reset_at is not None:
            return max(0.0, self.rate_limit.reset_at - self._clock())
        return None

    # -- branches --------------------------------------------------------------

    def get_default_branch(self, repo: str) -> str:
        """Return default branch name (e.g. main)."""
        resp = self._request("GET", f"/repos/{repo}")
        return resp.json().get("default_branch", "main")

    def get_branch_sha(self, repo: str, branch: str) -> str:
        resp = self._request("GET", f"/repos/{repo}/git/ref/heads/{branch}")
        sha = resp.json().get("object", {}).get("sha")
        if not sha:
            raise TransportError(f"Could not get SHA of branch {branch}")
        return sha

    def branch_exists(self, repo: str, branch: str) -> bool:
        try:
            self.get_branch_sha(repo, branch)
        except NotFoundError:
            return False
        return True

    def create_branch(self, repo: str, branch_name: str, base_branch: str) -> None:
        """Create a branch from base_branch HEAD."""
        sha = self.get_branch_sha(repo, base_branch)
        self._request("POST", f"/repos/{repo}/git/refs", json={"ref": f"refs/heads/{branch_name}", "sha": sha})
        LOG.info("Created branch %s from %s in %s", branch_name, base_branch, repo)

    def delete_branch(self, repo: str, branch_name: str) -> None:
        self._request("DELETE", f"/repos/{repo}/git/refs/heads/{branch_name}")
        LOG.info("Deleted branch %s in %s", branch_name, repo)

    # -- commits ---------------------------------------------------------------

    def commit_files(self, repo: str, branch: str, files: List[FileChange], message: str) -> str:
        """Commit full-content file changes on top of branch; returns the commit SHA."""
        parent = self.get_branch_sha(repo, branch)
        tree_items = []
        for f in files:
            blob = self._request(
                "POST",
                f"/repos/{repo}/git/blobs",
                json={"content": base64.b64encode(f.content.encode("utf-8")).decode("ascii"), "encoding": "base64"},
            ).json()
            tree_items.append({"path": f.path, "mode": "100644", "type": "blob", "sha": blob["sha"]})
        tree = self._request("POST", f"/repos/{repo}/git/trees", json={"tree": tree_items, "base_tree": parent}).json()
        commit = self._request(
            "POST",
            f"/repos/{repo}/git/commits",
            json={"message": message, "tree": tree["sha"], "parents": [parent]},
        ).json()
        self._request("PATCH", f"/repos/{repo}/git/refs/heads/{branch}", json={"sha": commit["sha"]})
        LOG.info("Committed %s files to %s/%s (%s)", len(files), repo, branch, commit["sha"])
        return commit["sha"]

    def _changed_files(self, repo: str, base: str, head: str) -> tuple[str, set[str]]:
        data = self._request("GET", f"/repos/{repo}/compare/{base}...{head}").json()
        return data.get("status", ""), {f.get("filename", "") for f in data.get("files") or []}

    def check_conflicts(self, repo: str, head: str, base: str, paths: List[str] | None = None) -> List[str]:
        """Files changed on both head (plus paths about to be written) and base
        since they diverged. Empty when head can be merged cleanly.

        A failed comparison is logged and treated as no conflict.
        """
        try:
            status, head_files = self._changed_files(repo, base, head)
            if status not in ("diverged", "behind"):
                return []
            _, base_files = self._changed_files(repo, head, base)
        except (TransportError, NotFoundError) as e:
            LOG.warning("Conflict check %s...%s in %s failed: %s", base, head, repo, e)
            return []
        return sorted((head_files | set(paths or [])) & base_files)

    # -- pull requests ---------------------------------------------------------

    def find_open_pr(self, repo: str, branch: str) -> Dict[str, Any] | None:
        owner = repo.split("/", 1)[0]
        prs = self._request("GET", f"/repos/{repo}/pulls", params={"state": "open", "head": f"{owner}:{branch}"}).json()
        return prs[0] if prs else None

    def create_pr(self, repo: str, title: str, body: str, head: str, base: str) -> Dict[str, Any]:
        """Create a pull request."""
        resp = self._request(
            "POST",
            f"/repos/{repo}/pulls",
            json={"title": title, "head": head, "base": base, "body": body or ""},
        )
        data = resp.json()
        LOG.info("Opened PR #%s %s -> %s in %s", data.get("number"), head, base, repo)
        return data

    def comment_on_pr(self, repo: str, pr_number: int, body: str) -> None:
        self._request("POST", f"/repos/{repo}/issues/{pr_number}/comments", json={"body": body})

    # -- ChangeApplier ---------------------------------------------------------

    def apply(
        self,
        repo_url: str,
        change_set: ChangeSet,
        target_branch: str | None,
        mode: str,
    ) -> ApplyOutcome:
        if not self.token:
            raise ConfigurationError("GitHub token is not set (GITHUB_TOKEN)")
        repo = parse_repo_url(repo_url)
        if mode == MODE_UPDATE_BRANCH:
            return self._update_branch(repo, change_set, target_branch)
        return self._create_pr(repo, change_set, target_branch)

    def _create_pr(self, repo: str, change_set: ChangeSet, target_branch: str | None) -> ApplyOutcome:
        base = target_branch or ""
        if not base or not self.branch_exists(repo, base):
            fallback = self.get_default_branch(repo)
            LOG.info("Base branch %r not found in %s, using %s", base, repo, fallback)
            base = fallback
        branch = f"{BRANCH_PREFIX}{to_base36(int(self._clock() * 1000))}"
        self.create_branch(repo, branch, base)
        self.commit_files(repo, branch, change_set.files, change_set.commit_message)
        conflicts = self.check_conflicts(repo, branch, base)
        if conflicts:
            try:
                self.delete_branch(repo, branch)
            except BotError as e:
                LOG.warning("Could not delete conflicting branch %s in %s: %s", branch, repo, e)
            raise ConflictError(conflicts)
        pr = self.create_pr(repo, change_set.pr_title or change_set.plan[:50], change_set.pr_body or change_set.plan, branch, base)
        return ApplyOutcome(pr_url=pr.get("html_url"), branch=branch, summary=change_set.plan, mode=MODE_CREATE_PR)

    def _update_branch(self, repo: str, change_set: ChangeSet, target_branch: str | None) -> ApplyOutcome:
        if not target_branch or not self.branch_exists(repo, target_branch):
            raise BranchNotFoundError(target_branch or "", repo)
        default = self.get_default_branch(repo)
        if target_branch != default:
            conflicts = self.check_conflicts(repo, target_branch, default, paths=change_set.paths)
            if conflicts:
                raise ConflictError(conflicts)
        sha = self.commit_files(repo, target_branch, change_set.files, change_set.commit_message)
        pr_url = None
        if target_branch != default:
            existing = self.find_open_pr(repo, target_branch)
            if existing:
                self.comment_on_pr(repo, existing["number"], f"Branch updated: {change_set.plan}\n\nCommit: {sha}")
                pr_url = existing.get("html_url")
            else:
                pr = self.create_pr(repo, change_set.pr_title or change_set.plan[:50], change_set.pr_body or change_set.plan, target_branch, default)
                pr_url = pr.get("html_url")
        return ApplyOutcome(pr_url=pr_url, branch=target_branch, summary=change_set.plan, mode=MODE_UPDATE_BRANCH)

    def quota_status(self) -> Dict[str, Any] | None:
        return self.rate_limit.status()

    # -- repository snapshot ---------------------------------------------------

    def get_file_content(self, repo: str, path: str, ref: str | None = None) -> str | None:
        params = {"ref": ref} if ref else None
        try:
            data = self._request("GET", f"/repos/{repo}/contents/{path}", params=params).json()
        except NotFoundError:
            return None
        if not isinstance(data, dict) or data.get("type") != "file":
            return None
        try:
            return base64.b64decode(data.get("content") or "").decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            return None

    def fetch_repository_files(
        self,
        repo_url: str,
        branch: str | None = None,
        max_files: int = 20,
    ) -> Dict[str, str]:
        """Shallowest matching files first, each under 50000 characters.

        Returns {} when the tree cannot be read.
        """
        repo = parse_repo_url(repo_url)
        try:
            ref = branch or self.get_default_branch(repo)
            tree = self._request("GET", f"/repos/{repo}/git/trees/{ref}", params={"recursive": "1"}).json()
        except (TransportError, NotFoundError) as e:
            LOG.warning("Could not read tree of %s: %s", repo, e)
            return {}
        candidates = [
            item["path"] for item in tree.get("tree", []) if item.get("type") == "blob" and should_include_file(item.get("path", ""))
        ]
        candidates.sort(key=lambda p: len(p.split("/")))
        files: Dict[str, str] = {}
        for path in candidates:
            if len(files) >= max_files:
                break
            content = self.get_file_content(repo, path, ref)
            if content is not None and len(content) < MAX_FILE_CHARS:
                files[path] = content
        LOG.debug("Fetched %s files from %s@%s", len(files), repo, ref)
        return files
