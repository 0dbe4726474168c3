"""GLM chat-completions planner."""

import json
import logging
import re
from typing import Any, Dict, List

import pydantic
import requests

from larkbot.errors import ConfigurationError, ParseError, RateLimitError, TransportError
from larkbot.models import MAX_FILES, MAX_QUESTIONS, ChangeSet, JobContext, PlanResult, Question, parse_plan_result
from larkbot.planner.base import Planner
from larkbot.planner.rate_limit import GLMRateLimiter

DEFAULT_API_URL = "https://api.z.ai/api/paas/v4/chat/completions"
DEFAULT_MODEL = "glm-4.7"
FILE_PREVIEW_CHARS = 2000

LOG = logging.getLogger("larkbot.planner.glm")

_CODE_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")

CHANGE_SET_FORMAT = """{
  "plan": "short description of the change",
  "files": [
    {"path": "src/example.py", "content": "complete file content"}
  ],
  "commitMessage": "feat: conventional commit message",
  "prTitle": "pull request title",
  "prBody": "pull request description"
}"""

SYSTEM_PROMPT = f"""You are an AI agent that edits a GitHub repository.

## Role
- Interpret the user's instruction and plan the file changes
- Generate or edit code; the changes are opened as a pull request
- Respect the style and conventions of the existing code

## Constraints
- At most {MAX_FILES} files per change
- Explain breaking changes in the PR body
- Do not introduce security vulnerabilities

## Output
Reply with a single JSON object of this shape (outside any prose):

{CHANGE_SET_FORMAT}

Commit messages follow Conventional Commits (feat, fix, docs, style, refactor, test, chore)."""

ANALYZE_PROMPT = f"""{SYSTEM_PROMPT}

## Clarification
If the instruction is too ambiguous to implement safely, do not guess. Reply instead with:

{{"needsQuestions": true, "questions": [{{"id": "q1", "text": "question"}}]}}

Ask at most {MAX_QUESTIONS} short questions. When the instruction is clear, reply with:

{{"needsQuestions": false, "codeChanges": <object in the output format above>}}"""


def extract_json(content: str) -> Dict[str, Any]:
    """Pull the JSON object out of a model reply.

    Prefers a fenced code block; otherwise takes the outermost braces.
    """
    text = content or ""
    m = _CODE_BLOCK_RE.search(text)
    if m:
        text = m.group(1)
    else:
        start = text.find("{")
        end = text.rfind("}")
        if start != -1 and end != -1:
            text = text[start : end + 1]
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"Failed to parse AI response: {e}", content) from e
    if not isinstance(data, dict):
        raise ParseError("Failed to parse AI response: expected a JSON object", content)
    return data


def _context_block(context: JobContext) -> str:
    lines = ["## Repository", f"Repository: {context.repo_url}"]
    if context.branch:
        lines.append(f"Branch: {context.branch}")
    if context.files:
        lines.append(f"Files of interest: {', '.join(context.files)}")
    text = "\n".join(lines) + "\n"
    if context.existing_files:
        text += "\n## Existing files\nRefer to these existing files:\n\n"
        for path, content in context.existing_files.items():
            preview = content if len(content) <= FILE_PREVIEW_CHARS else content[:FILE_PREVIEW_CHARS] + "\n... (truncated)"
            text += f"### {path}\n```\n{preview}\n```\n\n"
    return text


def _dialogue_block(questions: List[Question] | None) -> str:
    answered = [q for q in (questions or []) if q.answered]
    if not answered:
        return ""
    lines = ["## Clarifications"]
    for q in answered:
        lines.append(f"Q: {q.text}")
        lines.append(f"A: {q.answer}")
    return "\n".join(lines) + "\n"


class GLMPlanner(Planner):
    """Planner backed by an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        api_key: str | None,
        api_url: str = DEFAULT_API_URL,
        model: str = DEFAULT_MODEL,
        temperature: float = 0.3,
        max_tokens: int = 8192,
        timeout: int = 120,
        rate_limiter: GLMRateLimiter | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.rate_limiter = rate_limiter or GLMRateLimiter()
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Content-Type": "application/json",
                "Accept-Language": "en-US,en",
            }
        )

    def _chat(self, messages: List[Dict[str, str]]) -> str:
        """POST one completion request and return the assistant message text."""
        if not self.api_key:
            raise ConfigurationError("Planner API key is not set (PLANNER_API_KEY or GLM_API_KEY)")
        self.rate_limiter.check()
        body = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        try:
            resp = self._session.request(
                "POST",
                self.api_url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"GLM API request failed: {e}") from e
        if resp.status_code in (401, 403):
            raise ConfigurationError(f"GLM API rejected credentials ({resp.status_code})")
        if resp.status_code == 429:
            backoff = self.rate_limiter.record_error()
            raise RateLimitError("glm", _retry_after_header(resp) or backoff)
        if resp.status_code >= 400:
            raise TransportError(f"GLM API error {resp.status_code}: {resp.text[:500]}", resp.status_code)
        self.rate_limiter.record_success()
        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ParseError(f"Unexpected GLM response shape: {e}", resp.text) from e
        return content or ""

    def _messages(self, system: str, user: str) -> List[Dict[str, str]]:
        return [{"role": "system", "content": system}, {"role": "user", "content": user}]

    def _plan(self, user_content: str) -> PlanResult:
        content = self._chat(self._messages(ANALYZE_PROMPT, user_content))
        data = extract_json(content)
        try:
            return parse_plan_result(data)
        except pydantic.ValidationError as e:
            LOG.warning("Planner reply did not match the plan format: %s", e)
            raise ParseError(f"Invalid plan response: {e.error_count()} validation errors", content) from e

    def analyze(self, message: str, context: JobContext) -> PlanResult:
        LOG.debug("Analyzing instruction for %s", context.repo_url)
        return self._plan(f"{_context_block(context)}\n## Instruction\n{message}")

    def refine(
        self,
        answer: str,
        questions: List[Question],
        context: JobContext,
        message: str,
    ) -> PlanResult:
        LOG.debug("Refining plan with %s answered questions", len([q for q in questions if q.answered]))
        user = (
            f"{_context_block(context)}\n## Instruction\n{message}\n\n"
            f"{_dialogue_block(questions)}\n## Latest reply\n{answer}"
        )
        return self._plan(user)

    def generate(
        self,
        message: str,
        context: JobContext,
        questions: List[Question] | None = None,
    ) -> ChangeSet:
        user = f"{_context_block(context)}\n{_dialogue_block(questions)}\n## Instruction\n{message}"
        content = self._chat(self._messages(SYSTEM_PROMPT, user))
        data = extract_json(content)
        try:
            return ChangeSet.model_validate(data)
        except pydantic.ValidationError as e:
            raise ParseError(f"Invalid change-set: {e.error_count()} validation errors", content) from e


def _retry_after_header(resp: requests.Response) -> float | None:
    value = resp.headers.get("Retry-After")
    try:
        return float(value) if value else None
    except ValueError:
        return None
