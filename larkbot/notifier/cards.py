"""Interactive card templates.

Each function returns a Lark message payload: {"msg_type": "interactive",
"card": {...}}. Buttons carry {"type": <action>, "job_id": ...} values that
come back through the card action callback.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List

from larkbot.models import COMPLETED, FAILED, MODE_UPDATE_BRANCH, Job, Question

Card = Dict[str, Any]

ACTION_CHECK_STATUS = "check_status"
ACTION_REFRESH_STATUS = "refresh_status"
ACTION_RETRY = "retry"

STATUS_EMOJI = {
    "pending": "⏳",
    "questioning": "❓",
    "processing": "🔄",
    "completed": "✅",
    "failed": "❌",
}


def _format_ts(ms: int | None) -> str:
    if not ms:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _card(title: str, template: str, elements: List[Dict[str, Any]]) -> Card:
    return {
        "msg_type": "interactive",
        "card": {
            "header": {"title": {"tag": "plain_text", "content": title}, "template": template},
            "elements": elements,
        },
    }


def _text(content: str) -> Dict[str, Any]:
    return {"tag": "div", "text": {"tag": "lark_md", "content": content}}


def _button(label: str, value: Dict[str, Any] | None = None, url: str | None = None, primary: bool = False) -> Dict[str, Any]:
    button: Dict[str, Any] = {"tag": "button", "text": {"tag": "plain_text", "content": label}}
    if primary:
        button["type"] = "primary"
    if value is not None:
        button["value"] = value
    if url is not None:
        button["url"] = url
    return button


def _actions(*buttons: Dict[str, Any]) -> Dict[str, Any]:
    return {"tag": "action", "actions": list(buttons)}


def _retry_button(job: Job) -> Dict[str, Any]:
    return _button("🔄 Retry", {"type": ACTION_RETRY, "job_id": job.id})


def _mode_text(mode: str, branch: str | None) -> str:
    if mode == MODE_UPDATE_BRANCH:
        return f"**Mode:** update existing branch\n\n**Target branch:** `{branch or 'main'}`"
    return "**Mode:** new pull request"


def welcome_card(bot_name: str = "Lark Bot Agent") -> Card:
    return _card(
        f"👋 {bot_name}",
        "blue",
        [
            _text(
                "An AI assistant that makes changes to a GitHub repository.\n\n"
                "**How to use:**\n"
                "1. Describe the task in a message\n"
                "2. The bot may ask a few questions in the thread; reply there\n"
                "3. It generates the code and opens a pull request\n"
                "4. You get a card when it is done\n\n"
                "**Modes:**\n"
                "• **New PR** (default): creates a new branch and pull request\n"
                "• **Update branch**: adds a commit to an existing branch\n\n"
                "**Examples:**\n"
                "- Add a date formatting helper to src/utils.py\n"
                "- Update README.md with installation steps\n"
                "- branch: feature-auth fix the login check  ← updates an existing branch"
            )
        ],
    )


def processing_card(job: Job) -> Card:
    return _card(
        "🤖 Task received",
        "blue",
        [
            _text(
                f"**Instruction:** {job.message}\n\n{_mode_text(job.context.mode, job.context.branch)}\n\n"
                "**Status:** queued\n\n⏳ Usually takes 1-3 minutes"
            ),
            _actions(_button("📊 Check status", {"type": ACTION_CHECK_STATUS, "job_id": job.id}, primary=True)),
        ],
    )


def questions_card(job: Job, questions: List[Question]) -> Card:
    """Questions still waiting for an answer; the user replies in the thread."""
    lines = [f"{i}. {q.text}" for i, q in enumerate(questions, 1)]
    return _card(
        "❓ A few questions first",
        "orange",
        [
            _text(
                f"**Instruction:** {job.message}\n\n"
                "Before making changes, please answer in this thread:\n\n" + "\n".join(lines)
            ),
        ],
    )


def starting_card(job: Job) -> Card:
    return _card(
        "🚀 Thanks, starting work",
        "blue",
        [
            _text(f"**Instruction:** {job.message}\n\n{_mode_text(job.context.mode, job.context.branch)}\n\n**Status:** queued"),
            _actions(_button("📊 Check status", {"type": ACTION_CHECK_STATUS, "job_id": job.id}, primary=True)),
        ],
    )


def completed_card(job: Job) -> Card:
    if job.result is None:
        raise ValueError("Job result is required for completed card")
    result = job.result
    tail = f"\n\n**PR:** {result.pr_url}" if result.pr_url else "\n\n**Branch:** commit pushed"
    elements = [_text(f"{_mode_text(result.mode, result.branch)}\n\n**Changes:**\n{result.summary}{tail}")]
    if result.pr_url:
        elements.append(_actions(_button("🔗 Open PR", url=result.pr_url, primary=True)))
    elements.append(_actions(_retry_button(job)))
    return _card("✅ Task completed", "green", elements)


def error_card(job: Job | None, message: str, details: str | None = None) -> Card:
    """Failure card; without a job (rejected input) there is nothing to retry."""
    content = f"**Error:** {message}"
    if details:
        content += f"\n\n**Details:** {details}"
    elements = [_text(content)]
    if job is not None:
        elements.append(_actions(_retry_button(job)))
    return _card("❌ Something went wrong", "red", elements)


def conflict_card(job: Job, conflicting_files: List[str]) -> Card:
    files = "\n".join(f"- {f}" for f in conflicting_files) or "- unknown"
    return _card(
        "⚠️ Merge conflict",
        "yellow",
        [
            _text(f"**Conflicting files:**\n{files}\n\nResolve the conflict manually, then run the task again."),
            _actions(_retry_button(job)),
        ],
    )


def status_card(job: Job) -> Card:
    content = (
        f"**Instruction:** {job.message}\n\n**Status:** {job.status}\n"
        f"**Created:** {_format_ts(job.created_at)}"
    )
    if job.completed_at:
        content += f"\n**Finished:** {_format_ts(job.completed_at)}"
    if job.retry_count:
        content += f"\n**Retries:** {job.retry_count}"
    if job.error:
        content += f"\n\n**Error:** {job.error}"
    if job.result and job.result.pr_url:
        content += f"\n\n**PR:** {job.result.pr_url}"
    elements = [_text(content)]
    if job.status not in (COMPLETED, FAILED):
        elements.append(_actions(_button("🔄 Refresh", {"type": ACTION_REFRESH_STATUS, "job_id": job.id}, primary=True)))
    template = "green" if job.status == COMPLETED else "red" if job.status == FAILED else "blue"
    return _card(f"{STATUS_EMOJI.get(job.status, '')} Task status", template, elements)


def job_list_card(jobs: List[Job]) -> Card:
    if not jobs:
        return _card("📋 Your tasks", "blue", [_text("No tasks yet.")])
    lines = [f"{STATUS_EMOJI.get(j.status, '')} `{j.id[:8]}` {j.message[:60]} ({j.status})" for j in jobs]
    return _card("📋 Your tasks", "blue", [_text("\n".join(lines))])
