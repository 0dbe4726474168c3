"""Request handlers for the HTTP surface.

Each handler takes the orchestrator plus the decoded request and returns
(status_code, json_body); the server only does transport.
"""

import json
import logging
import re
from typing import Any, Dict, Tuple
from urllib.parse import parse_qs

from larkbot.errors import BotError, JobNotFoundError
from larkbot.notifier.cards import ACTION_CHECK_STATUS, ACTION_REFRESH_STATUS, ACTION_RETRY
from larkbot.orchestrator import Orchestrator

EVENT_MESSAGE_RECEIVE = "im.message.receive_v1"
DEFAULT_LIST_LIMIT = 10
MAX_LIST_LIMIT = 100

Response = Tuple[int, Dict[str, Any]]

_MENTION_RE = re.compile(r"@_user_\d+\s*")

LOG = logging.getLogger("larkbot.webhook.handlers")


def _token_ok(expected: str | None, actual: str | None) -> bool:
    if not expected:
        return True
    return actual == expected


def parse_user_message(event: Dict[str, Any]) -> Dict[str, Any] | None:
    """Extract sender, chat, text and thread ids from an im.message.receive_v1 event body.

    Returns None for non-text or malformed messages.
    """
    sender = (event.get("sender") or {}).get("sender_id") or {}
    message = event.get("message") or {}
    user_id = sender.get("open_id") or sender.get("user_id") or sender.get("union_id")
    raw_content = message.get("content")
    if not user_id or not raw_content:
        return None
    if message.get("message_type", "text") != "text":
        return None
    try:
        content = json.loads(raw_content)
    except (TypeError, ValueError) as e:
        LOG.warning("Failed to parse message content: %s", e)
        return None
    text = _MENTION_RE.sub("", content.get("text") or "").strip()
    return {
        "user_id": user_id,
        "chat_id": message.get("chat_id"),
        "text": text,
        "message_id": message.get("message_id"),
        "thread_id": message.get("root_id") or None,
    }


def handle_lark_event(orchestrator: Orchestrator, payload: Dict[str, Any], verification_token: str | None = None) -> Response:
    """Lark event callback: URL verification and incoming messages."""
    if payload.get("type") == "url_verification":
        if not _token_ok(verification_token, payload.get("token")):
            return 401, {"error": "invalid token"}
        return 200, {"challenge": payload.get("challenge", "")}

    header = payload.get("header") or {}
    if not _token_ok(verification_token, header.get("token")):
        LOG.warning("Rejected Lark event with bad token (event %s)", header.get("event_id"))
        return 401, {"error": "invalid token"}

    event_type = header.get("event_type", "")
    if event_type != EVENT_MESSAGE_RECEIVE:
        LOG.debug("Ignoring Lark event %s", event_type)
        return 200, {"received": True}

    msg = parse_user_message(payload.get("event") or {})
    if msg is None:
        return 200, {"received": True}
    LOG.info("Message from %s in %s (thread %s)", msg["user_id"], msg["chat_id"], msg["thread_id"])
    try:
        job = orchestrator.intake(
            msg["user_id"],
            msg["chat_id"],
            msg["text"],
            thread_id=msg["thread_id"],
            message_id=msg["message_id"],
        )
    except Exception:
        # Acknowledge anyway so Lark does not redeliver the event
        LOG.exception("Intake failed for message %s", msg["message_id"])
        return 200, {"received": True}
    return 200, {"received": True, "job_id": job.id if job else None}


def handle_card_action(orchestrator: Orchestrator, payload: Dict[str, Any], verification_token: str | None = None) -> Response:
    """Card button callback: check_status, refresh_status, retry."""
    if payload.get("type") == "url_verification":
        return 200, {"challenge": payload.get("challenge", "")}
    if not _token_ok(verification_token, payload.get("token")):
        return 401, {"error": "invalid token"}

    value = (payload.get("action") or {}).get("value") or {}
    action = value.get("type")
    job_id = value.get("job_id")
    if not action or not job_id:
        return 400, {"error": "missing action type or job_id"}
    recipient = payload.get("open_chat_id") or payload.get("open_id")

    if action == ACTION_REFRESH_STATUS:
        card = orchestrator.status_card(job_id)
        if card is None:
            return 404, {"error": "Job not found"}
        return 200, card["card"]
    if action == ACTION_CHECK_STATUS:
        if not orchestrator.send_status(job_id, recipient):
            return 404, {"error": "Job not found"}
        return 200, {}
    if action == ACTION_RETRY:
        try:
            orchestrator.require_job(job_id)
        except JobNotFoundError as e:
            return 404, e.to_dict()
        job = orchestrator.retry(job_id)
        return 200, {"retried": job is not None}
    return 400, {"error": f"unknown action: {action}"}


def _job_dict(job: Any) -> Dict[str, Any]:
    return job.model_dump(mode="json", exclude_none=True)


def handle_jobs(orchestrator: Orchestrator, path: str, query: str = "") -> Response:
    """GET /jobs?user_id=...&limit=... and GET /jobs/<id>."""
    parts = [p for p in path.split("/") if p]
    if len(parts) == 2:
        try:
            return 200, _job_dict(orchestrator.require_job(parts[1]))
        except JobNotFoundError as e:
            return 404, e.to_dict()

    params = parse_qs(query)
    user_id = (params.get("user_id") or [""])[0]
    if not user_id:
        return 400, {"error": "user_id is required"}
    try:
        limit = int((params.get("limit") or [DEFAULT_LIST_LIMIT])[0])
    except ValueError:
        return 400, {"error": "limit must be an integer"}
    limit = max(1, min(limit, MAX_LIST_LIMIT))
    jobs = orchestrator.list_user_jobs(user_id, limit)
    return 200, {"jobs": [_job_dict(j) for j in jobs], "count": len(jobs)}


def handle_cron(
    orchestrator: Orchestrator,
    method: str,
    body: Dict[str, Any],
    authorization: str | None,
    cron_secret: str | None,
) -> Response:
    """Drain trigger: POST processes the next job, PUT {"job_id"} a specific one."""
    if cron_secret and authorization != f"Bearer {cron_secret}":
        return 401, {"error": "Unauthorized"}
    try:
        if method == "POST":
            return 200, orchestrator.process_next().to_dict()
        if method == "PUT":
            job_id = body.get("job_id")
            if not job_id:
                return 400, {"error": "job_id is required"}
            result = orchestrator.process_specific(job_id)
            if result is None:
                orchestrator.require_job(job_id)
                return 409, {"error": "Job is not in a processable state"}
            return 200, result.to_dict()
    except JobNotFoundError as e:
        return 404, e.to_dict()
    except BotError as e:
        LOG.exception("Drain failed")
        return 500, e.to_dict()
    return 405, {"error": "Method not allowed"}
