"""Webhook HTTP server: Lark callbacks, job status API and drain trigger."""

import json
import logging
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict
from urllib.parse import urlsplit

from larkbot.config import AppConfig
from larkbot.orchestrator import Orchestrator
from larkbot.webhook.handlers import handle_card_action, handle_cron, handle_jobs, handle_lark_event

LOG = logging.getLogger("larkbot.webhook")


class WebhookHandler(BaseHTTPRequestHandler):
    """Routes GET /health, /jobs; POST Lark paths and /cron; PUT /cron."""

    config: AppConfig
    orchestrator: Orchestrator

    def _send_json(self, status: int, body: Dict[str, Any]) -> None:
        data = json.dumps(body, ensure_ascii=False).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def _read_json(self) -> Dict[str, Any] | None:
        length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(length) if length else b""
        if not body:
            return {}
        try:
            data = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            LOG.warning("Invalid JSON body on %s", self.path)
            return None
        return data if isinstance(data, dict) else None

    def do_GET(self) -> None:
        url = urlsplit(self.path)
        if url.path in ("/health", "/"):
            self._send_json(
                200,
                {"status": "ok", "service": "larkbot", **self.orchestrator.health()},
            )
            return
        if url.path == "/jobs" or url.path.startswith("/jobs/"):
            self._send_json(*handle_jobs(self.orchestrator, url.path, url.query))
            return
        self._send_json(404, {"error": "Not found"})

    def do_POST(self) -> None:
        path = urlsplit(self.path).path
        payload = self._read_json()
        if payload is None:
            self._send_json(400, {"error": "Invalid JSON"})
            return
        token = self.config.lark_verification_token_resolved
        if path == self.config.lark.webhook_path:
            self._send_json(*handle_lark_event(self.orchestrator, payload, token))
        elif path == self.config.lark.card_path:
            self._send_json(*handle_card_action(self.orchestrator, payload, token))
        elif path == "/cron":
            self._cron("POST", payload)
        else:
            self._send_json(404, {"error": "Not found"})

    def do_PUT(self) -> None:
        if urlsplit(self.path).path != "/cron":
            self._send_json(404, {"error": "Not found"})
            return
        payload = self._read_json()
        if payload is None:
            self._send_json(400, {"error": "Invalid JSON"})
            return
        self._cron("PUT", payload)

    def _cron(self, method: str, payload: Dict[str, Any]) -> None:
        self._send_json(
            *handle_cron(
                self.orchestrator,
                method,
                payload,
                self.headers.get("Authorization"),
                self.config.cron_secret_resolved,
            )
        )

    def log_message(self, format: str, *args: Any) -> None:
        LOG.debug(format, *args)


def make_webhook_server(config: AppConfig, orchestrator: Orchestrator) -> ThreadingHTTPServer:
    handler = type(
        "BoundWebhookHandler",
        (WebhookHandler,),
        {"config": config, "orchestrator": orchestrator},
    )
    return ThreadingHTTPServer((config.webhook.host, config.webhook.port), handler)


def run_webhook_server(config: AppConfig, orchestrator: Orchestrator) -> None:
    """Run HTTP server for Lark callbacks, status API and health check."""
    server = make_webhook_server(config, orchestrator)
    LOG.info("Webhook server listening on %s:%s", config.webhook.host, config.webhook.port)
    server.serve_forever()
