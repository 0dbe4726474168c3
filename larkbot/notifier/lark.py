"""Lark (Feishu) open platform messenger."""

import json
import logging
import time
from typing import Any, Callable, Dict

import requests

from larkbot.errors import ConfigurationError, RateLimitError, TransportError
from larkbot.notifier.base import Notifier

TOKEN_PATH = "/open-apis/auth/v3/tenant_access_token/internal"
MESSAGES_PATH = "/open-apis/im/v1/messages"
TOKEN_REFRESH_MARGIN = 60

LOG = logging.getLogger("larkbot.notifier.lark")


def receive_id_type(receive_id: str) -> str:
    """Lark receive_id_type for an id, by prefix."""
    if receive_id.startswith("oc_"):
        return "chat_id"
    if receive_id.startswith("ou_"):
        return "open_id"
    if receive_id.startswith("on_"):
        return "union_id"
    return "user_id"


class LarkNotifier(Notifier):
    """Sends cards with a cached tenant access token."""

    def __init__(
        self,
        app_id: str | None,
        app_secret: str | None,
        api_url: str = "https://open.larksuite.com",
        timeout: int = 15,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.app_id = app_id
        self.app_secret = app_secret
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._clock = clock
        self._token: str | None = None
        self._token_expires_at: float = 0.0
        self._session = requests.Session()
        self._session.headers.update({"Content-Type": "application/json; charset=utf-8"})

    def _post(self, path: str, body: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.api_url}{path}"
        try:
            resp = self._session.request("POST", url, json=body, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"Lark request failed: {e}") from e
        if resp.status_code == 429:
            raise RateLimitError("lark")
        if resp.status_code >= 400:
            raise TransportError(f"Lark API error {resp.status_code}: {resp.text[:500]}", resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError(f"Lark API returned non-JSON: {e}", resp.status_code) from e
        if data.get("code", 0) != 0:
            raise TransportError(f"Lark API error {data.get('code')}: {data.get('msg')}", resp.status_code)
        return data

    def tenant_token(self) -> str:
        """Return a valid tenant access token, refreshing shortly before expiry."""
        if self._token and self._clock() < self._token_expires_at:
            return self._token
        if not self.app_id or not self.app_secret:
            raise ConfigurationError("Lark app id/secret are not set (LARK_APP_ID, LARK_APP_SECRET)")
        data = self._post(TOKEN_PATH, {"app_id": self.app_id, "app_secret": self.app_secret})
        self._token = data["tenant_access_token"]
        expire = int(data.get("expire", 7200))
        self._token_expires_at = self._clock() + max(0, expire - TOKEN_REFRESH_MARGIN)
        LOG.debug("Refreshed Lark tenant token (expires in %ss)", expire)
        return self._token

    def _auth(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.tenant_token()}"}

    def notify(self, recipient: str, card: Dict[str, Any]) -> None:
        body = {
            "receive_id": recipient,
            "msg_type": "interactive",
            "content": json.dumps(card.get("card", card), ensure_ascii=False),
        }
        self._post(
            MESSAGES_PATH,
            body,
            params={"receive_id_type": receive_id_type(recipient)},
            headers=self._auth(),
        )
        LOG.debug("Sent card to %s", recipient)

    def notify_thread(self, recipient: str, thread_id: str, card: Dict[str, Any]) -> None:
        body = {
            "msg_type": "interactive",
            "content": json.dumps(card.get("card", card), ensure_ascii=False),
            "reply_in_thread": True,
        }
        self._post(f"{MESSAGES_PATH}/{thread_id}/reply", body, headers=self._auth())
        LOG.debug("Replied to thread %s for %s", thread_id, recipient)
