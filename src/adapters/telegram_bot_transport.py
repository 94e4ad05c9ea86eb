"""Telegram Bot API transport adapter.

Implements the core TransportPort with plain HTTPS calls to the Bot API:
``sendMessage`` for delivery, ``getUpdates`` for pairing and ``getMe`` to
validate a token.
"""

from __future__ import annotations

import asyncio
import http.client
import json
import logging
import urllib.error
import urllib.request
from collections import deque
from typing import Any, Deque, Dict, Optional

from core.errors import TransportError
from core.models import IncomingMessage

LOGGER = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.telegram.org"


class TelegramBotTransport:
    """Transport adapter that talks to the Telegram Bot API for one bot."""

    def __init__(
        self,
        bot_token: str,
        api_base: str = DEFAULT_API_BASE,
        request_timeout: float = 10,
    ) -> None:
        self._bot_token = bot_token
        self._api_base = api_base.rstrip("/")
        self._timeout = request_timeout
        # getUpdates offsets and unread messages, per polled token.
        self._offsets: Dict[str, int] = {}
        self._pending: Dict[str, Deque[IncomingMessage]] = {}

    def _endpoint(self, method: str, token: Optional[str] = None) -> str:
        # The Bot API endpoint is deterministic and derived from the token.
        return f"{self._api_base}/bot{token or self._bot_token}/{method}"

    def _call(self, method: str, payload: Optional[dict] = None, token: Optional[str] = None) -> Any:
        """Perform one blocking Bot API call and return its ``result``."""

        data = json.dumps(payload or {}).encode("utf-8")
        request = urllib.request.Request(self._endpoint(method, token), data=data, method="POST")
        request.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                body = response.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            raise _api_error(method, e.code, body) from e
        except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
            raise TransportError(f"{method} failed: {e}") from e

        try:
            reply = json.loads(body)
        except ValueError as e:
            raise TransportError(f"{method} returned invalid JSON") from e
        if not isinstance(reply, dict):
            raise TransportError(f"{method} returned an unexpected reply: {body[:200]}")
        if not reply.get("ok", False):
            raise _api_error(method, None, body)
        return reply.get("result")

    async def send(self, chat_id: str, text: str) -> None:
        """Send plain text to ``chat_id``."""

        payload = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        await asyncio.to_thread(self._call, "sendMessage", payload)

    async def poll_for_message(self, credential: str) -> Optional[IncomingMessage]:
        """Return the oldest unread text message sent to the bot, if any."""

        pending = self._pending.setdefault(credential, deque())
        if not pending:
            updates = await asyncio.to_thread(self._fetch_updates, credential)
            pending.extend(updates)
        return pending.popleft() if pending else None

    def _fetch_updates(self, credential: str) -> list[IncomingMessage]:
        payload: Dict[str, Any] = {"timeout": 0, "allowed_updates": ["message"]}
        if credential in self._offsets:
            payload["offset"] = self._offsets[credential]
        updates = self._call("getUpdates", payload, token=credential) or []

        messages: list[IncomingMessage] = []
        for update in updates:
            # Acknowledge every update, text or not, so it is not fetched again.
            update_id = int(update.get("update_id", 0))
            self._offsets[credential] = max(self._offsets.get(credential, 0), update_id + 1)
            message = update.get("message") or {}
            text = message.get("text")
            chat_id = (message.get("chat") or {}).get("id")
            if text is None or chat_id is None:
                continue
            messages.append(IncomingMessage(sender_id=str(chat_id), text=text))
        return messages

    async def get_bot_username(self) -> str:
        """Return the bot's @username; doubles as a token check."""

        me = await asyncio.to_thread(self._call, "getMe")
        return str((me or {}).get("username") or (me or {}).get("first_name") or "unknown")


def _api_error(method: str, status: Optional[int], body: str) -> TransportError:
    retry_after = None
    description = body
    try:
        reply = json.loads(body)
    except ValueError:
        reply = None
    if isinstance(reply, dict):
        description = reply.get("description") or body
        status = status or reply.get("error_code")
        parameters = reply.get("parameters") or {}
        if "retry_after" in parameters:
            retry_after = float(parameters["retry_after"])
    return TransportError(
        f"Bot API error {status} on {method}: {description}",
        status=status,
        retry_after=retry_after,
    )
