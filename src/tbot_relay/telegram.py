# tbot-relay - Chat command relay hub and remote script agents
# Copyright (c) 2025 xnoto

"""Minimal Telegram Bot API client: long-poll updates, send and reply."""

import logging
from collections.abc import Iterator
from dataclasses import dataclass

import requests

from tbot_relay.errors import NetworkError

log = logging.getLogger(__name__)

API_URL = "https://api.telegram.org"
MAX_MESSAGE_LENGTH = 4096
POLL_TIMEOUT = 60  # server-side long poll, seconds

GROUP_CHAT_TYPES = ("group", "supergroup")


@dataclass
class ChatMessage:
    """The parts of a Telegram message the hub acts on."""

    message_id: int
    chat_id: int
    chat_type: str
    sender: str
    text: str

    @property
    def is_group(self) -> bool:
        return self.chat_type in GROUP_CHAT_TYPES

    @classmethod
    def from_update(cls, update: dict) -> "ChatMessage | None":
        """Extract the message of an update; None for non-message updates."""
        msg = update.get("message")
        if not isinstance(msg, dict):
            return None
        chat = msg.get("chat") or {}
        sender = msg.get("from") or {}
        return cls(
            message_id=msg.get("message_id", 0),
            chat_id=chat.get("id", 0),
            chat_type=chat.get("type", "private"),
            sender=sender.get("username") or "",
            text=msg.get("text") or "",
        )


def split_text(text: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split text into Telegram-sized chunks, preferring line boundaries."""
    if not text:
        return [""]
    chunks = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        chunks.append(text)
    return chunks


class TelegramClient:
    def __init__(self, token: str, api_url: str = API_URL, timeout: float = 30.0):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.username = ""

    def _call(self, method: str, payload: dict | None = None, timeout: float | None = None):
        url = f"{self.api_url}/bot{self.token}/{method}"
        try:
            resp = self.session.post(url, json=payload or {}, timeout=timeout or self.timeout)
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise NetworkError(f"telegram {method}: {e}") from e
        if not data.get("ok"):
            raise NetworkError(f"telegram {method}: {data.get('description', resp.status_code)}")
        return data.get("result")

    def get_me(self) -> dict:
        me = self._call("getMe")
        self.username = me.get("username", "")
        return me

    def get_updates(self, offset: int, timeout: int = POLL_TIMEOUT) -> list[dict]:
        return self._call(
            "getUpdates",
            {"offset": offset, "timeout": timeout, "allowed_updates": ["message"]},
            timeout=timeout + 5,
        ) or []

    def iter_updates(self, shutdown_event, retry_delay: float = 5.0) -> Iterator[dict]:
        """Yield updates until shutdown; network errors are logged and retried."""
        offset = 0
        while not shutdown_event.is_set():
            try:
                updates = self.get_updates(offset)
            except NetworkError as e:
                log.warning(f"{e} (retrying in {retry_delay:.0f}s)")
                shutdown_event.wait(retry_delay)
                continue
            for update in updates:
                offset = max(offset, update.get("update_id", 0) + 1)
                yield update

    def send(self, chat_id: int, text: str, reply_to: int | None = None) -> None:
        """Send text to a chat, split into several messages if too long."""
        for chunk in split_text(text):
            payload = {"chat_id": chat_id, "text": chunk or "(empty)"}
            if reply_to:
                payload["reply_to_message_id"] = reply_to
                payload["allow_sending_without_reply"] = True
            self._call("sendMessage", payload)

    def reply(self, msg: ChatMessage, text: str) -> None:
        self.send(msg.chat_id, text, reply_to=msg.message_id)
