"""Telegram Bot API transport: send messages and long-poll for updates."""

from __future__ import annotations

import logging

import requests

from .errors import SendError

log = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"


class TelegramClient:
    """Minimal Bot API wrapper used by the notifier and the command loop."""

    supports_markup = True

    def __init__(self, token: str, proxy: str = "", timeout: float = 5) -> None:
        self._token = token
        self.timeout = timeout
        self._proxies = {"http": proxy, "https": proxy} if proxy else None
        self.username: str = ""

    def _call(self, method: str, payload: dict | None = None, timeout: float | None = None):
        url = f"{API_BASE}/bot{self._token}/{method}"
        try:
            resp = requests.post(
                url,
                json=payload or {},
                timeout=timeout or self.timeout,
                proxies=self._proxies,
            )
            data = resp.json()
        except requests.RequestException as e:
            raise SendError(f"{method} failed: {e}") from e
        except ValueError as e:
            raise SendError(f"{method} returned invalid JSON ({resp.status_code})") from e
        if not data.get("ok"):
            raise SendError(f"{method} rejected: {data.get('description', resp.status_code)}")
        return data.get("result")

    def get_me(self) -> str:
        """Resolve and cache the bot's username."""
        result = self._call("getMe")
        self.username = result.get("username", "")
        log.info("Authorized on account @%s", self.username)
        return self.username

    def send_message(self, chat_id: int, text: str, markdown: bool = False,
                     reply_to: int | None = None) -> None:
        payload: dict = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        if markdown:
            payload["parse_mode"] = "Markdown"
        if reply_to is not None:
            payload["reply_to_message_id"] = reply_to
        self._call("sendMessage", payload)

    def get_updates(self, offset: int = 0, timeout: int = 30) -> list[dict]:
        """Long-poll for updates newer than ``offset``."""
        result = self._call(
            "getUpdates",
            {"offset": offset, "timeout": timeout, "allowed_updates": ["message"]},
            timeout=timeout + self.timeout,
        )
        return result or []
