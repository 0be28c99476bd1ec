"""GitHub OAuth redirect endpoint.

GitHub sends the user back to ``/oauth/redirect?code=...`` after they
authorize the app. The code is exchanged for an access token and the user
is redirected into the Telegram chat with the token as the ``/start``
parameter, where the command router registers it.
"""

from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlparse

from .errors import AuthError

log = logging.getLogger(__name__)

REDIRECT_PATH = "/oauth/redirect"


def chat_start_url(bot_username: str, token: str) -> str:
    return f"https://t.me/{bot_username}?start={token}"


class OAuthRedirectHandler(BaseHTTPRequestHandler):
    """Request handler; ``server.github`` and ``server.bot_username`` are set by OAuthServer."""

    def do_GET(self) -> None:
        url = urlparse(self.path)
        if url.path != REDIRECT_PATH:
            self.send_error(404)
            return
        code = parse_qs(url.query).get("code", [""])[0]
        if not code:
            log.warning("OAuth redirect without code")
            self.send_error(400, "missing code")
            return
        try:
            token = self.server.github.exchange_code_for_token(code)
        except AuthError as e:
            log.error("OAuth code exchange failed: %s", e)
            self.send_error(502, "could not exchange code")
            return
        self.send_response(302)
        self.send_header("Location", chat_start_url(self.server.bot_username, token))
        self.end_headers()

    def log_message(self, format, *args) -> None:
        log.debug("%s - %s", self.address_string(), format % args)


class OAuthServer:
    """Serves the redirect endpoint on a background thread."""

    def __init__(self, host: str, port: int, github, bot_username: str) -> None:
        self._httpd = ThreadingHTTPServer((host, port), OAuthRedirectHandler)
        self._httpd.github = github
        self._httpd.bot_username = bot_username
        self._thread: threading.Thread | None = None

    @property
    def address(self) -> tuple[str, int]:
        return self._httpd.server_address[:2]

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._httpd.serve_forever, name="oauth-http", daemon=True
        )
        self._thread.start()
        log.info("Listening on %s:%d", *self.address)

    def stop(self) -> None:
        self._httpd.shutdown()
        self._httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
