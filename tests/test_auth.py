from __future__ import annotations

import http.client
from collections.abc import Iterator
from unittest.mock import MagicMock

import pytest

from gh_commit_listener.auth import OAuthServer, chat_start_url
from gh_commit_listener.errors import AuthError


@pytest.fixture
def github() -> MagicMock:
    return MagicMock()


@pytest.fixture
def server(github) -> Iterator[OAuthServer]:
    srv = OAuthServer("127.0.0.1", 0, github, "listener_bot")
    srv.start()
    yield srv
    srv.stop()


def _get(server: OAuthServer, path: str) -> http.client.HTTPResponse:
    host, port = server.address
    conn = http.client.HTTPConnection(host, port, timeout=5)
    conn.request("GET", path)
    resp = conn.getresponse()
    resp.read()
    conn.close()
    return resp


def test_chat_start_url() -> None:
    assert chat_start_url("listener_bot", "gho_x") == "https://t.me/listener_bot?start=gho_x"


def test_redirect_exchanges_code_and_bounces_to_chat(server, github) -> None:
    github.exchange_code_for_token.return_value = "gho_token"

    resp = _get(server, "/oauth/redirect?code=abc")

    assert resp.status == 302
    assert resp.getheader("Location") == "https://t.me/listener_bot?start=gho_token"
    github.exchange_code_for_token.assert_called_once_with("abc")


def test_missing_code_is_bad_request(server, github) -> None:
    assert _get(server, "/oauth/redirect").status == 400
    github.exchange_code_for_token.assert_not_called()


def test_failed_exchange_is_bad_gateway(server, github) -> None:
    github.exchange_code_for_token.side_effect = AuthError("bad_verification_code")
    assert _get(server, "/oauth/redirect?code=stale").status == 502


def test_other_paths_are_not_found(server) -> None:
    assert _get(server, "/").status == 404
