"""GitHub REST API client with pagination and rate limit awareness."""

from __future__ import annotations

import logging
import threading
import time
from datetime import timedelta
from urllib.parse import urlencode

import requests

from . import __version__
from .errors import (
    AuthError,
    FetchError,
    MalformedResponseError,
    NotFoundError,
    RateLimitError,
)
from .models import Commit, RemoteRepository, format_timestamp, parse_timestamp

log = logging.getLogger(__name__)

API_BASE = "https://api.github.com"
OAUTH_BASE = "https://github.com/login/oauth"
USER_AGENT = f"gh-commit-listener/{__version__}"
PER_PAGE = 100
MIN_RATE_REMAINING = 10
# Added to the stored watermark so the boundary commit is not fetched again.
SINCE_EPSILON = timedelta(seconds=1)


class GitHubClient:
    """Stateless wrapper: every call takes the token it should act with."""

    def __init__(self, client_id: str = "", client_secret: str = "", timeout: float = 5) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        # GitHub meters each token separately: token -> (remaining, reset)
        self._rate: dict[str, tuple[int | None, float]] = {}
        self._rate_lock = threading.Lock()

    def _headers(self, token: str) -> dict[str, str]:
        h = {
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            h["Authorization"] = f"Bearer {token}"
        return h

    def rate_remaining(self, token: str) -> int | None:
        with self._rate_lock:
            return self._rate.get(token, (None, 0.0))[0]

    def _update_rate_limit(self, token: str, resp: requests.Response) -> None:
        remaining = resp.headers.get("X-RateLimit-Remaining")
        reset = resp.headers.get("X-RateLimit-Reset")
        with self._rate_lock:
            old_remaining, old_reset = self._rate.get(token, (None, 0.0))
            self._rate[token] = (
                int(remaining) if remaining is not None else old_remaining,
                float(reset) if reset is not None else old_reset,
            )

    def _check_rate_limit(self, token: str) -> None:
        """Raise RateLimitError while this token's quota is nearly exhausted."""
        with self._rate_lock:
            remaining, reset = self._rate.get(token, (None, 0.0))
        if remaining is not None and remaining < MIN_RATE_REMAINING:
            wait = max(0, reset - time.time())
            if wait > 0:
                raise RateLimitError(f"rate limited, reset in {wait:.0f}s")

    def _get(self, url: str, token: str, params: dict | None = None) -> requests.Response:
        """GET an API resource, translating failures into typed errors."""
        self._check_rate_limit(token)
        full_url = url if url.startswith("http") else f"{API_BASE}{url}"
        log.debug("GET %s", full_url)
        try:
            resp = requests.get(
                full_url,
                headers=self._headers(token),
                params=params,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise FetchError(f"request to {full_url} failed: {e}") from e

        self._update_rate_limit(token, resp)
        status = resp.status_code
        if status == 401:
            raise AuthError("token rejected (401)")
        if status in (404, 451):
            raise NotFoundError(f"{full_url} not found ({status})", status=status)
        if status == 429 or (status == 403 and self.rate_remaining(token) == 0):
            raise RateLimitError(f"rate limited ({status})", status=status)
        if status >= 400:
            raise FetchError(f"{full_url} returned {status}", status=status)
        return resp

    @staticmethod
    def _json(resp: requests.Response, expected: type):
        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"invalid JSON from {resp.url}") from e
        if not isinstance(data, expected):
            raise MalformedResponseError(
                f"expected {expected.__name__} from {resp.url}, got {type(data).__name__}"
            )
        return data

    def _get_list(self, url: str, token: str, params: dict | None = None) -> list[dict]:
        """GET every page of a list endpoint."""
        items: list[dict] = []
        next_url: str | None = url
        while next_url:
            resp = self._get(next_url, token, params=params)
            items.extend(self._json(resp, list))
            # Subsequent pages carry params in the Link URL itself
            params = None
            next_url = self._next_page_url(resp)
        return items

    # -- OAuth ----------------------------------------------------------------

    def authorize_url(self, redirect_uri: str, state: str = "") -> str:
        query = {"client_id": self.client_id, "redirect_uri": redirect_uri}
        if state:
            query["state"] = state
        return f"{OAUTH_BASE}/authorize?{urlencode(query)}"

    def exchange_code_for_token(self, code: str) -> str:
        """Trade a one-shot OAuth code for an access token."""
        try:
            resp = requests.post(
                f"{OAUTH_BASE}/access_token",
                headers={"Accept": "application/json", "User-Agent": USER_AGENT},
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "code": code,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AuthError(f"could not send token request: {e}") from e
        if resp.status_code >= 400:
            raise AuthError(f"token exchange returned {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise AuthError("could not parse token response") from e
        if not isinstance(data, dict):
            raise AuthError("unexpected token response")
        token = data.get("access_token")
        if not token:
            reason = data.get("error_description") or data.get("error") or "no access_token"
            raise AuthError(f"token exchange failed: {reason}")
        return token

    # -- resources ------------------------------------------------------------

    def fetch_identity(self, token: str) -> tuple[str, str]:
        """Return (display name, login) for the token's owner."""
        try:
            data = self._json(self._get("/user", token), dict)
        except FetchError as e:
            raise AuthError(f"identity lookup failed: {e}") from e
        login = data.get("login")
        if not login:
            raise AuthError("identity response has no login")
        return data.get("name") or login, login

    def fetch_watched_repositories(self, token: str, handle: str) -> list[RemoteRepository]:
        """Repositories the user watches on GitHub (their subscriptions)."""
        items = self._get_list(
            f"/users/{handle}/subscriptions", token, params={"per_page": PER_PAGE}
        )
        return [self._parse_repo(item) for item in items]

    def fetch_repository(self, token: str, full_name: str) -> RemoteRepository:
        resp = self._get(f"/repos/{full_name}", token)
        return self._parse_repo(self._json(resp, dict))

    def fetch_commits_since(self, token: str, full_name: str, since) -> list[Commit]:
        """Commits newer than ``since``, in the order GitHub returns them.

        ``since`` is the stored watermark; SINCE_EPSILON is added here so the
        commit that set the watermark is not reported twice.
        """
        params = {"since": format_timestamp(since + SINCE_EPSILON), "per_page": PER_PAGE}
        try:
            items = self._get_list(f"/repos/{full_name}/commits", token, params=params)
        except FetchError as e:
            # An empty repository answers 409 Conflict
            if e.status == 409:
                return []
            raise
        return [self._parse_commit(item) for item in items]

    @staticmethod
    def _parse_repo(item: dict) -> RemoteRepository:
        try:
            pushed = item.get("pushed_at")
            return RemoteRepository(
                name=item["name"],
                full_name=item["full_name"],
                updated_at=parse_timestamp(item["updated_at"]),
                pushed_at=parse_timestamp(pushed) if pushed else None,
                html_url=item.get("html_url", ""),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"bad repository payload: {e}") from e

    @staticmethod
    def _parse_commit(item: dict) -> Commit:
        try:
            commit = item["commit"]
            author = commit.get("author") or {}
            committer = commit.get("committer") or {}
            author_date = author.get("date") or committer.get("date")
            committer_date = committer.get("date") or author.get("date")
            if not author_date:
                raise ValueError("commit has no dates")
            return Commit(
                sha=item["sha"],
                message=commit.get("message", ""),
                author_name=author.get("name", ""),
                author_email=author.get("email", ""),
                author_date=parse_timestamp(author_date),
                committer_date=parse_timestamp(committer_date),
                html_url=item.get("html_url", ""),
            )
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            raise MalformedResponseError(f"bad commit payload: {e}") from e

    @staticmethod
    def _next_page_url(resp: requests.Response) -> str | None:
        """Parse the Link header for the next page URL."""
        link = resp.headers.get("Link", "")
        for part in link.split(","):
            if 'rel="next"' in part:
                return part.split(";")[0].strip().strip("<>")
        return None
