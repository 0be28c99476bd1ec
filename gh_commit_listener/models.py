"""Plain data records passed between the store, the client and the poller."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 / RFC 3339 timestamp into an aware UTC datetime."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    """RFC 3339 in UTC with a trailing Z, second precision."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class User:
    name: str
    handle: str
    token: str
    external_id: str
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class Repository:
    name: str
    full_name: str
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class WatchLink:
    user_id: int
    repository_id: int
    watermark: datetime
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class LinkSnapshot:
    """One row of the per-cycle snapshot: who watches what, and since when."""

    user: User
    repository: Repository
    link: WatchLink

    @property
    def watermark(self) -> datetime:
        return self.link.watermark


@dataclass(frozen=True)
class RemoteRepository:
    name: str
    full_name: str
    updated_at: datetime
    pushed_at: datetime | None = None
    html_url: str = ""


@dataclass(frozen=True)
class Commit:
    sha: str
    message: str
    author_name: str
    author_email: str
    author_date: datetime
    committer_date: datetime
    html_url: str = ""

    @property
    def timestamp(self) -> datetime:
        return max(self.author_date, self.committer_date)

    @property
    def short_sha(self) -> str:
        return self.sha[:7]


@dataclass(frozen=True)
class InboundMessage:
    user_id: int
    user_name: str
    text: str
    date: datetime
