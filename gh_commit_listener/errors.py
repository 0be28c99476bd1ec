"""Error taxonomy shared by the store, the GitHub client and the notifier.

Callers branch on the exception class (or its ``kind``), never on the
message text.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    CONFIG = "config"
    AUTH = "auth"
    TRANSIENT = "transient"
    NOT_FOUND = "not_found"
    MALFORMED = "malformed"
    RATE_LIMITED = "rate_limited"
    STORE = "store"
    SEND = "send"


class ListenerError(Exception):
    kind: ErrorKind = ErrorKind.TRANSIENT


class ConfigError(ListenerError):
    kind = ErrorKind.CONFIG


class AuthError(ListenerError):
    """Token exchange or identity lookup was rejected."""

    kind = ErrorKind.AUTH


class FetchError(ListenerError):
    """Transient platform failure. Nothing is mutated; retried next cycle."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(FetchError):
    """The repository is gone, renamed or no longer accessible."""

    kind = ErrorKind.NOT_FOUND


class MalformedResponseError(FetchError):
    kind = ErrorKind.MALFORMED


class RateLimitError(FetchError):
    kind = ErrorKind.RATE_LIMITED


class StoreError(ListenerError):
    kind = ErrorKind.STORE


class SendError(ListenerError):
    kind = ErrorKind.SEND
