"""Thread-safe SQLite persistence for users, repositories and watch links.

The database lives at ``<home>/listener.db`` and holds four tables: GitHub
users, repositories, the user/repository watch links with their watermark,
and an append-only log of inbound chat messages. All writes go through a
single connection guarded by a lock, so writes to a given link row are
serialized.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from .errors import StoreError
from .models import (
    InboundMessage,
    LinkSnapshot,
    Repository,
    User,
    WatchLink,
    parse_timestamp,
    utcnow,
)

log = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS telegram_messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        user_name TEXT DEFAULT '',
        message TEXT DEFAULT '',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS github_users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL DEFAULT '',
        user_name TEXT NOT NULL UNIQUE,
        token TEXT NOT NULL,
        telegram_user_id TEXT NOT NULL UNIQUE,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS github_repos (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL DEFAULT '',
        repo_name TEXT NOT NULL UNIQUE,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users_repos (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES github_users(id),
        repo_id INTEGER NOT NULL REFERENCES github_repos(id),
        updated_at TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (user_id, repo_id)
    )
    """,
)

_USER_COLUMNS = "id, name, user_name, token, telegram_user_id, created_at"
_REPO_COLUMNS = "id, name, repo_name, created_at"
_LINK_COLUMNS = "id, user_id, repo_id, updated_at, created_at"


def _iso(ts: datetime) -> str:
    return ts.isoformat()


def _user_from_row(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        name=row["name"],
        handle=row["user_name"],
        token=row["token"],
        external_id=row["telegram_user_id"],
        created_at=parse_timestamp(row["created_at"]),
    )


def _repo_from_row(row: sqlite3.Row) -> Repository:
    return Repository(
        id=row["id"],
        name=row["name"],
        full_name=row["repo_name"],
        created_at=parse_timestamp(row["created_at"]),
    )


def _link_from_row(row: sqlite3.Row) -> WatchLink:
    return WatchLink(
        id=row["id"],
        user_id=row["user_id"],
        repository_id=row["repo_id"],
        watermark=parse_timestamp(row["updated_at"]),
        created_at=parse_timestamp(row["created_at"]),
    )


class WatchStore:
    """Owns all persisted state. Every operation raises StoreError on I/O failure."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Open or return the shared connection."""
        with self._lock:
            if self._conn is not None:
                return self._conn
            if str(self.db_path) != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            try:
                conn = sqlite3.connect(
                    str(self.db_path),
                    timeout=5.0,
                    check_same_thread=False,
                )
            except sqlite3.Error as e:
                raise StoreError(f"cannot open database {self.db_path}: {e}") from e
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            self._conn = conn
            return conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def migrate(self) -> None:
        """Create tables if they don't exist."""
        with self._lock:
            conn = self.connect()
            try:
                with conn:
                    for statement in _SCHEMA:
                        conn.execute(statement)
            except sqlite3.Error as e:
                raise StoreError(f"migration failed: {e}") from e
        log.info("Database ready at %s", self.db_path)

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.connect().execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"{e}: {sql.strip()}") from e

    def _write(
        self, sql: str, params: tuple = (), allow_conflict: bool = False
    ) -> sqlite3.Cursor:
        with self._lock:
            conn = self.connect()
            try:
                with conn:
                    return conn.execute(sql, params)
            except sqlite3.IntegrityError as e:
                if allow_conflict:
                    raise
                raise StoreError(f"{e}: {sql.strip()}") from e
            except sqlite3.Error as e:
                raise StoreError(f"{e}: {sql.strip()}") from e

    # -- users --------------------------------------------------------------

    def _find_user(self, column: str, value: object) -> User | None:
        rows = self._query(
            f"SELECT {_USER_COLUMNS} FROM github_users WHERE {column} = ?", (value,)
        )
        return _user_from_row(rows[0]) if rows else None

    def find_user_by_external_id(self, external_id: str) -> User | None:
        return self._find_user("telegram_user_id", str(external_id))

    def find_user_by_handle(self, handle: str) -> User | None:
        return self._find_user("user_name", handle)

    def upsert_user(self, user: User, by: str = "external_id") -> tuple[User, bool]:
        """Insert the user unless one already exists for the ``by`` key.

        An existing row is returned unchanged; its token is never overwritten
        here (see ``set_user_token``). When the other unique key already
        belongs to a row, that row is returned, so callers compare its
        ``external_id`` and ``handle`` with the ones they asked for.
        """
        if by not in ("external_id", "handle"):
            raise ValueError(f"cannot upsert users by {by!r}")
        with self._lock:
            if by == "external_id":
                existing = self.find_user_by_external_id(user.external_id)
            else:
                existing = self.find_user_by_handle(user.handle)
            if existing is not None:
                return existing, False
            try:
                cur = self._write(
                    "INSERT INTO github_users (name, user_name, token, telegram_user_id, created_at)"
                    " VALUES (?, ?, ?, ?, ?)",
                    (user.name, user.handle, user.token, str(user.external_id), _iso(utcnow())),
                    allow_conflict=True,
                )
            except sqlite3.IntegrityError:
                # The other unique column already belongs to a row.
                other = self.find_user_by_handle(user.handle) or self.find_user_by_external_id(
                    user.external_id
                )
                if other is None:
                    raise StoreError(f"cannot insert user {user.handle}")
                return other, False
            created = self._find_user("id", cur.lastrowid)
        log.info("User %s added", user.handle)
        return created, True

    def set_user_token(self, user: User, token: str) -> User:
        self._write("UPDATE github_users SET token = ? WHERE id = ?", (token, user.id))
        log.info("Token refreshed for %s", user.handle)
        return self._find_user("id", user.id)

    def list_users(self) -> list[User]:
        rows = self._query(f"SELECT {_USER_COLUMNS} FROM github_users ORDER BY id")
        return [_user_from_row(r) for r in rows]

    # -- repositories -------------------------------------------------------

    def find_repository_by_name(self, full_name: str) -> Repository | None:
        rows = self._query(
            f"SELECT {_REPO_COLUMNS} FROM github_repos WHERE repo_name = ?", (full_name,)
        )
        return _repo_from_row(rows[0]) if rows else None

    def upsert_repository(self, repo: Repository) -> tuple[Repository, bool]:
        with self._lock:
            existing = self.find_repository_by_name(repo.full_name)
            if existing is not None:
                return existing, False
            self._write(
                "INSERT INTO github_repos (name, repo_name, created_at) VALUES (?, ?, ?)",
                (repo.name, repo.full_name, _iso(utcnow())),
            )
            created = self.find_repository_by_name(repo.full_name)
        log.info("Repository %s added", repo.full_name)
        return created, True

    # -- watch links --------------------------------------------------------

    def _find_link(self, user_id: int, repo_id: int) -> WatchLink | None:
        rows = self._query(
            f"SELECT {_LINK_COLUMNS} FROM users_repos WHERE user_id = ? AND repo_id = ?",
            (user_id, repo_id),
        )
        return _link_from_row(rows[0]) if rows else None

    def link_watch(
        self, user: User, repo: Repository, seed_watermark: datetime
    ) -> tuple[WatchLink, bool]:
        """Insert-or-fetch the (user, repo) link.

        ``seed_watermark`` only applies when the link is created.
        """
        with self._lock:
            existing = self._find_link(user.id, repo.id)
            if existing is not None:
                return existing, False
            self._write(
                "INSERT INTO users_repos (user_id, repo_id, updated_at, created_at)"
                " VALUES (?, ?, ?, ?)",
                (user.id, repo.id, _iso(seed_watermark), _iso(utcnow())),
            )
            created = self._find_link(user.id, repo.id)
        log.info("%s now watches %s", user.handle, repo.full_name)
        return created, True

    def update_watermark(self, link: WatchLink, new_time: datetime) -> None:
        """Unconditional write. Callers own monotonicity."""
        self._write(
            "UPDATE users_repos SET updated_at = ? WHERE id = ?", (_iso(new_time), link.id)
        )

    def advance_watermark(self, link: WatchLink, new_time: datetime) -> bool:
        """Move the watermark forward only if ``new_time`` is newer than the stored one.

        Returns True when the row was updated.
        """
        with self._lock:
            rows = self._query("SELECT updated_at FROM users_repos WHERE id = ?", (link.id,))
            if not rows:
                return False
            if parse_timestamp(rows[0]["updated_at"]) >= new_time:
                return False
            self.update_watermark(link, new_time)
            return True

    def remove_link(self, user: User, repo: Repository) -> bool:
        """Delete the link if present. Returns whether a row was removed."""
        cur = self._write(
            "DELETE FROM users_repos WHERE user_id = ? AND repo_id = ?", (user.id, repo.id)
        )
        return cur.rowcount > 0

    def _snapshots(self, where: str = "", params: tuple = ()) -> list[LinkSnapshot]:
        rows = self._query(
            "SELECT u.id AS u_id, u.name AS u_name, u.user_name, u.token, u.telegram_user_id,"
            " u.created_at AS u_created_at,"
            " r.id AS r_id, r.name AS r_name, r.repo_name, r.created_at AS r_created_at,"
            " l.id, l.user_id, l.repo_id, l.updated_at, l.created_at"
            " FROM users_repos l"
            " JOIN github_users u ON u.id = l.user_id"
            " JOIN github_repos r ON r.id = l.repo_id"
            f" {where} ORDER BY l.id",
            params,
        )
        out: list[LinkSnapshot] = []
        for row in rows:
            user = User(
                id=row["u_id"],
                name=row["u_name"],
                handle=row["user_name"],
                token=row["token"],
                external_id=row["telegram_user_id"],
                created_at=parse_timestamp(row["u_created_at"]),
            )
            repo = Repository(
                id=row["r_id"],
                name=row["r_name"],
                full_name=row["repo_name"],
                created_at=parse_timestamp(row["r_created_at"]),
            )
            out.append(LinkSnapshot(user=user, repository=repo, link=_link_from_row(row)))
        return out

    def list_all_links(self) -> list[LinkSnapshot]:
        """Snapshot every watch link, oldest link first."""
        return self._snapshots()

    def list_user_links(self, user: User) -> list[LinkSnapshot]:
        return self._snapshots("WHERE l.user_id = ?", (user.id,))

    # -- inbound log --------------------------------------------------------

    def record_message(self, message: InboundMessage) -> None:
        self._write(
            "INSERT INTO telegram_messages (user_id, user_name, message, created_at)"
            " VALUES (?, ?, ?, ?)",
            (message.user_id, message.user_name, message.text, _iso(message.date)),
        )

    def recent_messages(self, limit: int = 5) -> list[InboundMessage]:
        rows = self._query(
            "SELECT user_id, user_name, message, created_at FROM telegram_messages"
            " ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        return [
            InboundMessage(
                user_id=r["user_id"],
                user_name=r["user_name"],
                text=r["message"],
                date=parse_timestamp(r["created_at"]),
            )
            for r in rows
        ]
