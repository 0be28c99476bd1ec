from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from gh_commit_listener.models import Repository, User
from gh_commit_listener.store import WatchStore


@pytest.fixture
def store(tmp_path: Path) -> Iterator[WatchStore]:
    s = WatchStore(tmp_path / "listener.db")
    s.migrate()
    yield s
    s.close()


@pytest.fixture
def user(store: WatchStore) -> User:
    created, _ = store.upsert_user(
        User(name="Ada Lovelace", handle="ada", token="tok-ada", external_id="1001")
    )
    return created


@pytest.fixture
def repo(store: WatchStore) -> Repository:
    created, _ = store.upsert_repository(Repository(name="b", full_name="a/b"))
    return created
