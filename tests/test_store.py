from __future__ import annotations

from datetime import datetime

import pytest

from gh_commit_listener.errors import StoreError
from gh_commit_listener.models import InboundMessage, Repository, User
from gh_commit_listener.store import WatchStore

from .factories import T0, at


def test_migrate_creates_tables(store: WatchStore) -> None:
    names = {
        row[0]
        for row in store.connect().execute("SELECT name FROM sqlite_master WHERE type='table'")
    }
    assert {"telegram_messages", "github_users", "github_repos", "users_repos"} <= names


def test_upsert_user_returns_existing_without_overwriting_token(store: WatchStore, user: User) -> None:
    again, is_new = store.upsert_user(
        User(name="Someone", handle="ada", token="other-token", external_id="1001")
    )
    assert is_new is False
    assert again.id == user.id
    assert again.token == "tok-ada"


def test_upsert_user_by_handle(store: WatchStore, user: User) -> None:
    found, is_new = store.upsert_user(
        User(name="x", handle="ada", token="t", external_id="9999"), by="handle"
    )
    assert is_new is False
    assert found.id == user.id


def test_upsert_user_conflict_on_other_key_returns_existing(store: WatchStore, user: User) -> None:
    # Same handle, new chat id: the handle is unique too.
    found, is_new = store.upsert_user(
        User(name="x", handle="ada", token="t", external_id="2002")
    )
    assert is_new is False
    assert found.id == user.id
    assert len(store.list_users()) == 1


def test_find_user_by_handle(store: WatchStore, user: User) -> None:
    assert store.find_user_by_handle("ada").external_id == "1001"
    assert store.find_user_by_handle("nobody") is None


def test_upsert_user_rejects_unknown_key(store: WatchStore) -> None:
    with pytest.raises(ValueError):
        store.upsert_user(User(name="x", handle="x", token="t", external_id="1"), by="token")


def test_set_user_token(store: WatchStore, user: User) -> None:
    updated = store.set_user_token(user, "fresh")
    assert updated.token == "fresh"
    assert store.find_user_by_external_id("1001").token == "fresh"


def test_find_missing_returns_none(store: WatchStore) -> None:
    assert store.find_user_by_external_id("404") is None
    assert store.find_repository_by_name("no/such") is None


def test_upsert_repository_is_keyed_on_full_name(store: WatchStore, repo: Repository) -> None:
    again, is_new = store.upsert_repository(Repository(name="renamed", full_name="a/b"))
    assert is_new is False
    assert again.id == repo.id
    assert again.name == "b"


def test_link_watch_is_idempotent_and_ignores_second_seed(
    store: WatchStore, user: User, repo: Repository
) -> None:
    link, is_new = store.link_watch(user, repo, T0)
    assert is_new is True

    again, is_new = store.link_watch(user, repo, at(60))
    assert is_new is False
    assert again.id == link.id
    assert again.watermark == T0

    links = store.list_all_links()
    assert len(links) == 1
    assert links[0].watermark == T0


def test_update_watermark_is_unconditional(store: WatchStore, user: User, repo: Repository) -> None:
    link, _ = store.link_watch(user, repo, at(10))
    store.update_watermark(link, at(5))
    assert store.list_all_links()[0].watermark == at(5)


def test_advance_watermark_never_moves_backward(
    store: WatchStore, user: User, repo: Repository
) -> None:
    link, _ = store.link_watch(user, repo, at(10))

    assert store.advance_watermark(link, at(5)) is False
    assert store.advance_watermark(link, at(10)) is False
    assert store.list_all_links()[0].watermark == at(10)

    assert store.advance_watermark(link, at(20)) is True
    assert store.list_all_links()[0].watermark == at(20)


def test_remove_link_is_idempotent(store: WatchStore, user: User, repo: Repository) -> None:
    store.link_watch(user, repo, T0)
    assert store.remove_link(user, repo) is True
    assert store.remove_link(user, repo) is False
    assert store.list_all_links() == []
    # The repository catalog is shared and never pruned.
    assert store.find_repository_by_name("a/b") is not None


def test_list_all_links_snapshot_contents(store: WatchStore, user: User, repo: Repository) -> None:
    other, _ = store.upsert_user(User(name="Bob", handle="bob", token="tok-bob", external_id="2002"))
    second, _ = store.upsert_repository(Repository(name="d", full_name="c/d"))
    store.link_watch(user, repo, T0)
    store.link_watch(other, repo, at(1))
    store.link_watch(user, second, at(2))

    links = store.list_all_links()
    assert [(i.user.handle, i.repository.full_name) for i in links] == [
        ("ada", "a/b"),
        ("bob", "a/b"),
        ("ada", "c/d"),
    ]
    assert links[1].user.token == "tok-bob"
    assert [i.repository.full_name for i in store.list_user_links(user)] == ["a/b", "c/d"]


def test_record_message(store: WatchStore) -> None:
    store.record_message(InboundMessage(user_id=1001, user_name="ada", text="/help", date=T0))
    store.record_message(InboundMessage(user_id=1001, user_name="ada", text="/me", date=at(1)))
    recent = store.recent_messages()
    assert [m.text for m in recent] == ["/me", "/help"]
    assert recent[1].date == T0


def test_store_errors_are_wrapped(tmp_path) -> None:
    s = WatchStore(tmp_path / "unmigrated.db")
    with pytest.raises(StoreError):
        s.list_all_links()
    s.close()


def test_timestamps_round_trip_as_utc(store: WatchStore, user: User, repo: Repository) -> None:
    store.link_watch(user, repo, T0)
    watermark = store.list_all_links()[0].watermark
    assert isinstance(watermark, datetime)
    assert watermark.utcoffset().total_seconds() == 0
