from __future__ import annotations

from unittest.mock import MagicMock

from gh_commit_listener.errors import FetchError, NotFoundError, SendError, StoreError
from gh_commit_listener.models import RemoteRepository, Repository, User
from gh_commit_listener.notifier import Notifier
from gh_commit_listener.poller import CycleReport, Outcome, Poller
from gh_commit_listener.store import WatchStore

from .factories import T0, at, make_commit


class FakeTransport:
    supports_markup = False

    def __init__(self, fail_for: set[int] | None = None) -> None:
        self.sent: list[tuple[int, str]] = []
        self.fail_for = fail_for or set()

    def send_message(self, chat_id, text, markdown=False, reply_to=None):
        if chat_id in self.fail_for:
            raise SendError("blocked by user")
        self.sent.append((chat_id, text))


def _poller(store, github, transport=None):
    transport = transport or FakeTransport()
    return Poller(store, github, Notifier(transport), max_workers=4), transport


def _commits_by_repo(mapping):
    def fetch(token, full_name, since):
        result = mapping[full_name]
        if isinstance(result, Exception):
            raise result
        return result
    return fetch


def test_scenario_two_commits_notified_in_order(store: WatchStore, user: User, repo: Repository) -> None:
    store.link_watch(user, repo, T0)
    github = MagicMock()
    github.fetch_commits_since.return_value = [
        make_commit("aaaaaaa1", at(1), message="first"),
        make_commit("bbbbbbb2", at(2), message="second"),
    ]
    poller, transport = _poller(store, github)

    report = poller.check_commits()

    github.fetch_commits_since.assert_called_once_with("tok-ada", "a/b", T0)
    assert [chat for chat, _ in transport.sent] == [1001, 1001]
    assert "first" in transport.sent[0][1]
    assert "second" in transport.sent[1][1]
    assert store.list_all_links()[0].watermark == at(2)
    assert report.notifications == 2
    assert report.succeeded == 1


def test_scenario_not_found_removes_link_and_notifies_once(
    store: WatchStore, user: User, repo: Repository
) -> None:
    store.link_watch(user, repo, T0)
    github = MagicMock()
    github.fetch_commits_since.side_effect = NotFoundError("gone")
    poller, transport = _poller(store, github)

    report = poller.check_commits()

    assert store.list_all_links() == []
    assert len(transport.sent) == 1
    chat, text = transport.sent[0]
    assert chat == 1001
    assert "not found" in text
    assert "a/b" in text
    assert report.removed == 1


def test_not_found_only_notifies_owner_of_missing_link(store: WatchStore, user: User, repo: Repository) -> None:
    other, _ = store.upsert_user(User(name="Bob", handle="bob", token="tok-bob", external_id="2002"))
    healthy, _ = store.upsert_repository(Repository(name="d", full_name="c/d"))
    store.link_watch(user, repo, T0)
    store.link_watch(other, healthy, T0)
    github = MagicMock()
    github.fetch_commits_since.side_effect = _commits_by_repo(
        {"a/b": NotFoundError("gone"), "c/d": []}
    )
    poller, transport = _poller(store, github)

    poller.check_commits()

    assert transport.sent == [(1001, "Repository a/b not found, removed from your watch list.")]
    remaining = store.list_all_links()
    assert [(i.user.handle, i.repository.full_name) for i in remaining] == [("bob", "c/d")]


def test_fetch_error_is_isolated_to_its_link(store: WatchStore, user: User) -> None:
    repos = []
    for name in ("r1", "r2", "r3"):
        r, _ = store.upsert_repository(Repository(name=name, full_name=f"o/{name}"))
        store.link_watch(user, r, T0)
        repos.append(r)
    github = MagicMock()
    github.fetch_commits_since.side_effect = _commits_by_repo(
        {
            "o/r1": [make_commit("1111111", at(5))],
            "o/r2": FetchError("timeout"),
            "o/r3": [make_commit("3333333", at(7))],
        }
    )
    poller, _ = _poller(store, github)

    report = poller.check_commits()

    marks = {i.repository.full_name: i.watermark for i in store.list_all_links()}
    assert marks == {"o/r1": at(5), "o/r2": T0, "o/r3": at(7)}
    assert report.attempted == 3
    assert report.failed == 1


def test_zero_commits_leave_watermark_untouched(store: WatchStore, user: User, repo: Repository) -> None:
    store.link_watch(user, repo, T0)
    store.advance_watermark = MagicMock(wraps=store.advance_watermark)
    github = MagicMock()
    github.fetch_commits_since.return_value = []
    poller, transport = _poller(store, github)

    report = poller.check_commits()

    assert store.list_all_links()[0].watermark == T0
    store.advance_watermark.assert_not_called()
    assert transport.sent == []
    assert report.succeeded == 1


def test_watermark_tracks_max_over_cycles(store: WatchStore, user: User, repo: Repository) -> None:
    store.link_watch(user, repo, T0)
    batches = [
        [make_commit("a" * 7, at(1)), make_commit("b" * 7, at(3))],
        [],
        [make_commit("c" * 7, at(4), committer_date=at(9))],
    ]
    github = MagicMock()
    github.fetch_commits_since.side_effect = batches
    poller, _ = _poller(store, github)

    for _ in batches:
        poller.check_commits()

    assert store.list_all_links()[0].watermark == at(9)
    seen_since = [c.args[2] for c in github.fetch_commits_since.call_args_list]
    assert seen_since == [T0, at(3), at(3)]


def test_out_of_order_batch_keeps_running_maximum(store: WatchStore, user: User, repo: Repository) -> None:
    store.link_watch(user, repo, T0)
    github = MagicMock()
    # Newest first, as GitHub usually returns them.
    github.fetch_commits_since.return_value = [
        make_commit("newer00", at(30)),
        make_commit("older00", at(10)),
    ]
    poller, transport = _poller(store, github)

    poller.check_commits()

    assert store.list_all_links()[0].watermark == at(30)
    # Platform order is kept for notifications.
    assert "newer00" in transport.sent[0][1]
    assert "older00" in transport.sent[1][1]


def test_committer_date_counts_toward_watermark(store: WatchStore, user: User, repo: Repository) -> None:
    store.link_watch(user, repo, T0)
    github = MagicMock()
    github.fetch_commits_since.return_value = [make_commit("abcdef0", at(1), committer_date=at(40))]
    poller, _ = _poller(store, github)

    poller.check_commits()

    assert store.list_all_links()[0].watermark == at(40)


def test_send_failure_still_advances_watermark(store: WatchStore, user: User, repo: Repository) -> None:
    store.link_watch(user, repo, T0)
    github = MagicMock()
    github.fetch_commits_since.return_value = [make_commit("abcdef0", at(3))]
    poller, transport = _poller(store, github, FakeTransport(fail_for={1001}))

    report = poller.check_commits()

    assert transport.sent == []
    assert report.notifications == 0
    assert store.list_all_links()[0].watermark == at(3)


def test_malformed_chat_id_is_skipped_without_fetch(store: WatchStore, repo: Repository) -> None:
    broken, _ = store.upsert_user(User(name="X", handle="x", token="t", external_id="not-a-number"))
    store.link_watch(broken, repo, T0)
    github = MagicMock()
    poller, _ = _poller(store, github)

    report = poller.check_commits()

    github.fetch_commits_since.assert_not_called()
    assert report.skipped == 1
    assert store.list_all_links()[0].watermark == T0


def test_stale_snapshot_cannot_regress_watermark(store: WatchStore, user: User, repo: Repository) -> None:
    store.link_watch(user, repo, T0)
    stale = store.list_all_links()[0]
    store.advance_watermark(stale.link, at(50))
    github = MagicMock()
    github.fetch_commits_since.return_value = [make_commit("abcdef0", at(20))]
    poller, _ = _poller(store, github)

    result = poller.check_link(stale)

    assert result.outcome is Outcome.UPDATED
    assert store.list_all_links()[0].watermark == at(50)


def test_unexpected_exception_is_contained(store: WatchStore, user: User, repo: Repository) -> None:
    store.link_watch(user, repo, T0)
    github = MagicMock()
    github.fetch_commits_since.side_effect = RuntimeError("boom")
    poller, _ = _poller(store, github)

    report = poller.check_commits()

    assert report.failed == 1
    assert store.list_all_links()[0].watermark == T0


def test_snapshot_read_failure_means_nothing_to_do() -> None:
    store = MagicMock()
    store.list_all_links.side_effect = StoreError("disk I/O error")
    store.list_users.side_effect = StoreError("disk I/O error")
    github = MagicMock()
    poller, _ = _poller(store, github)

    assert poller.check_commits() == CycleReport("commits")
    assert poller.discover_repositories() == CycleReport("discover")
    github.fetch_commits_since.assert_not_called()


def test_discovery_links_subscriptions_seeded_with_update_time(store: WatchStore, user: User) -> None:
    github = MagicMock()
    github.fetch_watched_repositories.return_value = [
        RemoteRepository(name="b", full_name="a/b", updated_at=at(3)),
        RemoteRepository(name="d", full_name="c/d", updated_at=at(4)),
    ]
    poller, _ = _poller(store, github)

    report = poller.discover_repositories()

    github.fetch_watched_repositories.assert_called_once_with("tok-ada", "ada")
    marks = {i.repository.full_name: i.watermark for i in store.list_all_links()}
    assert marks == {"a/b": at(3), "c/d": at(4)}
    assert report.new_links == 2

    # Running again adds nothing and keeps existing watermarks.
    github.fetch_watched_repositories.return_value = [
        RemoteRepository(name="b", full_name="a/b", updated_at=at(30)),
    ]
    report = poller.discover_repositories()
    assert report.new_links == 0
    assert {i.repository.full_name: i.watermark for i in store.list_all_links()} == marks


def test_discovery_failure_for_one_user_does_not_block_others(store: WatchStore, user: User) -> None:
    store.upsert_user(User(name="Bob", handle="bob", token="tok-bob", external_id="2002"))

    def fetch(token, handle):
        if handle == "ada":
            raise FetchError("502")
        return [RemoteRepository(name="d", full_name="c/d", updated_at=at(1))]

    github = MagicMock()
    github.fetch_watched_repositories.side_effect = fetch
    poller, _ = _poller(store, github)

    report = poller.discover_repositories()

    assert report.failed == 1
    assert report.succeeded == 1
    assert [(i.user.handle, i.repository.full_name) for i in store.list_all_links()] == [("bob", "c/d")]
