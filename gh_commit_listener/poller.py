"""Reconciliation cycles between GitHub and the local watch set.

Two independent passes run on their own schedules:

* ``discover_repositories`` asks GitHub which repositories each known user
  watches and links any new ones, seeded with the repository's last update
  time so history is not replayed.
* ``check_commits`` snapshots every watch link, fetches commits newer than
  the link's watermark, sends one notification per commit and advances the
  watermark to the newest commit timestamp seen.

Each user (discovery) or link (commits) is an independent unit of work on a
thread pool. A failing unit is logged and never affects its siblings.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum

from .errors import AuthError, FetchError, ListenerError, NotFoundError, StoreError
from .models import LinkSnapshot, Repository, User

log = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8


class Outcome(str, Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    REMOVED = "removed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class UnitResult:
    outcome: Outcome
    notifications: int = 0
    new_links: int = 0


@dataclass
class CycleReport:
    name: str
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    removed: int = 0
    notifications: int = 0
    new_links: int = 0

    def add(self, result: UnitResult) -> None:
        self.attempted += 1
        if result.outcome is Outcome.FAILED:
            self.failed += 1
        elif result.outcome is Outcome.SKIPPED:
            self.skipped += 1
        else:
            self.succeeded += 1
        if result.outcome is Outcome.REMOVED:
            self.removed += 1
        self.notifications += result.notifications
        self.new_links += result.new_links


class Poller:
    """Runs the discovery and commit-check cycles against injected collaborators."""

    def __init__(self, store, github, notifier, max_workers: int = DEFAULT_MAX_WORKERS) -> None:
        self._store = store
        self._github = github
        self._notifier = notifier
        self.max_workers = max(1, max_workers)

    def _fan_out(self, report: CycleReport, unit, items: list) -> CycleReport:
        if not items:
            return report
        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(items)),
            thread_name_prefix=report.name,
        ) as pool:
            for result in pool.map(unit, items):
                report.add(result)
        return report

    # -- discovery --------------------------------------------------------------

    def discover_repositories(self) -> CycleReport:
        """Link every repository each known user watches on GitHub."""
        report = CycleReport("discover")
        try:
            users = self._store.list_users()
        except StoreError as e:
            log.error("Cannot load users, skipping discovery: %s", e)
            return report
        self._fan_out(report, self._discover_unit, users)
        log.info(
            "Discovery: %d user(s), %d new link(s), %d failed",
            report.attempted, report.new_links, report.failed,
        )
        return report

    def _discover_unit(self, user: User) -> UnitResult:
        try:
            new_links = self.discover_for_user(user)
        except ListenerError as e:
            log.error("Discovery for %s failed: %s", user.handle, e)
            return UnitResult(Outcome.FAILED)
        except Exception:
            log.exception("Unexpected error discovering repos for %s", user.handle)
            return UnitResult(Outcome.FAILED)
        outcome = Outcome.UPDATED if new_links else Outcome.UNCHANGED
        return UnitResult(outcome, new_links=new_links)

    def discover_for_user(self, user: User) -> int:
        """Link the user's GitHub subscriptions. Returns how many links are new."""
        remotes = self._github.fetch_watched_repositories(user.token, user.handle)
        new_links = 0
        for remote in remotes:
            repo, _ = self._store.upsert_repository(
                Repository(name=remote.name, full_name=remote.full_name)
            )
            _, is_new = self._store.link_watch(user, repo, remote.updated_at)
            if is_new:
                new_links += 1
        return new_links

    # -- commits ----------------------------------------------------------------

    def check_commits(self) -> CycleReport:
        """Check every watch link for new commits."""
        report = CycleReport("commits")
        try:
            links = self._store.list_all_links()
        except StoreError as e:
            log.error("Cannot load watch links, skipping commit check: %s", e)
            return report
        self._fan_out(report, self._check_unit, links)
        if report.attempted:
            log.info(
                "Commit check: %d link(s), %d notification(s), %d removed, %d failed",
                report.attempted, report.notifications, report.removed, report.failed,
            )
        return report

    def _check_unit(self, item: LinkSnapshot) -> UnitResult:
        try:
            return self.check_link(item)
        except ListenerError as e:
            log.error("Commit check for %s failed: %s", item.repository.full_name, e)
        except Exception:
            log.exception("Unexpected error checking %s", item.repository.full_name)
        return UnitResult(Outcome.FAILED)

    def check_link(self, item: LinkSnapshot) -> UnitResult:
        """Process one watch link: fetch, notify, advance the watermark."""
        user, repo = item.user, item.repository
        try:
            recipient = int(user.external_id)
        except (TypeError, ValueError):
            log.warning("Skipping %s: malformed chat id %r", repo.full_name, user.external_id)
            return UnitResult(Outcome.SKIPPED)

        try:
            commits = self._github.fetch_commits_since(user.token, repo.full_name, item.watermark)
        except NotFoundError:
            self._store.remove_link(user, repo)
            log.warning("%s not found, unlinked from %s", repo.full_name, user.handle)
            sent = self._notifier.notify_repo_removed(recipient, repo.full_name)
            return UnitResult(Outcome.REMOVED, notifications=int(sent))
        except (FetchError, AuthError) as e:
            log.error("Fetching commits for %s failed: %s", repo.full_name, e)
            return UnitResult(Outcome.FAILED)

        if not commits:
            return UnitResult(Outcome.UNCHANGED)

        newest = None
        sent = 0
        for commit in commits:
            ts = commit.timestamp
            if newest is None or ts > newest:
                newest = ts
            if self._notifier.notify_commit(recipient, repo.full_name, commit):
                sent += 1

        if self._store.advance_watermark(item.link, newest):
            log.info("%s: %d new commit(s), watermark now %s", repo.full_name, len(commits), newest)
        return UnitResult(Outcome.UPDATED, notifications=sent)
