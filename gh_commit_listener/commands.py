"""Chat command handling: authorization, listing and editing watched repos."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from .errors import AuthError, FetchError, NotFoundError, SendError, StoreError
from .models import InboundMessage, Repository, User

log = logging.getLogger(__name__)

REPO_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*/[A-Za-z0-9_.-]+$")

HELP_TEXT = (
    "/start - authorize with GitHub\n"
    "/me - show the connected GitHub account\n"
    "/repos - list watched repositories\n"
    "/watch owner/repo - start watching a repository\n"
    "/unwatch owner/repo - stop watching a repository\n"
    "/help - this message"
)


def parse_repo_name(text: str) -> str | None:
    """Return ``owner/repo`` if ``text`` is one, else None."""
    candidate = text.strip()
    if not REPO_NAME_RE.match(candidate):
        return None
    if candidate.split("/", 1)[1] in (".", ".."):
        return None
    return candidate


def split_command(text: str) -> tuple[str, str] | None:
    """Split ``/cmd@bot args`` into ("cmd", "args"); None for plain text."""
    if not text.startswith("/"):
        return None
    head, _, args = text.partition(" ")
    name = head[1:].split("@", 1)[0].lower()
    return name, args.strip()


class CommandRouter:
    """Turns inbound chat messages into store and GitHub operations."""

    def __init__(self, store, github, poller, chat, redirect_uri: str) -> None:
        self._store = store
        self._github = github
        self._poller = poller
        self._chat = chat
        self._redirect_uri = redirect_uri
        self._handlers = {
            "start": self.cmd_start,
            "startgroup": self.cmd_start,
            "me": self.cmd_me,
            "repos": self.cmd_repos,
            "watch": self.cmd_watch,
            "unwatch": self.cmd_unwatch,
            "help": self.cmd_help,
        }

    def handle(self, message: dict) -> None:
        sender = message.get("from") or {}
        text = message.get("text") or ""
        log.info("%s [%s] %s", sender.get("username", ""), sender.get("id"), text)
        self._record(message, sender, text)

        parsed = split_command(text)
        if parsed is None:
            return
        name, args = parsed
        handler = self._handlers.get(name)
        if handler is None:
            reply, markdown = "I don't know that command", False
        else:
            reply, markdown = handler(str(sender.get("id", "")), args)

        chat_id = (message.get("chat") or {}).get("id", sender.get("id"))
        try:
            self._chat.send_message(
                chat_id, reply, markdown=markdown, reply_to=message.get("message_id")
            )
        except SendError as e:
            log.error("Failed to reply to %s: %s", chat_id, e)

    def _record(self, message: dict, sender: dict, text: str) -> None:
        date = datetime.fromtimestamp(message.get("date", 0), tz=timezone.utc)
        try:
            self._store.record_message(
                InboundMessage(
                    user_id=int(sender.get("id", 0)),
                    user_name=sender.get("username", ""),
                    text=text,
                    date=date,
                )
            )
        except StoreError as e:
            log.error("Failed to store message: %s", e)

    def _user(self, external_id: str) -> User | None:
        return self._store.find_user_by_external_id(external_id)

    def _watch_list(self, user: User) -> str:
        links = self._store.list_user_links(user)
        if not links:
            return "You are not watching any repositories."
        lines = ["You are watching:"]
        for item in links:
            lines.append(
                f"{item.repository.full_name} / {item.watermark:%Y-%m-%d %H:%M:%S}"
            )
        return "\n".join(lines)

    # -- commands ---------------------------------------------------------------

    def cmd_start(self, external_id: str, args: str) -> tuple[str, bool]:
        token = args.strip()
        if not token:
            url = self._github.authorize_url(self._redirect_uri)
            return f"[Click here to authorize bot in GitHub]({url}), and then press START again", True

        try:
            name, handle = self._github.fetch_identity(token)
        except AuthError as e:
            log.warning("Identity lookup for %s failed: %s", external_id, e)
            return "Could not verify your GitHub authorization, try /start again", False

        try:
            user, is_new = self._store.upsert_user(
                User(name=name, handle=handle, token=token, external_id=external_id)
            )
            if user.external_id != str(external_id):
                log.warning(
                    "Chat %s tried to register %s, already linked to chat %s",
                    external_id, handle, user.external_id,
                )
                return "This GitHub account is already linked to another chat", False
            if user.handle != handle:
                log.warning("Chat %s is linked to %s, not %s", external_id, user.handle, handle)
                return f"This chat is already linked to GitHub account {user.handle}", False
            if not is_new and user.token != token:
                user = self._store.set_user_token(user, token)
        except StoreError as e:
            log.error("Failed to save user %s: %s", handle, e)
            return "Error on save your token, try /start again", False

        reply = f"Hi, {user.name}"
        try:
            self._poller.discover_for_user(user)
            reply += "\n" + self._watch_list(user)
        except (FetchError, AuthError, StoreError) as e:
            log.error("Initial discovery for %s failed: %s", handle, e)
            reply += "\nCould not load your watched repositories yet, try /repos later"
        return reply, False

    def cmd_me(self, external_id: str, args: str) -> tuple[str, bool]:
        try:
            user = self._user(external_id)
        except StoreError as e:
            return f"Error loading your account: {e}", False
        if user is None:
            return "type /start", False
        return f"Hi, {user.name} ({user.handle})", False

    def cmd_repos(self, external_id: str, args: str) -> tuple[str, bool]:
        try:
            user = self._user(external_id)
            if user is None:
                return "type /start", False
            notes = ""
            try:
                self._poller.discover_for_user(user)
            except (FetchError, AuthError) as e:
                log.warning("Refreshing subscriptions for %s failed: %s", user.handle, e)
                notes = "\n(could not refresh from GitHub)"
            return self._watch_list(user) + notes, False
        except StoreError as e:
            return f"Error loading your repositories: {e}", False

    def cmd_watch(self, external_id: str, args: str) -> tuple[str, bool]:
        full_name = parse_repo_name(args)
        if full_name is None:
            return f"Expected a repository as owner/repo, got: {args or 'nothing'}", False
        try:
            user = self._user(external_id)
            if user is None:
                return "type /start", False
            remote = self._github.fetch_repository(user.token, full_name)
            repo, _ = self._store.upsert_repository(
                Repository(name=remote.name, full_name=remote.full_name)
            )
            self._store.link_watch(user, repo, remote.pushed_at or remote.updated_at)
        except NotFoundError:
            return f"Repository {full_name} not found", False
        except (FetchError, AuthError) as e:
            log.warning("Watch %s failed: %s", full_name, e)
            return f"Could not reach GitHub, try again later ({e})", False
        except StoreError as e:
            return f"Error saving {full_name}: {e}", False
        return f"Watching {remote.full_name}", False

    def cmd_unwatch(self, external_id: str, args: str) -> tuple[str, bool]:
        full_name = parse_repo_name(args)
        if full_name is None:
            return f"Expected a repository as owner/repo, got: {args or 'nothing'}", False
        try:
            user = self._user(external_id)
            if user is None:
                return "type /start", False
            repo = self._store.find_repository_by_name(full_name)
            if repo is not None:
                self._store.remove_link(user, repo)
        except StoreError as e:
            return f"Error removing {full_name}: {e}", False
        return f"No longer watching {full_name}", False

    def cmd_help(self, external_id: str, args: str) -> tuple[str, bool]:
        return HELP_TEXT, False
