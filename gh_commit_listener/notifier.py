"""Chat notifications for new commits and removed repositories.

One message is sent per commit. When the transport renders markup, the
repository and commit are sent as Markdown links; otherwise as plain text.
Send failures are logged and reported as ``False``, never raised.
"""

from __future__ import annotations

import logging

from .errors import SendError
from .models import Commit

log = logging.getLogger(__name__)

GITHUB_URL = "https://github.com"
_MARKDOWN_SPECIAL = ("_", "*", "`", "[")


def escape_markdown(text: str) -> str:
    for ch in _MARKDOWN_SPECIAL:
        text = text.replace(ch, "\\" + ch)
    return text


class Notifier:
    """Formats events and hands them to the chat transport."""

    def __init__(self, transport) -> None:
        self._transport = transport
        self.markup = bool(getattr(transport, "supports_markup", False))

    def notify(self, recipient_id: int, text: str, markdown: bool = False) -> bool:
        try:
            self._transport.send_message(recipient_id, text, markdown=markdown and self.markup)
        except SendError as e:
            log.error("Failed to notify %s: %s", recipient_id, e)
            return False
        log.info("Notified %s: %s", recipient_id, text.splitlines()[0] if text else "")
        return True

    def format_commit(self, repo_full_name: str, commit: Commit) -> str:
        if not self.markup:
            return (
                f"{repo_full_name} was updated by {commit.author_name} "
                f"({commit.author_email}) with commit {commit.short_sha}:\n"
                f"{commit.message}"
            )
        commit_url = commit.html_url or f"{GITHUB_URL}/{repo_full_name}/commit/{commit.sha}"
        return (
            f"[{escape_markdown(repo_full_name)}]({GITHUB_URL}/{repo_full_name}) "
            f"was updated by {escape_markdown(commit.author_name)} "
            f"({escape_markdown(commit.author_email)}) "
            f"with commit [{commit.short_sha}]({commit_url}):\n"
            f"{escape_markdown(commit.message)}"
        )

    def notify_commit(self, recipient_id: int, repo_full_name: str, commit: Commit) -> bool:
        return self.notify(
            recipient_id, self.format_commit(repo_full_name, commit), markdown=True
        )

    def notify_repo_removed(self, recipient_id: int, repo_full_name: str) -> bool:
        """Tell the user a watched repository is gone and was dropped."""
        return self.notify(
            recipient_id,
            f"Repository {repo_full_name} not found, removed from your watch list.",
        )
