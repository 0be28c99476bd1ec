"""Application orchestrator - lifecycle and threading."""

import logging
import threading
from pathlib import Path

from . import __version__
from .auth import OAuthServer
from .commands import CommandRouter
from .config import home_dir, load_config, validate_config
from .errors import SendError
from .github_api import GitHubClient
from .notifier import Notifier
from .poller import Poller
from .scheduler import Scheduler
from .store import WatchStore
from .telegram import TelegramClient

log = logging.getLogger(__name__)

UPDATE_TIMEOUT = 30
RETRY_DELAY = 5


class Application:
    def __init__(self, config: dict | None = None) -> None:
        self.config = config if config is not None else load_config()
        self.log_path = self._setup_logging(self.config.get("log_level", "INFO"))
        validate_config(self.config)

        timeout = self.config["request_timeout"]
        self.store = WatchStore(Path(self.config["db_path"]))
        self.github = GitHubClient(
            self.config["client_id"], self.config["client_secret"], timeout=timeout
        )
        self.telegram = TelegramClient(
            self.config["telegram_token"], proxy=self.config["telegram_proxy"], timeout=timeout
        )
        self.notifier = Notifier(self.telegram)
        self.poller = Poller(
            self.store, self.github, self.notifier, max_workers=self.config["max_workers"]
        )
        self.router = CommandRouter(
            self.store, self.github, self.poller, self.telegram, self.config["redirect_uri"]
        )
        self.scheduler = Scheduler()
        self.scheduler.add_job("discover", self.config["discover_every"], self.poller.discover_repositories)
        self.scheduler.add_job("commits", self.config["check_every"], self.poller.check_commits)
        self.oauth: OAuthServer | None = None

        self._stop_event = threading.Event()
        self._offset = 0

    @staticmethod
    def _setup_logging(level: str) -> Path:
        log_dir = home_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / "app.log"
        logging.basicConfig(
            level=getattr(logging, str(level).upper(), logging.INFO),
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            handlers=[
                logging.FileHandler(log_file, encoding="utf-8"),
                logging.StreamHandler(),
            ],
        )
        return log_file

    def start(self) -> None:
        """Open the store and the chat transport, then start background services.

        A failure here is fatal and propagates to the caller.
        """
        log.info("Starting gh-commit-listener %s", __version__)
        self.store.migrate()
        for msg in self.store.recent_messages():
            log.info("%s: %s [%d] %s", msg.date, msg.user_name, msg.user_id, msg.text)
        bot_username = self.telegram.get_me()

        self.oauth = OAuthServer(
            self.config["http_host"], self.config["http_port"], self.github, bot_username
        )
        self.oauth.start()
        self.scheduler.start()

    def run(self) -> None:
        self.start()
        try:
            self._update_loop()
        except KeyboardInterrupt:
            log.info("Interrupted")
        finally:
            self.shutdown()

    def _update_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                updates = self.telegram.get_updates(self._offset, timeout=UPDATE_TIMEOUT)
            except SendError as e:
                log.error("Failed to fetch updates: %s", e)
                self._stop_event.wait(timeout=RETRY_DELAY)
                continue

            for update in updates:
                self._offset = max(self._offset, update["update_id"] + 1)
                message = update.get("message")
                if message is None:  # ignore any non-message updates
                    continue
                try:
                    self.router.handle(message)
                except Exception:
                    log.exception("Command handling failed")

    def shutdown(self) -> None:
        log.info("Shutting down")
        self._stop_event.set()
        self.scheduler.stop()
        if self.oauth is not None:
            self.oauth.stop()
            self.oauth = None
        self.store.close()
