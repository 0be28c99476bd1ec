"""JSON config at $GH_LISTENER_HOME/config.json with environment overrides.

Missing keys are filled from defaults. Any key can also be set through an
environment variable named ``GH_LISTENER_<KEY>``, which wins over the file.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from croniter import croniter

from .errors import ConfigError

log = logging.getLogger(__name__)

ENV_PREFIX = "GH_LISTENER_"

DEFAULT_CONFIG = {
    "client_id": "",
    "client_secret": "",
    "redirect_uri": "http://localhost:8080/oauth/redirect",
    "http_host": "0.0.0.0",
    "http_port": 8080,
    "telegram_token": "",
    "telegram_proxy": "",
    "discover_every": "*/15 * * * *",
    "check_every": "* * * * *",
    "max_workers": 8,
    "request_timeout": 5,
    "db_path": "",
    "log_level": "INFO",
}


def home_dir() -> Path:
    return Path(os.environ.get("GH_LISTENER_HOME", Path.home() / ".gh-commit-listener"))


def config_path() -> Path:
    return home_dir() / "config.json"


def _coerce(raw: str, default):
    if isinstance(default, bool):
        if raw.lower() in ("true", "false"):
            return raw.lower() == "true"
        raise ValueError(f"expected true/false, got {raw!r}")
    if isinstance(default, int):
        return int(raw)
    return raw


def _env_overrides(environ) -> dict:
    overrides = {}
    for key, default in DEFAULT_CONFIG.items():
        raw = environ.get(ENV_PREFIX + key.upper())
        if raw is None:
            continue
        try:
            overrides[key] = _coerce(raw, default)
        except ValueError as e:
            log.warning("Ignoring %s%s: %s", ENV_PREFIX, key.upper(), e)
    return overrides


def load_config(path: Path | None = None, environ=None) -> dict:
    path = path or config_path()
    environ = os.environ if environ is None else environ
    data: dict = {}
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            log.error("Failed to load config: %s", e)
    merged = {**DEFAULT_CONFIG, **data, **_env_overrides(environ)}
    if not merged["db_path"]:
        merged["db_path"] = str(path.parent / "listener.db")
    return merged


def validate_config(cfg: dict) -> None:
    """Raise ConfigError if the service cannot start with ``cfg``."""
    missing = [k for k in ("client_id", "client_secret", "telegram_token") if not cfg.get(k)]
    if missing:
        raise ConfigError(f"missing required settings: {', '.join(missing)}")
    for key in ("discover_every", "check_every"):
        if not croniter.is_valid(cfg[key]):
            raise ConfigError(f"{key} is not a valid cron expression: {cfg[key]!r}")
    if int(cfg["max_workers"]) < 1:
        raise ConfigError("max_workers must be at least 1")
