"""Entry point for `python -m gh_commit_listener`."""

import sys

from .app import Application
from .errors import ListenerError


def main() -> None:
    try:
        app = Application()
        app.run()
    except ListenerError as e:
        sys.exit(f"gh-commit-listener: {e}")


if __name__ == "__main__":
    main()
