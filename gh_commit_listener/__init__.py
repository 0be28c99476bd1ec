"""Relay new GitHub commits on watched repositories to Telegram chats."""

__version__ = "0.1.0"
