"""Telegram command handling: update routing and the long-poll loop."""
