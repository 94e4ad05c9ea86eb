"""Adapters that plug Telegram and SQLite into the core ports."""
