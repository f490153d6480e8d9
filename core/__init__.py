"""Shared helpers for paths, settings, SQLite access and logging."""
