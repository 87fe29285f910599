"""Versioned SQL for the PostgreSQL state backend, applied by migrate.py."""
