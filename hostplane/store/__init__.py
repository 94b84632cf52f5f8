"""Persistence — SQLite store and per-entity repositories."""
