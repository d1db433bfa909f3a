"""SQLite connections, schema migrations, legacy state import and admin commands."""

__all__ = ["admin", "connection", "migrate", "schema"]
