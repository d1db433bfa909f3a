"""GitHub issue access through the gh CLI."""

__all__ = ["issue_client"]
