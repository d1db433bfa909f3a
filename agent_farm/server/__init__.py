"""Flask servers: the per-project dashboard and single-file viewers."""

__all__ = ["dashboard_server", "security", "viewer_server"]
