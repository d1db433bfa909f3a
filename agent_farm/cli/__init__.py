"""Command-line interface for the af command."""

__all__ = ["enhanced_cli"]
