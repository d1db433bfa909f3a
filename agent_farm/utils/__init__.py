"""Configuration, dependency checks, paths, files and system helpers."""

__all__ = ["config_loader", "deps", "file_utils", "path_utils", "prompt_command", "system_utils"]
