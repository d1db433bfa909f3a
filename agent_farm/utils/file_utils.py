"""
File Utilities Module

Common file operations used by configuration loading and prompt scaffolding.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from rich.console import Console

console = Console()


class FileUtils:
    """
    File operation utilities with error handling.
    """

    @staticmethod
    def read_json(file_path: Path) -> Optional[Dict[str, Any]]:
        """
        Safely read JSON file.

        Args:
            file_path: Path to JSON file

        Returns:
            Dict containing JSON data or None if missing or invalid
        """
        if not file_path.exists():
            return None
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            console.print(f"[red]❌ Invalid JSON in {file_path}: {e}[/red]")
            return None
        except OSError as e:
            console.print(f"[red]❌ Error reading {file_path}: {e}[/red]")
            return None

    @staticmethod
    def read_yaml(file_path: Path) -> Optional[Dict[str, Any]]:
        """
        Safely read YAML file.

        Args:
            file_path: Path to YAML file

        Returns:
            Dict containing YAML data or None if missing or invalid
        """
        if not file_path.exists():
            return None
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
            return data or {}
        except yaml.YAMLError as e:
            console.print(f"[red]❌ Invalid YAML in {file_path}: {e}[/red]")
            return None
        except OSError as e:
            console.print(f"[red]❌ Error reading YAML {file_path}: {e}[/red]")
            return None

    @staticmethod
    def read_text(file_path: Path) -> Optional[str]:
        if not file_path.exists():
            return None
        with open(file_path, 'r', encoding='utf-8') as f:
            return f.read()

    @staticmethod
    def write_text(file_path: Path, content: str, mode: Optional[int] = None) -> Path:
        """
        Write a text file, creating parent directories.

        Args:
            file_path: Destination
            content: Text to write
            mode: Optional permission bits applied after writing

        Returns:
            The written path
        """
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, 'w', encoding='utf-8') as f:
            f.write(content)
        if mode is not None:
            os.chmod(file_path, mode)
        return file_path
