"""
System Utilities Module

Port probing, command execution and id generation helpers shared by the CLI
and the dashboard server.
"""

import base64
import logging
import os
import re
import secrets
import shutil
import socket
import subprocess
import uuid
import webbrowser
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from rich.console import Console

console = Console()
logger = logging.getLogger(__name__)

PORT_SCAN_ATTEMPTS = 100


class SystemUtils:
    """
    System-level utilities and process helpers.
    """

    @staticmethod
    def is_port_free(port: int, host: str = '127.0.0.1') -> bool:
        """
        Check if a port can be bound.

        Args:
            port: Port number to check
            host: Interface to bind

        Returns:
            bool: True if the port is available
        """
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((host, port))
                return True
            except OSError:
                return False

    @staticmethod
    def is_port_listening(port: int, host: str = '127.0.0.1', timeout: float = 0.1) -> bool:
        """True if something accepts TCP connections on the port."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            return sock.connect_ex((host, port)) == 0

    @staticmethod
    def find_available_port(start_port: int,
                            skip: Optional[Iterable[int]] = None,
                            max_attempts: int = PORT_SCAN_ATTEMPTS) -> Optional[int]:
        """
        Find a free port, skipping ports already recorded in state.

        A port recorded for a session that is still starting up may not be
        bound yet, so the skip set is consulted before the OS check.

        Args:
            start_port: Port to start searching from
            skip: Ports already allocated to sessions
            max_attempts: Maximum number of ports to try

        Returns:
            Available port number or None if none found
        """
        skipped = set(skip or ())
        for port in range(start_port, start_port + max_attempts):
            if port in skipped:
                continue
            if SystemUtils.is_port_free(port):
                return port

        console.print(f"[red]❌ No free ports found in range {start_port}-{start_port + max_attempts}[/red]")
        return None

    @staticmethod
    def run_command(command: List[str],
                    cwd: Optional[Path] = None,
                    timeout: Optional[int] = None) -> Tuple[int, str, str]:
        """
        Run system command with proper error handling.

        Args:
            command: Command and arguments as list
            cwd: Working directory for command
            timeout: Command timeout in seconds

        Returns:
            Tuple of (return_code, stdout, stderr)
        """
        try:
            result = subprocess.run(
                command,
                cwd=str(cwd) if cwd else None,
                timeout=timeout,
                capture_output=True,
                text=True
            )
            return (result.returncode, result.stdout or "", result.stderr or "")

        except subprocess.TimeoutExpired:
            logger.warning(f"Command timeout: {' '.join(command)}")
            return (124, "", f"Command timed out after {timeout} seconds")

        except FileNotFoundError:
            return (127, "", f"Command not found: {command[0]}")

    @staticmethod
    def command_exists(command: str) -> bool:
        """
        Check if a command is available in PATH.

        Args:
            command: Command name (anything beyond [A-Za-z0-9._-] is rejected)

        Returns:
            bool: True if command is available
        """
        if not re.fullmatch(r'[A-Za-z0-9._-]+', command or ''):
            return False
        return shutil.which(command) is not None

    @staticmethod
    def open_browser(url: str) -> None:
        """Open a URL in the default browser (best effort)."""
        try:
            if not webbrowser.open(url):
                console.print(f"[yellow]⚠️ Could not open browser. Visit: {url}[/yellow]")
        except webbrowser.Error as e:
            console.print(f"[yellow]⚠️ Could not open browser ({e}). Visit: {url}[/yellow]")

    @staticmethod
    def default_shell() -> str:
        return os.environ.get('SHELL') or '/bin/bash'


def generate_short_id() -> str:
    """Four URL-safe base64 characters from 24 random bits."""
    raw = secrets.token_bytes(3)
    return base64.urlsafe_b64encode(raw).decode('ascii').rstrip('=')[:4]


def generate_id(prefix: str) -> str:
    """Prefix plus eight uppercase hex characters, e.g. U1A2B3C4D."""
    return f"{prefix}{uuid.uuid4().hex[:8].upper()}"
