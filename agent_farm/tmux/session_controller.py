"""
Tmux Session Controller Module

Creates, queries and kills the named tmux sessions that back every agent
session, and owns the project-namespaced session naming scheme.
"""

import hashlib
import logging
import re
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.errors import TmuxError

logger = logging.getLogger(__name__)

SESSION_PREFIX = 'af'

# Legacy architect names from un-namespaced layouts. af-architect-<port> is
# only ours when the port is this project's architect port.
LEGACY_ARCHITECT = 'af-architect'
LEGACY_ARCHITECT_PORT = re.compile(r'^af-architect-(\d+)$')

OWNED_SUFFIX = re.compile(r'^(architect|builder-[A-Za-z0-9_-]+|shell-[A-Za-z0-9_-]+)$')


def sanitize_project_name(name: str) -> str:
    """Reduce a directory name to characters tmux accepts in session names."""
    cleaned = re.sub(r'[^A-Za-z0-9_-]', '-', name).strip('-')
    return cleaned or 'project'


def project_key(project_root: Path) -> str:
    """Six hex characters identifying the resolved project path."""
    resolved = str(Path(project_root).resolve())
    return hashlib.sha1(resolved.encode('utf-8')).hexdigest()[:6]


class SessionNames:
    """
    Session naming scheme for one project.

    af-<project>-<key>-architect, af-<project>-<key>-builder-<id>,
    af-<project>-<key>-shell-<id>, where <key> is derived from the resolved
    project path so same-named checkouts never share a namespace.
    """

    def __init__(self, project_root: Path):
        self.project = sanitize_project_name(Path(project_root).name)
        self.key = project_key(project_root)
        self.prefix = f"{SESSION_PREFIX}-{self.project}-{self.key}-"

    def architect(self) -> str:
        return f"{self.prefix}architect"

    def builder(self, builder_id: str) -> str:
        return f"{self.prefix}builder-{builder_id}"

    def shell(self, util_id: str) -> str:
        return f"{self.prefix}shell-{util_id}"

    def layout(self) -> str:
        """Interactive architect-plus-shell session; never tracked in state."""
        return f"{self.prefix}layout"

    def owns(self, session_name: str) -> bool:
        """True if the session belongs to this project instance."""
        if not session_name.startswith(self.prefix):
            return False
        return bool(OWNED_SUFFIX.match(session_name[len(self.prefix):]))

    @staticmethod
    def is_legacy(session_name: str, architect_port: Optional[int] = None) -> bool:
        """
        True for an un-namespaced architect session of this project.

        Args:
            session_name: Live session name
            architect_port: This project's architect port; without it only
                the bare portless name matches
        """
        if session_name == LEGACY_ARCHITECT:
            return True
        match = LEGACY_ARCHITECT_PORT.match(session_name)
        return bool(match) and architect_port is not None and int(match.group(1)) == architect_port


class TmuxSessionController:
    """
    Controls tmux sessions for agent terminals.

    Provides functionality for:
    - Idempotent session creation with dashboard-friendly options
    - Exact-name existence checks and kills
    - Session enumeration for orphan reconciliation
    - Keystroke and buffer injection
    """

    SESSION_WIDTH = 200
    SESSION_HEIGHT = 50

    def session_exists(self, session_name: str) -> bool:
        """
        Check if a tmux session exists.

        Args:
            session_name: Exact session name

        Returns:
            bool: True if session exists
        """
        try:
            result = subprocess.run(
                ['tmux', 'has-session', '-t', f'={session_name}'],
                capture_output=True, text=True
            )
            return result.returncode == 0
        except FileNotFoundError:
            return False

    def create_session(self,
                       session_name: str,
                       command: str,
                       cwd: Path) -> None:
        """
        Create a detached session running command in cwd.

        Args:
            session_name: Session name
            command: Shell command run as the session's first window
            cwd: Working directory

        Raises:
            TmuxError: If tmux refuses to create the session
        """
        result = subprocess.run([
            'tmux', 'new-session', '-d', '-s', session_name,
            '-x', str(self.SESSION_WIDTH), '-y', str(self.SESSION_HEIGHT),
            '-c', str(cwd), command
        ], capture_output=True, text=True, cwd=str(cwd))

        if result.returncode != 0:
            raise TmuxError(f"Failed to create tmux session {session_name}: {result.stderr.strip()}")

        self._configure_session(session_name)
        logger.info(f"Created tmux session {session_name} in {cwd}")

    def ensure_session(self, session_name: str, command: str, cwd: Path) -> bool:
        """
        Create the session unless it already exists.

        Returns:
            bool: True if a new session was created
        """
        if self.session_exists(session_name):
            logger.info(f"Reusing existing tmux session {session_name}")
            return False
        self.create_session(session_name, command, cwd)
        return True

    def _configure_session(self, session_name: str) -> None:
        """Hide the status bar and enable mouse and clipboard passthrough."""
        target = f'={session_name}'
        options = [
            ['set-option', '-t', target, 'status', 'off'],
            ['set-option', '-t', target, 'mouse', 'on'],
            ['set-option', '-t', target, 'set-clipboard', 'on'],
            ['set-option', '-t', target, 'allow-passthrough', 'on'],
        ]
        for option in options:
            result = subprocess.run(['tmux'] + option, capture_output=True, text=True)
            if result.returncode != 0:
                # Older tmux lacks allow-passthrough
                logger.debug(f"tmux {' '.join(option)} failed: {result.stderr.strip()}")

    def split_window(self, session_name: str, cwd: Path, percent: int = 40) -> None:
        """
        Split the session side by side with a shell on the right, then
        focus the left pane again.

        Raises:
            TmuxError: If the split fails
        """
        result = subprocess.run([
            'tmux', 'split-window', '-h', '-t', f'={session_name}',
            '-p', str(percent), '-c', str(cwd)
        ], capture_output=True, text=True)
        if result.returncode != 0:
            raise TmuxError(f"Failed to split {session_name}: {result.stderr.strip()}")
        subprocess.run(['tmux', 'select-pane', '-t', f'={session_name}:0.0'],
                       capture_output=True, text=True)

    def attach(self, session_name: str) -> int:
        """
        Attach the current terminal to a session until the user detaches.

        Returns:
            int: tmux's exit code

        Raises:
            TmuxError: If tmux is not installed
        """
        try:
            return subprocess.call(['tmux', 'attach-session', '-t', f'={session_name}'])
        except FileNotFoundError as e:
            raise TmuxError(f"Cannot attach to {session_name}: tmux not found") from e

    def kill_session(self, session_name: str) -> bool:
        """
        Kill a tmux session by exact name.

        Args:
            session_name: Session name to kill

        Returns:
            bool: True if a session was killed
        """
        try:
            result = subprocess.run(
                ['tmux', 'kill-session', '-t', f'={session_name}'],
                capture_output=True, text=True
            )
        except FileNotFoundError:
            return False

        if result.returncode == 0:
            logger.info(f"Killed tmux session {session_name}")
            return True
        return False

    def list_sessions(self) -> List[Dict[str, Any]]:
        """
        List all tmux sessions.

        Returns:
            List of session information dictionaries
        """
        try:
            result = subprocess.run([
                'tmux', 'list-sessions', '-F',
                '#{session_name}|#{session_created}|#{?session_attached,attached,not attached}'
            ], capture_output=True, text=True)
        except FileNotFoundError:
            return []

        if result.returncode != 0:
            # No server running means no sessions
            return []

        sessions = []
        for line in result.stdout.strip().split('\n'):
            if line:
                parts = line.split('|')
                if len(parts) >= 3:
                    sessions.append({
                        'name': parts[0],
                        'created': parts[1],
                        'status': parts[2]
                    })
        return sessions

    def list_session_names(self) -> List[str]:
        return [s['name'] for s in self.list_sessions()]

    def send_keys(self, target: str, keys: str, send_enter: bool = False) -> None:
        """
        Send keys to a session.

        Args:
            target: Session name
            keys: tmux key names (e.g. C-c, Enter)
            send_enter: Whether to send Enter after keys

        Raises:
            TmuxError: If tmux rejects the keys
        """
        cmd = ['tmux', 'send-keys', '-t', target, keys]
        if send_enter:
            cmd.append('Enter')

        result = subprocess.run(cmd, capture_output=True, text=True)
        if result.returncode != 0:
            raise TmuxError(f"Failed to send keys to {target}: {result.stderr.strip()}")

    def paste_file(self, target: str, file_path: Path, buffer_name: str) -> None:
        """
        Paste a file's contents into a session through a named buffer.

        Raises:
            TmuxError: If any buffer step fails
        """
        steps = [
            ['tmux', 'load-buffer', '-b', buffer_name, str(file_path)],
            ['tmux', 'paste-buffer', '-b', buffer_name, '-t', target],
        ]
        try:
            for step in steps:
                result = subprocess.run(step, capture_output=True, text=True)
                if result.returncode != 0:
                    raise TmuxError(f"Failed to paste into {target}: {result.stderr.strip()}")
        finally:
            subprocess.run(['tmux', 'delete-buffer', '-b', buffer_name], capture_output=True, text=True)

