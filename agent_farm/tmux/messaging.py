"""
Tmux Messaging Module

Delivers instructions between the architect and builders by pasting a framed
message into the target's tmux session through a named buffer.
"""

import logging
import os
import tempfile
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .session_controller import TmuxSessionController
from ..core.errors import PreconditionError, UserInputError

logger = logging.getLogger(__name__)

MAX_MESSAGE_BYTES = 48 * 1024
FOOTER = '###############################'


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def attach_content(message: str, file_content: Optional[str]) -> str:
    if not file_content:
        return message
    return f"{message}\n\nAttached content:\n```\n{file_content}\n```"


def format_architect_message(message: str, file_content: Optional[str] = None,
                             raw: bool = False) -> str:
    """Frame a message sent from the architect to a builder."""
    content = attach_content(message, file_content)
    if raw:
        return content
    return f"### [ARCHITECT INSTRUCTION | {_timestamp()}] ###\n{content}\n{FOOTER}"


def format_builder_message(builder_id: str, message: str, file_content: Optional[str] = None,
                           raw: bool = False) -> str:
    """Frame a message sent from a builder to the architect."""
    content = attach_content(message, file_content)
    if raw:
        return content
    return f"### [BUILDER {builder_id} MESSAGE | {_timestamp()}] ###\n{content}\n{FOOTER}"


def read_attachment(file_path: Path) -> str:
    """
    Read a file to attach to a message.

    Raises:
        PreconditionError: If the file is missing
        UserInputError: If it exceeds the 48KB limit
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise PreconditionError(f"File not found: {file_path}")
    data = file_path.read_bytes()
    if len(data) > MAX_MESSAGE_BYTES:
        raise UserInputError(
            f"File too large: {len(data)} bytes (max {MAX_MESSAGE_BYTES} bytes / 48KB)"
        )
    return data.decode('utf-8', errors='replace')


class TmuxMessenger:
    """
    Handles message delivery into tmux sessions.

    Features:
    - Paste via load-buffer/paste-buffer (no shell escaping of content)
    - Optional Ctrl-C interrupt before delivery
    - Optional Enter suppression
    """

    INTERRUPT_PAUSE = 0.1

    def __init__(self, tmux: Optional[TmuxSessionController] = None):
        self.tmux = tmux or TmuxSessionController()

    def deliver(self,
                session_name: str,
                text: str,
                buffer_name: str,
                interrupt: bool = False,
                send_enter: bool = True) -> None:
        """
        Paste text into a session.

        Args:
            session_name: Target tmux session
            text: Already-framed message
            buffer_name: tmux buffer to stage the paste through
            interrupt: Send C-c first
            send_enter: Submit with Enter after pasting

        Raises:
            PreconditionError: If the session does not exist
            UserInputError: If the message exceeds 48KB
            TmuxError: If tmux rejects any step
        """
        if len(text.encode('utf-8')) > MAX_MESSAGE_BYTES:
            raise UserInputError(f"Message too large (max {MAX_MESSAGE_BYTES} bytes / 48KB)")

        if not self.tmux.session_exists(session_name):
            raise PreconditionError(
                f'tmux session "{session_name}" not found (session may have exited)',
                hint="Use 'af status' to check"
            )

        if interrupt:
            self.tmux.send_keys(session_name, 'C-c')
            time.sleep(self.INTERRUPT_PAUSE)

        fd, temp_path = tempfile.mkstemp(prefix=f'af-msg-{uuid.uuid4().hex[:8]}-', suffix='.txt')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(text)
            self.tmux.paste_file(session_name, Path(temp_path), buffer_name)
            if send_enter:
                self.tmux.send_keys(session_name, 'Enter')
        finally:
            try:
                os.unlink(temp_path)
            except OSError:
                logger.debug(f"Could not remove {temp_path}")

        logger.debug(f"Sent to {session_name}: {text[:50]}...")
