"""
Prompt Command Builder

Turns an agent CLI command plus role and prompt files into a shell command
line. Content is always referenced through $(cat 'file') so role text never
has to survive shell quoting.
"""

import shlex
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .file_utils import FileUtils

KNOWN_CLIS = ('claude', 'codex', 'gemini')

LAUNCH_SCRIPT = """#!/bin/bash
exec {command}
"""


def cat_file(path: Union[str, Path]) -> str:
    return f"$(cat {shlex.quote(str(path))})"


def detect_cli(command: str) -> Optional[str]:
    """Find which known agent CLI a command line invokes, skipping env assignments and flags."""
    for token in command.split():
        if '=' in token and '/' not in token:
            continue
        if token.startswith('-'):
            continue
        name = token.rsplit('/', 1)[-1]
        if name in KNOWN_CLIS:
            return name
    return None


def build_prompt_command(command: Union[str, List[str]],
                         system_prompt_file: Optional[Path] = None,
                         user_prompt_file: Optional[Path] = None) -> str:
    """
    Build the command that starts an agent with a role and an initial prompt.

    Args:
        command: Agent CLI command (list parts are joined with spaces)
        system_prompt_file: Role file injected as the system prompt
        user_prompt_file: File holding the first user message

    Returns:
        Shell command string
    """
    base = ' '.join(p.strip() for p in command).strip() if isinstance(command, list) else command.strip()
    if not base:
        return base

    cli = detect_cli(base)
    user_arg = f'"{cat_file(user_prompt_file)}"' if user_prompt_file else None

    cmd = base
    if system_prompt_file:
        if cli == 'claude':
            cmd += f' --append-system-prompt "{cat_file(system_prompt_file)}"'
        elif cli == 'codex' and 'developer_instructions=' not in cmd:
            cmd += f' -c developer_instructions={shlex.quote(str(system_prompt_file))}'
        elif cli == 'gemini':
            cmd = f'GEMINI_SYSTEM_MD={shlex.quote(str(system_prompt_file))} {cmd}'

    if user_arg:
        cmd += f' {user_arg}'
    return cmd


def write_launch_script(script_path: Path, command: str) -> Path:
    """Write an executable bash script that execs command."""
    return FileUtils.write_text(script_path, LAUNCH_SCRIPT.format(command=command), mode=0o755)


def load_role(roles_dir: Optional[Path], bundled_dir: Path, name: str) -> Optional[Tuple[str, str]]:
    """
    Load a role definition.

    The configured roles directory wins over the bundled copy.

    Returns:
        Tuple of (content, source label) or None when neither exists
    """
    candidates = []
    if roles_dir and Path(roles_dir).resolve() != Path(bundled_dir).resolve():
        candidates.append((Path(roles_dir) / f'{name}.md', str(roles_dir)))
    candidates.append((Path(bundled_dir) / f'{name}.md', 'bundled'))

    for path, source in candidates:
        content = FileUtils.read_text(path)
        if content is not None:
            return content, source
    return None
