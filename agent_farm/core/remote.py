"""
Remote Farm

Runs `af start` on another machine over SSH and forwards its dashboard port
to this one, so the remote dashboard opens at the same localhost URL.
"""

import logging
import re
import subprocess
import sys
import time
from dataclasses import dataclass
from typing import List, Optional

from rich.console import Console

from .errors import PreconditionError, UserInputError
from ..utils.config_loader import Config
from ..utils.system_utils import SystemUtils

console = Console()
logger = logging.getLogger(__name__)

REMOTE_PATTERN = re.compile(r'^([^@\s]+)@([^:\s]+)(?::(.+))?$')
DASHBOARD_LINE = re.compile(r'Dashboard:\s*(http://localhost:\d+)')
ANSI_ESCAPE = re.compile(r'\x1b\[[0-9;?]*[A-Za-z]')

# ssh exits 255 when the connection itself failed
SSH_CONNECT_FAILED = 255
REMOTE_READY_DELAY = 1.0


@dataclass
class RemoteTarget:
    user: str
    host: str
    path: Optional[str] = None

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}"


def parse_remote(remote: str) -> RemoteTarget:
    """
    Parse user@host or user@host:/path.

    Raises:
        UserInputError: For any other shape
    """
    match = REMOTE_PATTERN.match(remote.strip())
    if not match:
        raise UserInputError(
            f"Invalid remote format: {remote}",
            hint="Use user@host or user@host:/path"
        )
    return RemoteTarget(user=match.group(1), host=match.group(2), path=match.group(3))


def remote_start_command(target: RemoteTarget, project_name: str, port: int) -> str:
    """Shell command run on the remote host: enter the project, then start the farm there."""
    if target.path:
        cd = f"cd {target.path}"
    else:
        cd = f"cd {project_name} 2>/dev/null || cd ~/{project_name} 2>/dev/null"
    return f"{cd} && af start --port {port} --no-browser"


def ssh_command(target: RemoteTarget, port: int, remote_command: str) -> List[str]:
    return [
        'ssh',
        '-L', f'{port}:localhost:{port}',
        '-t',
        '-o', 'ServerAliveInterval=30',
        '-o', 'ServerAliveCountMax=3',
        target.destination,
        remote_command,
    ]


def find_dashboard_url(line: str) -> Optional[str]:
    """Dashboard URL announced by a remote `af start`, ignoring terminal colour codes."""
    match = DASHBOARD_LINE.search(ANSI_ESCAPE.sub('', line))
    return match.group(1) if match else None


def start_remote(config: Config, remote: str, port: Optional[int] = None,
                 open_browser: bool = True) -> int:
    """
    Start Agent Farm on a remote host and stay connected until it exits.

    Args:
        config: Local project configuration (names the remote project)
        remote: user@host or user@host:/path
        port: Dashboard port used on both ends (default: this project's)
        open_browser: Open the forwarded dashboard once the remote reports it

    Returns:
        int: ssh's exit code

    Raises:
        UserInputError: On a malformed remote
        PreconditionError: If ssh is missing or the local port is taken
    """
    target = parse_remote(remote)
    port = port or config.dashboard_port

    console.print("[bold cyan]Starting Remote Agent Farm[/bold cyan]")
    console.print(f"  Host: {target.destination}")
    if target.path:
        console.print(f"  Path: {target.path}")
    console.print(f"  Local Port: {port}")

    if not SystemUtils.command_exists('ssh'):
        raise PreconditionError('ssh not found')
    if SystemUtils.is_port_listening(port):
        raise PreconditionError(
            f"Port {port} is already in use locally",
            hint="Stop the existing service or pass --port"
        )

    command = ssh_command(target, port, remote_start_command(target, config.project_root.name, port))
    logger.info(f"Running: {' '.join(command)}")
    console.print("[blue]Connecting via SSH...[/blue]")

    process = subprocess.Popen(command, stdout=subprocess.PIPE, text=True, errors='replace')
    announced = False
    try:
        for line in process.stdout:
            sys.stdout.write(line)
            sys.stdout.flush()
            if not announced and find_dashboard_url(line):
                announced = True
                time.sleep(REMOTE_READY_DELAY)
                url = f"http://localhost:{port}"
                console.print("\n[green]✅ Remote Agent Farm connected![/green]")
                console.print(f"  Dashboard: [cyan]{url}[/cyan]")
                console.print("Press Ctrl+C to disconnect")
                if open_browser:
                    SystemUtils.open_browser(url)
        code = process.wait()
    except KeyboardInterrupt:
        console.print("\n[blue]Closing remote connection...[/blue]")
        process.terminate()
        process.wait()
        return 0

    if code == 0:
        console.print("[blue]Remote session ended[/blue]")
    elif code == SSH_CONNECT_FAILED:
        console.print(f"[red]❌ Could not connect to {target.destination}[/red]")
        console.print("Check that:")
        console.print("  1. The host is reachable")
        console.print("  2. SSH keys are configured")
        console.print("  3. Agent Farm is installed on the remote machine")
    else:
        console.print(f"[red]❌ Remote session ended with code {code}[/red]")
    return code
