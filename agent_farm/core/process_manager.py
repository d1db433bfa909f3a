"""
Process Lifecycle Manager

Starts, probes and stops the OS processes behind a session: a named tmux
session plus the ttyd process serving it over HTTP. Every kill is paired
with a kill of the named session so no half-torn-down session survives.
"""

import json
import logging
import os
import subprocess
import time
from pathlib import Path
from typing import List, Optional, Tuple

import psutil

from .errors import PortInUseError, SpawnError
from ..tmux.session_controller import TmuxSessionController
from ..utils.system_utils import SystemUtils

logger = logging.getLogger(__name__)

TTYD_THEME = {"background": "#000000"}


class ProcessManager:
    """
    Manages session processes for one project instance.

    Features:
    - Side-effect-free liveness probes
    - Two-phase termination (terminate, bounded wait, kill)
    - Idempotent session + ttyd spawning with rollback on failure
    """

    LISTEN_TIMEOUT = 5.0

    def __init__(self, tmux: Optional[TmuxSessionController] = None,
                 bind_host: Optional[str] = None):
        """
        Initialize ProcessManager.

        Args:
            tmux: Session controller (a default one is created if omitted)
            bind_host: Interface ttyd binds to (defaults to AF_TTYD_BIND)
        """
        self.tmux = tmux or TmuxSessionController()
        self.bind_host = bind_host if bind_host is not None else os.environ.get('AF_TTYD_BIND')

    def is_process_running(self, pid: Optional[int]) -> bool:
        """
        Check whether a process is alive without touching it.

        Args:
            pid: Process ID to check

        Returns:
            True if process exists and is not a zombie
        """
        if not pid or pid <= 0:
            return False
        if not psutil.pid_exists(pid):
            return False
        try:
            p = psutil.Process(pid)
            return p.is_running() and p.status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def kill_gracefully(self,
                        pid: Optional[int],
                        session_name: Optional[str] = None,
                        timeout: float = 0.5) -> bool:
        """
        Kill a session's process and its named tmux session.

        Args:
            pid: Process to terminate (SIGTERM, then SIGKILL after timeout)
            session_name: tmux session to kill alongside the process
            timeout: Seconds to wait between SIGTERM and SIGKILL

        Returns:
            True if the process was running and has been stopped
        """
        if session_name:
            self.tmux.kill_session(session_name)

        if not pid or pid <= 0:
            return False

        try:
            p = psutil.Process(pid)
            p.terminate()
            try:
                p.wait(timeout=timeout)
            except psutil.TimeoutExpired:
                logger.warning(f"Process {pid} didn't terminate gracefully, force killing")
                p.kill()
            return True
        except psutil.NoSuchProcess:
            logger.debug(f"Process {pid} already dead")
            return False
        except psutil.AccessDenied as e:
            logger.warning(f"Not allowed to kill process {pid}: {e}")
            return False

    def kill_session(self, session_name: str) -> bool:
        return self.tmux.kill_session(session_name)

    def session_exists(self, session_name: str) -> bool:
        return self.tmux.session_exists(session_name)

    def spawn_detached(self, argv: List[str], cwd: Path) -> int:
        """
        Start a process in its own session, detached from our stdio.

        Args:
            argv: Program and arguments
            cwd: Working directory

        Returns:
            int: The child's pid

        Raises:
            OSError: If the executable cannot be started
        """
        process = subprocess.Popen(
            argv,
            cwd=str(cwd),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        logger.info(f"Spawned {argv[0]} (pid {process.pid}) in {cwd}")
        return process.pid

    def ttyd_command(self, port: int, session_name: str,
                     index: Optional[Path] = None) -> List[str]:
        """Build the ttyd argv that serves one tmux session."""
        argv = [
            'ttyd', '-W', '-p', str(port),
            '-t', f'theme={json.dumps(TTYD_THEME, separators=(",", ":"))}',
            '-t', 'rightClickSelectsWord=true',
        ]
        if self.bind_host:
            argv += ['-i', self.bind_host]
        if index:
            argv += ['-I', str(index)]
        argv += ['tmux', 'attach-session', '-t', session_name]
        return argv

    def spawn_ttyd(self, port: int, session_name: str, cwd: Path,
                   index: Optional[Path] = None) -> int:
        return self.spawn_detached(self.ttyd_command(port, session_name, index), cwd)

    def is_listening_on(self, pid: int, port: int) -> bool:
        """True if the process itself holds a listening socket on port."""
        try:
            connections = psutil.Process(pid).net_connections(kind='inet')
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return False
        except psutil.AccessDenied:
            return SystemUtils.is_port_listening(port)
        return any(
            c.status == psutil.CONN_LISTEN and c.laddr and c.laddr.port == port
            for c in connections
        )

    def wait_for_listener(self, pid: int, port: int,
                          timeout: Optional[float] = None,
                          interval: float = 0.1) -> bool:
        """
        Wait until pid listens on port.

        Another process answering on the port does not count, so a server
        that lost a bind race to a concurrent spawn is detected.

        Args:
            pid: Server process
            port: Port it was told to bind
            timeout: Seconds to wait (defaults to LISTEN_TIMEOUT)
            interval: Poll interval

        Returns:
            False if the process exited or never listened in time
        """
        deadline = time.monotonic() + (self.LISTEN_TIMEOUT if timeout is None else timeout)
        while True:
            if not self.is_process_running(pid):
                return False
            if self.is_listening_on(pid, port):
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(interval)

    def spawn_session(self,
                      session_name: str,
                      command: str,
                      cwd: Path,
                      port: int,
                      index: Optional[Path] = None) -> Tuple[int, int]:
        """
        Ensure a tmux session exists and attach a fresh ttyd to it.

        An existing session of the same name is reused. The call returns only
        once the new ttyd itself listens on port. If ttyd cannot be started or
        never listens, it is killed and a session created by this call is
        killed again.

        Args:
            session_name: tmux session name
            command: Command run in a newly created session
            cwd: Working directory
            port: Port for ttyd

        Returns:
            Tuple of (ttyd pid, port)

        Raises:
            TmuxError: If the session cannot be created
            SpawnError: If ttyd cannot be started
            PortInUseError: If ttyd exited or never listened on port
        """
        created = self.tmux.ensure_session(session_name, command, cwd)

        try:
            pid = self.spawn_ttyd(port, session_name, cwd, index)
        except OSError as e:
            if created:
                self.tmux.kill_session(session_name)
            raise SpawnError(session_name, f"ttyd failed to start on port {port}: {e}") from e

        if not self.wait_for_listener(pid, port):
            self.kill_gracefully(pid)
            if created:
                self.tmux.kill_session(session_name)
            raise PortInUseError(port, f"ttyd for {session_name} did not listen on port {port}")

        return pid, port
