"""
Farm Orchestrator

Lifecycle operations behind the `af` commands: starting and stopping a
project instance, reporting status, messaging sessions, renaming, cleaning
up builders and opening shells or file viewers through the live dashboard.
"""

import logging
import os
import re
import shlex
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import psutil
import requests
from rich.console import Console

from .errors import AgentFarmError, PortInUseError, PreconditionError, UserInputError
from .models import Annotation, ArchitectState, Builder, BuilderStatus, BuilderType, UtilTerminal
from .orphan_reconciler import OrphanReconciler
from .process_manager import ProcessManager
from .state_store import StateStore
from ..git.worktree_manager import WorktreeManager
from ..server.dashboard_server import viewer_command
from ..tmux.messaging import (
    TmuxMessenger, format_architect_message, format_builder_message, read_attachment
)
from ..tmux.session_controller import SessionNames
from ..utils.config_loader import BUNDLED_ROLES_DIR, Config
from ..utils.deps import check_dependencies
from ..utils.file_utils import FileUtils
from ..utils.prompt_command import build_prompt_command, load_role, write_launch_script
from ..utils.system_utils import SystemUtils, generate_id

console = Console()
logger = logging.getLogger(__name__)

ARCHITECT_ROLE_FILE = 'architect-role.md'
ARCHITECT_LAUNCH_SCRIPT = 'launch-architect.sh'
ARCHITECT_CLI_LAUNCH_SCRIPT = 'launch-architect-cli.sh'
ARCHITECT_CLI_PROMPT = 'architect-cli-prompt.txt'
DASHBOARD_READY_TIMEOUT = 5.0
PORT_RETRIES = 5
API_TIMEOUT = 5

_BUILDER_DIR_PATTERN = re.compile(r'\.builders/([^/]+)')


def detect_builder_id(cwd: Optional[Path] = None) -> Optional[str]:
    """Builder id from a path inside .builders/<id>, or None."""
    match = _BUILDER_DIR_PATTERN.search(str(cwd or Path.cwd()))
    return match.group(1) if match else None


def dashboard_command(port: int, bind_host: Optional[str] = None) -> List[str]:
    argv = [sys.executable, '-m', 'agent_farm', 'dashboard', '--port', str(port)]
    if bind_host:
        argv += ['--bind', bind_host]
    return argv


class FarmOrchestrator:
    """
    Coordinates the subsystems of one project instance.

    Features:
    - Idempotent start with orphan reconciliation
    - Stop that pairs every process kill with its tmux session
    - Dashboard-first shell and file tabs with standalone fallback
    - Cleanup that preserves worktrees unless asked otherwise
    """

    def __init__(self,
                 config: Config,
                 store: Optional[StateStore] = None,
                 process_manager: Optional[ProcessManager] = None,
                 worktrees: Optional[WorktreeManager] = None,
                 messenger: Optional[TmuxMessenger] = None,
                 dependency_check: Optional[Callable[[], object]] = None):
        """
        Initialize orchestrator with dependency injection.

        Args:
            config: Resolved project configuration
            store: Session state store
            process_manager: Process lifecycle manager
            worktrees: Git worktree manager
            messenger: tmux message delivery
            dependency_check: Verifies required binaries before starting
        """
        self.config = config
        self.pm = process_manager or ProcessManager()
        self.store = store or StateStore(config.state_dir, process_manager=self.pm)
        self.worktrees = worktrees or WorktreeManager(config.project_root)
        self.messenger = messenger or TmuxMessenger(self.pm.tmux)
        self.dependency_check = dependency_check or check_dependencies
        self.names = SessionNames(config.project_root)
        self.reconciler = OrphanReconciler(
            config.project_root, self.store, self.pm, architect_port=config.architect_port
        )

    def close(self) -> None:
        self.store.close()

    # ------------------------------------------------------------------
    # start / stop / status
    # ------------------------------------------------------------------

    def start(self,
              open_browser: bool = True,
              architect_cmd: Optional[str] = None,
              no_role: bool = False,
              bind_host: Optional[str] = None) -> bool:
        """
        Start the architect session and the dashboard.

        Args:
            open_browser: Open the dashboard when ready
            architect_cmd: Override the configured architect command
            no_role: Start the architect without its role prompt
            bind_host: Interface for the dashboard server

        Returns:
            bool: False if an architect was already running

        Raises:
            PreconditionError: On missing dependencies or architect command
            AgentFarmError: If the dashboard never comes up; the architect is
                stopped again so nothing is left half-started
        """
        self.reconciler.reconcile(kill=True)
        self.reconciler.warn_stale_artifacts(self.config.codev_dir)

        existing = self.store.get_architect()
        if existing:
            if self.pm.is_process_running(existing.pid):
                console.print(f"[yellow]⚠️ Architect already running on port {existing.port}[/yellow]")
                console.print(f"Dashboard: [cyan]http://localhost:{self.config.dashboard_port}[/cyan]")
                return False
            logger.info(f"Dropping stale architect record (pid {existing.pid})")
            self.pm.kill_gracefully(existing.pid, existing.tmux_session)
            self.store.set_architect(None)

        self.config.ensure_directories()
        self.dependency_check()

        cmd = architect_cmd or self.config.commands['architect']
        base = shlex.split(cmd)[0] if cmd.strip() else ''
        if not SystemUtils.command_exists(base):
            raise PreconditionError(f"Command not found: {base or cmd}")

        script = self._write_architect_launcher(cmd, no_role)
        session = self.names.architect()
        port = self.config.architect_port

        console.print("[bold cyan]Starting Agent Farm[/bold cyan]")
        console.print(f"  Project: {self.config.project_root}")
        console.print(f"  Command: {cmd}")
        console.print(f"  Port: {port}")

        self.pm.kill_session(session)
        pid, port = self.pm.spawn_session(session, str(script), self.config.project_root, port)
        self.store.set_architect(ArchitectState(
            port=port,
            pid=pid,
            cmd=cmd,
            started_at=datetime.now(timezone.utc).isoformat(),
            tmux_session=session,
        ))

        try:
            self._start_dashboard(bind_host)
        except AgentFarmError:
            self.pm.kill_gracefully(pid, session)
            self.store.set_architect(None)
            raise

        url = f"http://localhost:{self.config.dashboard_port}"
        console.print("\n[green]✅ Agent Farm started![/green]")
        console.print(f"  Dashboard: [cyan]{url}[/cyan]")
        if open_browser:
            SystemUtils.open_browser(url)
        return True

    def _write_architect_launcher(self, cmd: str, no_role: bool,
                                  script_name: str = ARCHITECT_LAUNCH_SCRIPT,
                                  prompt_file: Optional[Path] = None) -> Path:
        state_dir = self.config.state_dir
        role_file = None
        if not no_role:
            role = load_role(self.config.roles_dir, BUNDLED_ROLES_DIR, 'architect')
            if role:
                content, source = role
                content = content.replace('{PORT}', str(self.config.dashboard_port))
                role_file = FileUtils.write_text(state_dir / ARCHITECT_ROLE_FILE, content)
                console.print(f"[blue]Loaded architect role ({source})[/blue]")

        command = build_prompt_command(cmd, system_prompt_file=role_file, user_prompt_file=prompt_file)
        return write_launch_script(state_dir / script_name, command)

    def _start_dashboard(self, bind_host: Optional[str] = None) -> Optional[int]:
        """
        Launch the dashboard server detached and wait for it to listen.

        Raises:
            AgentFarmError: If it cannot be started or never listens; a
                started process is killed first
        """
        port = self.config.dashboard_port
        if SystemUtils.is_port_listening(port):
            logger.info(f"Dashboard already listening on port {port}")
            return None

        hint = "Run 'af dashboard' in the foreground to see its errors"
        try:
            pid = self.pm.spawn_detached(dashboard_command(port, bind_host), self.config.project_root)
        except OSError as e:
            raise AgentFarmError(f"Failed to start dashboard server: {e}", hint=hint) from e

        if not self.pm.wait_for_listener(pid, port, timeout=DASHBOARD_READY_TIMEOUT):
            self.pm.kill_gracefully(pid)
            raise AgentFarmError(
                f"Dashboard server did not listen on port {port} "
                f"within {DASHBOARD_READY_TIMEOUT:.0f} seconds",
                hint=hint,
            )
        return pid

    def architect_terminal(self, args: Optional[List[str]] = None, layout: bool = False) -> int:
        """
        Run the architect in this terminal, attaching to its session when it
        already exists.

        Args:
            args: Words passed to the agent as its first message
            layout: Use a two-pane session with a shell beside the architect

        Returns:
            int: Exit code of the tmux client once the user detaches

        Raises:
            PreconditionError: If tmux or the architect command is missing
        """
        if not SystemUtils.command_exists('tmux'):
            raise PreconditionError('tmux not found', hint='Install with: brew install tmux')

        tmux = self.pm.tmux
        session = self.names.layout() if layout else self.names.architect()
        if tmux.session_exists(session):
            console.print(f"[blue]Attaching to existing session: {session}[/blue]")
            console.print("Detach with Ctrl+B, D")
            return tmux.attach(session)

        cmd = self.config.commands['architect']
        base = shlex.split(cmd)[0] if cmd.strip() else ''
        if not SystemUtils.command_exists(base):
            raise PreconditionError(f"Command not found: {base or cmd}")

        self.config.ensure_directories()
        prompt_file = None
        if args:
            prompt_file = FileUtils.write_text(self.config.state_dir / ARCHITECT_CLI_PROMPT, ' '.join(args))
        script = self._write_architect_launcher(cmd, no_role=False,
                                                script_name=ARCHITECT_CLI_LAUNCH_SCRIPT,
                                                prompt_file=prompt_file)

        console.print(f"[blue]Creating session {session}...[/blue]")
        tmux.create_session(session, str(script), self.config.project_root)
        if layout:
            tmux.split_window(session, self.config.project_root, percent=40)
            console.print("Layout: Architect (left) | Shell (right)")
            console.print("Navigation: Ctrl+B ←/→ | Detach: Ctrl+B d")
        return tmux.attach(session)

    def stop(self) -> int:
        """
        Stop every tracked session and the dashboard, then clear state.

        Returns:
            int: Number of processes that were running and got stopped
        """
        state = self.store.load()
        targets: List[Tuple[str, int, Optional[str]]] = []
        if state.architect:
            targets.append(('architect', state.architect.pid, state.architect.tmux_session))
        for builder in state.builders:
            targets.append((f"builder {builder.id}", builder.pid, builder.tmux_session))
        for util in state.utils:
            targets.append((f"util {util.id}", util.pid, util.tmux_session))
        for annotation in state.annotations:
            targets.append((f"annotation {annotation.id}", annotation.pid, None))

        console.print("[bold cyan]Stopping Agent Farm[/bold cyan]")
        stopped = 0
        for label, pid, session in targets:
            console.print(f"  Stopping {label} (PID: {pid})")
            if self.pm.kill_gracefully(pid, session):
                stopped += 1

        self.store.clear_state()

        if self._kill_port_listener(self.config.dashboard_port):
            console.print("  Stopped dashboard server")

        if stopped:
            console.print(f"\n[green]✅ Stopped {stopped} process(es)[/green]")
        else:
            console.print("\n[blue]No processes were running[/blue]")
        return stopped

    def _kill_port_listener(self, port: int) -> bool:
        """Kill whatever process listens on a local port."""
        try:
            connections = psutil.net_connections(kind='inet')
        except psutil.AccessDenied:
            logger.warning(f"Not allowed to inspect listeners on port {port}")
            return False

        killed = False
        for conn in connections:
            if not conn.laddr or conn.laddr.port != port:
                continue
            if conn.status != psutil.CONN_LISTEN or not conn.pid or conn.pid == os.getpid():
                continue
            killed = self.pm.kill_gracefully(conn.pid) or killed
        return killed

    def status(self) -> Dict[str, Any]:
        """
        Read-only snapshot with liveness for every record.

        Returns:
            Dict with the DashboardState under 'state' and a pid -> alive map
        """
        state = self.store.load()
        pids = [s.pid for s in [*state.builders, *state.utils, *state.annotations]]
        if state.architect:
            pids.append(state.architect.pid)
        return {
            'state': state,
            'alive': {pid: self.pm.is_process_running(pid) for pid in pids},
            'dashboard_port': self.config.dashboard_port,
        }

    # ------------------------------------------------------------------
    # Builder records
    # ------------------------------------------------------------------

    def set_status(self, builder_id: str, status: str, phase: Optional[str] = None) -> None:
        """
        Update a builder's advisory status.

        Raises:
            UserInputError: On an unknown status value or builder id
        """
        if status not in BuilderStatus.values():
            raise UserInputError(
                f"Invalid status: {status}",
                hint=f"Valid statuses: {', '.join(BuilderStatus.values())}"
            )
        if not self.store.update_builder_status(builder_id, BuilderStatus(status), phase):
            raise UserInputError(f"Builder not found: {builder_id}",
                                 hint="Use 'af status' to see active builders")
        console.print(f"[green]✅ Builder {builder_id} is now {status}[/green]")

    def rename(self, record_id: str, name: str) -> Tuple[str, str]:
        """
        Rename a builder, or failing that a utility terminal.

        Returns:
            Tuple of (kind, old name)
        """
        if not name or not name.strip():
            raise UserInputError('Name cannot be empty')

        old = self.store.rename_builder(record_id, name)
        if old is not None:
            kind = 'builder'
        else:
            old = self.store.rename_util(record_id, name)
            if old is None:
                raise UserInputError(f"No builder or utility found with ID: {record_id}")
            kind = 'utility'

        console.print(f'[green]✅ Renamed {kind} "{record_id}"[/green]')
        console.print(f"  Old name: {old}")
        console.print(f"  New name: {name}")
        return kind, old

    def find_builder(self, project: Optional[str] = None, issue: Optional[int] = None) -> Builder:
        builders = self.store.get_builders()
        if issue is not None:
            for builder in builders:
                if builder.issue_number == issue or builder.id == f"bugfix-{issue}":
                    return builder
            raise UserInputError(f"No builder found for issue #{issue}")

        builder = self.store.get_builder(project)
        if builder:
            return builder
        by_name = [b for b in builders if project in b.name]
        if len(by_name) == 1:
            return by_name[0]
        raise UserInputError(f"Builder not found for project: {project}",
                             hint="Use 'af status' to see active builders")

    def cleanup(self,
                project: Optional[str] = None,
                issue: Optional[int] = None,
                remove_worktree: bool = False,
                force: bool = False) -> Builder:
        """
        Stop a builder and drop its record.

        The worktree and branch are kept unless remove_worktree is set.

        Args:
            project: Builder id (or unique name fragment)
            issue: Issue number of a bugfix builder
            remove_worktree: Also remove the worktree and delete the branch
            force: Remove despite uncommitted changes

        Returns:
            Builder: The record that was removed

        Raises:
            UserInputError: On missing/duplicate selectors or unknown builder
            PreconditionError: On uncommitted changes when removing without force
        """
        if (project is None) == (issue is None):
            raise UserInputError("Specify exactly one of --project or --issue")

        builder = self.find_builder(project, issue)
        is_shell = builder.type == BuilderType.SHELL
        worktree = Path(builder.worktree) if builder.worktree else None

        console.print(f"[bold cyan]Cleaning up {'Shell' if is_shell else 'Builder'} {builder.id}[/bold cyan]")
        console.print(f"  Name: {builder.name}")

        changes: List[str] = []
        scaffold_only = False
        if not is_shell and worktree:
            console.print(f"  Worktree: {worktree}")
            console.print(f"  Branch: {builder.branch}")
            changes, scaffold_only = self.worktrees.uncommitted_changes(worktree)
            if changes:
                console.print(f"[yellow]⚠️ Worktree has {len(changes)} uncommitted change(s):[/yellow]")
                for line in changes[:10]:
                    console.print(f"    {line}")
                if remove_worktree and not force:
                    raise PreconditionError(
                        "Worktree has uncommitted changes. Cleanup aborted to prevent data loss.",
                        hint="Use --force to delete anyway (changes will be lost!)"
                    )

        session = builder.tmux_session or self.names.builder(builder.id)
        self.pm.kill_gracefully(builder.pid, session)

        if not is_shell and worktree:
            if remove_worktree:
                self.worktrees.remove_worktree(worktree, force=force or scaffold_only)
                self.worktrees.delete_branch(builder.branch, force=force)
            else:
                console.print(f"[blue]Worktree preserved at {worktree} (branch {builder.branch})[/blue]")
                console.print(f"[blue]Remove it with: af cleanup --project {builder.id} --remove-worktree[/blue]")

        self.store.remove_builder(builder.id)
        self.worktrees.prune()

        console.print(f"\n[green]✅ Builder {builder.id} cleaned up![/green]")
        return builder

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    def send(self,
             target: Optional[str],
             message: Optional[str],
             all_builders: bool = False,
             interrupt: bool = False,
             raw: bool = False,
             no_enter: bool = False,
             file: Optional[Path] = None,
             cwd: Optional[Path] = None) -> Dict[str, List[str]]:
        """
        Paste a framed message into one or more sessions.

        Args:
            target: Builder id, or 'architect' when sending from a builder
            message: Message text
            all_builders: Broadcast to every builder
            interrupt: Send Ctrl-C before the message
            raw: Skip the message frame
            no_enter: Paste without submitting
            file: File whose content is attached (max 48KB)
            cwd: Directory used to detect the sending builder

        Returns:
            Dict with 'sent' and 'failed' id lists
        """
        if all_builders and target and not message:
            target, message = None, target

        if not message:
            raise UserInputError(
                'No message provided',
                hint='Usage: af send <builder> "message" or af send --all "message"'
            )
        if not all_builders and not target:
            raise UserInputError('Must specify a builder ID or use --all flag')
        if all_builders and target:
            raise UserInputError('Cannot use --all with a specific builder ID')

        file_content = read_attachment(file) if file else None
        results: Dict[str, List[str]] = {'sent': [], 'failed': []}

        if target and target.lower() in ('architect', 'arch'):
            builder_id = detect_builder_id(cwd)
            if not builder_id:
                raise UserInputError(
                    'Cannot send to architect: not running from a builder worktree',
                    hint='Use from .builders/<id>/ directory'
                )
            architect = self.store.get_architect()
            if not architect or not architect.tmux_session:
                raise PreconditionError('Architect not running', hint="Use 'af status' to check")
            text = format_builder_message(builder_id, message, file_content, raw)
            self.messenger.deliver(architect.tmux_session, text, f"builder-{builder_id}",
                                   interrupt=interrupt, send_enter=not no_enter)
            results['sent'].append('architect')
            console.print(f"[green]✅ Message sent to architect from builder {builder_id}[/green]")
            return results

        if all_builders:
            builders = self.store.get_builders()
            if not builders:
                console.print("[yellow]⚠️ No active builders found[/yellow]")
            for builder in builders:
                try:
                    self._send_to_builder(builder.id, message, file_content, interrupt, raw, no_enter)
                    results['sent'].append(builder.id)
                except AgentFarmError as e:
                    console.print(f"[red]❌ Failed to send to {builder.id}: {e.message}[/red]")
                    results['failed'].append(builder.id)
            if results['sent']:
                console.print(f"[green]✅ Sent to {len(results['sent'])} builder(s): {', '.join(results['sent'])}[/green]")
            return results

        self._send_to_builder(target, message, file_content, interrupt, raw, no_enter)
        results['sent'].append(target)
        console.print(f"[green]✅ Message sent to builder {target}[/green]")
        return results

    def _send_to_builder(self, builder_id: str, message: str, file_content: Optional[str],
                         interrupt: bool, raw: bool, no_enter: bool) -> None:
        builder = self.store.get_builder(builder_id)
        if not builder:
            raise UserInputError(f"Builder {builder_id} not found",
                                 hint="Use 'af status' to see active builders")
        if not builder.tmux_session:
            raise PreconditionError(f"Builder {builder_id} has no tmux session recorded")

        text = format_architect_message(message, file_content, raw)
        self.messenger.deliver(builder.tmux_session, text, f"architect-{builder_id}",
                               interrupt=interrupt, send_enter=not no_enter)

    # ------------------------------------------------------------------
    # Shell and file tabs
    # ------------------------------------------------------------------

    def _dashboard_post(self, path: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """POST to the live dashboard. None when there is no usable answer."""
        if not self.store.get_architect():
            return None

        url = f"http://localhost:{self.config.dashboard_port}{path}"
        try:
            response = requests.post(url, json=payload, timeout=API_TIMEOUT)
        except requests.exceptions.RequestException as e:
            logger.debug(f"Dashboard not reachable at {url}: {e}")
            return None

        if not response.ok:
            logger.info(f"Dashboard returned {response.status_code} for {path}: {response.text[:200]}")
            return None
        try:
            result = response.json()
        except ValueError:
            return None
        if result.get('success') is False:
            logger.info(f"Dashboard declined {path}: {result.get('error')}")
            return None
        return result

    def util(self, name: Optional[str] = None, open_browser: bool = True) -> Dict[str, Any]:
        """
        Open a utility shell, as a dashboard tab when possible.

        Returns:
            Dict with id, name, port and whether the dashboard handled it
        """
        payload = {'name': name} if name else {}
        result = self._dashboard_post('/api/tabs/shell', payload)
        if result:
            console.print("[green]✅ Shell opened in dashboard tab[/green]")
            console.print(f"  Name: {result.get('name')}")
            return {**result, 'dashboard': True}

        if not SystemUtils.command_exists('ttyd'):
            raise PreconditionError('ttyd not found', hint='Install with: brew install ttyd')

        util_id = generate_id('U')
        util_name = name or f"util-{util_id}"
        session = self.names.shell(util_id)

        port = self._claim_util_port(util_id, util_name, session)
        if port is None:
            self.pm.kill_session(session)
            start, end = self.config.util_port_range
            raise PreconditionError(f"Could not claim a port in utility range {start}-{end}")

        url = f"http://localhost:{port}"
        console.print("[green]✅ Utility terminal spawned![/green]")
        console.print(f"  Terminal: [cyan]{url}[/cyan]")
        if open_browser:
            SystemUtils.open_browser(url)
        return {'id': util_id, 'name': util_name, 'port': port, 'dashboard': False}

    def _claim_util_port(self, util_id: str, util_name: str, session: str) -> Optional[int]:
        """Start the shell's ttyd on a free port and record it; None when no port could be claimed."""
        start, end = self.config.util_port_range
        skip = set()
        for attempt in range(PORT_RETRIES):
            port = SystemUtils.find_available_port(
                start, skip=self.store.load().used_ports() | skip, max_attempts=end - start + 1
            )
            if port is None:
                return None
            try:
                pid, port = self.pm.spawn_session(session, self.config.commands['shell'],
                                                  self.config.project_root, port)
            except PortInUseError:
                logger.info(f"ttyd lost port {port}, retrying ({attempt + 1}/{PORT_RETRIES})")
                skip.add(port)
                continue
            if self.store.try_add_util(UtilTerminal(id=util_id, name=util_name, port=port,
                                                    pid=pid, tmux_session=session)):
                return port
            logger.info(f"Port {port} claimed concurrently, retrying ({attempt + 1}/{PORT_RETRIES})")
            self.pm.kill_gracefully(pid)
            skip.add(port)
        return None

    def open_file(self, file: str, cwd: Optional[Path] = None,
                  open_browser: bool = True) -> Dict[str, Any]:
        """
        Open a file viewer, as a dashboard tab when possible.

        Relative paths resolve against cwd, so this works inside worktrees.
        """
        path = Path(file)
        if not path.is_absolute():
            path = Path(cwd or Path.cwd()) / path
        path = path.resolve()
        if not path.exists():
            raise PreconditionError(f"File not found: {path}")
        if not path.is_file():
            raise UserInputError(f"Not a regular file: {path}")

        result = self._dashboard_post('/api/tabs/file', {'path': str(path)})
        if result:
            console.print("[green]✅ Opened in dashboard tab[/green]")
            console.print(f"  File: {path}")
            if result.get('existing'):
                console.print("[blue](File was already open)[/blue]")
            return {**result, 'dashboard': True}

        existing = self._live_annotation(path)
        if existing:
            return self._show_existing_viewer(existing, open_browser)

        start, end = self.config.annotate_port_range
        skip = set()
        for _ in range(PORT_RETRIES):
            port = SystemUtils.find_available_port(
                start, skip=self.store.load().used_ports() | skip, max_attempts=end - start + 1
            )
            if port is None:
                break

            pid = self.pm.spawn_detached(viewer_command(port, path), self.config.project_root)
            if not self.pm.wait_for_listener(pid, port):
                exited = not self.pm.is_process_running(pid)
                self.pm.kill_gracefully(pid)
                if not exited:
                    raise AgentFarmError(f"File viewer failed to start on port {port}")
                skip.add(port)
                continue

            annotation = Annotation(id=generate_id('A'), file=str(path), port=port, pid=pid)
            if self.store.try_add_annotation(annotation):
                url = f"http://localhost:{port}"
                console.print("[green]✅ File viewer opened![/green]")
                console.print(f"  URL: [cyan]{url}[/cyan]")
                if open_browser:
                    SystemUtils.open_browser(url)
                return {'id': annotation.id, 'port': port, 'dashboard': False}

            # Another viewer for this file (or port) was recorded first
            self.pm.kill_gracefully(pid)
            existing = self._live_annotation(path)
            if existing:
                return self._show_existing_viewer(existing, open_browser)
            skip.add(port)

        raise PreconditionError(f"No free port in viewer range {start}-{end}")

    def _live_annotation(self, path: Path) -> Optional[Annotation]:
        existing = self.store.find_annotation_by_file(str(path))
        if existing is None or self.pm.is_process_running(existing.pid):
            return existing
        self.store.remove_annotation(existing.id)
        return None

    def _show_existing_viewer(self, existing: Annotation, open_browser: bool) -> Dict[str, Any]:
        url = f"http://localhost:{existing.port}"
        console.print(f"[blue]File already open at {url}[/blue]")
        if open_browser:
            SystemUtils.open_browser(url)
        return {'id': existing.id, 'port': existing.port, 'existing': True, 'dashboard': False}
