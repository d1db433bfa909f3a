"""
Orphan Reconciler

Runs when a project instance starts: kills tmux sessions of this project that
no state record claims (left behind when a crash hit between creating a
session and recording it) and warns about artifacts from older layouts.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Set

from rich.console import Console

from .process_manager import ProcessManager
from .state_store import StateStore
from ..tmux.session_controller import SessionNames

console = Console()
logger = logging.getLogger(__name__)

STALE_ARTIFACTS = ('builders.md', '.architect.pid', '.architect.log')


@dataclass
class OrphanSession:
    name: str
    kind: str
    legacy: bool = False


class OrphanReconciler:
    """Cross-references live tmux sessions against the state store."""

    def __init__(self,
                 project_root: Path,
                 store: StateStore,
                 process_manager: ProcessManager,
                 architect_port: Optional[int] = None):
        self.project_root = Path(project_root)
        self.architect_port = architect_port
        self.store = store
        self.pm = process_manager
        self.names = SessionNames(self.project_root)

    def claimed_sessions(self) -> Set[str]:
        state = self.store.load(prune=True)
        claimed = set()
        if state.architect and state.architect.tmux_session:
            claimed.add(state.architect.tmux_session)
        for session in [*state.builders, *state.utils]:
            if session.tmux_session:
                claimed.add(session.tmux_session)
        return claimed

    def _classify(self, name: str) -> str:
        rest = name[len(self.names.prefix):] if name.startswith(self.names.prefix) else name
        if rest.startswith('builder-'):
            return 'builder'
        if rest.startswith('shell-'):
            return 'util'
        return 'architect'

    def find_orphans(self) -> List[OrphanSession]:
        """
        List this project's sessions that have no state record.

        Returns:
            Orphans, legacy-named sessions flagged
        """
        claimed = self.claimed_sessions()
        orphans = []
        for name in self.pm.tmux.list_session_names():
            if name in claimed:
                continue
            if self.names.owns(name):
                orphans.append(OrphanSession(name, self._classify(name)))
            elif SessionNames.is_legacy(name, self.architect_port):
                orphans.append(OrphanSession(name, self._classify(name), legacy=True))
        return orphans

    def reconcile(self, kill: bool = True, silent: bool = False) -> int:
        """
        Find and optionally kill orphaned sessions.

        Args:
            kill: Kill the orphans (otherwise only report)
            silent: Suppress console output

        Returns:
            int: Number of sessions killed
        """
        orphans = self.find_orphans()
        if not orphans:
            return 0

        if not silent:
            console.print(f"[yellow]⚠️ Found {len(orphans)} orphaned tmux session(s) from previous run:[/yellow]")
            for orphan in orphans:
                suffix = ', legacy name' if orphan.legacy else ''
                console.print(f"  - {orphan.name} ({orphan.kind}{suffix})")

        if not kill:
            return 0

        killed = sum(1 for orphan in orphans if self.pm.kill_session(orphan.name))
        if not silent:
            console.print(f"[blue]Cleaned up {killed} orphaned session(s)[/blue]")
        return killed

    def warn_stale_artifacts(self, codev_dir: Path) -> List[str]:
        """Report files left by pre-database versions. Never fatal."""
        found = [name for name in STALE_ARTIFACTS if (Path(codev_dir) / name).exists()]
        if found:
            console.print("[yellow]⚠️ Found stale artifacts from a previous architect version:[/yellow]")
            for name in found:
                console.print(f"  - {name}")
            console.print("[blue]These can be safely deleted. Session state now lives in .agent-farm/[/blue]")
        return found
