"""
Agent Farm - Builder Orchestration for AI Coding Agents

Runs one architect session and any number of builder sessions per project,
each builder in its own git worktree, all served to the browser through
tmux + ttyd and tracked in a per-project SQLite state store.

Version: 1.0.0
"""

__version__ = "1.0.0"
__description__ = "Orchestration of AI coding-agent builders in isolated git worktrees"

from .core.errors import AgentFarmError
from .core.models import Annotation, ArchitectState, Builder, BuilderStatus, DashboardState, UtilTerminal
from .core.orchestrator import FarmOrchestrator
from .core.port_registry import PortRegistry
from .core.process_manager import ProcessManager
from .core.spawner import BuilderSpawner, SpawnOptions
from .core.state_store import StateStore
from .git.worktree_manager import WorktreeManager
from .tmux.session_controller import TmuxSessionController
from .tmux.messaging import TmuxMessenger
from .utils.config_loader import Config, load_config

from .cli.enhanced_cli import AgentFarmCLI

__all__ = [
    # Core
    'FarmOrchestrator',
    'BuilderSpawner', 'SpawnOptions',
    'StateStore',
    'PortRegistry',
    'ProcessManager',
    'AgentFarmError',

    # Models
    'Annotation', 'ArchitectState', 'Builder', 'BuilderStatus', 'DashboardState', 'UtilTerminal',

    # Infrastructure
    'WorktreeManager',
    'TmuxSessionController',
    'TmuxMessenger',
    'Config', 'load_config',

    # CLI
    'AgentFarmCLI',

    '__version__',
]
