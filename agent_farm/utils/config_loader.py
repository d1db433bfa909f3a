"""
Configuration Loader Module

Discovers the project root, loads user overrides from codev/config.(json|yaml)
and builds the per-project Config with ports derived from the global registry.
"""

import os
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from rich.console import Console

from .file_utils import FileUtils
from ..core.errors import UserInputError
from ..core.port_registry import PortRegistry, port_layout

console = Console()

DEFAULT_COMMANDS = {
    'architect': 'claude',
    'builder': 'claude',
    'shell': 'bash',
}

CONFIG_NAMES = ('config.json', 'config.yaml', 'config.yml')

BUNDLED_ROLES_DIR = Path(__file__).resolve().parent.parent / 'roles'

_ENV_PATTERN = re.compile(r'\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)')


@dataclass
class Config:
    """Resolved configuration for one project instance."""
    project_root: Path
    base_port: int
    commands: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_COMMANDS))
    roles_dir: Optional[Path] = None

    @property
    def codev_dir(self) -> Path:
        return self.project_root / 'codev'

    @property
    def builders_dir(self) -> Path:
        return self.project_root / '.builders'

    @property
    def state_dir(self) -> Path:
        return self.project_root / '.agent-farm'

    @property
    def dashboard_port(self) -> int:
        return port_layout(self.base_port)['dashboard']

    @property
    def architect_port(self) -> int:
        return port_layout(self.base_port)['architect']

    @property
    def builder_port_range(self) -> Tuple[int, int]:
        return port_layout(self.base_port)['builders']

    @property
    def util_port_range(self) -> Tuple[int, int]:
        return port_layout(self.base_port)['utils']

    @property
    def annotate_port_range(self) -> Tuple[int, int]:
        return port_layout(self.base_port)['annotations']

    def ensure_directories(self) -> None:
        self.builders_dir.mkdir(parents=True, exist_ok=True)
        self.state_dir.mkdir(parents=True, exist_ok=True)


def _main_repo_from_worktree(start: Path) -> Optional[Path]:
    """Return the main checkout when start lies inside a linked worktree."""
    try:
        result = subprocess.run(
            ['git', 'rev-parse', '--git-common-dir'],
            cwd=str(start), capture_output=True, text=True
        )
    except FileNotFoundError:
        return None
    if result.returncode != 0:
        return None

    common = result.stdout.strip()
    if common == '.git':
        return None
    git_dir = (start / common).resolve()
    return git_dir.parent


def find_project_root(start: Optional[Path] = None) -> Path:
    """
    Locate the project root for a working directory.

    Inside a builder worktree the main repository wins. Otherwise walk up
    looking for .agent-farm/ or codev/, then .git, falling back to start.

    Args:
        start: Directory to start from (default: cwd)

    Returns:
        Path: Absolute project root
    """
    start = Path(start or os.getcwd()).resolve()

    main_repo = _main_repo_from_worktree(start)
    if main_repo and (main_repo / 'codev').exists():
        return main_repo

    for directory in [start, *start.parents]:
        if (directory / '.agent-farm').is_dir() or (directory / 'codev').is_dir():
            return directory
    for directory in [start, *start.parents]:
        if (directory / '.git').exists():
            return directory
    return start


def substitute_env(value: Any) -> Any:
    """Recursively expand $VAR and ${VAR} (unset variables become empty)."""
    if isinstance(value, dict):
        return {k: substitute_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_env(v) for v in value]
    if isinstance(value, str):
        return _ENV_PATTERN.sub(
            lambda m: os.environ.get(m.group(1) or m.group(2), ''), value
        )
    return value


def load_user_config(project_root: Path) -> Dict[str, Any]:
    """
    Load codev/config.json (or .yaml/.yml) with environment substitution.

    Returns:
        Dict of user settings ({} when no config file exists)

    Raises:
        UserInputError: If a config file exists but cannot be parsed
    """
    codev_dir = project_root / 'codev'
    for name in CONFIG_NAMES:
        path = codev_dir / name
        if not path.exists():
            continue
        data = FileUtils.read_json(path) if name.endswith('.json') else FileUtils.read_yaml(path)
        if data is None or not isinstance(data, dict):
            raise UserInputError(f"Failed to parse {path}", hint="Fix or remove the config file")
        return substitute_env(data)
    return {}


def resolve_command(value: Any, default: str) -> str:
    if not value:
        return default
    if isinstance(value, list):
        return ' '.join(str(part) for part in value)
    return str(value)


def resolve_commands(user_config: Dict[str, Any],
                     overrides: Optional[Dict[str, Optional[str]]] = None) -> Dict[str, str]:
    """Commands by precedence: CLI override, config file, default."""
    shell = user_config.get('shell') or {}
    overrides = overrides or {}
    return {
        kind: overrides.get(kind) or resolve_command(shell.get(kind), default)
        for kind, default in DEFAULT_COMMANDS.items()
    }


def resolve_roles_dir(project_root: Path, user_config: Dict[str, Any]) -> Path:
    """Roles directory: config roles.dir, then codev/roles, then bundled roles."""
    configured = (user_config.get('roles') or {}).get('dir')
    if configured:
        path = (project_root / configured).resolve()
        if path.exists():
            return path
    local = project_root / 'codev' / 'roles'
    if local.exists():
        return local
    return BUNDLED_ROLES_DIR


def load_config(project_root: Optional[Path] = None,
                overrides: Optional[Dict[str, Optional[str]]] = None,
                registry: Optional[PortRegistry] = None,
                base_port: Optional[int] = None) -> Config:
    """
    Build the Config for a project.

    Args:
        project_root: Root directory (discovered from cwd when omitted)
        overrides: CLI command overrides keyed by architect/builder/shell
        registry: Port registry used to obtain the port block
        base_port: Explicit base port, skipping the registry

    Returns:
        Config for the project
    """
    root = Path(project_root).resolve() if project_root else find_project_root()
    user_config = load_user_config(root)

    if base_port is None:
        owned = registry is None
        registry = registry or PortRegistry()
        try:
            base_port = registry.get_or_assign_block(root)
        finally:
            if owned:
                registry.close()

    return Config(
        project_root=root,
        base_port=base_port,
        commands=resolve_commands(user_config, overrides),
        roles_dir=resolve_roles_dir(root, user_config),
    )
