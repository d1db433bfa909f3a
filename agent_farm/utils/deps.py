"""
Dependency Checker

Verifies that the external binaries sessions are built on are installed at a
usable version.
"""

import logging
import re
import sys
from dataclasses import dataclass
from typing import List, Optional

from rich.console import Console

from .system_utils import SystemUtils
from ..core.errors import PreconditionError

console = Console()
logger = logging.getLogger(__name__)


@dataclass
class Dependency:
    """An external binary with its minimum version."""
    name: str
    command: str
    min_version: Optional[str]
    version_args: List[str]
    version_pattern: str
    install_macos: str
    install_linux: str
    required: bool = True

    @property
    def install_hint(self) -> str:
        return self.install_macos if sys.platform == 'darwin' else self.install_linux


@dataclass
class DependencyResult:
    """Outcome of checking one dependency."""
    name: str
    installed: bool
    version: Optional[str]
    min_version: Optional[str]
    version_ok: bool
    install_hint: str
    required: bool


CORE_DEPENDENCIES = [
    Dependency('tmux', 'tmux', '3.0', ['-V'], r'tmux\s+(\d+\.\d+)',
               'brew install tmux', 'apt install tmux'),
    Dependency('ttyd', 'ttyd', '1.7.0', ['--version'], r'(\d+\.\d+\.\d+)',
               'brew install ttyd', 'Build from source: https://github.com/tsl0922/ttyd'),
    Dependency('git', 'git', '2.5.0', ['--version'], r'git version (\d+\.\d+\.\d+)',
               '(pre-installed on macOS)', 'apt install git'),
    Dependency('gh', 'gh', None, ['--version'], r'gh version (\d+\.\d+\.\d+)',
               'brew install gh', 'apt install gh', required=False),
]


def compare_versions(a: str, b: str) -> int:
    """Return -1, 0 or 1 comparing dotted numeric versions."""
    parts_a = [int(p) for p in a.split('.')]
    parts_b = [int(p) for p in b.split('.')]
    length = max(len(parts_a), len(parts_b))
    parts_a += [0] * (length - len(parts_a))
    parts_b += [0] * (length - len(parts_b))
    if parts_a < parts_b:
        return -1
    if parts_a > parts_b:
        return 1
    return 0


def check_dependency(dep: Dependency) -> DependencyResult:
    if not SystemUtils.command_exists(dep.command):
        return DependencyResult(dep.name, False, None, dep.min_version, False,
                                dep.install_hint, dep.required)

    rc, out, err = SystemUtils.run_command([dep.command] + dep.version_args, timeout=10)
    match = re.search(dep.version_pattern, out or err)
    version = match.group(1) if match else None

    if dep.min_version is None:
        version_ok = True
    elif version is None:
        # Unknown versions are allowed through with a warning
        version_ok = True
        logger.warning(f"{dep.name} version could not be determined (may be incompatible)")
    else:
        version_ok = compare_versions(version, dep.min_version) >= 0

    return DependencyResult(dep.name, True, version, dep.min_version, version_ok,
                            dep.install_hint, dep.required)


def check_dependencies(dependencies: Optional[List[Dependency]] = None) -> List[DependencyResult]:
    """
    Check every core dependency.

    Args:
        dependencies: Dependencies to check (default: CORE_DEPENDENCIES)

    Returns:
        List of results

    Raises:
        PreconditionError: If a required dependency is missing or too old
    """
    results = [check_dependency(dep) for dep in (dependencies or CORE_DEPENDENCIES)]

    failures = []
    for result in results:
        if not result.installed:
            if result.required:
                failures.append(f"{result.name} not found. Install with: {result.install_hint}")
            else:
                console.print(f"[yellow]⚠️ {result.name} not found (optional). "
                              f"Install with: {result.install_hint}[/yellow]")
        elif not result.version_ok:
            failures.append(
                f"{result.name} version {result.version} is below minimum {result.min_version}. "
                f"Upgrade with: {result.install_hint}"
            )

    if failures:
        raise PreconditionError(
            "Missing or outdated dependencies:\n  • " + "\n  • ".join(failures),
            hint="Please install missing dependencies and try again."
        )
    return results
