"""
Git Worktree Manager Module

Creates the branch and worktree that isolate each builder, links shared
untracked configuration into it, and reports or removes it on cleanup.
Worktrees are preserved by default so builder output stays inspectable.
"""

import logging
import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from rich.console import Console

from ..core.errors import GitError, UserInputError

console = Console()
logger = logging.getLogger(__name__)

SHARED_CONFIG_FILES = ('.env',)

# Untracked launcher files written into every builder worktree
SCAFFOLD_PATTERN = re.compile(r'^\?\? \.builder-')

_INVALID_BRANCH = [
    re.compile(r'[\x00-\x1f\x7f]'),
    re.compile(r'\s'),
    re.compile(r'\.\.'),
    re.compile(r'@\{'),
    re.compile(r'^/'),
    re.compile(r'/$'),
    re.compile(r'//'),
    re.compile(r'^-'),
]


def validate_branch_name(branch: str) -> Optional[str]:
    """
    Check a user-supplied branch name.

    Returns:
        An error message, or None when the name is acceptable
    """
    if not branch:
        return 'Branch name must not be empty'
    for pattern in _INVALID_BRANCH:
        if pattern.search(branch):
            return f"Invalid branch name: {branch}"
    return None


class WorktreeManager:
    """
    Manages git worktrees for builder isolation.

    Features:
    - Branch + worktree creation with tolerant branch step
    - Best-effort symlinking of shared untracked config
    - Scaffold-aware uncommitted change detection
    - Opportunistic worktree metadata pruning
    """

    def __init__(self, project_root: Path):
        """
        Initialize worktree manager for a project.

        Args:
            project_root: Path to the main checkout
        """
        self.project_root = Path(project_root).resolve()

    def _git(self, args: Sequence[str], cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                ['git'] + list(args),
                cwd=str(cwd or self.project_root),
                capture_output=True, text=True
            )
        except FileNotFoundError as e:
            raise GitError("git not found", hint="Install git (apt install git)") from e

    def prune(self) -> bool:
        """
        Drop stale worktree metadata left by crashes or manual deletion.

        Returns:
            bool: False if the prune failed (never raised)
        """
        try:
            result = self._git(['worktree', 'prune'])
        except GitError as e:
            logger.warning(f"git worktree prune skipped: {e}")
            return False
        if result.returncode != 0:
            logger.warning(f"git worktree prune failed: {result.stderr.strip()}")
            return False
        return True

    def branch_exists(self, branch: str) -> bool:
        result = self._git(['rev-parse', '--verify', '--quiet', f'refs/heads/{branch}'])
        return result.returncode == 0

    def create_worktree(self, branch: str, worktree_path: Path) -> Path:
        """
        Create a branch (if absent) and check it out in a new worktree.

        Args:
            branch: Branch name
            worktree_path: Destination directory

        Returns:
            Path: The new worktree

        Raises:
            GitError: If git worktree add fails
        """
        worktree_path = Path(worktree_path)

        result = self._git(['branch', branch])
        if result.returncode != 0:
            # Usually "already exists"
            logger.debug(f"git branch {branch}: {result.stderr.strip()}")

        worktree_path.parent.mkdir(parents=True, exist_ok=True)
        result = self._git(['worktree', 'add', str(worktree_path), branch])
        if result.returncode != 0:
            raise GitError(
                f"Failed to create worktree at {worktree_path}: {result.stderr.strip()}",
                hint="Run 'git worktree prune' and check the branch is not checked out elsewhere"
            )

        console.print(f"[green]✅ Created worktree {worktree_path} on {branch}[/green]")
        self.link_shared_config(worktree_path)
        return worktree_path

    def create_shell_worktree(self, branch: Optional[str], worktree_path: Path) -> Path:
        """
        Create a checkout for a shell tab.

        An existing branch is checked out, a new name creates the branch, and
        no name gives a detached HEAD.

        Raises:
            UserInputError: If the path already exists or the branch is invalid
            GitError: If git refuses
        """
        worktree_path = Path(worktree_path)
        if worktree_path.exists():
            raise UserInputError(f"Worktree path already exists: {worktree_path}")

        if branch:
            error = validate_branch_name(branch)
            if error:
                raise UserInputError(error)
            if self.branch_exists(branch):
                args = ['worktree', 'add', str(worktree_path), branch]
            else:
                args = ['worktree', 'add', '-b', branch, str(worktree_path)]
        else:
            args = ['worktree', 'add', '--detach', str(worktree_path)]

        worktree_path.parent.mkdir(parents=True, exist_ok=True)
        result = self._git(args)
        if result.returncode != 0:
            raise GitError(f"Failed to create worktree: {result.stderr.strip()}")

        self.link_shared_config(worktree_path)
        return worktree_path

    def link_shared_config(self, worktree_path: Path,
                           files: Sequence[str] = SHARED_CONFIG_FILES) -> List[str]:
        """
        Symlink untracked root config files into a worktree.

        Args:
            worktree_path: Worktree to link into
            files: File names relative to the project root

        Returns:
            Names that were linked
        """
        linked = []
        for name in files:
            source = self.project_root / name
            target = Path(worktree_path) / name
            if not source.exists() or os.path.lexists(target):
                continue
            try:
                target.symlink_to(source)
                linked.append(name)
                logger.info(f"Linked {name} from project root")
            except OSError as e:
                logger.warning(f"Failed to symlink {name} into {worktree_path}: {e}")
        return linked

    def uncommitted_changes(self, worktree_path: Path) -> Tuple[List[str], bool]:
        """
        List real uncommitted changes in a worktree.

        Builder scaffold files (.builder-*) are not counted.

        Returns:
            Tuple of (porcelain lines for real changes, scaffold_only flag).
            A status failure is reported as one pseudo-change.
        """
        worktree_path = Path(worktree_path)
        if not worktree_path.exists():
            return [], False

        try:
            result = self._git(['status', '--porcelain'], cwd=worktree_path)
        except GitError:
            return ['Unable to check status'], False
        if result.returncode != 0:
            return ['Unable to check status'], False

        lines = [line for line in result.stdout.splitlines() if line.strip()]
        real = [line for line in lines if not SCAFFOLD_PATTERN.match(line)]
        return real, bool(lines) and not real

    def remove_worktree(self, worktree_path: Path, force: bool = False) -> None:
        """
        Remove a worktree directory and its metadata.

        Raises:
            GitError: If git refuses and force is not set
        """
        worktree_path = Path(worktree_path)
        if not worktree_path.exists():
            self.prune()
            return

        args = ['worktree', 'remove', str(worktree_path)]
        if force:
            args.append('--force')
        result = self._git(args)
        if result.returncode != 0:
            if not force:
                raise GitError(
                    f"Failed to remove worktree {worktree_path}: {result.stderr.strip()}",
                    hint="Use --force to override"
                )
            shutil.rmtree(worktree_path, ignore_errors=True)
        self.prune()

    def delete_branch(self, branch: str, force: bool = False) -> bool:
        """Delete a branch (-d, or -D when forced). Failures are logged."""
        if not branch:
            return False
        result = self._git(['branch', '-D' if force else '-d', branch])
        if result.returncode != 0:
            console.print(f"[yellow]⚠️ Could not delete branch {branch}: {result.stderr.strip()}[/yellow]")
            return False
        return True
