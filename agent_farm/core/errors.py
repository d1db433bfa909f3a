"""
Agent Farm Errors

Exception hierarchy for builder lifecycle operations. Every error can carry a
remediation hint that the CLI prints underneath the message.
"""

from typing import Optional


class AgentFarmError(Exception):
    """Base exception for all Agent Farm errors."""

    def __init__(self, message: str, hint: Optional[str] = None):
        self.message = message
        self.hint = hint
        super().__init__(message)


class UserInputError(AgentFarmError):
    """Bad flags, unknown ids or invalid names supplied by the user."""


class PreconditionError(AgentFarmError):
    """A required file, binary or resource is missing or already taken."""


class SpawnError(AgentFarmError):
    """A builder could not be brought up after provisioning started."""

    def __init__(self,
                 builder_id: str,
                 reason: str,
                 worktree: Optional[str] = None,
                 branch: Optional[str] = None):
        self.builder_id = builder_id
        self.reason = reason
        self.worktree = worktree
        self.branch = branch

        hint = None
        if worktree or branch:
            parts = []
            if worktree:
                parts.append(f"git worktree remove --force {worktree}")
            if branch:
                parts.append(f"git branch -D {branch}")
            hint = "Clean up manually with: " + " && ".join(parts)

        super().__init__(f"Failed to spawn builder {builder_id}: {reason}", hint)


class PortRegistryError(AgentFarmError):
    """The global port registry is unavailable or exhausted."""


class StateStoreError(AgentFarmError):
    """The project state database could not be opened or migrated."""


class TmuxError(AgentFarmError):
    """A tmux command failed."""


class GitError(AgentFarmError):
    """A git command failed."""


class PortInUseError(AgentFarmError):
    """A freshly started server never listened on its port (usually lost to a concurrent spawn)."""

    def __init__(self, port: int, message: str):
        self.port = port
        super().__init__(message)
