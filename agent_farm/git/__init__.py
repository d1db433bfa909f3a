"""Git worktree provisioning for builders and shells."""

__all__ = ["worktree_manager"]
