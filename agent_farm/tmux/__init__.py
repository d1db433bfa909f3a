"""tmux session control and message delivery."""

__all__ = ["messaging", "session_controller"]
