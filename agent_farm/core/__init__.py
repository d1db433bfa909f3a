"""Session state, process lifecycle, builder spawning and orchestration."""

__all__ = [
    "errors", "models", "orchestrator", "orphan_reconciler",
    "port_registry", "process_manager", "remote", "spawner", "state_store",
]
