"""API dependencies for dependency injection."""

from instancehub.config import HubConfig
from instancehub.instances.manager import InstanceManager
from instancehub.isolation.database import DatabaseIsolationManager
from instancehub.isolation.supervisor import SubprocessIsolationManager

# Singleton manager instance
_manager: InstanceManager | None = None


def build_manager(config: HubConfig) -> InstanceManager:
    """Wire the instance manager to the shipped isolation collaborators."""
    base_path = config.instances.base_path
    processes = SubprocessIsolationManager(
        base_path,
        stop_grace_seconds=config.isolation.stop_grace_seconds,
        restart_delay_seconds=config.isolation.restart_delay_seconds,
    )
    databases = DatabaseIsolationManager.from_config(config.database, base_path)
    return InstanceManager(config, processes, databases)


async def init_manager(config: HubConfig) -> None:
    """Initialize manager singleton.

    Reloads the registry and starts reconciliation.
    Must be called during app startup.
    """
    global _manager
    _manager = build_manager(config)
    await _manager.start()


async def close_manager() -> None:
    """Stop manager and release resources."""
    global _manager
    if _manager:
        await _manager.stop()
        _manager = None


def get_manager() -> InstanceManager:
    """Get manager singleton.

    Raises:
        RuntimeError: If called before init_manager().
    """
    if _manager is None:
        raise RuntimeError("Manager not initialized. Call init_manager() first.")
    return _manager


def reset_manager() -> None:
    """Reset manager singleton (for testing)."""
    global _manager
    _manager = None
