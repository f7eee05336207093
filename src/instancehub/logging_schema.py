"""Log event types for structured logging."""

from enum import StrEnum


class LogEvent(StrEnum):
    """Log event types for the hub.

    Used with logger.info/warning/error extra dict:
        logger.info("message", extra={"event": LogEvent.INSTANCE_STARTED, ...})
    """

    # Application lifecycle
    APP_STARTED = "app_started"
    APP_STOPPED = "app_stopped"

    # Instance events
    INSTANCE_CREATED = "instance_created"
    INSTANCE_STARTED = "instance_started"
    INSTANCE_STOPPED = "instance_stopped"
    INSTANCE_RESTARTED = "instance_restarted"
    INSTANCE_DELETED = "instance_deleted"
    INSTANCE_FAILED = "instance_failed"
    INSTANCES_LOADED = "instances_loaded"

    # Reconciliation events
    RECONCILE_COMPLETE = "reconcile_complete"
    RECONCILE_SLOW = "reconcile_slow"
    STATE_CHANGED = "state_changed"

    # Process events
    PROCESS_CREATED = "process_created"
    PROCESS_STARTED = "process_started"
    PROCESS_STOPPED = "process_stopped"
    PROCESS_EXITED = "process_exited"
    PROCESS_CRASHED = "process_crashed"
    PROCESS_DELETED = "process_deleted"

    # Database events
    DATABASE_CREATED = "database_created"
    DATABASE_DELETED = "database_deleted"
    DATABASE_BACKED_UP = "database_backed_up"
    DATABASE_RESTORED = "database_restored"
    DB_ERROR = "db_error"

    # Cleanup events
    CLEANUP_FAILED = "cleanup_failed"
    PERSISTENCE_FAILED = "persistence_failed"

    # Error events
    UNHANDLED_EXCEPTION = "unhandled_exception"
    HUB_ERROR = "hub_error"
