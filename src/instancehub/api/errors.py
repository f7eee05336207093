"""Error handling module for instancehub.

This module defines error codes, exception classes, and response models.
Managers raise these directly; the FastAPI app renders them.

Error Response Format:
{
    "error": {
        "code": "INSTANCE_NOT_FOUND",
        "message": "Instance not found: alice_20250101120000"
    }
}
"""

from enum import Enum

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Error codes for the hub."""

    INSTANCE_NOT_FOUND = "INSTANCE_NOT_FOUND"
    DATABASE_NOT_FOUND = "DATABASE_NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    ALREADY_RUNNING = "ALREADY_RUNNING"
    NOT_RUNNING = "NOT_RUNNING"
    PORT_IN_USE = "PORT_IN_USE"
    NO_PORT_AVAILABLE = "NO_PORT_AVAILABLE"
    PROVISIONING_FAILED = "PROVISIONING_FAILED"
    PROCESS_FAILED = "PROCESS_FAILED"
    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"
    BACKUP_UNSUPPORTED = "BACKUP_UNSUPPORTED"


class ErrorDetail(BaseModel):
    """Error detail containing code and message."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Error response format."""

    error: ErrorDetail


class HubError(Exception):
    """Base exception for instancehub.

    Attributes:
        code: The error code from ErrorCode enum.
        message: Human-readable error message.
        status_code: HTTP status code to return.
    """

    def __init__(self, code: ErrorCode, message: str, status_code: int) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert exception to ErrorResponse model."""
        return ErrorResponse(
            error=ErrorDetail(code=self.code.value, message=self.message)
        )


class InstanceNotFoundError(HubError):
    """404 Not Found - Unknown instance ID."""

    def __init__(self, message: str = "Instance not found") -> None:
        super().__init__(ErrorCode.INSTANCE_NOT_FOUND, message, 404)


class DatabaseNotFoundError(HubError):
    """404 Not Found - No isolated database tracked for the instance."""

    def __init__(self, message: str = "Database not found") -> None:
        super().__init__(ErrorCode.DATABASE_NOT_FOUND, message, 404)


class AlreadyExistsError(HubError):
    """409 Conflict - Duplicate instance or database."""

    def __init__(self, message: str = "Already exists") -> None:
        super().__init__(ErrorCode.ALREADY_EXISTS, message, 409)


class AlreadyRunningError(HubError):
    """409 Conflict - Instance is already running."""

    def __init__(self, message: str = "Instance is already running") -> None:
        super().__init__(ErrorCode.ALREADY_RUNNING, message, 409)


class NotRunningError(HubError):
    """409 Conflict - Instance is not running."""

    def __init__(self, message: str = "Instance is not running") -> None:
        super().__init__(ErrorCode.NOT_RUNNING, message, 409)


class PortInUseError(HubError):
    """409 Conflict - Requested port belongs to another instance."""

    def __init__(self, message: str = "Port already in use") -> None:
        super().__init__(ErrorCode.PORT_IN_USE, message, 409)


class NoPortAvailableError(HubError):
    """503 Service Unavailable - Auto-allocation range exhausted."""

    def __init__(self, message: str = "No port available") -> None:
        super().__init__(ErrorCode.NO_PORT_AVAILABLE, message, 503)


class ProvisioningError(HubError):
    """500 Internal Server Error - Storage or directory creation failed."""

    def __init__(self, message: str = "Provisioning failed") -> None:
        super().__init__(ErrorCode.PROVISIONING_FAILED, message, 500)


class ProcessError(HubError):
    """500 Internal Server Error - Process could not be spawned/stopped/restarted."""

    def __init__(self, message: str = "Process operation failed") -> None:
        super().__init__(ErrorCode.PROCESS_FAILED, message, 500)


class PersistenceError(HubError):
    """500 Internal Server Error - Registry or config file I/O failed."""

    def __init__(self, message: str = "Persistence failed") -> None:
        super().__init__(ErrorCode.PERSISTENCE_FAILED, message, 500)


class BackupUnsupportedError(HubError):
    """501 Not Implemented - Backend has no file-level backup."""

    def __init__(self, message: str = "Backup not supported for this backend") -> None:
        super().__init__(ErrorCode.BACKUP_UNSUPPORTED, message, 501)
