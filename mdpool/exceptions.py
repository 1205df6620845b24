"""Exception types raised by the pool agent."""

from typing import Optional


class PoolError(Exception):
    """Base class for pool agent errors."""


class PoolValidationError(PoolError, ValueError):
    """Request input was rejected before any operation was created."""


class OperationConflictError(PoolError):
    """A non-terminal operation already exists for the pool."""

    def __init__(self, pool_group_guid: str, operation_id: str):
        super().__init__(
            f"Pool {pool_group_guid} already has an active operation ({operation_id})"
        )
        self.pool_group_guid = pool_group_guid
        self.operation_id = operation_id


class OperationNotFoundError(PoolError):
    """No operation exists with the given id."""


class InvalidTransitionError(PoolError):
    """A state change not permitted by the operation lifecycle."""


class StepFailedError(PoolError):
    """A pool operation step failed; the operation should be marked failed."""

    def __init__(self, message: str, error_code: str = "command_failed",
                 details: Optional[dict] = None):
        super().__init__(message)
        self.error_code = error_code
        self.details = details or {}


class CommandTimeoutError(PoolError):
    """An external command exceeded its time limit."""


class OperationCancelledError(PoolError):
    """Cancellation was observed at a step boundary."""


class DriveScanError(PoolError):
    """Block devices could not be enumerated."""


class OperationsLockedError(PoolError):
    """Another agent owns the operations directory."""
