from __future__ import annotations

from typing import Any


class SalesOSError(Exception):
    """Base class for errors surfaced to the HTTP boundary."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class UnauthenticatedError(SalesOSError):
    status_code = 401
    code = "unauthenticated"


class ForbiddenError(SalesOSError):
    status_code = 403
    code = "forbidden"

    def __init__(self, resource: str, action: str, message: str | None = None) -> None:
        self.resource = resource
        self.action = action
        super().__init__(message or f"Not allowed to {action} {resource}")


class NotFoundError(SalesOSError):
    status_code = 404
    code = "not_found"

    def __init__(self, resource: str, resource_id: str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found")


class ConflictError(SalesOSError):
    status_code = 409
    code = "conflict"


class ValidationFailedError(SalesOSError):
    status_code = 422
    code = "validation_failed"


class StorageUnavailableError(SalesOSError):
    """The row store could not complete an operation. Never retried."""

    status_code = 503
    code = "storage_unavailable"

    def __init__(self, operation: str, table: str, message: str = "storage unavailable") -> None:
        self.operation = operation
        self.table = table
        super().__init__(message)


class StageHistoryWriteError(StorageUnavailableError):
    """The opportunity update was stored but its stage history row was not."""

    code = "stage_history_write_failed"

    def __init__(self, opportunity_id: str, from_stage: str, to_stage: str) -> None:
        self.opportunity_id = opportunity_id
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__("create", "Stage History", "stage change stored but history entry was not recorded")


class DataIntegrityError(SalesOSError):
    code = "data_integrity"
