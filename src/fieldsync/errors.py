"""Error taxonomy shared by the device queue and the ingestion gateway.

- DerivationError: caller misuse while deriving an idempotency key. Never retried.
- TransientError: network timeout, 5xx, connectivity loss. Retried with backoff.
- IngestValidationError: permanent rejection (4xx other than duplicate).
- DuplicateConflict: the key already has a ServerRecord; resolved by lookup, never shown.
"""

from __future__ import annotations


class FieldSyncError(RuntimeError):
    pass


class DerivationError(FieldSyncError):
    pass


class TransientError(FieldSyncError):
    """Retry-eligible failure talking to the ingestion endpoint."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class IngestValidationError(FieldSyncError):
    """Permanent rejection; the operation needs user action."""

    def __init__(
        self, message: str, *, status_code: int | None = None, details: object | None = None
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class TransientIngestError(FieldSyncError):
    """Server side: the effect could not be applied right now; the client should retry."""


class DuplicateConflict(FieldSyncError):
    def __init__(self, idempotency_key: str) -> None:
        super().__init__(f"idempotency key already applied: {idempotency_key}")
        self.idempotency_key = idempotency_key


class StoreClosedError(FieldSyncError):
    pass


class OperationNotFoundError(FieldSyncError):
    def __init__(self, operation_id: str) -> None:
        super().__init__(f"operation not found: {operation_id}")
        self.operation_id = operation_id


class InvalidTransitionError(FieldSyncError):
    def __init__(self, operation_id: str, current: str, requested: str) -> None:
        super().__init__(f"operation {operation_id}: cannot move from {current} to {requested}")
        self.operation_id = operation_id
        self.current = current
        self.requested = requested


class OperationNotCancellableError(FieldSyncError):
    def __init__(self, operation_id: str, status: str) -> None:
        super().__init__(f"operation {operation_id} is {status} and cannot be cancelled")
        self.operation_id = operation_id
        self.status = status
