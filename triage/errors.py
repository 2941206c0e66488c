"""
Error Taxonomy - Typed failures for the assessment pipeline

Tenet #4: Fail Loud, Fail Early - Every failure carries a stable code
Tenet #10: Observable Systems - Every failure can be traced by correlation id

Propagation policy:
- ValidationError short-circuits before any external call
- Engine and storage failures on the clinical path are fatal to the turn
- Ledger failures are recorded per item and never fail the turn
- EngineConflictError is recovered internally by forking the thread

The `transient` class attribute marks the failure classes the retry
layer is allowed to repeat (connection, rate limit, 5xx, timeouts).
"""

from typing import Any, Dict, Optional


class TriageError(Exception):
    """Base exception for all pipeline errors."""

    code = "INTERNAL_ERROR"
    status_code = 500
    transient = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self, correlation_id: Optional[str] = None) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        body: Dict[str, Any] = {
            "error": self.message,
            "code": self.code,
            "correlationId": correlation_id,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(TriageError):
    """Caller input is malformed. Never retried."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, field: str = "unknown", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details={"field": field, **(details or {})})
        self.field = field


class SafetyError(TriageError):
    """The reasoning engine refused the content on policy grounds."""

    code = "SAFETY_ERROR"
    status_code = 400


class InternalError(TriageError):
    """Unexpected failure inside the pipeline."""


class OperationTimeoutError(TriageError, TimeoutError):
    """An external call exceeded its explicit timeout."""

    code = "TIMEOUT_ERROR"
    status_code = 504
    transient = True

    def __init__(self, message: str, operation: str = "unknown", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details={"operation": operation, **(details or {})})
        self.operation = operation


# ---- Reasoning engine ----

class EngineError(TriageError):
    """The reasoning engine reported a failure."""

    code = "ENGINE_ERROR"
    status_code = 502

    def __init__(self, message: str, operation: str = "unknown", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details={"operation": operation, **(details or {})})
        self.operation = operation


class EngineUnavailableError(EngineError):
    """Connection, rate-limit or server-side failure talking to the engine."""

    transient = True


class EngineConflictError(EngineError):
    """A run is already active on the thread."""


class EngineTimeoutError(OperationTimeoutError):
    """The engine did not answer, or a run did not finish, in time."""


# ---- Clinical record store ----

class StorageError(TriageError):
    """The record store rejected or failed a request."""

    code = "STORAGE_ERROR"
    status_code = 502

    def __init__(self, message: str, operation: str = "unknown", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details={"operation": operation, **(details or {})})
        self.operation = operation


class StorageUnavailableError(StorageError):
    """Connection or server-side failure talking to the record store."""

    transient = True


class IdempotencyConflictError(StorageError):
    """Same idempotency key or address already holds different content."""

    code = "IDEMPOTENCY_CONFLICT"
    status_code = 409


class RecordNotFoundError(TriageError):
    """No record exists at the requested (subject, type, id) address."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, subject_id: str, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type}/{resource_id} not found for subject",
            details={"resourceType": resource_type, "resourceId": resource_id},
        )
        self.subject_id = subject_id
        self.resource_type = resource_type
        self.resource_id = resource_id


# ---- Ledger ----

class LedgerError(TriageError):
    """A ledger call or transaction failed."""

    code = "LEDGER_ERROR"
    status_code = 502

    def __init__(self, message: str, operation: str = "unknown", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details={"operation": operation, **(details or {})})
        self.operation = operation


class LedgerUnavailableError(LedgerError):
    """Connection failure talking to the ledger node."""

    transient = True


class LedgerRecordExistsError(LedgerError):
    """createRecord was rejected because the record already exists."""


def is_transient(exc: BaseException) -> bool:
    """Return True if the failure belongs to a retryable class."""
    return bool(getattr(exc, "transient", False))
