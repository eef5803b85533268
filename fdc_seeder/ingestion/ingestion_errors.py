"""Structured error types for the FoodData Central ingestion pipeline.

Every failure mode of the seeding job has its own error type so the
orchestrator can decide, per type, whether to retry, skip, record or abort.

ERROR POLICY:
    ┌──────────────────────────┬──────────────────────────────────────────┐
    │ TransientFetchError      │ page is retried, then the run aborts     │
    │ FatalFetchError          │ current partition is abandoned           │
    │ WriteConflictError       │ counted as a duplicate skip              │
    │ WriteFailureError        │ recorded per record, batch continues     │
    │ CheckpointPersistError   │ logged, ingestion continues in memory    │
    │ CheckpointReadError      │ fatal for `run`, one bad tick for monitor│
    │ ConfigError              │ fatal before anything starts             │
    └──────────────────────────┴──────────────────────────────────────────┘

Only errors that reach the CLI are shown on the operator's terminal; the
rest end up in the checkpoint's bounded error log for the monitor.
"""

from enum import Enum
from typing import Dict, Any, Optional


class IngestionErrorCode(Enum):
    """Machine-readable codes for every pipeline failure mode."""

    TRANSIENT_FETCH = "TRANSIENT_FETCH"
    FATAL_FETCH = "FATAL_FETCH"
    WRITE_CONFLICT = "WRITE_CONFLICT"
    WRITE_FAILURE = "WRITE_FAILURE"
    CHECKPOINT_PERSIST = "CHECKPOINT_PERSIST"
    CHECKPOINT_READ = "CHECKPOINT_READ"
    CONFIG = "CONFIG"


class IngestionError(Exception):
    """Base exception for all ingestion pipeline errors.

    Attributes:
        code: IngestionErrorCode identifying the error type
        message: Human-readable error description
        context: Dictionary of relevant error context (partition, page, ...)
    """

    def __init__(
        self,
        code: IngestionErrorCode,
        message: str,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.context = context or {}
        super().__init__(f"[{code.value}] {message}")

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code!r}, "
            f"message={self.message!r}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON output.

        Returns:
            Dictionary with error code, message, and context
        """
        return {
            "error_code": self.code.value,
            "message": self.message,
            "context": self.context
        }


class TransientFetchError(IngestionError):
    """Raised when a page fetch keeps failing with a retryable condition.

    Covers HTTP 429, HTTP 5xx, timeouts, connection errors and undecodable
    bodies once the client's own retry attempts are exhausted. The
    orchestrator retries the same page on its next tick.

    Context includes:
        - partition: Data type being paged
        - page: Page number that failed
        - status_code: Last HTTP status (None for network errors)
        - attempts: Number of attempts made
    """

    def __init__(
        self,
        partition: str,
        page: int,
        reason: str,
        status_code: Optional[int] = None,
        attempts: int = 0
    ):
        context = {
            "partition": partition,
            "page": page,
            "status_code": status_code,
            "attempts": attempts,
        }
        message = f"Fetching {partition} page {page} failed after {attempts} attempt(s): {reason}"
        super().__init__(
            code=IngestionErrorCode.TRANSIENT_FETCH,
            message=message,
            context=context
        )
        self.partition = partition
        self.page = page
        self.status_code = status_code
        self.attempts = attempts


class FatalFetchError(IngestionError):
    """Raised on a non-retryable API rejection (4xx other than 429).

    Usually a malformed query or an invalid API key. The orchestrator
    abandons the current partition and moves on to the next one.
    """

    def __init__(
        self,
        partition: str,
        page: int,
        reason: str,
        status_code: Optional[int] = None
    ):
        context = {
            "partition": partition,
            "page": page,
            "status_code": status_code,
        }
        message = f"API rejected {partition} page {page}: {reason}"
        super().__init__(
            code=IngestionErrorCode.FATAL_FETCH,
            message=message,
            context=context
        )
        self.partition = partition
        self.page = page
        self.status_code = status_code


class WriteConflictError(IngestionError):
    """Raised by the store when the external identifier already exists.

    Not a failure: the batch writer counts it as a duplicate skip.
    """

    def __init__(self, fdc_id: int):
        super().__init__(
            code=IngestionErrorCode.WRITE_CONFLICT,
            message=f"Ingredient with fdc_id {fdc_id} already exists",
            context={"fdc_id": fdc_id}
        )
        self.fdc_id = fdc_id


class WriteFailureError(IngestionError):
    """Raised when the store rejects a write for any reason but a duplicate key.

    ``fdc_id`` is None when a whole batched statement failed.
    """

    def __init__(self, detail: str, fdc_id: Optional[int] = None):
        context: Dict[str, Any] = {"detail": detail}
        if fdc_id is not None:
            context["fdc_id"] = fdc_id
            message = f"Failed to write fdc_id {fdc_id}: {detail}"
        else:
            message = f"Batch write failed: {detail}"
        super().__init__(
            code=IngestionErrorCode.WRITE_FAILURE,
            message=message,
            context=context
        )
        self.fdc_id = fdc_id
        self.detail = detail


class CheckpointPersistError(IngestionError):
    """Raised when the checkpoint file cannot be written."""

    def __init__(self, path: str, reason: str):
        super().__init__(
            code=IngestionErrorCode.CHECKPOINT_PERSIST,
            message=f"Could not save checkpoint to {path}: {reason}",
            context={"path": path}
        )
        self.path = path


class CheckpointReadError(IngestionError):
    """Raised when the checkpoint file exists but cannot be read or parsed."""

    def __init__(self, path: str, reason: str):
        super().__init__(
            code=IngestionErrorCode.CHECKPOINT_READ,
            message=f"Could not read checkpoint {path}: {reason}",
            context={"path": path}
        )
        self.path = path


class ConfigError(IngestionError):
    """Raised for invalid seeder configuration."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(
            code=IngestionErrorCode.CONFIG,
            message=message,
            context={"key": key} if key else {}
        )
        self.key = key
