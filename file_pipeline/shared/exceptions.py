"""
Exception types and error classification for the file pipeline.

Provides:
- ErrorCategory enum for retry decisions
- Typed exception hierarchy for pipeline errors
- is_retriable() classification of store errors
"""

from enum import Enum
from typing import Optional

from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    InterfaceError,
    OperationalError,
    PendingRollbackError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Categories:
        TRANSIENT: Temporary failures that succeed on a fresh attempt
                   (connection drop, serialization conflict, session expiry)
        PERMANENT: Failures that will not succeed on retry
                   (constraint violation, malformed statement or payload)
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for retry decisions
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.PERMANENT

    def __init__(self, message: str, context: Optional[dict] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether this error should trigger a retry."""
        return self.category == ErrorCategory.TRANSIENT

    def __str__(self) -> str:
        if self.context:
            details = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({details})"
        return self.message


class TransientStoreError(PipelineError):
    """Store failure that is safe to retry against a fresh transaction."""

    category = ErrorCategory.TRANSIENT


class RetriesExhaustedError(PipelineError):
    """A unit of work kept failing transiently until the retry budget ran out."""

    category = ErrorCategory.TRANSIENT


class MalformedMessageError(PipelineError):
    """Message payload cannot be decoded into a chunk envelope."""


class ReadOnlyTransactionError(PipelineError):
    """Write attempted inside a read-only (snapshot) transaction."""


class MessageProcessingError(PipelineError):
    """
    A message reached the FAILED state.

    The message has not been acknowledged and will be redelivered on
    reconnect.
    """

    def __init__(
        self,
        message: str,
        partition: Optional[int] = None,
        offset: Optional[int] = None,
        context: Optional[dict] = None,
    ):
        self.partition = partition
        self.offset = offset
        ctx = {"partition": partition, "offset": offset}
        ctx.update(context or {})
        super().__init__(message, context=ctx)


class PublishError(PipelineError):
    """The log did not durably accept one or more published messages."""

    category = ErrorCategory.TRANSIENT


# ==============================================================================
# CLASSIFICATION
# ==============================================================================

_RETRIABLE_STORE_ERRORS = (
    OperationalError,
    InterfaceError,
    DisconnectionError,
    PoolTimeoutError,
    PendingRollbackError,
)


def is_retriable(exc: BaseException) -> bool:
    """
    Decide whether a failed unit of work may be re-run from scratch.

    RETRIABLE:
    - OperationalError (connection lost, serialization failure, deadlock,
      SQLite "database is locked")
    - InterfaceError, DisconnectionError, pool TimeoutError
    - PendingRollbackError (session invalidated mid-transaction)
    - Any DBAPIError whose connection was invalidated
    - PipelineError subclasses in the TRANSIENT category

    Everything else (IntegrityError, ProgrammingError, DataError, application
    errors) is permanent.
    """
    if isinstance(exc, PipelineError):
        return exc.is_retryable
    if isinstance(exc, _RETRIABLE_STORE_ERRORS):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False
