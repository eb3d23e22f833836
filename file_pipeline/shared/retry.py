"""
Retrying Execution of Units of Work

A unit of work is a callable that receives a begun TransactionScope and
returns a tagged outcome. The executor owns the transaction: it commits or
rolls back according to the outcome, and on a retriable failure re-runs the
unit from scratch against a fresh transaction.

OUTCOMES:
┌───────────┬──────────────────────┬──────────────────────────────────────┐
│ Outcome   │ Transaction          │ Meaning                              │
├───────────┼──────────────────────┼──────────────────────────────────────┤
│ Applied   │ committed            │ Effects are durable                  │
│ Skip      │ rolled back          │ Nothing to do (e.g. duplicate)       │
│ Abort     │ rolled back          │ Unit refused; never retried          │
└───────────┴──────────────────────┴──────────────────────────────────────┘

RETRY STRATEGY:
- Retriable errors (see exceptions.is_retriable), including a failed commit
- Exponential backoff: retry_backoff_ms * 2**attempt, capped
- max_retries counts re-attempts after the first try; 0 means a single try
- Non-retriable errors propagate on first occurrence
- Exhaustion raises RetriesExhaustedError chained to the last error

A commit failure leaves the outcome unknown: the transaction may have landed.
Units must therefore be safe to replay after a commit that actually succeeded.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from file_pipeline.shared.config import StoreSettings
from file_pipeline.shared.database import DatabaseManager
from file_pipeline.shared.exceptions import RetriesExhaustedError, is_retriable
from file_pipeline.shared.transaction import TransactionScope, TxMode

logger = logging.getLogger(__name__)

# ==============================================================================
# OUTCOMES
# ==============================================================================


@dataclass(frozen=True)
class Applied:
    """The unit's writes should be committed."""

    value: Any = None


@dataclass(frozen=True)
class Skip:
    """The unit found nothing to do; roll back."""

    reason: str = ""


@dataclass(frozen=True)
class Abort:
    """The unit refused to proceed; roll back and do not retry."""

    reason: str = ""


Outcome = Union[Applied, Skip, Abort]
UnitOfWork = Callable[[TransactionScope], Outcome]

# ==============================================================================
# EXECUTOR
# ==============================================================================


class RetryingExecutor:
    """
    Runs units of work against the store with retry on transient failure.

    The executor keeps no state between run() calls and is safe to share
    between threads.

    Attributes:
        db_manager: Source of fresh transaction scopes
        max_retries: Re-attempts after the first try
        backoff_ms: Initial backoff
        max_backoff_ms: Backoff cap
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        max_retries: int = 3,
        backoff_ms: int = 1000,
        max_backoff_ms: int = 30000,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.db_manager = db_manager
        self.max_retries = max_retries
        self.backoff_ms = backoff_ms
        self.max_backoff_ms = max_backoff_ms
        self._sleep = sleep

    @classmethod
    def from_config(cls, db_manager: DatabaseManager, config: StoreSettings) -> "RetryingExecutor":
        return cls(
            db_manager,
            max_retries=config.max_retries,
            backoff_ms=config.retry_backoff_ms,
            max_backoff_ms=config.retry_max_backoff_ms,
        )

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before re-attempt number attempt + 1 (attempt is 0-based)."""
        return min(self.backoff_ms * (2**attempt), self.max_backoff_ms) / 1000

    def run(
        self,
        unit: UnitOfWork,
        mode: TxMode = TxMode.SERIALIZABLE_RW,
        log: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None,
    ) -> Outcome:
        """
        Run a unit of work until it produces an outcome.

        Args:
            unit: Callable receiving a TransactionScope, returning an Outcome
            mode: Transaction mode for every attempt
            log: Logger for retry messages (e.g. a CorrelationAdapter)

        Returns:
            The unit's outcome, after commit (Applied) or rollback (Skip/Abort)

        Raises:
            RetriesExhaustedError: Retriable failures outlasted max_retries
            Exception: Any non-retriable error raised by the unit or the store
        """
        log = log or logger
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            try:
                return self._attempt(unit, mode)
            except Exception as e:
                if not is_retriable(e):
                    raise

                if attempt == attempts - 1:
                    log.error(
                        "Max retries exhausted, giving up",
                        extra={"attempts": attempts, "error": str(e)},
                    )
                    raise RetriesExhaustedError(
                        "Unit of work failed after retries",
                        context={"attempts": attempts, "error_type": type(e).__name__},
                    ) from e

                backoff_s = self.backoff_seconds(attempt)
                log.warning(
                    f"Transient store error, retrying in {backoff_s}s",
                    extra={
                        "attempt": attempt + 1,
                        "max_retries": self.max_retries,
                        "error_type": type(e).__name__,
                        "error": str(e),
                    },
                )
                self._sleep(backoff_s)

        # range(attempts) is never empty
        raise AssertionError("unreachable")

    def _attempt(self, unit: UnitOfWork, mode: TxMode) -> Outcome:
        scope = self.db_manager.begin(mode)
        try:
            outcome = unit(scope)

            if isinstance(outcome, Applied):
                scope.commit()
            elif isinstance(outcome, (Skip, Abort)):
                scope.rollback()
            else:
                scope.rollback()
                raise TypeError(
                    f"Unit of work must return Applied, Skip or Abort, got {outcome!r}"
                )
            return outcome
        except BaseException:
            _safe_rollback(scope)
            raise
        finally:
            scope.close()


def _safe_rollback(scope: TransactionScope) -> None:
    try:
        scope.rollback()
    except Exception:
        # Connection already gone; close() discards the session anyway
        logger.debug("Rollback after failed attempt did not complete", exc_info=True)
