"""
Progress Store

Table-backed progress records shared by both services:

- partition_progress: dedup boundary of the consumer ("highest offset fully
  applied per partition")
- publish_progress: resume point of the producer ("last source position
  published")

The per-scope helpers run inside the caller's transaction. Offset reads and
advances must happen in a SERIALIZABLE_RW scope together with the business
write; reporting helpers open their own SNAPSHOT_RO transaction.
"""

import logging
from typing import Dict, Optional

from sqlalchemy import func, select

from file_pipeline.shared.models import FileChunk, PartitionProgress, PublishProgress
from file_pipeline.shared.retry import Applied, RetryingExecutor
from file_pipeline.shared.transaction import TransactionScope, TxMode

logger = logging.getLogger(__name__)


class ProgressStore:
    """
    Access helpers for the progress tables.

    Attributes:
        executor: Executor used for the helpers that own their transaction
    """

    def __init__(self, executor: RetryingExecutor):
        self.executor = executor

    # ==========================================================================
    # CONSUMER SIDE
    # ==========================================================================

    @staticmethod
    def last_applied_offset(scope: TransactionScope, partition: int) -> Optional[int]:
        """
        Highest applied offset for a partition, or None if never applied.

        Must be called in the same transaction that writes the business row.
        """
        rows = scope.execute(
            select(PartitionProgress.last_offset).where(
                PartitionProgress.partition_id == partition
            )
        )
        return rows[0][0] if rows else None

    @staticmethod
    def advance_offset(scope: TransactionScope, partition: int, offset: int) -> None:
        """Raise the partition's applied offset; lower values never overwrite."""
        scope.upsert(
            PartitionProgress,
            {"partition_id": partition, "last_offset": offset, "updated_at": func.now()},
            monotonic="last_offset",
        )

    # ==========================================================================
    # PRODUCER SIDE
    # ==========================================================================

    @staticmethod
    def resume_position(scope: TransactionScope, resume_key: str) -> int:
        """Last published position for a resume key (0 if nothing was published)."""
        rows = scope.execute(
            select(PublishProgress.last_position).where(
                PublishProgress.resume_key == resume_key
            )
        )
        return rows[0][0] if rows else 0

    @staticmethod
    def record_published(scope: TransactionScope, resume_key: str, position: int) -> None:
        """Advance the resume point; lower values never overwrite."""
        scope.upsert(
            PublishProgress,
            {"resume_key": resume_key, "last_position": position, "updated_at": func.now()},
            monotonic="last_position",
        )

    def load_resume_position(self, resume_key: str) -> int:
        """Read the resume point in its own serializable transaction."""
        outcome = self.executor.run(
            lambda scope: Applied(self.resume_position(scope, resume_key)),
            TxMode.SERIALIZABLE_RW,
        )
        return outcome.value

    def save_resume_position(self, resume_key: str, position: int) -> None:
        """Persist the resume point in its own serializable transaction."""

        def unit(scope: TransactionScope) -> Applied:
            self.record_published(scope, resume_key, position)
            return Applied(position)

        self.executor.run(unit, TxMode.SERIALIZABLE_RW)
        logger.debug(
            "Resume point recorded",
            extra={"resume_key": resume_key, "position": position},
        )

    # ==========================================================================
    # REPORTING (snapshot reads, never used to decide a write)
    # ==========================================================================

    def partition_offsets(self) -> Dict[int, int]:
        """Applied offset per partition."""

        def unit(scope: TransactionScope) -> Applied:
            rows = scope.execute(
                select(PartitionProgress.partition_id, PartitionProgress.last_offset).order_by(
                    PartitionProgress.partition_id
                )
            )
            return Applied({row[0]: row[1] for row in rows})

        return self.executor.run(unit, TxMode.SNAPSHOT_RO).value

    def chunk_summary(self, name: Optional[str] = None) -> Dict[str, int]:
        """
        Chunk count and total bytes stored, optionally for one source.

        Returns:
            {"chunks": n, "bytes": total, "max_line": highest position}
        """

        def unit(scope: TransactionScope) -> Applied:
            stmt = select(
                func.count(),
                func.coalesce(func.sum(FileChunk.length), 0),
                func.coalesce(func.max(FileChunk.line), 0),
            ).select_from(FileChunk)
            if name is not None:
                stmt = stmt.where(FileChunk.name == name)
            chunks, total, max_line = scope.execute(stmt)[0]
            return Applied({"chunks": int(chunks), "bytes": int(total), "max_line": int(max_line)})

        return self.executor.run(unit, TxMode.SNAPSHOT_RO).value
