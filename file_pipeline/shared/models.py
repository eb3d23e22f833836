"""
SQLAlchemy ORM Models for the File Pipeline

Three tables back the pipeline:

- partition_progress: highest log offset fully applied per partition
  (owned by the consumer, written in the same transaction as the business row)
- publish_progress: last source position durably published per resume key
  (owned by the producer)
- file_chunks: the business entity, one row per source chunk

Each table has exactly one writer. Rows are created on first use and updated
in place; nothing in normal operation deletes them.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import TIMESTAMP, BigInteger, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# ==============================================================================
# DECLARATIVE BASE
# ==============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# ==============================================================================
# CONSUMER PROGRESS
# ==============================================================================


class PartitionProgress(Base):
    """
    Dedup boundary for one log partition.

    Attributes:
        partition_id: Log partition number (PRIMARY KEY)
        last_offset: Highest offset whose business effect is committed
        updated_at: Last time the row advanced
    """

    __tablename__ = "partition_progress"

    partition_id: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=False,
        comment="Log partition number",
    )

    # Non-decreasing; only ever raised by an upsert guarded on the old value
    last_offset: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Highest offset applied for this partition",
    )

    updated_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = ({"comment": "Per-partition high-water-mark of applied offsets"},)

    def __repr__(self) -> str:
        return (
            f"<PartitionProgress(partition_id={self.partition_id}, "
            f"last_offset={self.last_offset})>"
        )


# ==============================================================================
# PRODUCER PROGRESS
# ==============================================================================


class PublishProgress(Base):
    """
    Resume point for a published source.

    Attributes:
        resume_key: Source identity, e.g. the file path (PRIMARY KEY)
        last_position: Last chunk position flushed to the log
        updated_at: Last time the row advanced
    """

    __tablename__ = "publish_progress"

    resume_key: Mapped[str] = mapped_column(
        Text,
        primary_key=True,
        comment="Source identity (file path)",
    )

    last_position: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Last source position acknowledged by the log",
    )

    updated_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = ({"comment": "Producer resume points"},)

    def __repr__(self) -> str:
        return (
            f"<PublishProgress(resume_key={self.resume_key}, "
            f"last_position={self.last_position})>"
        )


# ==============================================================================
# BUSINESS ENTITY
# ==============================================================================


class FileChunk(Base):
    """
    One processed chunk of a source file.

    The key is (name, line): source identity plus chunk position, both carried
    in the payload. A chunk republished under a new offset lands on the same
    row.

    Attributes:
        name: Source name (PRIMARY KEY part 1)
        line: 1-based chunk position within the source (PRIMARY KEY part 2)
        length: Chunk size in bytes
        partition_id: Partition the chunk was applied from
        log_offset: Offset the chunk was applied from
        stored_at: Database write timestamp
    """

    __tablename__ = "file_chunks"

    name: Mapped[str] = mapped_column(String(1024), primary_key=True)

    line: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)

    length: Mapped[int] = mapped_column(BigInteger, nullable=False)

    partition_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    log_offset: Mapped[int] = mapped_column(BigInteger, nullable=False)

    stored_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = ({"comment": "Chunks consumed from the file-chunks topic"},)

    def __repr__(self) -> str:
        return f"<FileChunk(name={self.name}, line={self.line}, length={self.length})>"
