"""
Transaction Scope

One active store transaction, handed to every unit of work run by the
RetryingExecutor.

TRANSACTION MODES:
┌──────────────────┬──────────────────────────────┬───────────────────────┐
│ Mode             │ PostgreSQL                   │ SQLite                │
├──────────────────┼──────────────────────────────┼───────────────────────┤
│ SERIALIZABLE_RW  │ SERIALIZABLE                 │ BEGIN IMMEDIATE       │
│ SNAPSHOT_RO      │ REPEATABLE READ, READ ONLY   │ BEGIN                 │
└──────────────────┴──────────────────────────────┴───────────────────────┘

SERIALIZABLE_RW is required whenever a unit reads the dedup boundary and
writes business state. SNAPSHOT_RO is for reporting reads only and refuses
writes.

LIFECYCLE:
    scope = TransactionScope(session, TxMode.SERIALIZABLE_RW).begin()
    rows = scope.execute(select(...))
    scope.upsert(Model, {...})
    scope.commit()        # or scope.rollback()
    scope.close()
"""

from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from sqlalchemy import text
from sqlalchemy.engine import CursorResult, Row
from sqlalchemy.orm import Session
from sqlalchemy.sql.expression import Executable

from file_pipeline.shared.exceptions import ReadOnlyTransactionError

# Connection execution option read by the SQLite "begin" listener in database.py
READ_ONLY_OPTION = "file_pipeline_read_only"


class TxMode(Enum):
    """Transaction modes used by the pipeline."""

    SERIALIZABLE_RW = "serializable_rw"
    SNAPSHOT_RO = "snapshot_ro"

    @property
    def read_only(self) -> bool:
        return self is TxMode.SNAPSHOT_RO

    @property
    def isolation_level(self) -> str:
        return "REPEATABLE READ" if self.read_only else "SERIALIZABLE"


def _dialect_insert(dialect_name: str):
    """Return the dialect's insert() construct supporting ON CONFLICT."""
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upsert is not supported for dialect '{dialect_name}'")
    return insert


class TransactionScope:
    """
    A single store transaction in a fixed mode.

    Attributes:
        session: SQLAlchemy session owning the transaction
        mode: Transaction mode
    """

    def __init__(self, session: Session, mode: TxMode = TxMode.SERIALIZABLE_RW):
        self.session = session
        self.mode = mode
        self._begun = False

    @property
    def dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    def begin(self) -> "TransactionScope":
        """
        Start the transaction with the mode's isolation settings.

        Must run before any statement; the session binds its connection (and
        therefore its isolation level) on first use.
        """
        if self._begun:
            return self

        options: Dict[str, Any] = {READ_ONLY_OPTION: self.mode.read_only}
        dialect = self.dialect_name
        if dialect != "sqlite":
            options["isolation_level"] = self.mode.isolation_level
        if dialect == "postgresql" and self.mode.read_only:
            options["postgresql_readonly"] = True

        self.session.connection(execution_options=options)
        self._begun = True
        return self

    def execute(
        self,
        statement: Union[str, Executable],
        params: Optional[Mapping[str, Any]] = None,
    ) -> List[Row]:
        """
        Execute a statement inside the transaction.

        Args:
            statement: SQLAlchemy construct, or a SQL string with :named params
            params: Bound parameters

        Returns:
            Result rows (empty list for statements returning none)
        """
        self.begin()
        if isinstance(statement, str):
            statement = text(statement)
        result = self.session.execute(statement, dict(params or {}))
        # ORM selects return a ChunkedIteratorResult, which has no returns_rows
        if isinstance(result, CursorResult) and not result.returns_rows:
            return []
        return list(result.all())

    def require_writable(self) -> None:
        if self.mode.read_only:
            raise ReadOnlyTransactionError(
                "Write attempted in a read-only transaction",
                context={"mode": self.mode.value},
            )

    def upsert(self, model, values: Mapping[str, Any], monotonic: Optional[str] = None) -> None:
        """
        Insert a row or update it in place by primary key.

        Args:
            model: Mapped ORM class
            values: Column values, including every primary key column
            monotonic: Column that may only grow; an update carrying a value
                not greater than the stored one leaves the row untouched
        """
        self.require_writable()
        self.begin()

        table = model.__table__
        keys = [column.name for column in table.primary_key.columns]
        insert = _dialect_insert(self.dialect_name)

        stmt = insert(table).values(**values)
        updates = {name: stmt.excluded[name] for name in values if name not in keys}

        if updates:
            where = None
            if monotonic is not None:
                where = table.c[monotonic] < stmt.excluded[monotonic]
            stmt = stmt.on_conflict_do_update(index_elements=keys, set_=updates, where=where)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=keys)

        self.session.execute(stmt)

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    def close(self) -> None:
        """Release the session; any open transaction is rolled back."""
        self.session.close()

    def __enter__(self) -> "TransactionScope":
        return self.begin()

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is not None:
                self.rollback()
        finally:
            self.close()
