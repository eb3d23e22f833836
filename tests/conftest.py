"""
Pytest Configuration and Shared Fixtures

UNIT FIXTURES (no external services):
- SQLite file database in tmp_path, schema created per test
- InMemoryLog: partitioned log fake implementing both TopicWriter and
  TopicReader, with 1-based offsets, acknowledgement tracking, reconnect
  (redelivery of everything unacknowledged) and fault injection
- Faker-generated source files

INTEGRATION FIXTURES (testcontainers):
- PostgreSQL and Kafka containers, started once per session and skipped when
  Docker is not available

FIXTURE SCOPES:
- session: containers
- function: databases, logs, configs
"""

import threading
import time
import uuid
import zlib
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Generator, List, Optional, Set, Tuple

import pytest
from faker import Faker
from sqlalchemy import text

from file_pipeline.consumer.config import ConsumerConfig
from file_pipeline.producer.config import ProducerConfig
from file_pipeline.shared.config import StoreSettings
from file_pipeline.shared.database import DatabaseManager
from file_pipeline.shared.envelope import ChunkEnvelope
from file_pipeline.shared.exceptions import PublishError
from file_pipeline.shared.log import Delivery, LogMessage
from file_pipeline.shared.progress import ProgressStore
from file_pipeline.shared.retry import RetryingExecutor

# ==============================================================================
# IN-MEMORY LOG
# ==============================================================================


class SimulatedCrash(BaseException):
    """Process death injected into the pipeline; not caught by application code."""


class InMemoryLog:
    """
    Partitioned, at-least-once log for tests.

    Offsets start at 1 in every partition. receive() serves redeliveries
    queued with redeliver() first, then walks partitions round-robin.
    """

    Crash = SimulatedCrash

    def __init__(self, topic: str = "file-chunks", num_partitions: int = 1):
        self.topic = topic
        self.num_partitions = num_partitions
        self.partitions: Dict[int, List[LogMessage]] = defaultdict(list)
        self.committed: Dict[int, int] = {}
        self.acknowledged: List[Tuple[int, int]] = []
        self.closed = False

        self._next_offset: Dict[int, int] = defaultdict(lambda: 1)
        self._redeliveries: Deque[LogMessage] = deque()
        self._rr = 0
        self._pending: List[Tuple[bytes, int, bytes]] = []
        self._lock = threading.RLock()

        # Fault injection
        self.ack_failures = 0
        self.crash_on_ack: Set[Tuple[int, int]] = set()
        self.fail_next_flush = False
        self.flush_calls = 0
        self.silent_polls = 0

    # === APPEND (direct) ===

    def append(
        self, partition: int, payload: bytes, seq_no: int = 0, key: Optional[bytes] = None
    ) -> LogMessage:
        with self._lock:
            offset = len(self.partitions[partition]) + 1
            message = LogMessage(self.topic, partition, offset, seq_no, payload, key)
            self.partitions[partition].append(message)
            return message

    # === TopicWriter ===

    def partition_for(self, key: bytes) -> int:
        return zlib.crc32(key) % self.num_partitions

    def send(self, key: bytes, seq_no: int, payload: bytes) -> None:
        with self._lock:
            self._pending.append((key, seq_no, payload))

    def flush(self, timeout: float = 30.0) -> List[Delivery]:
        with self._lock:
            self.flush_calls += 1
            if self.fail_next_flush:
                self.fail_next_flush = False
                self._pending.clear()
                raise PublishError("Log did not confirm every published message")

            deliveries = []
            for key, seq_no, payload in self._pending:
                message = self.append(self.partition_for(key), payload, seq_no, key)
                deliveries.append(Delivery(message.partition, message.offset, seq_no))
            self._pending.clear()
            return deliveries

    # === TopicReader ===

    def receive(self, timeout: float = 1.0) -> Optional[LogMessage]:
        with self._lock:
            if self.silent_polls > 0:
                self.silent_polls -= 1
                return None

            if self._redeliveries:
                return self._redeliveries.popleft()

            partitions = sorted(self.partitions)
            for i in range(len(partitions)):
                partition = partitions[(self._rr + i) % len(partitions)]
                offset = self._next_offset[partition]
                if offset <= len(self.partitions[partition]):
                    self._next_offset[partition] = offset + 1
                    self._rr = (self._rr + i + 1) % len(partitions)
                    return self.partitions[partition][offset - 1]

        time.sleep(min(timeout, 0.01))
        return None

    def acknowledge(self, message: LogMessage) -> None:
        with self._lock:
            key = (message.partition, message.offset)
            if key in self.crash_on_ack:
                self.crash_on_ack.discard(key)
                raise SimulatedCrash(f"crash before acknowledging {key}")
            if self.ack_failures > 0:
                self.ack_failures -= 1
                raise RuntimeError("broker unavailable")
            position = max(self.committed.get(message.partition, 0), message.offset + 1)
            self.committed[message.partition] = position
            self.acknowledged.append(key)

    def close(self) -> None:
        self.closed = True

    # === Test controls ===

    def redeliver(self, message: LogMessage) -> None:
        with self._lock:
            self._redeliveries.append(message)

    def reconnect(self) -> None:
        """Restart reading from the committed positions, like a consumer restart."""
        with self._lock:
            self._redeliveries.clear()
            for partition in list(self.partitions):
                self._next_offset[partition] = self.committed.get(partition, 1)

    def committed_offset(self, partition: int) -> Optional[int]:
        """Last acknowledged offset of a partition (None if nothing acknowledged)."""
        position = self.committed.get(partition)
        return None if position is None else position - 1


@pytest.fixture
def memory_log() -> InMemoryLog:
    return InMemoryLog()


@pytest.fixture
def make_log() -> Callable[..., InMemoryLog]:
    """Factory for logs with more partitions: make_log(num_partitions=2)."""
    return InMemoryLog


@pytest.fixture
def chunk_payload() -> Callable[..., bytes]:
    """Factory for envelope payloads: chunk_payload("a.txt", 3, b"data")."""

    def make(source: str, position: int, content: bytes = b"chunk") -> bytes:
        return ChunkEnvelope.from_chunk(source, position, content).to_bytes()

    return make


# ==============================================================================
# SQLITE STORE FIXTURES
# ==============================================================================


@pytest.fixture
def store_settings(tmp_path) -> StoreSettings:
    return StoreSettings(
        database_url=f"sqlite:///{tmp_path / 'pipeline.db'}",
        max_retries=3,
        retry_backoff_ms=0,
    )


@pytest.fixture
def db_manager(store_settings) -> Generator[DatabaseManager, None, None]:
    manager = DatabaseManager(store_settings)
    manager.create_schema()
    try:
        yield manager
    finally:
        manager.close()


@pytest.fixture
def sleeps() -> List[float]:
    """Records backoff delays instead of sleeping."""
    return []


@pytest.fixture
def executor(db_manager, sleeps) -> RetryingExecutor:
    return RetryingExecutor(
        db_manager,
        max_retries=3,
        backoff_ms=0,
        max_backoff_ms=0,
        sleep=sleeps.append,
    )


@pytest.fixture
def progress(executor) -> ProgressStore:
    return ProgressStore(executor)


@pytest.fixture
def count_rows(db_manager) -> Callable[[str], int]:
    """count_rows("file_chunks") -> number of rows."""

    def count(table: str) -> int:
        with db_manager.engine.connect() as conn:
            return conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar_one()

    return count


# ==============================================================================
# SOURCE FILE FIXTURES
# ==============================================================================


@pytest.fixture
def sample_file(tmp_path):
    """Faker-generated text file of a few kilobytes (reproducible)."""
    fake = Faker()
    fake.seed_instance(42)
    path = tmp_path / "sample.txt"
    path.write_text("\n".join(fake.paragraphs(nb=40)), encoding="utf-8")
    return path


# ==============================================================================
# CONTAINER FIXTURES (integration)
# ==============================================================================


@pytest.fixture(scope="session")
def postgres_container():
    """PostgreSQL testcontainer for the whole session."""
    from testcontainers.postgres import PostgresContainer

    try:
        container = PostgresContainer("postgres:15")
        container.start()
    except Exception as e:
        pytest.skip(f"Docker not available for PostgreSQL container: {e}")
    try:
        yield container
    finally:
        container.stop()


@pytest.fixture(scope="session")
def kafka_container():
    """Kafka testcontainer for the whole session."""
    from testcontainers.kafka import KafkaContainer

    try:
        container = KafkaContainer()
        container.start()
    except Exception as e:
        pytest.skip(f"Docker not available for Kafka container: {e}")
    try:
        yield container
    finally:
        container.stop()


def _postgres_url(postgres_container) -> str:
    return postgres_container.get_connection_url().replace(
        "postgresql+psycopg2://", "postgresql://"
    )


@pytest.fixture
def pg_manager(postgres_container) -> Generator[DatabaseManager, None, None]:
    """DatabaseManager on the PostgreSQL container with fresh tables."""
    manager = DatabaseManager(
        StoreSettings(database_url=_postgres_url(postgres_container), retry_backoff_ms=10)
    )
    from file_pipeline.shared.models import Base

    Base.metadata.drop_all(manager.engine)
    manager.create_schema()
    try:
        yield manager
    finally:
        manager.close()


@pytest.fixture
def topic_name() -> str:
    return f"file-chunks-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def producer_config(kafka_container, postgres_container, topic_name) -> ProducerConfig:
    return ProducerConfig(
        kafka_bootstrap_servers=kafka_container.get_bootstrap_server(),
        kafka_topic=topic_name,
        producer_client_id="test-producer",
        chunk_size=512,
        flush_timeout_s=15.0,
        database_url=_postgres_url(postgres_container),
        retry_backoff_ms=10,
    )


@pytest.fixture
def consumer_config(kafka_container, postgres_container, topic_name) -> ConsumerConfig:
    return ConsumerConfig(
        kafka_bootstrap_servers=kafka_container.get_bootstrap_server(),
        kafka_topic=topic_name,
        consumer_group_id=f"test-group-{uuid.uuid4().hex[:8]}",
        poll_timeout_s=2.0,
        database_url=_postgres_url(postgres_container),
        retry_backoff_ms=10,
    )


# ==============================================================================
# TEST ENVIRONMENT CONFIGURATION
# ==============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires containers)"
    )
    config.addinivalue_line("markers", "slow: mark test as slow (takes more than 5 seconds)")
    config.addinivalue_line("markers", "unit: mark test as unit test (no external dependencies)")
