"""
Durable log contract.

The pipeline talks to the log only through these two protocols, so the Kafka
adapters (producer/producer.py, consumer/reader.py) and test fakes are
interchangeable.

LOG GUARANTEES ASSUMED:
- Offsets strictly increase within a partition in delivery order
- Delivery is at-least-once: a message is redelivered until acknowledged, and
  may be redelivered even after acknowledgement if a crash races the ack
- Acknowledging offset N of a partition acknowledges everything before it
"""

from dataclasses import dataclass, field
from typing import List, Optional, Protocol

# Message header carrying the producer-assigned sequence number
SEQ_NO_HEADER = "seq_no"


@dataclass(frozen=True)
class LogMessage:
    """
    A message as delivered by the log.

    Attributes:
        topic: Topic the message was read from
        partition: Partition number
        offset: Log-assigned position within the partition
        seq_no: Producer-assigned sequence number (0 if the producer set none)
        payload: Message body
        key: Partition key
    """

    topic: str
    partition: int
    offset: int
    seq_no: int
    payload: bytes
    key: Optional[bytes] = field(default=None)

    @property
    def correlation_id(self) -> str:
        """Log-position identity used for correlated logging."""
        return f"{self.partition}:{self.offset}"


@dataclass(frozen=True)
class Delivery:
    """Log acknowledgement of one published message."""

    partition: int
    offset: int
    seq_no: int


class TopicWriter(Protocol):
    """Publish side of the durable log."""

    def send(self, key: bytes, seq_no: int, payload: bytes) -> None:
        """Queue a message for publication."""
        ...

    def flush(self, timeout: float = 30.0) -> List[Delivery]:
        """Block until every queued message is durably accepted."""
        ...

    def close(self, timeout: float = 30.0) -> None:
        ...


class TopicReader(Protocol):
    """Receive side of the durable log."""

    def receive(self, timeout: float = 1.0) -> Optional[LogMessage]:
        """Return the next message, or None if none arrived within timeout."""
        ...

    def acknowledge(self, message: LogMessage) -> None:
        """Mark the message (and its partition's predecessors) as consumed."""
        ...

    def close(self) -> None:
        ...
