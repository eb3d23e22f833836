"""
Kafka Chunk Writer

Publish side of the durable log on top of confluent_kafka.Producer.

KAFKA PRODUCER CONCEPTS:
- **Asynchronous**: send() only queues; delivery happens in the background
- **Delivery reports**: one callback per message, success or failure
- **Partitioning**: the key (source name) picks the partition, so every chunk
  of a source lands on one partition, in publish order
- **Headers**: the application sequence number travels as header "seq_no"

DELIVERY GUARANTEES:
- acks=all: a delivery report means every in-sync replica holds the message
- enable.idempotence=true: broker drops retransmits within a producer session.
  Duplicates across sessions are still possible and are absorbed by the
  consumer's offset check.
- flush() raises PublishError unless every queued message was confirmed; the
  caller must not record progress past an unconfirmed message.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from confluent_kafka import KafkaError, KafkaException, Producer

from file_pipeline.producer.config import ProducerConfig
from file_pipeline.shared.exceptions import PublishError
from file_pipeline.shared.log import SEQ_NO_HEADER, Delivery

logger = logging.getLogger(__name__)

# ==============================================================================
# KAFKA CHUNK WRITER
# ==============================================================================


class KafkaChunkWriter:
    """
    TopicWriter backed by a Kafka topic.

    Attributes:
        topic: Kafka topic name
        producer: confluent_kafka.Producer instance
    """

    def __init__(
        self,
        topic: str,
        kafka_config: Dict[str, Any],
        producer: Optional[Producer] = None,
    ):
        """
        Args:
            topic: Kafka topic to publish to
            kafka_config: confluent_kafka.Producer configuration
            producer: Pre-built producer (tests)

        Raises:
            KafkaException: If producer initialization fails
        """
        self.topic = topic
        self._lock = threading.Lock()
        self._pending = 0
        self._deliveries: List[Delivery] = []
        self._failures: List[Dict[str, Any]] = []

        try:
            self.producer = producer or Producer(kafka_config)
        except KafkaException as e:
            logger.error(
                "Failed to initialize Kafka producer",
                exc_info=True,
                extra={"error": str(e)},
            )
            raise

        logger.info(
            "Kafka producer initialized",
            extra={
                "bootstrap_servers": kafka_config.get("bootstrap.servers"),
                "topic": topic,
                "client_id": kafka_config.get("client.id"),
                "idempotence": kafka_config.get("enable.idempotence"),
            },
        )

    @classmethod
    def from_config(cls, config: ProducerConfig) -> "KafkaChunkWriter":
        return cls(config.kafka_topic, config.get_kafka_config())

    def send(self, key: bytes, seq_no: int, payload: bytes) -> None:
        """
        Queue one message.

        Args:
            key: Partition key
            seq_no: Application sequence number (sent as header)
            payload: Message body

        Raises:
            PublishError: Local queue stayed full, or the client rejected the message
        """
        headers = [(SEQ_NO_HEADER, str(seq_no).encode("ascii"))]

        def on_delivery(err: Optional[KafkaError], msg) -> None:
            self._on_delivery(err, msg, seq_no)

        try:
            try:
                self._produce(key, payload, headers, on_delivery)
            except BufferError:
                # Local queue full: serve delivery reports, then try once more
                logger.warning(
                    "Producer queue full, waiting for deliveries", extra={"seq_no": seq_no}
                )
                self.producer.poll(1.0)
                self._produce(key, payload, headers, on_delivery)
        except (BufferError, KafkaException) as e:
            logger.error(
                "Kafka error publishing chunk",
                exc_info=True,
                extra={"seq_no": seq_no, "error": str(e)},
            )
            raise PublishError("Message rejected by producer", context={"seq_no": seq_no}) from e

        with self._lock:
            self._pending += 1

        # Serve delivery callbacks of earlier sends
        self.producer.poll(0)

    def _produce(self, key: bytes, payload: bytes, headers, on_delivery) -> None:
        self.producer.produce(
            topic=self.topic,
            key=key,
            value=payload,
            headers=headers,
            on_delivery=on_delivery,
        )

    def _on_delivery(self, err: Optional[KafkaError], msg, seq_no: int) -> None:
        """Delivery report; runs inside poll()/flush()."""
        with self._lock:
            self._pending -= 1
            if err is not None:
                self._failures.append({"seq_no": seq_no, "error": err.str()})
            else:
                self._deliveries.append(Delivery(msg.partition(), msg.offset(), seq_no))

        if err is not None:
            logger.error(
                "Message delivery failed",
                extra={"seq_no": seq_no, "error": err.str(), "error_code": err.code()},
            )
        else:
            logger.debug(
                "Message delivered",
                extra={"seq_no": seq_no, "partition": msg.partition(), "offset": msg.offset()},
            )

    def flush(self, timeout: float = 30.0) -> List[Delivery]:
        """
        Wait until every queued message is confirmed.

        Args:
            timeout: Maximum time to wait in seconds

        Returns:
            Deliveries confirmed since the previous flush, in report order

        Raises:
            PublishError: Messages still queued at timeout, or any delivery failed
        """
        remaining = self.producer.flush(timeout)

        with self._lock:
            deliveries, self._deliveries = self._deliveries, []
            failures, self._failures = self._failures, []

        if remaining > 0 or failures:
            logger.warning(
                "Producer flush incomplete",
                extra={
                    "remaining_messages": remaining,
                    "failed": len(failures),
                    "timeout": timeout,
                },
            )
            raise PublishError(
                "Log did not confirm every published message",
                context={"remaining": remaining, "failed": [f["seq_no"] for f in failures]},
            )

        return deliveries

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    def get_topic_metadata(self) -> Dict[str, Any]:
        """Partition count and leaders of the target topic."""
        try:
            metadata = self.producer.list_topics(topic=self.topic, timeout=10)
            topic_metadata = metadata.topics.get(self.topic)
            if not topic_metadata:
                return {"error": f"Topic '{self.topic}' not found"}

            partitions = [
                {"partition_id": pid, "leader": pm.leader}
                for pid, pm in topic_metadata.partitions.items()
            ]
            return {
                "topic": self.topic,
                "partition_count": len(partitions),
                "partitions": partitions,
            }
        except KafkaException as e:
            logger.error("Failed to get topic metadata", exc_info=True, extra={"error": str(e)})
            return {"error": str(e)}

    def close(self, timeout: float = 30.0) -> None:
        """Flush what is still queued; undelivered messages are logged, not raised."""
        logger.info("Shutting down producer")
        remaining = self.producer.flush(timeout)
        if remaining > 0:
            logger.error(
                f"Producer closed with {remaining} messages undelivered",
                extra={"remaining_messages": remaining},
            )
        logger.info("Producer shutdown complete")
