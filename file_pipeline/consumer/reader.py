"""
Kafka Topic Reader

Receive side of the durable log on top of confluent_kafka.Consumer.

ACKNOWLEDGEMENT:
- enable.auto.commit is off; nothing is committed behind the pipeline's back
- acknowledge(message) synchronously commits offset + 1 for the message's
  partition, which marks every earlier offset of that partition consumed
- A stale redelivery never commits a position behind one this reader
  already committed for the partition
- A message that is never acknowledged is redelivered after a restart or
  rebalance, starting from the last committed offset
"""

import logging
from typing import Any, Dict, Optional

from confluent_kafka import Consumer, KafkaError, KafkaException, Message, TopicPartition

from file_pipeline.consumer.config import ConsumerConfig
from file_pipeline.shared.log import SEQ_NO_HEADER, LogMessage

logger = logging.getLogger(__name__)

FATAL_KAFKA_ERRORS = (
    KafkaError._ALL_BROKERS_DOWN,
    KafkaError._AUTHENTICATION,
    KafkaError.TOPIC_AUTHORIZATION_FAILED,
    KafkaError.GROUP_AUTHORIZATION_FAILED,
)


def _seq_no(msg: Message) -> int:
    for key, value in msg.headers() or []:
        if key == SEQ_NO_HEADER and value is not None:
            try:
                return int(value.decode("ascii"))
            except (UnicodeDecodeError, ValueError):
                logger.warning("Invalid seq_no header", extra={"header_value": repr(value)})
                return 0
    return 0


class KafkaTopicReader:
    """
    TopicReader backed by a Kafka consumer group subscription.

    Attributes:
        topic: Subscribed topic
        consumer: confluent_kafka.Consumer instance
    """

    def __init__(
        self,
        topic: str,
        kafka_config: Dict[str, Any],
        consumer: Optional[Consumer] = None,
    ):
        if kafka_config.get("enable.auto.commit"):
            raise ValueError("enable.auto.commit must be False; offsets are committed after apply")

        self.topic = topic
        self.consumer = consumer or Consumer(kafka_config)
        self._committed: Dict[int, int] = {}
        self.consumer.subscribe([topic], on_revoke=self._on_revoke)

        logger.info(
            "Kafka consumer initialized",
            extra={
                "topic": topic,
                "group_id": kafka_config.get("group.id"),
                "bootstrap_servers": kafka_config.get("bootstrap.servers"),
            },
        )

    @classmethod
    def from_config(cls, config: ConsumerConfig) -> "KafkaTopicReader":
        return cls(config.kafka_topic, config.get_kafka_config())

    def receive(self, timeout: float = 1.0) -> Optional[LogMessage]:
        """
        Poll for the next message.

        Returns:
            The message, or None on timeout or a non-fatal Kafka event

        Raises:
            KafkaException: Fatal client error (brokers down, authorization)
        """
        msg = self.consumer.poll(timeout=timeout)
        if msg is None:
            return None

        if msg.error():
            self._handle_kafka_error(msg.error())
            return None

        return LogMessage(
            topic=msg.topic(),
            partition=msg.partition(),
            offset=msg.offset(),
            seq_no=_seq_no(msg),
            payload=msg.value() or b"",
            key=msg.key(),
        )

    def acknowledge(self, message: LogMessage) -> None:
        """
        Synchronously commit the position after message for its partition.

        A stale redelivery whose next position is not past the one already
        committed by this reader is not committed again, so the group's
        position never moves backwards.
        """
        position = message.offset + 1
        committed = self._committed.get(message.partition)
        if committed is not None and position <= committed:
            logger.debug(
                "Position already committed, acknowledgement skipped",
                extra={"partition": message.partition, "offset": message.offset},
            )
            return

        self.consumer.commit(
            offsets=[TopicPartition(message.topic, message.partition, position)],
            asynchronous=False,
        )
        self._committed[message.partition] = position

    def _on_revoke(self, consumer: Consumer, partitions) -> None:
        """Forget committed positions of partitions handed to another member."""
        for tp in partitions:
            self._committed.pop(tp.partition, None)

    def _handle_kafka_error(self, error: KafkaError) -> None:
        """
        KAFKA ERROR TYPES:
        - _PARTITION_EOF: end of partition reached (informational)
        - _ALL_BROKERS_DOWN, _AUTHENTICATION, authorization failures: fatal
        - everything else: logged, the client retries internally
        """
        if error.code() == KafkaError._PARTITION_EOF:
            logger.debug("Reached end of partition")
            return

        logger.error(
            f"Kafka error: {error.str()}",
            extra={"error_code": error.code(), "error_name": error.name()},
        )

        if error.code() in FATAL_KAFKA_ERRORS or error.fatal():
            logger.critical("Fatal Kafka error")
            raise KafkaException(error)

    def close(self) -> None:
        try:
            self.consumer.close()
            logger.info("Kafka consumer closed")
        except KafkaException:
            logger.error("Error closing Kafka consumer", exc_info=True)
