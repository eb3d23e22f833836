"""
Consumer Configuration Module

Kafka consumer and processing settings for the chunk consumer. Store, retry
and logging settings come from StoreSettings.
"""

from pydantic import Field

from file_pipeline.shared.config import StoreSettings


class ConsumerConfig(StoreSettings):
    """
    Consumer service configuration with validation.

    Attributes:
        kafka_bootstrap_servers: Kafka broker addresses
        kafka_topic: Topic to consume from
        consumer_group_id: Consumer group
        consumer_client_id: Client identifier
        consumer_auto_offset_reset: Start position without a committed offset
        enable_auto_commit: Must stay False; acknowledgement follows commit
        poll_timeout_s: Receive timeout (liveness only)
        ack_retries: Re-attempts of a failed acknowledgement
        halt_on_failure: Stop the whole loop when a message fails
        partition_queue_size: Messages buffered per partition worker
        idle_grace_polls: Empty polls allowed before the first message on an idle stop
    """

    # === KAFKA CONSUMER SETTINGS ===
    kafka_bootstrap_servers: str = Field(
        default="localhost:9092",
        description="Kafka broker addresses",
    )

    kafka_topic: str = Field(
        default="file-chunks",
        description="Kafka topic to consume from",
    )

    consumer_group_id: str = Field(
        default="file-consumer",
        description="Consumer group ID for partition assignment",
    )

    consumer_client_id: str = Field(
        default="file-consumer",
        description="Consumer client identifier",
    )

    consumer_auto_offset_reset: str = Field(
        default="earliest",
        description="Where to start consuming: earliest or latest",
    )

    enable_auto_commit: bool = Field(
        default=False,
        description="Auto-commit offsets (False = acknowledge after store commit)",
    )

    # === PROCESSING SETTINGS ===
    poll_timeout_s: float = Field(
        default=1.0,
        gt=0,
        description="Seconds a receive waits for a message",
    )

    ack_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Re-attempts of a failed acknowledgement before the message fails",
    )

    halt_on_failure: bool = Field(
        default=True,
        description="Stop consuming when a message reaches FAILED",
    )

    partition_queue_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Bounded queue size of each partition worker",
    )

    idle_grace_polls: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Empty polls tolerated before the first message when stopping on idle",
    )

    def get_kafka_config(self) -> dict:
        """Get Kafka consumer configuration dictionary."""
        return {
            "bootstrap.servers": self.kafka_bootstrap_servers,
            "group.id": self.consumer_group_id,
            "client.id": self.consumer_client_id,
            "auto.offset.reset": self.consumer_auto_offset_reset,
            "enable.auto.commit": self.enable_auto_commit,
        }


def load_config() -> ConsumerConfig:
    """Load and validate consumer configuration."""
    return ConsumerConfig()
