"""
End-to-End Pipeline Tests

Full flow with real services:
File → SequencedProducer → Kafka → OffsetTrackingConsumer → PostgreSQL

TEST STRATEGY:
- Publish a Faker-generated file in small chunks
- Consume with partition workers until every chunk is stored
- Re-run the producer: nothing is republished
- Replay the whole topic through a new consumer group: every message is
  skipped by the offset check and the store is unchanged

DEPENDENCIES:
- testcontainers-python (Kafka + PostgreSQL)
- confluent-kafka
- SQLAlchemy
"""

import threading
import time

import pytest
from confluent_kafka.admin import AdminClient, NewTopic

from file_pipeline.consumer.consumer import OffsetTrackingConsumer
from file_pipeline.consumer.reader import KafkaTopicReader
from file_pipeline.producer.producer import KafkaChunkWriter
from file_pipeline.producer.sequenced import SequencedProducer
from file_pipeline.producer.source import FileChunkSource
from file_pipeline.shared.progress import ProgressStore
from file_pipeline.shared.retry import RetryingExecutor


def _create_topic(bootstrap_servers: str, topic: str, partitions: int = 2) -> None:
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    new_topic = NewTopic(topic, num_partitions=partitions, replication_factor=1)
    futures = admin.create_topics([new_topic])
    for future in futures.values():
        future.result(timeout=30)


def _publish(producer_config, pg_manager, path, name="sample.txt") -> int:
    writer = KafkaChunkWriter.from_config(producer_config)
    try:
        progress = ProgressStore(RetryingExecutor.from_config(pg_manager, producer_config))
        producer = SequencedProducer(
            writer, progress, resume_key=name, flush_timeout=producer_config.flush_timeout_s
        )
        return producer.publish_source(
            FileChunkSource(str(path), producer_config.chunk_size, name=name)
        )
    finally:
        writer.close(timeout=10.0)


@pytest.fixture
def topic(producer_config):
    _create_topic(producer_config.kafka_bootstrap_servers, producer_config.kafka_topic)
    return producer_config.kafka_topic


@pytest.mark.integration
@pytest.mark.slow
def test_file_stored_exactly_once(
    topic, producer_config, consumer_config, pg_manager, sample_file
):
    source = FileChunkSource(str(sample_file), producer_config.chunk_size, name="sample.txt")
    expected_chunks = source.chunk_count()
    assert expected_chunks > 1

    # === PUBLISH ===
    assert _publish(producer_config, pg_manager, sample_file) == expected_chunks

    progress = ProgressStore(RetryingExecutor.from_config(pg_manager, consumer_config))
    assert progress.load_resume_position("sample.txt") == expected_chunks

    # === CONSUME WITH PARTITION WORKERS ===
    executor = RetryingExecutor.from_config(pg_manager, consumer_config)
    consumer = OffsetTrackingConsumer.from_config(
        consumer_config, KafkaTopicReader.from_config(consumer_config), executor
    )
    thread = threading.Thread(target=consumer.start, daemon=True)
    thread.start()

    deadline = time.time() + 60
    while time.time() < deadline:
        if progress.chunk_summary("sample.txt")["chunks"] == expected_chunks:
            break
        time.sleep(0.5)

    consumer.stop()
    thread.join(timeout=30)
    consumer.close()

    summary = progress.chunk_summary("sample.txt")
    assert summary == {
        "chunks": expected_chunks,
        "bytes": sample_file.stat().st_size,
        "max_line": expected_chunks,
    }
    assert consumer.messages_failed == 0

    # One source key, one partition; Kafka offsets start at 0
    offsets = progress.partition_offsets()
    assert list(offsets.values()) == [expected_chunks - 1]

    # === PRODUCER RERUN PUBLISHES NOTHING ===
    assert _publish(producer_config, pg_manager, sample_file) == 0


@pytest.mark.integration
@pytest.mark.slow
def test_topic_replay_is_skipped(
    topic, producer_config, consumer_config, pg_manager, sample_file
):
    expected_chunks = _publish(producer_config, pg_manager, sample_file)
    executor = RetryingExecutor.from_config(pg_manager, consumer_config)
    progress = ProgressStore(executor)

    def drain(group_id: str) -> OffsetTrackingConsumer:
        config = consumer_config.model_copy(update={"consumer_group_id": group_id})
        consumer = OffsetTrackingConsumer.from_config(
            config, KafkaTopicReader.from_config(config), executor
        )
        received = 0
        deadline = time.time() + 60
        try:
            while received < expected_chunks and time.time() < deadline:
                received += consumer.process_messages(expected_chunks - received, timeout=2.0)
        finally:
            consumer.close()
        assert received == expected_chunks
        return consumer

    first = drain(f"{consumer_config.consumer_group_id}-a")
    assert first.messages_processed == expected_chunks
    summary = progress.chunk_summary()

    # A new group starts from the beginning of the topic
    replay = drain(f"{consumer_config.consumer_group_id}-b")

    assert replay.messages_processed == 0
    assert replay.messages_skipped == expected_chunks
    assert progress.chunk_summary() == summary
