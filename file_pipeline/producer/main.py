"""
File Producer Service - Main Entry Point

Publishes one file to the 'file-chunks' topic, chunk by chunk, resuming after
the last chunk whose publication was confirmed in an earlier run.

USAGE:
    python -m file_pipeline.producer.main PATH [options]

    # First run (creates the progress tables)
    python -m file_pipeline.producer.main data/input.txt --init-schema

    # Smaller chunks, text logs
    python -m file_pipeline.producer.main data/input.txt --chunk-size 4096 --log-format text

GRACEFUL SHUTDOWN:
- SIGINT / SIGTERM: finish the current chunk (publish, flush, record), then exit
- Killing the process between flush and record republishes that one chunk on
  the next run; the consumer stores it once
"""

import argparse
import logging
import os
import signal
import sys
from typing import Optional

from file_pipeline.producer.config import ProducerConfig, load_config, validate_kafka_connection
from file_pipeline.producer.producer import KafkaChunkWriter
from file_pipeline.producer.sequenced import SequencedProducer
from file_pipeline.producer.source import FileChunkSource
from file_pipeline.shared.database import init_database
from file_pipeline.shared.logger import PACKAGE_LOGGER, setup_logger
from file_pipeline.shared.progress import ProgressStore
from file_pipeline.shared.retry import RetryingExecutor

# ==============================================================================
# GLOBAL STATE FOR SIGNAL HANDLING
# ==============================================================================

producer_instance: Optional[SequencedProducer] = None


def signal_handler(signum: int, frame) -> None:
    """Stop after the chunk in flight (SIGINT, SIGTERM)."""
    signal_name = signal.Signals(signum).name
    logging.getLogger(__name__).info(f"Received {signal_name}, finishing current chunk...")
    if producer_instance:
        producer_instance.stop()


# ==============================================================================
# PRODUCER RUN
# ==============================================================================


def run_producer(config: ProducerConfig, path: str, name: Optional[str], init_schema: bool) -> int:
    """
    Publish a file.

    Args:
        config: Producer configuration
        path: File to publish
        name: Resume key override (defaults to the absolute path)
        init_schema: Create missing tables first

    Returns:
        Exit code (0 = success, 1 = error)
    """
    global producer_instance

    logger = logging.getLogger(__name__)

    if not os.path.isfile(path):
        logger.error("Source file not found", extra={"path": path})
        return 1

    source = FileChunkSource(path, config.chunk_size, name=name)
    logger.info(
        "File producer starting",
        extra={
            "source": source.name,
            "chunk_size": config.chunk_size,
            "chunks_total": source.chunk_count(),
            "topic": config.kafka_topic,
        },
    )

    if not validate_kafka_connection(config):
        logger.error(
            "Cannot connect to Kafka brokers",
            extra={"bootstrap_servers": config.kafka_bootstrap_servers},
        )
        return 1

    try:
        db_manager = init_database(config, create_schema=init_schema)
    except Exception:
        logger.error("Failed to initialize database", exc_info=True)
        return 1

    try:
        writer = KafkaChunkWriter.from_config(config)
    except Exception:
        logger.error("Failed to initialize Kafka producer", exc_info=True)
        db_manager.close()
        return 1

    metadata = writer.get_topic_metadata()
    if "error" not in metadata:
        logger.info("Topic metadata", extra={"partition_count": metadata["partition_count"]})

    progress = ProgressStore(RetryingExecutor.from_config(db_manager, config))
    producer_instance = SequencedProducer(
        writer,
        progress,
        resume_key=source.name,
        flush_timeout=config.flush_timeout_s,
    )

    try:
        published = producer_instance.publish_source(source)
        logger.info(
            "File published",
            extra={"chunks_published": published, "last_position": producer_instance.sequence},
        )
        return 0
    except Exception:
        logger.error("Publication failed; rerun to resume", exc_info=True)
        return 1
    finally:
        writer.close(timeout=10.0)
        db_manager.close()


# ==============================================================================
# CLI ARGUMENT PARSING
# ==============================================================================


def parse_args(argv=None) -> argparse.Namespace:
    """Command-line args override environment variables."""
    parser = argparse.ArgumentParser(
        description="File Producer - publish a file to Kafka in resumable chunks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m file_pipeline.producer.main data/input.txt --init-schema
  python -m file_pipeline.producer.main data/video.mp4 --chunk-size 500000
  python -m file_pipeline.producer.main data/input.txt --name input-v1 --log-format text

Environment Variables:
  KAFKA_BOOTSTRAP_SERVERS    Kafka broker addresses (default: localhost:9092)
  KAFKA_TOPIC                Topic (default: file-chunks)
  CHUNK_SIZE                 Bytes per chunk (default: 100000)
  DATABASE_URL               SQLAlchemy URL (overrides POSTGRES_*)
  POSTGRES_HOST/PORT/DB      Database location (default: localhost:5432/file_pipeline)
  LOG_LEVEL, LOG_FORMAT      Logging (default: INFO, json)
        """,
    )

    parser.add_argument("path", help="File to publish")
    parser.add_argument("--name", type=str, help="Resume key (default: absolute file path)")
    parser.add_argument("--chunk-size", type=int, help="Bytes per chunk (default: from config)")
    parser.add_argument("--bootstrap-servers", type=str, help="Kafka bootstrap servers")
    parser.add_argument("--topic", type=str, help="Kafka topic name")
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create the pipeline tables if missing",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: from config)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        help="Log output format (default: from config)",
    )

    return parser.parse_args(argv)


# ==============================================================================
# MAIN ENTRY POINT
# ==============================================================================


def main(argv=None) -> int:
    args = parse_args(argv)

    try:
        config = load_config()
    except Exception as e:
        print(f"ERROR: Failed to load configuration: {e}", file=sys.stderr)
        return 1

    if args.chunk_size:
        config.chunk_size = args.chunk_size
    if args.bootstrap_servers:
        config.kafka_bootstrap_servers = args.bootstrap_servers
    if args.topic:
        config.kafka_topic = args.topic
    if args.log_level:
        config.log_level = args.log_level
    if args.log_format:
        config.log_format = args.log_format

    setup_logger(
        name=PACKAGE_LOGGER,
        service_name="file-producer",
        log_level=config.log_level,
        log_format=config.log_format,
    )

    if config.log_format == "text":
        print(config.display_config())

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    return run_producer(config, args.path, args.name, args.init_schema)


if __name__ == "__main__":
    sys.exit(main())
