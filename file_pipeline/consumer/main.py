"""
File Consumer Service - Main Entry Point

USAGE:
    python -m file_pipeline.consumer.main [options]

OPTIONS:
    --max-messages N   Process at most N messages inline, then exit
    --stop-when-idle   Exit once the topic is drained and all workers are idle
    --init-schema      Create the pipeline tables if missing
    --log-level        Logging level (DEBUG, INFO, WARNING, ERROR)
    --log-format       Log format (json or text)

ENVIRONMENT VARIABLES:
    See file_pipeline/consumer/config.py and file_pipeline/shared/config.py:
    - KAFKA_BOOTSTRAP_SERVERS, KAFKA_TOPIC, CONSUMER_GROUP_ID
    - DATABASE_URL or POSTGRES_HOST/PORT/DB/USER/PASSWORD
    - MAX_RETRIES, RETRY_BACKOFF_MS, ACK_RETRIES, HALT_ON_FAILURE
    - IDLE_GRACE_POLLS
    - LOG_LEVEL, LOG_FORMAT

GRACEFUL SHUTDOWN:
- SIGINT / SIGTERM stop the loop; workers finish their current message
- Anything not yet acknowledged is redelivered on the next start and
  deduplicated by the offset check

EXIT CODES:
- 0: stopped cleanly
- 1: startup error, or a message reached FAILED (it stays unacknowledged),
  whether the loop halted on it or parked its partition
"""

import argparse
import logging
import signal
import sys
from typing import Optional

from file_pipeline.consumer.config import load_config
from file_pipeline.consumer.consumer import OffsetTrackingConsumer
from file_pipeline.consumer.reader import KafkaTopicReader
from file_pipeline.shared.database import init_database
from file_pipeline.shared.exceptions import MessageProcessingError
from file_pipeline.shared.logger import PACKAGE_LOGGER, setup_logger
from file_pipeline.shared.progress import ProgressStore
from file_pipeline.shared.retry import RetryingExecutor

# ==============================================================================
# GLOBAL STATE
# ==============================================================================

consumer_instance: Optional[OffsetTrackingConsumer] = None

# ==============================================================================
# SIGNAL HANDLERS
# ==============================================================================


def signal_handler(signum: int, frame) -> None:
    """Stop consuming gracefully (SIGINT, SIGTERM)."""
    signal_name = signal.Signals(signum).name
    logging.getLogger(__name__).info(f"Received {signal_name}, initiating graceful shutdown...")
    if consumer_instance:
        consumer_instance.stop()


# ==============================================================================
# CLI ARGUMENT PARSING
# ==============================================================================


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="File Consumer - apply file chunks from Kafka to PostgreSQL exactly once",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Long-running consumer
  python -m file_pipeline.consumer.main

  # Drain the topic and exit
  python -m file_pipeline.consumer.main --stop-when-idle --init-schema

  # Process ten messages in the foreground with debug logs
  python -m file_pipeline.consumer.main --max-messages 10 --log-level DEBUG --log-format text
        """,
    )

    parser.add_argument(
        "--max-messages",
        type=int,
        help="Process at most N messages sequentially, then exit",
    )
    parser.add_argument(
        "--stop-when-idle",
        action="store_true",
        help="Exit once the topic is drained and all workers are idle",
    )
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create the pipeline tables if missing",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (overrides LOG_LEVEL env var)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        help="Log output format (overrides LOG_FORMAT env var)",
    )

    return parser.parse_args(argv)


# ==============================================================================
# MAIN FUNCTION
# ==============================================================================


def main(argv=None) -> int:
    """
    STARTUP SEQUENCE:
    1. Parse CLI arguments and load configuration
    2. Set up structured logging
    3. Initialize the database (optionally creating tables)
    4. Create the Kafka reader and the consumer
    5. Register signal handlers
    6. Consume, then report progress and shut down
    """
    global consumer_instance

    args = parse_args(argv)

    try:
        config = load_config()
    except Exception as e:
        print(f"ERROR: Failed to load configuration: {e}", file=sys.stderr)
        return 1

    if args.log_level:
        config.log_level = args.log_level
    if args.log_format:
        config.log_format = args.log_format

    setup_logger(
        name=PACKAGE_LOGGER,
        service_name="file-consumer",
        log_level=config.log_level,
        log_format=config.log_format,
    )
    logger = logging.getLogger(__name__)

    logger.info(
        "Starting File Consumer Service",
        extra={
            "kafka_bootstrap_servers": config.kafka_bootstrap_servers,
            "kafka_topic": config.kafka_topic,
            "consumer_group": config.consumer_group_id,
            "max_retries": config.max_retries,
            "halt_on_failure": config.halt_on_failure,
        },
    )

    try:
        db_manager = init_database(config, create_schema=args.init_schema)
    except Exception:
        logger.error("Failed to initialize database", exc_info=True)
        return 1

    executor = RetryingExecutor.from_config(db_manager, config)
    progress = ProgressStore(executor)

    try:
        reader = KafkaTopicReader.from_config(config)
    except Exception:
        logger.error("Failed to create Kafka consumer", exc_info=True)
        db_manager.close()
        return 1

    consumer_instance = OffsetTrackingConsumer.from_config(config, reader, executor)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    exit_code = 0
    try:
        if args.max_messages is not None:
            received = consumer_instance.process_messages(args.max_messages)
            logger.info("Inline run finished", extra={"messages_received": received})
        else:
            logger.info("Consumer starting, press Ctrl+C to stop...")
            consumer_instance.start(stop_when_idle=args.stop_when_idle)
        logger.info("Consumer stopped")

        # Without halt_on_failure, failures are parked rather than raised
        if consumer_instance.messages_failed or consumer_instance.failed_partitions:
            logger.error(
                "Messages reached FAILED and stay unacknowledged",
                extra={
                    "messages_failed": consumer_instance.messages_failed,
                    "failed_partitions": sorted(consumer_instance.failed_partitions),
                },
            )
            exit_code = 1
    except MessageProcessingError as e:
        logger.error(
            "Message failed; operator intervention required",
            extra={"partition": e.partition, "offset": e.offset, "error": str(e)},
        )
        exit_code = 1
    except Exception:
        logger.error("Fatal error in consumer", exc_info=True)
        exit_code = 1
    finally:
        consumer_instance.log_metrics()
        consumer_instance.close()
        try:
            logger.info("Applied offsets", extra={"partitions": progress.partition_offsets()})
            logger.info("Stored chunks", extra={"summary": progress.chunk_summary()})
        except Exception:
            logger.error("Could not read progress report", exc_info=True)
        db_manager.close()

    return exit_code


# ==============================================================================
# ENTRY POINT
# ==============================================================================

if __name__ == "__main__":
    sys.exit(main())
