"""
Offset-Tracking Consumer

Applies every message of the log to the store exactly once.

PER-MESSAGE STATE MACHINE:
┌─────────────────────────────────────────────────────────────────────────┐
│  RECEIVED                                                               │
│     │  one SERIALIZABLE transaction (re-run on transient failure)       │
│     ├── CHECK_OFFSET: read last_offset of message.partition             │
│     │      offset <= last_offset ──► SKIP (rollback)                    │
│     │      otherwise            ──► APPLY_AND_ADVANCE                   │
│     │                               business write + last_offset upsert │
│     │                               COMMIT                              │
│     ▼                                                                   │
│  ACKNOWLEDGED (commit offset + 1 on the log)                            │
│                                                                         │
│  FAILED: retries exhausted, non-retriable error or Abort. Rolled back,  │
│          never acknowledged, redelivered on reconnect.                  │
└─────────────────────────────────────────────────────────────────────────┘

WHY THE ORDER MATTERS:
- The offset row changes in the same transaction as the business row, so
  "applied" is durable exactly when the effect is
- Acknowledgement follows commit. A crash in between causes a redelivery,
  which finds the offset already advanced and skips
- A crash before commit leaves no trace; the redelivery applies normally

CONCURRENCY:
- start() routes messages to one PartitionWorker thread per partition through
  a bounded queue: strictly sequential within a partition, parallel across
- No application locks on progress rows; the store's serializable isolation
  aborts conflicting writers, and the executor retries them
"""

import logging
import queue
import threading
import time
from typing import Callable, Dict, Optional, Set

from file_pipeline.consumer.config import ConsumerConfig
from file_pipeline.consumer.handlers import BusinessHandler, store_chunk
from file_pipeline.shared.exceptions import MessageProcessingError
from file_pipeline.shared.log import LogMessage, TopicReader
from file_pipeline.shared.logger import CorrelationAdapter
from file_pipeline.shared.progress import ProgressStore
from file_pipeline.shared.retry import Abort, Applied, Outcome, RetryingExecutor, Skip
from file_pipeline.shared.transaction import TransactionScope, TxMode

logger = logging.getLogger(__name__)

# ==============================================================================
# OFFSET-TRACKING CONSUMER
# ==============================================================================


class OffsetTrackingConsumer:
    """
    Consumes a log and applies each message exactly once.

    Attributes:
        reader: Receive side of the log
        executor: Runs the per-message transaction with retry
        handler: Business write run inside the transaction
        messages_processed: Messages applied and acknowledged
        messages_skipped: Redeliveries acknowledged without effect
        messages_failed: Messages that reached FAILED
        idle_grace_polls: Empty receives tolerated before the first message
            counts as idle (group join and partition assignment)
        running: Loop flag for start()
    """

    def __init__(
        self,
        reader: TopicReader,
        executor: RetryingExecutor,
        handler: BusinessHandler = store_chunk,
        poll_timeout: float = 1.0,
        ack_retries: int = 3,
        halt_on_failure: bool = True,
        partition_queue_size: int = 100,
        idle_grace_polls: int = 10,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.reader = reader
        self.executor = executor
        self.handler = handler
        self.poll_timeout = poll_timeout
        self.ack_retries = ack_retries
        self.halt_on_failure = halt_on_failure
        self.partition_queue_size = partition_queue_size
        self.idle_grace_polls = idle_grace_polls
        self._sleep = sleep

        self.messages_processed = 0
        self.messages_skipped = 0
        self.messages_failed = 0
        self._metrics_lock = threading.Lock()

        self.running = False
        self._failed_partitions: Set[int] = set()
        self._fatal_error: Optional[MessageProcessingError] = None

    @classmethod
    def from_config(
        cls,
        config: ConsumerConfig,
        reader: TopicReader,
        executor: RetryingExecutor,
        handler: BusinessHandler = store_chunk,
    ) -> "OffsetTrackingConsumer":
        return cls(
            reader,
            executor,
            handler=handler,
            poll_timeout=config.poll_timeout_s,
            ack_retries=config.ack_retries,
            halt_on_failure=config.halt_on_failure,
            partition_queue_size=config.partition_queue_size,
            idle_grace_polls=config.idle_grace_polls,
        )

    # ==========================================================================
    # SINGLE MESSAGE
    # ==========================================================================

    def process_message(self, message: LogMessage) -> Outcome:
        """
        Run one message through CHECK_OFFSET → SKIP | APPLY_AND_ADVANCE → ACK.

        Args:
            message: Received message

        Returns:
            Applied (effect committed, acknowledged) or Skip (redelivery,
            acknowledged)

        Raises:
            MessageProcessingError: The message reached FAILED and is not
                acknowledged
        """
        log = CorrelationAdapter(
            logger,
            {
                "correlation_id": message.correlation_id,
                "partition": message.partition,
                "offset": message.offset,
            },
        )
        log.debug("Processing message", extra={"seq_no": message.seq_no})

        def unit(scope: TransactionScope) -> Outcome:
            last_offset = ProgressStore.last_applied_offset(scope, message.partition)
            if last_offset is not None and message.offset <= last_offset:
                return Skip(f"offset {message.offset} <= last applied {last_offset}")

            outcome = self.handler(scope, message)
            if isinstance(outcome, Applied):
                ProgressStore.advance_offset(scope, message.partition, message.offset)
            return outcome

        try:
            outcome = self.executor.run(unit, TxMode.SERIALIZABLE_RW, log=log)
        except Exception as e:
            self._count("messages_failed")
            log.error(
                "Message processing failed, leaving it unacknowledged",
                exc_info=True,
                extra={"error_type": type(e).__name__},
            )
            raise MessageProcessingError(
                "Message could not be applied",
                partition=message.partition,
                offset=message.offset,
                context={"error": str(e)},
            ) from e

        if isinstance(outcome, Abort):
            self._count("messages_failed")
            log.error(
                "Message aborted, leaving it unacknowledged", extra={"reason": outcome.reason}
            )
            raise MessageProcessingError(
                "Message refused by handler",
                partition=message.partition,
                offset=message.offset,
                context={"reason": outcome.reason},
            )

        self._acknowledge(message, log)

        if isinstance(outcome, Skip):
            self._count("messages_skipped")
            log.info("Redelivery skipped", extra={"reason": outcome.reason})
        else:
            self._count("messages_processed")
            log.info("Message applied", extra={"result": outcome.value})

        return outcome

    def _acknowledge(self, message: LogMessage, log: CorrelationAdapter) -> None:
        attempts = self.ack_retries + 1
        for attempt in range(attempts):
            try:
                self.reader.acknowledge(message)
                return
            except Exception as e:
                if attempt == attempts - 1:
                    self._count("messages_failed")
                    log.error(
                        "Acknowledgement failed, message will be redelivered",
                        exc_info=True,
                        extra={"attempts": attempts},
                    )
                    raise MessageProcessingError(
                        "Message applied but not acknowledged",
                        partition=message.partition,
                        offset=message.offset,
                        context={"error": str(e)},
                    ) from e

                backoff_s = self.executor.backoff_seconds(attempt)
                log.warning(
                    f"Acknowledgement failed, retrying in {backoff_s}s",
                    extra={"attempt": attempt + 1, "error": str(e)},
                )
                self._sleep(backoff_s)

    def _count(self, counter: str) -> None:
        with self._metrics_lock:
            setattr(self, counter, getattr(self, counter) + 1)

    def _on_failure(self, message: LogMessage, error: MessageProcessingError) -> None:
        """Park the message's partition; halt everything if configured to."""
        self._failed_partitions.add(message.partition)
        if self.halt_on_failure and self._fatal_error is None:
            self._fatal_error = error
            self.running = False

    def is_partition_failed(self, partition: int) -> bool:
        return partition in self._failed_partitions

    @property
    def failed_partitions(self) -> Set[int]:
        return set(self._failed_partitions)

    def _drained(self, received: int, empty_polls: int) -> bool:
        """An empty receive means the log is drained once anything has arrived."""
        return received > 0 or empty_polls >= self.idle_grace_polls

    # ==========================================================================
    # INLINE LOOP
    # ==========================================================================

    def process_messages(self, max_messages: int, timeout: Optional[float] = None) -> int:
        """
        Receive and process messages in the calling thread, in arrival order.

        Stops after max_messages messages, or when a receive times out after
        at least one message arrived. Before the first message up to
        idle_grace_polls empty receives are tolerated. Messages of a failed
        partition are left unacknowledged and skipped.

        Args:
            max_messages: Upper bound on messages received
            timeout: Receive timeout (defaults to poll_timeout)

        Returns:
            Number of messages received

        Raises:
            MessageProcessingError: A message failed and halt_on_failure is set
        """
        timeout = self.poll_timeout if timeout is None else timeout
        received = 0
        empty_polls = 0

        while received < max_messages:
            message = self.reader.receive(timeout)
            if message is None:
                empty_polls += 1
                if self._drained(received, empty_polls):
                    break
                continue
            received += 1

            if self.is_partition_failed(message.partition):
                logger.debug(
                    "Partition failed earlier, message left for redelivery",
                    extra={"partition": message.partition, "offset": message.offset},
                )
                continue

            try:
                self.process_message(message)
            except MessageProcessingError as e:
                self._on_failure(message, e)
                if self.halt_on_failure:
                    raise

        return received

    # ==========================================================================
    # PARTITION WORKER LOOP
    # ==========================================================================

    def start(self, stop_when_idle: bool = False) -> None:
        """
        Consume until stop() is called (or, with stop_when_idle, until the log
        has nothing more and every worker is idle). The idle stop waits for
        the first message or idle_grace_polls empty receives, whichever
        comes first.

        Raises:
            MessageProcessingError: A message failed and halt_on_failure is set
        """
        logger.info(
            "Starting consumer loop...",
            extra={"halt_on_failure": self.halt_on_failure, "stop_when_idle": stop_when_idle},
        )
        self.running = True
        workers: Dict[int, PartitionWorker] = {}
        received = 0
        empty_polls = 0

        try:
            while self.running:
                message = self.reader.receive(self.poll_timeout)

                if message is None:
                    empty_polls += 1
                    if (
                        stop_when_idle
                        and self._drained(received, empty_polls)
                        and all(w.idle for w in workers.values())
                    ):
                        logger.info("Log drained and workers idle, stopping")
                        break
                    continue

                received += 1

                if self.is_partition_failed(message.partition):
                    continue

                worker = workers.get(message.partition)
                if worker is None:
                    worker = PartitionWorker(self, message.partition, self.partition_queue_size)
                    workers[message.partition] = worker
                    worker.start()

                worker.submit(message)
        finally:
            self.running = False
            for worker in workers.values():
                worker.stop()
            for worker in workers.values():
                worker.join()

        if self._fatal_error is not None:
            raise self._fatal_error

    def stop(self) -> None:
        """Signal the loop to stop; workers finish their current message."""
        logger.info("Stopping consumer...")
        self.running = False

    def log_metrics(self) -> None:
        logger.info(
            "Consumer metrics",
            extra={
                "messages_processed": self.messages_processed,
                "messages_skipped": self.messages_skipped,
                "messages_failed": self.messages_failed,
                "failed_partitions": sorted(self._failed_partitions),
            },
        )

    def close(self) -> None:
        """Close the log reader."""
        self.reader.close()


# ==============================================================================
# PARTITION WORKER
# ==============================================================================


class PartitionWorker(threading.Thread):
    """
    Sequential processor for the messages of one partition.

    Messages arrive through a bounded queue in offset order. After a failure
    the worker discards everything still queued for its partition; none of it
    is acknowledged.
    """

    def __init__(self, consumer: OffsetTrackingConsumer, partition: int, queue_size: int):
        super().__init__(name=f"partition-worker-{partition}", daemon=True)
        self.consumer = consumer
        self.partition = partition
        self.queue: "queue.Queue[LogMessage]" = queue.Queue(maxsize=queue_size)
        self._stop_event = threading.Event()
        self._inflight = 0
        self._inflight_lock = threading.Lock()

    @property
    def idle(self) -> bool:
        with self._inflight_lock:
            return self._inflight == 0

    def submit(self, message: LogMessage) -> None:
        """Queue a message, blocking while the queue is full."""
        with self._inflight_lock:
            self._inflight += 1
        while not self._stop_event.is_set():
            try:
                self.queue.put(message, timeout=0.1)
                return
            except queue.Full:
                continue
        self._done()

    def stop(self) -> None:
        self._stop_event.set()

    def _done(self) -> None:
        with self._inflight_lock:
            self._inflight -= 1

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                message = self.queue.get(timeout=0.1)
            except queue.Empty:
                continue

            try:
                if not self.consumer.is_partition_failed(self.partition):
                    self.consumer.process_message(message)
            except MessageProcessingError as e:
                self.consumer._on_failure(message, e)
            except Exception as e:
                logger.critical(
                    "Unexpected error in partition worker",
                    exc_info=True,
                    extra={"partition": self.partition},
                )
                self.consumer._on_failure(
                    message,
                    MessageProcessingError(
                        "Unexpected worker error",
                        partition=message.partition,
                        offset=message.offset,
                        context={"error": str(e)},
                    ),
                )
            finally:
                self._done()
