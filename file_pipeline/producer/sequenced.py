"""
Sequenced Producer

Publishes the chunks of one source to the log with application-assigned
sequence numbers and keeps the source's resume point in the store.

PUBLISH LOOP (per chunk):
1. publish(): sequence number = previous + 1, message queued on the writer
2. flush(): block until the log confirmed the message (acks=all)
3. record_progress(): persist the chunk position as the new resume point

The counter belongs to the producer instance and is seeded from the persisted
resume point, so after a restart chunk N is published again as sequence
number N. A crash between flush and record_progress republishes at most the
last chunk; the consumer's offset check and the (source, position) key of the
business row absorb the duplicate. The broker's idempotent-producer window is
not relied on.
"""

import logging
import threading
from typing import List, Optional

from file_pipeline.producer.source import FileChunkSource
from file_pipeline.shared.envelope import ChunkEnvelope
from file_pipeline.shared.exceptions import PublishError
from file_pipeline.shared.log import Delivery, TopicWriter
from file_pipeline.shared.logger import CorrelationAdapter
from file_pipeline.shared.progress import ProgressStore

logger = logging.getLogger(__name__)


class SequencedProducer:
    """
    Publishes ordered messages for one resume key.

    Attributes:
        writer: Publish side of the log
        progress: Store of resume points
        resume_key: Source identity; also the default partition key
        partition_key: Key that routes every message to one partition
        flush_timeout: Seconds flush() waits for log confirmation
        sequence: Last sequence number handed out
    """

    def __init__(
        self,
        writer: TopicWriter,
        progress: ProgressStore,
        resume_key: str,
        partition_key: Optional[bytes] = None,
        flush_timeout: float = 30.0,
    ):
        self.writer = writer
        self.progress = progress
        self.resume_key = resume_key
        self.partition_key = partition_key or resume_key.encode("utf-8")
        self.flush_timeout = flush_timeout

        self.sequence = 0
        self.messages_published = 0
        self._unflushed = 0
        self._stop_event = threading.Event()
        self.log = CorrelationAdapter(logger, {"resume_key": resume_key})

    def resume(self) -> int:
        """
        Seed the counter from the persisted resume point.

        Also discards any unflushed state, so a producer whose flush failed
        can resume() and continue from the last durable position.

        Returns:
            Last published position (0 if the source was never published)
        """
        position = self.progress.load_resume_position(self.resume_key)
        self.sequence = position
        self._unflushed = 0
        self.log.info("Resuming publication", extra={"resume_position": position})
        return position

    def publish(self, data: bytes) -> int:
        """
        Queue a message under the next sequence number.

        Returns:
            Sequence number assigned to the message
        """
        seq_no = self.sequence + 1
        self.writer.send(self.partition_key, seq_no, data)
        self.sequence = seq_no
        self._unflushed += 1
        return seq_no

    def flush(self, timeout: Optional[float] = None) -> List[Delivery]:
        """
        Block until the log durably accepted everything published so far.

        Raises:
            PublishError: Something was not confirmed; call resume() before
                publishing again
        """
        deliveries = self.writer.flush(self.flush_timeout if timeout is None else timeout)
        self._unflushed = 0
        return deliveries

    def record_progress(self, position: int) -> None:
        """
        Persist the resume point.

        Raises:
            PublishError: Published data is not yet confirmed by flush()
        """
        if self._unflushed:
            raise PublishError(
                "Resume point cannot advance past unflushed messages",
                context={"resume_key": self.resume_key, "unflushed": self._unflushed},
            )
        self.progress.save_resume_position(self.resume_key, position)

    def publish_source(self, source: FileChunkSource) -> int:
        """
        Publish every chunk of a source after its resume point.

        Args:
            source: Chunk source whose name equals this producer's resume key

        Returns:
            Number of chunks published in this call
        """
        if source.name != self.resume_key:
            raise ValueError(
                f"Source '{source.name}' does not match resume key '{self.resume_key}'"
            )

        start_after = self.resume()
        published = 0

        for chunk in source.chunks(start_after=start_after):
            if self._stop_event.is_set():
                self.log.info(
                    "Stop requested, leaving source", extra={"position": chunk.position - 1}
                )
                break

            envelope = ChunkEnvelope.from_chunk(self.resume_key, chunk.position, chunk.content)
            chunk_log = self.log.bind(correlation_id=envelope.correlation_id)

            seq_no = self.publish(envelope.to_bytes())
            if seq_no != chunk.position:
                raise PublishError(
                    "Sequence number diverged from source position",
                    context={"seq_no": seq_no, "position": chunk.position},
                )

            deliveries = self.flush()
            self.record_progress(chunk.position)

            published += 1
            self.messages_published += 1
            chunk_log.debug(
                "Chunk published",
                extra={
                    "seq_no": seq_no,
                    "size": len(chunk.content),
                    "partition": deliveries[-1].partition if deliveries else None,
                    "offset": deliveries[-1].offset if deliveries else None,
                },
            )

        self.log.info(
            "Source publication finished",
            extra={"chunks_published": published, "last_position": self.sequence},
        )
        return published

    def stop(self) -> None:
        """Finish the current chunk, then leave publish_source()."""
        self._stop_event.set()
