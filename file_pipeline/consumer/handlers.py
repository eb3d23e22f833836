"""
Business writes applied by the consumer.

A handler runs inside the consumer's serializable transaction, after the
offset check and before the offset advance. It returns Applied to have its
writes committed together with the new offset, or Abort to refuse the message
(rolled back, left unacknowledged).
"""

import logging
from typing import Callable

from sqlalchemy import func

from file_pipeline.shared.envelope import ChunkEnvelope
from file_pipeline.shared.exceptions import MalformedMessageError
from file_pipeline.shared.log import LogMessage
from file_pipeline.shared.models import FileChunk
from file_pipeline.shared.retry import Abort, Applied, Outcome
from file_pipeline.shared.transaction import TransactionScope

logger = logging.getLogger(__name__)

BusinessHandler = Callable[[TransactionScope, LogMessage], Outcome]


def store_chunk(scope: TransactionScope, message: LogMessage) -> Outcome:
    """
    Upsert the chunk carried by message into file_chunks.

    The row key is (source, position) from the envelope, so a chunk that was
    republished under a new offset lands on the same row.
    """
    try:
        envelope = ChunkEnvelope.from_bytes(message.payload)
    except MalformedMessageError as e:
        return Abort(str(e))

    content = envelope.content
    scope.upsert(
        FileChunk,
        {
            "name": envelope.source,
            "line": envelope.position,
            "length": len(content),
            "partition_id": message.partition,
            "log_offset": message.offset,
            "stored_at": func.now(),
        },
    )
    return Applied(envelope.correlation_id)
