"""
File Pipeline

Exactly-once transfer of file chunks from a Kafka topic into PostgreSQL.

┌──────────┐    ┌───────────────────┐    ┌─────────────┐    ┌────────────────────────┐    ┌─────────────┐
│  file    │───▶│ SequencedProducer │───▶│ Kafka topic │───▶│ OffsetTrackingConsumer │───▶│ file_chunks │
└──────────┘    └───────────────────┘    └─────────────┘    └────────────────────────┘    └─────────────┘
                  resume point in                             offset check + write +
                  publish_progress                            partition_progress, one
                                                              serializable transaction

PACKAGES:
- producer: file chunking, Kafka writer, sequenced publishing with resume
- consumer: Kafka reader, business handler, offset-tracking consumer
- shared: configuration, logging, errors, models, transactions, retry, progress
"""

__version__ = "1.0.0"
