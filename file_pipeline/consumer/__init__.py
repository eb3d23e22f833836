"""
File Consumer Service

Consumes the 'file-chunks' topic and stores every chunk in PostgreSQL exactly
once.

OFFSET MANAGEMENT:
1. Receive a message
2. In one serializable transaction: compare its offset with the partition's
   last applied offset, then either skip or write the chunk and advance
3. Commit, then acknowledge to Kafka
4. On failure: no acknowledgement, so the message is redelivered

PACKAGE STRUCTURE:
- reader.py: Kafka reader with manual offset commits
- handlers.py: business write (chunk upsert)
- consumer.py: offset-tracking consumer and per-partition workers
- config.py: consumer configuration from environment variables
- main.py: command-line entry point

USAGE:
    python -m file_pipeline.consumer.main --stop-when-idle
"""
