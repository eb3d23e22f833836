"""
File Producer Service

Reads a file in fixed-size chunks and publishes each chunk to the
'file-chunks' Kafka topic, recording a resume point after every confirmed
chunk.

PACKAGE STRUCTURE:
- source.py: fixed-size chunk reader with seek-based resume
- producer.py: Kafka writer (delivery reports, seq_no header, strict flush)
- sequenced.py: sequence numbering and publish → flush → record loop
- config.py: producer configuration from environment variables
- main.py: command-line entry point

USAGE:
    python -m file_pipeline.producer.main data/input.txt --chunk-size 65536
"""
