"""
Fixed-size chunk reader for source files.

Positions are 1-based and stable for a given file and chunk size: chunk N
always covers bytes [(N-1) * chunk_size, N * chunk_size). Resuming after
position P seeks straight to chunk P + 1 instead of re-reading the prefix.
"""

import os
from dataclasses import dataclass
from typing import Iterator, Optional


@dataclass(frozen=True)
class Chunk:
    position: int
    content: bytes


class FileChunkSource:
    """
    Reads a file as a sequence of fixed-size chunks.

    Attributes:
        path: File to read
        chunk_size: Bytes per chunk (the last chunk may be shorter)
        name: Source identity; defaults to the absolute path
    """

    def __init__(self, path: str, chunk_size: int, name: Optional[str] = None):
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self.path = path
        self.chunk_size = chunk_size
        self.name = name or os.path.abspath(path)

    def chunks(self, start_after: int = 0) -> Iterator[Chunk]:
        """
        Yield chunks with position > start_after, in order.

        Args:
            start_after: Last position already handled (0 = from the beginning)
        """
        if start_after < 0:
            raise ValueError("start_after must be >= 0")

        with open(self.path, "rb") as f:
            f.seek(start_after * self.chunk_size)
            position = start_after
            while True:
                content = f.read(self.chunk_size)
                if not content:
                    return
                position += 1
                yield Chunk(position, content)

    def chunk_count(self) -> int:
        size = os.path.getsize(self.path)
        return (size + self.chunk_size - 1) // self.chunk_size

    def __repr__(self) -> str:
        return f"<FileChunkSource(name={self.name}, chunk_size={self.chunk_size})>"
