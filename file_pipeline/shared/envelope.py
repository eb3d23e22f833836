"""
Chunk payload envelope.

Every message carries the identity of the chunk it holds, so the consumer can
key the business row on (source, position) instead of the delivery offset:

    {"source": "data/input.txt", "position": 7, "data": "<base64>"}
"""

import base64
import binascii

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from file_pipeline.shared.exceptions import MalformedMessageError


class ChunkEnvelope(BaseModel):
    """
    One source chunk in transit.

    Attributes:
        source: Source identity (the resume key, usually a file path)
        position: 1-based chunk position within the source
        data: Chunk bytes, base64 encoded
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    source: str = Field(min_length=1)
    position: int = Field(ge=1)
    data: str

    @field_validator("data")
    @classmethod
    def check_base64(cls, value: str) -> str:
        try:
            base64.b64decode(value, validate=True)
        except binascii.Error as e:
            raise ValueError(f"data is not valid base64: {e}") from e
        return value

    @classmethod
    def from_chunk(cls, source: str, position: int, content: bytes) -> "ChunkEnvelope":
        return cls(
            source=source,
            position=position,
            data=base64.b64encode(content).decode("ascii"),
        )

    @property
    def content(self) -> bytes:
        return base64.b64decode(self.data, validate=True)

    @property
    def correlation_id(self) -> str:
        return f"{self.source}#{self.position}"

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, payload: bytes) -> "ChunkEnvelope":
        """
        Decode a message payload.

        Raises:
            MalformedMessageError: Payload is not a valid envelope
        """
        try:
            envelope = cls.model_validate_json(payload or b"")
        except ValidationError as e:
            raise MalformedMessageError(
                "Payload is not a chunk envelope",
                context={"error": e.errors()[0]["msg"], "size": len(payload or b"")},
            ) from e
        return envelope
