"""
Transfer message codec.

Messages travel over a DataConnection as ``type``-tagged dicts:

    file-meta  {name, size, mimeType}
    file-chunk {data, chunk, final}

For byte-stream transports the same messages are packed into typed
frames: metadata as JSON, chunks as a fixed header plus raw bytes.
"""

import json
import struct
from typing import Annotated, Union

from pydantic import Field, TypeAdapter, ValidationError

from errors import ProtocolViolation
from transfer.models import FILE_CHUNK, FILE_META, FileChunk, FileMeta, MessageType

TransferMessage = Annotated[Union[FileMeta, FileChunk], Field(discriminator="type")]
_message_adapter = TypeAdapter(TransferMessage)

CHUNK_HEADER_FORMAT = "!I?"  # 4-byte chunk index + 1-byte final flag
CHUNK_HEADER_SIZE = struct.calcsize(CHUNK_HEADER_FORMAT)


def encode_message(message: FileMeta | FileChunk) -> dict:
    """Model -> wire dict (camelCase keys)."""
    return message.model_dump(by_alias=True)


def decode_message(raw) -> FileMeta | FileChunk:
    """Wire dict -> model. Raises ProtocolViolation for anything else."""
    if not isinstance(raw, dict):
        raise ProtocolViolation(f"Expected a message object, got {type(raw).__name__}")
    try:
        return _message_adapter.validate_python(raw)
    except ValidationError as e:
        raise ProtocolViolation(
            f"Invalid {raw.get('type', 'untyped')} message: {e.error_count()} error(s)"
        ) from e


def pack_frame(message: dict) -> tuple[int, bytes]:
    """Turn a wire dict into (frame type, payload)."""
    kind = message.get("type")
    if kind == FILE_CHUNK:
        header = struct.pack(
            CHUNK_HEADER_FORMAT, message["chunk"], bool(message["final"])
        )
        return MessageType.FILE_CHUNK, header + bytes(message["data"])
    if kind == FILE_META:
        return MessageType.FILE_META, json.dumps(message).encode("utf-8")
    return MessageType.MESSAGE, json.dumps(message).encode("utf-8")


def unpack_frame(frame_type: int, payload: bytes) -> dict:
    """Inverse of pack_frame."""
    if frame_type == MessageType.FILE_CHUNK:
        if len(payload) < CHUNK_HEADER_SIZE:
            raise ProtocolViolation("Truncated chunk frame")
        index, final = struct.unpack(CHUNK_HEADER_FORMAT, payload[:CHUNK_HEADER_SIZE])
        return {
            "type": FILE_CHUNK,
            "data": payload[CHUNK_HEADER_SIZE:],
            "chunk": index,
            "final": final,
        }
    if frame_type in (MessageType.FILE_META, MessageType.MESSAGE):
        try:
            return json.loads(payload.decode("utf-8"))
        except ValueError as e:
            raise ProtocolViolation(f"Undecodable frame payload: {e}") from e
    raise ProtocolViolation(f"Unexpected frame type: {frame_type:#x}")
