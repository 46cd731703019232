"""Pydantic models for file transfer."""

import math
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field

FILE_META = "file-meta"
FILE_CHUNK = "file-chunk"


def progress_percent(done: int, total: int) -> int:
    """Whole-number percentage, rounding halves up; an empty total counts as done."""
    if total <= 0:
        return 100
    return math.floor(100 * done / total + 0.5)


# --- Wire protocol message types ---

class MessageType:
    """Frame type codes used by the TCP transport."""
    HANDSHAKE_PUBKEY = 0x01
    HELLO = 0x02
    CLOSE = 0x0F
    FILE_META = 0x10
    FILE_CHUNK = 0x11
    MESSAGE = 0x12


class FileMeta(BaseModel):
    """Announces a file; always precedes its first chunk."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["file-meta"] = FILE_META
    name: str
    size: int = Field(ge=0)
    mime_type: str = Field(default="", alias="mimeType")


class FileChunk(BaseModel):
    """One contiguous slice of a file's bytes."""
    type: Literal["file-chunk"] = FILE_CHUNK
    data: bytes
    chunk: int = Field(ge=0)
    final: bool = False


# --- Transfer state ---

class OutboundTransfer(BaseModel):
    """A file queued for sending."""
    file_path: str
    file_name: str
    file_size: int
    mime_type: str
    next_chunk: int = 0
    sent_bytes: int = 0


class TransferBatch(BaseModel):
    """Files sent sequentially in one operation."""
    transfers: list[OutboundTransfer]
    transferred_size: int = 0

    @computed_field
    @property
    def total_size(self) -> int:
        return sum(t.file_size for t in self.transfers)

    @computed_field
    @property
    def progress_percent(self) -> int:
        return progress_percent(self.transferred_size, self.total_size)


class InboundTransfer(BaseModel):
    """A file being reassembled from incoming chunks."""
    file_name: str
    file_size: int
    mime_type: str
    chunks: list[bytes] = Field(default_factory=list, exclude=True)
    received_bytes: int = 0
    next_chunk: int = 0

    @computed_field
    @property
    def progress_percent(self) -> int:
        return progress_percent(self.received_bytes, self.file_size)


class ReceivedFile(BaseModel):
    """A fully reassembled file, ready to hand to the download side."""
    name: str
    mime_type: str
    data: bytes


class TransferStatus(BaseModel):
    """Snapshot of engine state, exposed to the frontend."""
    sending: bool = False
    outbound: TransferBatch | None = None
    inbound: InboundTransfer | None = None
