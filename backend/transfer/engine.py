"""
Transfer engine: moves files over the session's active connection.

Outbound: each file of a batch goes out as one file-meta message
followed by its file-chunk messages in index order; batches never
interleave. Inbound: chunks are collected for the single open
transfer and joined into a ReceivedFile once the final chunk lands.
"""

import asyncio
import logging
import mimetypes
import os

from config import (
    BACKPRESSURE_POLL,
    CHUNK_SIZE,
    HIGH_WATER_MARK,
    PROGRESS_RESET_DELAY,
)
from errors import ProtocolViolation, TransferError
from events import EventEmitter, EventType
from transfer.codec import decode_message, encode_message
from transfer.models import (
    FileChunk,
    FileMeta,
    InboundTransfer,
    OutboundTransfer,
    ReceivedFile,
    TransferBatch,
    TransferStatus,
)
from transport.base import DataConnection

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


class TransferEngine(EventEmitter):
    """Chunked file transfer on top of a PeerSessionManager."""

    def __init__(
        self,
        session,
        chunk_size: int = CHUNK_SIZE,
        high_water_mark: int = HIGH_WATER_MARK,
        progress_reset_delay: float = PROGRESS_RESET_DELAY,
    ) -> None:
        super().__init__()
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._session = session
        self._chunk_size = chunk_size
        self._high_water_mark = high_water_mark
        self._progress_reset_delay = progress_reset_delay
        self._send_lock = asyncio.Lock()
        self._batch: TransferBatch | None = None
        self._inbound: InboundTransfer | None = None
        self._file_handlers: list = []  # async fn(received: ReceivedFile)
        self._tasks: set[asyncio.Task] = set()

        session.on_message(self.handle_message)
        session.on_event(self._on_session_event)

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    def on_file(self, handler) -> None:
        """Register handler: async fn(received: ReceivedFile) for each completed file."""
        self._file_handlers.append(handler)

    def get_status(self) -> TransferStatus:
        return TransferStatus(
            sending=self._send_lock.locked(),
            outbound=self._batch,
            inbound=self._inbound,
        )

    async def close(self) -> None:
        """Cancel background work (batches in flight, pending progress resets)."""
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._inbound = None

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _emit_progress(self, percent: int) -> None:
        await self._emit(EventType.TRANSFER_PROGRESS, {"percent": percent})

    def _schedule_progress_reset(self) -> None:
        self._track(asyncio.create_task(self._reset_progress_later()))

    async def _reset_progress_later(self) -> None:
        await asyncio.sleep(self._progress_reset_delay)
        await self._emit_progress(0)

    # --- Sending ---

    def queue_batch(self, file_paths: list[str]) -> asyncio.Task:
        """Start send_batch() in the background."""
        return self._track(asyncio.create_task(self.send_batch(file_paths)))

    async def send_batch(self, file_paths: list[str]) -> bool:
        """
        Send files one after another over the active connection.

        Returns True when every file went out. On any failure a single
        transfer-error is emitted, progress drops to 0 and the rest of
        the batch is abandoned.
        """
        async with self._send_lock:
            return await self._send_batch(file_paths)

    async def _send_batch(self, file_paths: list[str]) -> bool:
        conn = self._session.connection
        if conn is None or not conn.open:
            logger.warning("Cannot send files: no connection")
            await self._emit(
                EventType.TRANSFER_ERROR, {"fileName": "files", "error": "No connection"}
            )
            return False

        current_name = "files"
        try:
            batch = TransferBatch(
                transfers=[self._prepare(path) for path in file_paths]
            )
            self._batch = batch
            logger.info(
                f"Sending {len(batch.transfers)} file(s), "
                f"{batch.total_size} bytes to {conn.peer}"
            )

            for transfer in batch.transfers:
                current_name = transfer.file_name
                await self._emit(EventType.TRANSFER_START, {"fileName": current_name})
                await self._send_file(conn, batch, transfer)
                await self._emit(EventType.TRANSFER_COMPLETE, {"fileName": current_name})
        except Exception as e:
            logger.error(f"Send error for {current_name}: {e}")
            await self._emit(
                EventType.TRANSFER_ERROR, {"fileName": current_name, "error": str(e)}
            )
            await self._emit_progress(0)
            return False
        finally:
            self._batch = None

        await self._emit_progress(100)
        self._schedule_progress_reset()
        return True

    def _prepare(self, file_path: str) -> OutboundTransfer:
        file_name = os.path.basename(file_path)
        try:
            file_size = os.path.getsize(file_path)
        except OSError as e:
            raise TransferError(f"Cannot read '{file_name}': {e}") from e
        mime_type, _ = mimetypes.guess_type(file_name)
        return OutboundTransfer(
            file_path=file_path,
            file_name=file_name,
            file_size=file_size,
            mime_type=mime_type or DEFAULT_MIME_TYPE,
        )

    async def _send_file(
        self,
        conn: DataConnection,
        batch: TransferBatch,
        transfer: OutboundTransfer,
    ) -> None:
        meta = FileMeta(
            name=transfer.file_name,
            size=transfer.file_size,
            mime_type=transfer.mime_type,
        )
        await conn.send(encode_message(meta))

        f = await asyncio.to_thread(open, transfer.file_path, "rb")
        try:
            # An empty file still gets one (empty) final chunk
            while True:
                await self._wait_for_drain(conn)

                data = await asyncio.to_thread(f.read, self._chunk_size)
                remaining = transfer.file_size - transfer.sent_bytes
                data = data[:remaining]
                final = len(data) == remaining
                if not data and not final:
                    raise TransferError(
                        f"'{transfer.file_name}' shrank while it was being sent"
                    )

                chunk = FileChunk(data=data, chunk=transfer.next_chunk, final=final)
                await conn.send(encode_message(chunk))

                transfer.next_chunk += 1
                transfer.sent_bytes += len(data)
                batch.transferred_size += len(data)
                await self._emit_progress(batch.progress_percent)

                if final:
                    break
        finally:
            f.close()

    async def _wait_for_drain(self, conn: DataConnection) -> None:
        """Hold off while the connection has too much unsent data queued."""
        while conn.open and conn.buffered_amount > self._high_water_mark:
            await asyncio.sleep(BACKPRESSURE_POLL)

    # --- Receiving ---

    async def handle_message(self, message) -> None:
        """Feed one message from the connection into the reassembly state."""
        try:
            msg = decode_message(message)
        except ProtocolViolation as e:
            logger.warning(f"Dropping message: {e}")
            return

        if isinstance(msg, FileMeta):
            await self._on_file_meta(msg)
        else:
            await self._on_file_chunk(msg)

    async def _on_file_meta(self, meta: FileMeta) -> None:
        if self._inbound is not None:
            # A new file-meta before the final chunk: the old file can never finish
            await self._abandon_inbound(f"Interrupted by '{meta.name}'")

        self._inbound = InboundTransfer(
            file_name=meta.name,
            file_size=meta.size,
            mime_type=meta.mime_type or DEFAULT_MIME_TYPE,
        )
        logger.info(f"Receiving '{meta.name}' ({meta.size} bytes)")
        await self._emit(EventType.TRANSFER_START, {"fileName": meta.name})

    async def _on_file_chunk(self, chunk: FileChunk) -> None:
        transfer = self._inbound
        if transfer is None:
            logger.warning(f"Dropping chunk {chunk.chunk}: no transfer in progress")
            return
        if chunk.chunk != transfer.next_chunk:
            await self._abandon_inbound(
                f"Expected chunk {transfer.next_chunk}, got {chunk.chunk}"
            )
            return

        transfer.chunks.append(chunk.data)
        transfer.received_bytes += len(chunk.data)
        transfer.next_chunk += 1
        if transfer.received_bytes > transfer.file_size:
            await self._abandon_inbound(
                f"Received more than the announced {transfer.file_size} bytes"
            )
            return

        await self._emit_progress(transfer.progress_percent)

        if chunk.final:
            await self._complete_inbound(transfer)

    async def _complete_inbound(self, transfer: InboundTransfer) -> None:
        self._inbound = None
        if transfer.received_bytes != transfer.file_size:
            await self._fail_inbound(
                transfer,
                f"Received {transfer.received_bytes} of {transfer.file_size} bytes",
            )
            return

        received = ReceivedFile(
            name=transfer.file_name,
            mime_type=transfer.mime_type,
            data=b"".join(transfer.chunks),
        )
        transfer.chunks.clear()

        try:
            for handler in list(self._file_handlers):
                await handler(received)
        except Exception as e:
            logger.error(f"Could not deliver '{received.name}': {e}")
            await self._fail_inbound(transfer, str(e))
            return

        logger.info(f"Received '{received.name}' ({len(received.data)} bytes)")
        await self._emit(EventType.TRANSFER_COMPLETE, {"fileName": received.name})
        self._schedule_progress_reset()

    async def _abandon_inbound(self, reason: str) -> None:
        transfer, self._inbound = self._inbound, None
        if transfer:
            await self._fail_inbound(transfer, reason)

    async def _fail_inbound(self, transfer: InboundTransfer, reason: str) -> None:
        logger.warning(f"Abandoning '{transfer.file_name}': {reason}")
        await self._emit(
            EventType.TRANSFER_ERROR, {"fileName": transfer.file_name, "error": reason}
        )
        await self._emit_progress(0)

    async def _on_session_event(self, event_type: str, data: dict) -> None:
        if event_type != EventType.CONNECTION_STATUS or data.get("connected"):
            return
        if self._inbound is not None:
            logger.info(f"Connection lost, discarding partial '{self._inbound.file_name}'")
            self._inbound = None
