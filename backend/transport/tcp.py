"""
TCP-based LAN transport.

Each identity listens on a random port; remote ids are ``host:port``
addresses. A connection starts with an X25519 handshake, after which
every frame is sealed with AES-256-GCM, then both sides exchange a
HELLO frame carrying their peer id and listening port.
"""

import asyncio
import json
import logging
import random
import struct

from config import TRANSFER_PORT_MAX, TRANSFER_PORT_MIN, TRANSPORT_HOST
from errors import ProtocolViolation, TransportError
from security.crypto import ChannelCipher, generate_keypair
from transfer.codec import pack_frame, unpack_frame
from transfer.models import MessageType
from transport.base import ConnectionState, DataConnection, PeerTransport

logger = logging.getLogger(__name__)

# --- Wire protocol helpers ---

HEADER_FORMAT = "!BI"  # 1-byte type + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)


async def send_frame(
    writer: asyncio.StreamWriter, frame_type: int, payload: bytes = b""
) -> None:
    """Send a type-length-payload frame."""
    header = struct.pack(HEADER_FORMAT, frame_type, len(payload))
    writer.write(header + payload)
    await writer.drain()


async def recv_frame(
    reader: asyncio.StreamReader,
) -> tuple[int, bytes]:
    """Receive a type-length-payload frame. Returns (type, payload)."""
    header = await reader.readexactly(HEADER_SIZE)
    frame_type, length = struct.unpack(HEADER_FORMAT, header)
    payload = b""
    if length > 0:
        payload = await reader.readexactly(length)
    return frame_type, payload


async def perform_handshake(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    initiator: bool,
) -> ChannelCipher:
    """
    Exchange ephemeral public keys and derive the channel cipher.
    The initiator speaks first.
    """
    private_key, pub_bytes = generate_keypair()

    if initiator:
        await send_frame(writer, MessageType.HANDSHAKE_PUBKEY, pub_bytes)

    frame_type, peer_pub_bytes = await recv_frame(reader)
    if frame_type != MessageType.HANDSHAKE_PUBKEY:
        raise ConnectionError(f"Expected HANDSHAKE_PUBKEY, got {frame_type:#x}")

    if not initiator:
        await send_frame(writer, MessageType.HANDSHAKE_PUBKEY, pub_bytes)

    return ChannelCipher.from_exchange(private_key, peer_pub_bytes)


def parse_address(remote_id: str) -> tuple[str, int]:
    """Split a ``host:port`` remote id."""
    host, sep, port = remote_id.strip().rpartition(":")
    if not sep or not host or not port.isdigit():
        raise TransportError(f"Invalid peer address: {remote_id!r} (expected host:port)")
    port_number = int(port)
    if not 0 < port_number < 65536:
        raise TransportError(f"Invalid port in peer address: {remote_id!r}")
    return host.strip("[]"), port_number


class TcpConnection(DataConnection):
    """A sealed, framed TCP stream to one remote peer."""

    def __init__(self, peer: str) -> None:
        super().__init__(peer)
        self.remote_id: str | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._cipher: ChannelCipher | None = None
        self._read_task: asyncio.Task | None = None

    @property
    def buffered_amount(self) -> int:
        if self._writer is None or self._writer.is_closing():
            return 0
        return self._writer.transport.get_write_buffer_size()

    async def _attach(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        cipher: ChannelCipher,
    ) -> None:
        if self.state != ConnectionState.CONNECTING:
            writer.close()
            return
        self._reader = reader
        self._writer = writer
        self._cipher = cipher
        self._read_task = asyncio.create_task(self._read_loop())
        await self._set_open()

    async def send(self, message: dict) -> None:
        if not self.open or self._writer is None:
            raise TransportError(f"Connection to {self.peer} is not open")
        frame_type, payload = pack_frame(message)
        sealed = await asyncio.to_thread(self._cipher.seal, payload)
        try:
            await send_frame(self._writer, frame_type, sealed)
        except (ConnectionError, OSError) as e:
            error = TransportError(f"Send to {self.peer} failed: {e}")
            await self._fail(error)
            raise error from e

    async def close(self) -> None:
        if self.state in (ConnectionState.CLOSED, ConnectionState.FAILED):
            return
        if self.open:
            try:
                await send_frame(self._writer, MessageType.CLOSE, self._cipher.seal(b""))
            except (ConnectionError, OSError) as e:
                logger.debug(f"Could not send CLOSE to {self.peer}: {e}")
        await self._shutdown()
        await self._set_closed()

    async def _fail(self, error: Exception) -> None:
        await self._shutdown()
        await self._set_failed(error)

    async def _shutdown(self) -> None:
        task = self._read_task
        self._read_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

        writer = self._writer
        if writer:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _read_loop(self) -> None:
        """Receive frames and fire ``data`` until the peer goes away."""
        try:
            while self.open:
                frame_type, sealed = await recv_frame(self._reader)
                payload = await asyncio.to_thread(self._cipher.open, sealed)
                if frame_type == MessageType.CLOSE:
                    break
                try:
                    message = unpack_frame(frame_type, payload)
                except ProtocolViolation as e:
                    logger.warning(f"Dropping frame from {self.peer}: {e}")
                    continue
                await self._fire("data", message)
        except asyncio.IncompleteReadError:
            logger.info(f"Peer {self.peer} closed the stream")
        except (ConnectionError, OSError, TransportError) as e:
            logger.error(f"Connection to {self.peer} failed: {e}")
            await self._fail(e if isinstance(e, TransportError) else TransportError(str(e)))
            return

        await self._shutdown()
        await self._set_closed()


class TcpTransport(PeerTransport):
    """A peer identity reachable at ``host:port`` on the LAN."""

    def __init__(
        self,
        peer_id: str,
        host: str = TRANSPORT_HOST,
        port_min: int = TRANSFER_PORT_MIN,
        port_max: int = TRANSFER_PORT_MAX,
    ) -> None:
        super().__init__(peer_id)
        self._host = host
        self._port_min = port_min
        self._port_max = port_max
        self._port = 0
        self._server: asyncio.Server | None = None
        self._connections: list[TcpConnection] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def port(self) -> int:
        return self._port

    async def start(self) -> None:
        """Start the listener on a random port."""
        port = random.randint(self._port_min, self._port_max)

        # Try a few ports if the first one is busy
        for attempt in range(10):
            try:
                self._server = await asyncio.start_server(
                    self._handle_incoming,
                    self._host,
                    port,
                )
                break
            except OSError:
                port = random.randint(self._port_min, self._port_max)
        else:
            await self._fire("error", TransportError("Could not bind to any transfer port"))
            return

        self._port = port
        self.open = True
        logger.info(f"Peer {self.id} listening on port {port}")
        await self._fire("open", self.id)

    async def connect(self, remote_id: str) -> TcpConnection:
        if not self.open:
            raise TransportError("Transport is not open")
        host, port = parse_address(remote_id)

        conn = TcpConnection(remote_id)
        self._track(conn)
        # Dial in the background so the caller can wire handlers first
        task = asyncio.create_task(self._dial(conn, host, port))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return conn

    async def _dial(self, conn: TcpConnection, host: str, port: int) -> None:
        writer: asyncio.StreamWriter | None = None
        try:
            reader, writer = await asyncio.open_connection(host, port)
            cipher = await perform_handshake(reader, writer, initiator=True)
            hello = await self._exchange_hello(reader, writer, cipher)
        except Exception as e:
            logger.warning(f"Failed to connect to {conn.peer}: {e}")
            if writer:
                writer.close()
            await conn._set_failed(TransportError(f"Could not connect to peer {conn.peer}: {e}"))
            return

        conn.remote_id = hello.get("peer_id")
        await conn._attach(reader, writer, cipher)

    async def _handle_incoming(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Handle a new incoming TCP connection."""
        try:
            cipher = await perform_handshake(reader, writer, initiator=False)
            hello = await self._exchange_hello(reader, writer, cipher)
        except Exception as e:
            logger.warning(f"Rejected incoming connection: {e}")
            writer.close()
            return

        host = writer.get_extra_info("peername")[0]
        conn = TcpConnection(f"{host}:{hello.get('port', 0)}")
        conn.remote_id = hello.get("peer_id")
        self._track(conn)
        await self._fire("connection", conn)
        await conn._attach(reader, writer, cipher)

    async def _exchange_hello(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        cipher: ChannelCipher,
    ) -> dict:
        hello = json.dumps({"peer_id": self.id, "port": self._port}).encode("utf-8")
        await send_frame(writer, MessageType.HELLO, cipher.seal(hello))

        frame_type, sealed = await recv_frame(reader)
        if frame_type != MessageType.HELLO:
            raise ConnectionError(f"Expected HELLO, got {frame_type:#x}")
        return json.loads(cipher.open(sealed).decode("utf-8"))

    def _track(self, conn: TcpConnection) -> None:
        self._connections = [
            c for c in self._connections
            if c.state in (ConnectionState.CONNECTING, ConnectionState.OPEN)
        ]
        self._connections.append(conn)

    async def destroy(self) -> None:
        if self.destroyed:
            return
        self.destroyed = True
        self.open = False

        for task in list(self._tasks):
            task.cancel()
        for conn in self._connections:
            await conn.close()
        self._connections.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info(f"Peer {self.id} stopped listening")
        await self._fire("close")
