"""
Peer session manager: owns the local peer identity and its single
active connection.

Keeps exactly one transport identity alive, replaces the connection
whenever a new one is made or accepted, and re-initializes the identity
after transport errors on the configured reconnect policy.
"""

import asyncio
import logging

from errors import NotInitialized, TransportError
from events import EventEmitter, EventType
from session.identity import generate_peer_id
from session.models import ReconnectPolicy, SessionInfo, SessionState
from transport.base import DataConnection, PeerTransport, TransportFactory

logger = logging.getLogger(__name__)


class PeerSessionManager(EventEmitter):
    """One peer identity, at most one connection."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        reconnect_policy: ReconnectPolicy | None = None,
        id_generator=generate_peer_id,
    ) -> None:
        super().__init__()
        self._transport_factory = transport_factory
        self._policy = reconnect_policy or ReconnectPolicy()
        self._id_generator = id_generator
        self._transport: PeerTransport | None = None
        self._connection: DataConnection | None = None
        self._state = SessionState.UNINITIALIZED
        self._message_handlers: list = []  # async fn(message: dict)
        self._retry_task: asyncio.Task | None = None
        self._failures = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def peer_id(self) -> str | None:
        return self._transport.id if self._transport else None

    @property
    def transport(self) -> PeerTransport | None:
        return self._transport

    @property
    def connection(self) -> DataConnection | None:
        return self._connection

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and self._connection.open

    @property
    def reconnect_pending(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    def on_message(self, handler) -> None:
        """Register handler: async fn(message) for data from the active connection."""
        self._message_handlers.append(handler)

    def get_info(self) -> SessionInfo:
        return SessionInfo(
            peer_id=self.peer_id,
            state=self._state,
            connected=self.is_connected,
            remote_peer=self._connection.peer if self._connection else None,
        )

    # --- Identity lifecycle ---

    async def initialize(self) -> str:
        """
        Tear down any current identity and open a new one.

        Safe to call repeatedly; each call supersedes the previous
        identity. Returns the requested peer id.
        """
        self._cancel_retry()
        await self._teardown()

        peer_id = self._id_generator()
        transport = self._transport_factory(peer_id)
        self._transport = transport
        self._state = SessionState.INITIALIZING

        transport.on("open", lambda pid: self._on_open(transport, pid))
        transport.on("connection", lambda conn: self._on_connection(transport, conn))
        transport.on("error", lambda err: self._on_transport_error(transport, err))

        logger.info(f"Initializing peer with ID {peer_id}...")
        await transport.start()
        return peer_id

    async def close(self) -> None:
        """Drop the identity for good (shutdown)."""
        self._cancel_retry()
        await self._teardown()
        self._state = SessionState.UNINITIALIZED
        logger.info("Peer session closed")

    async def _teardown(self) -> None:
        conn, self._connection = self._connection, None
        if conn:
            await conn.close()

        transport, self._transport = self._transport, None
        if transport:
            await transport.destroy()

    async def _on_open(self, transport: PeerTransport, peer_id: str) -> None:
        if transport is not self._transport:
            return
        self._state = SessionState.OPEN
        self._failures = 0
        logger.info(f"Connected to peer network with ID: {peer_id}")
        await self._emit(EventType.CONNECTION_STATUS, {"connected": False})

    # --- Connections ---

    async def connect_to(self, remote_id: str) -> DataConnection:
        """Open a connection to ``remote_id``, replacing any existing one."""
        if self._transport is None or self._state != SessionState.OPEN:
            raise NotInitialized("Peer not initialized")

        await self._drop_connection()

        logger.info(f"Attempting to connect to: {remote_id}")
        try:
            conn = await self._transport.connect(remote_id)
        except TransportError as e:
            logger.error(f"Failed to connect: {e}")
            await self._emit(EventType.CONNECTION_STATUS, {"connected": False})
            await self._emit(EventType.CONNECTION_ERROR, {"error": str(e)})
            raise

        self._connection = conn
        await self._wire_connection(conn)
        return conn

    async def on_incoming_connection(self, conn: DataConnection) -> None:
        """Accept an inbound connection, replacing any existing one."""
        logger.info(f"Incoming connection from: {conn.peer}")
        if self._connection is not conn:
            await self._drop_connection()
        self._connection = conn
        await self._wire_connection(conn)

    async def disconnect(self) -> None:
        """Close the active connection, if any."""
        if self._connection is None:
            return
        await self._drop_connection()

    async def _drop_connection(self) -> None:
        """
        Close the active connection and report it gone.

        Listeners holding per-connection state (a half-received file)
        see connected: false before anything from a replacement arrives.
        """
        # Detach first so the close event of the old connection is ignored
        conn, self._connection = self._connection, None
        if conn:
            logger.info(f"Closing connection to {conn.peer}")
            await conn.close()
            await self._emit(EventType.CONNECTION_STATUS, {"connected": False})

    async def _on_connection(self, transport: PeerTransport, conn: DataConnection) -> None:
        if transport is not self._transport:
            await conn.close()
            return
        await self.on_incoming_connection(conn)

    async def _wire_connection(self, conn: DataConnection) -> None:
        conn.on("open", lambda: self._on_connection_open(conn))
        conn.on("data", lambda message: self._on_connection_data(conn, message))
        conn.on("close", lambda: self._on_connection_closed(conn))
        conn.on("error", lambda err: self._on_connection_error(conn, err))
        if conn.open:
            await self._on_connection_open(conn)

    async def _on_connection_open(self, conn: DataConnection) -> None:
        if conn is not self._connection:
            return
        logger.info(f"Connected to peer: {conn.peer}")
        await self._emit(EventType.CONNECTION_STATUS, {"connected": True})

    async def _on_connection_data(self, conn: DataConnection, message) -> None:
        if conn is not self._connection:
            return
        for handler in list(self._message_handlers):
            try:
                await handler(message)
            except Exception as e:
                logger.error(f"Message handler error: {e}")

    async def _on_connection_closed(self, conn: DataConnection) -> None:
        if conn is not self._connection:
            return
        self._connection = None
        logger.info("Connection closed")
        await self._emit(EventType.CONNECTION_STATUS, {"connected": False})

    async def _on_connection_error(self, conn: DataConnection, err: Exception) -> None:
        if conn is not self._connection:
            return
        self._connection = None
        logger.error(f"Connection error: {err}")
        await self._emit(EventType.CONNECTION_STATUS, {"connected": False})
        await self._emit(EventType.CONNECTION_ERROR, {"error": str(err)})

    # --- Failure recovery ---

    async def _on_transport_error(self, transport: PeerTransport, err: Exception) -> None:
        if transport is not self._transport:
            return
        await self._fail(err)

    async def _fail(self, err: Exception) -> None:
        logger.error(f"Peer error: {err}")
        self._state = SessionState.ERROR
        await self._emit(EventType.CONNECTION_STATUS, {"connected": False})
        await self._emit(EventType.CONNECTION_ERROR, {"error": str(err)})
        self._schedule_reinitialize()

    def _schedule_reinitialize(self) -> None:
        self._cancel_retry()
        delay = self._policy.next_delay(self._failures)
        self._failures += 1
        logger.info(f"Reinitializing peer in {delay:.1f}s")
        self._retry_task = asyncio.create_task(self._reinitialize_after(delay))

    async def _reinitialize_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        logger.info("Attempting to reinitialize peer connection...")
        try:
            await self.initialize()
        except Exception as e:
            await self._fail(e)

    def _cancel_retry(self) -> None:
        task, self._retry_task = self._retry_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
