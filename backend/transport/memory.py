"""
In-process peer network.

MemoryNetwork plays the part of the signaling service for transports
living in the same event loop: it registers identities and routes
connection requests. Each MemoryConnection delivers into a bounded
queue on the remote end, so a slow receiver pushes back on senders.
"""

import asyncio
import logging

from errors import TransportError
from transport.base import ConnectionState, DataConnection, PeerTransport

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 64

_CLOSED = object()


def _message_size(message: dict) -> int:
    return sum(
        len(value) for value in message.values()
        if isinstance(value, (bytes, bytearray))
    )


class MemoryConnection(DataConnection):
    """One end of an in-process connection pair."""

    def __init__(self, peer: str, queue_size: int) -> None:
        super().__init__(peer)
        self._inbox: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._inbox_bytes = 0
        self._remote: MemoryConnection | None = None
        self._pump_task: asyncio.Task | None = None

    @property
    def buffered_amount(self) -> int:
        if self._remote is None:
            return 0
        return self._remote._inbox_bytes

    async def send(self, message: dict) -> None:
        remote = self._remote
        if not self.open or remote is None or not remote.open:
            raise TransportError(f"Connection to {self.peer} is not open")
        size = _message_size(message)
        remote._inbox_bytes += size
        await remote._inbox.put((dict(message), size))

    async def close(self) -> None:
        if self.state in (ConnectionState.CLOSED, ConnectionState.FAILED):
            return
        remote = self._remote
        was_open = self.open
        self._stop_pump()
        await self._set_closed()
        if remote is None:
            return
        if was_open and remote.open:
            await remote._inbox.put(_CLOSED)
        elif remote.state == ConnectionState.CONNECTING:
            await remote._set_closed()

    def _start_pump(self) -> None:
        self._pump_task = asyncio.create_task(self._pump())

    def _stop_pump(self) -> None:
        task = self._pump_task
        self._pump_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _pump(self) -> None:
        """Deliver queued messages to the data handlers in arrival order."""
        while self.open:
            item = await self._inbox.get()
            if item is _CLOSED:
                await self._set_closed()
                return
            message, size = item
            self._inbox_bytes -= size
            await self._fire("data", message)


class MemoryTransport(PeerTransport):
    """A peer identity registered on a MemoryNetwork."""

    def __init__(self, network: "MemoryNetwork", peer_id: str) -> None:
        super().__init__(peer_id)
        self._network = network
        self._connections: list[MemoryConnection] = []
        self._tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        try:
            self._network._register(self)
        except TransportError as e:
            logger.warning(f"Could not open peer {self.id}: {e}")
            await self._fire("error", e)
            return
        self.open = True
        await self._fire("open", self.id)

    async def connect(self, remote_id: str) -> MemoryConnection:
        if not self.open:
            raise TransportError("Transport is not open")
        remote_transport = self._network.lookup(remote_id)
        if remote_transport is None or not remote_transport.open:
            raise TransportError(f"Could not connect to peer {remote_id}")

        queue_size = self._network.queue_size
        local = MemoryConnection(remote_id, queue_size)
        remote = MemoryConnection(self.id, queue_size)
        local._remote = remote
        remote._remote = local
        self._connections.append(local)
        remote_transport._connections.append(remote)

        # Open asynchronously so the caller can wire handlers first
        task = asyncio.create_task(self._establish(local, remote, remote_transport))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return local

    async def _establish(
        self,
        local: MemoryConnection,
        remote: MemoryConnection,
        remote_transport: "MemoryTransport",
    ) -> None:
        await remote_transport._fire("connection", remote)

        if not (local.state == remote.state == ConnectionState.CONNECTING):
            await local.close()
            await remote.close()
            return
        local._start_pump()
        remote._start_pump()
        await local._set_open()
        await remote._set_open()

    async def destroy(self) -> None:
        if self.destroyed:
            return
        self.destroyed = True
        self.open = False
        self._network._unregister(self)

        for task in list(self._tasks):
            task.cancel()
        for conn in self._connections:
            await conn.close()
        self._connections.clear()
        await self._fire("close")


class MemoryNetwork:
    """Identity registry and connection router for MemoryTransports."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self._peers: dict[str, MemoryTransport] = {}

    def create_transport(self, peer_id: str) -> MemoryTransport:
        """TransportFactory bound to this network."""
        return MemoryTransport(self, peer_id)

    def peers(self) -> list[str]:
        return list(self._peers)

    def lookup(self, peer_id: str) -> MemoryTransport | None:
        return self._peers.get(peer_id)

    async def drop(self, peer_id: str) -> None:
        """Cut a peer off the network, as a signaling outage would."""
        transport = self._peers.pop(peer_id, None)
        if transport is None:
            return
        transport.open = False
        logger.info(f"Dropped peer {peer_id} from the network")
        await transport._fire(
            "error", TransportError("Lost connection to the peer network")
        )

    def _register(self, transport: MemoryTransport) -> None:
        if transport.id in self._peers:
            raise TransportError(f'ID "{transport.id}" is taken')
        self._peers[transport.id] = transport

    def _unregister(self, transport: MemoryTransport) -> None:
        if self._peers.get(transport.id) is transport:
            del self._peers[transport.id]
