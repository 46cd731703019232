"""
Transport abstraction consumed by the peer session.

A PeerTransport owns one identity on the network and hands out
DataConnections: reliable, ordered, message-framed channels to a
remote identity. Both fire named lifecycle events to handlers
registered with ``on()``.

PeerTransport events:  open(peer_id), connection(conn), error(exc), close()
DataConnection events: open(), data(message), close(), error(exc)
"""

import inspect
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    FAILED = "failed"


class Observable:
    """Named-event handler registry; handlers may be sync or async."""

    def __init__(self) -> None:
        self._handlers: dict[str, list] = {}

    def on(self, event: str, handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    async def _fire(self, event: str, *args) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"{type(self).__name__} '{event}' handler error: {e}")


class DataConnection(Observable, ABC):
    """One established (or establishing) channel to a remote peer."""

    def __init__(self, peer: str) -> None:
        super().__init__()
        self.peer = peer
        self.state = ConnectionState.CONNECTING

    @property
    def open(self) -> bool:
        return self.state == ConnectionState.OPEN

    @property
    @abstractmethod
    def buffered_amount(self) -> int:
        """Bytes accepted by send() but not yet handed to the remote side."""

    @abstractmethod
    async def send(self, message: dict) -> None:
        """Send one message; raises TransportError if the channel is not open."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""

    async def _set_open(self) -> None:
        if self.state != ConnectionState.CONNECTING:
            return
        self.state = ConnectionState.OPEN
        await self._fire("open")

    async def _set_closed(self) -> None:
        if self.state in (ConnectionState.CLOSED, ConnectionState.FAILED):
            return
        self.state = ConnectionState.CLOSED
        await self._fire("close")

    async def _set_failed(self, error: Exception) -> None:
        if self.state in (ConnectionState.CLOSED, ConnectionState.FAILED):
            return
        self.state = ConnectionState.FAILED
        await self._fire("error", error)


class PeerTransport(Observable, ABC):
    """One identity on the peer network."""

    def __init__(self, peer_id: str) -> None:
        super().__init__()
        self.id = peer_id
        self.open = False
        self.destroyed = False

    @abstractmethod
    async def start(self) -> None:
        """Claim the identity; fires ``open`` on success and ``error`` on failure."""

    @abstractmethod
    async def connect(self, remote_id: str) -> DataConnection:
        """Request a connection to ``remote_id``; it fires ``open`` once usable."""

    @abstractmethod
    async def destroy(self) -> None:
        """Release the identity and close every connection it owns."""


# Builds a transport for a freshly generated peer id
TransportFactory = Callable[[str], PeerTransport]
