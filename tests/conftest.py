import asyncio
import os

import pytest

from errors import TransportError
from transport.base import ConnectionState, DataConnection


async def settle(delay: float = 0.05) -> None:
    """Let background tasks (connection setup, delivery pumps) run."""
    await asyncio.sleep(delay)


class EventRecorder:
    """Subscriber that keeps every (event_type, data) pair it receives."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    async def __call__(self, event_type: str, data: dict) -> None:
        self.events.append((event_type, data))

    def of(self, event_type: str) -> list[dict]:
        return [data for kind, data in self.events if kind == event_type]

    def names(self) -> list[str]:
        return [kind for kind, _ in self.events]

    def progress(self) -> list[int]:
        return [data["percent"] for data in self.of("transfer-progress")]


class RecordingConnection(DataConnection):
    """Open connection that records every message handed to send()."""

    def __init__(self, peer: str = "remote", fail_after: int | None = None) -> None:
        super().__init__(peer)
        self.sent: list[dict] = []
        self.buffered = 0
        self._fail_after = fail_after
        self.state = ConnectionState.OPEN

    @property
    def buffered_amount(self) -> int:
        return self.buffered

    async def send(self, message: dict) -> None:
        if not self.open:
            raise TransportError("Connection is not open")
        if self._fail_after is not None and len(self.sent) >= self._fail_after:
            raise TransportError("Connection reset by peer")
        self.sent.append(message)

    async def close(self) -> None:
        await self._set_closed()

    def chunks(self) -> list[dict]:
        return [m for m in self.sent if m["type"] == "file-chunk"]


class FakeSession:
    """The slice of PeerSessionManager the transfer engine relies on."""

    def __init__(self, connection: DataConnection | None = None) -> None:
        self.connection = connection
        self.message_handlers: list = []
        self.event_callbacks: list = []

    def on_message(self, handler) -> None:
        self.message_handlers.append(handler)

    def on_event(self, callback) -> None:
        self.event_callbacks.append(callback)

    async def emit(self, event_type: str, data: dict) -> None:
        for cb in self.event_callbacks:
            await cb(event_type, data)


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def make_file(tmp_path):
    """Factory: write a file of random bytes and return its path."""

    def _make(name: str, size: int) -> str:
        path = tmp_path / "outbox" / name
        path.parent.mkdir(exist_ok=True)
        path.write_bytes(os.urandom(size))
        return str(path)

    return _make
