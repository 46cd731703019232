"""
WebSocket handlers: UI event push and the chat relay.

Chat clients must take part in the heartbeat: the relay sends a
``{"type": "ping"}`` text frame every interval, and a client that sends
nothing back before the next one (a ``{"type": "pong"}`` reply or any chat
message) is closed with code 1001. Clients should answer pings and must
not render them as chat messages; pongs are never relayed.
"""

import asyncio
import json
import logging

from fastapi import WebSocket
from pydantic import BaseModel, ConfigDict, ValidationError

from config import HEARTBEAT_INTERVAL

logger = logging.getLogger(__name__)

PING = json.dumps({"type": "ping"})


class ConnectionManager:
    """Manages WebSocket connections and broadcasts events."""

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"WebSocket client connected. Total: {len(self._connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
                self._forget(websocket)
        logger.info(f"WebSocket client disconnected. Total: {len(self._connections)}")

    def _forget(self, websocket: WebSocket) -> None:
        """Hook for per-client bookkeeping; called with the lock held."""

    async def send_all(self, message: str, exclude: WebSocket | None = None) -> int:
        """Send raw text to every client except ``exclude``. Returns the number reached."""
        sent = 0
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._connections:
                if ws is exclude:
                    continue
                try:
                    await ws.send_text(message)
                    sent += 1
                except Exception:
                    dead.append(ws)
            for ws in dead:
                self._connections.remove(ws)
                self._forget(ws)
        return sent

    async def broadcast(self, event: str, data: dict) -> None:
        """Broadcast an event to all connected WebSocket clients."""
        await self.send_all(json.dumps({"event": event, "data": data}))

    async def handle_event(self, event_type: str, data: dict) -> None:
        """
        Event handler compatible with PeerSessionManager.on_event()
        and TransferEngine.on_event().
        """
        await self.broadcast(event_type, data)


class ChatMessage(BaseModel):
    """Minimum shape of a relayed chat message; extra fields pass through."""
    model_config = ConfigDict(extra="allow")

    sender: str
    content: str
    timestamp: str | float
    type: str


class ChatRelay(ConnectionManager):
    """
    Fans each chat message out to every other connected client.

    Liveness: every heartbeat interval, clients that sent nothing since
    the previous ping (a pong counts) are closed and dropped; the rest
    get a fresh ping.
    """

    def __init__(self, heartbeat_interval: float = HEARTBEAT_INTERVAL) -> None:
        super().__init__()
        self._heartbeat_interval = heartbeat_interval
        self._alive: set[WebSocket] = set()
        self._heartbeat_task: asyncio.Task | None = None

    async def connect(self, websocket: WebSocket) -> None:
        await super().connect(websocket)
        async with self._lock:
            self._alive.add(websocket)

    def _forget(self, websocket: WebSocket) -> None:
        self._alive.discard(websocket)

    async def start(self) -> None:
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def handle_message(self, websocket: WebSocket, text: str) -> None:
        """Process one text frame from ``websocket``."""
        async with self._lock:
            if websocket in self._connections:
                self._alive.add(websocket)

        try:
            payload = json.loads(text)
        except ValueError:
            logger.warning("Dropping chat frame that is not JSON")
            return

        if isinstance(payload, dict) and payload.get("type") == "pong":
            return

        try:
            ChatMessage.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Dropping malformed chat message: {e.error_count()} error(s)")
            return

        # Relay the original text so the payload reaches peers unmodified
        sent = await self.send_all(text, exclude=websocket)
        logger.debug(f"Relayed chat message to {sent} client(s)")

    async def heartbeat(self) -> None:
        """Drop clients that missed the last ping, then ping the rest."""
        async with self._lock:
            stale = [ws for ws in self._connections if ws not in self._alive]
            for ws in stale:
                self._connections.remove(ws)
            self._alive.clear()

        for ws in stale:
            logger.info("Dropping chat client that missed a heartbeat")
            try:
                await ws.close(code=1001)
            except Exception as e:
                logger.debug(f"Close of stale chat client failed: {e}")

        await self.send_all(PING)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await self.heartbeat()
            except Exception as e:
                logger.error(f"Heartbeat error: {e}")
