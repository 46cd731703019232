"""
Observer plumbing for UI-facing occurrences.

Components that surface events subclass EventEmitter; subscribers
register an async callback and receive (event_type, data) pairs.
"""

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Named occurrences pushed to the UI."""
    CONNECTION_STATUS = "connection-status"
    CONNECTION_ERROR = "connection-error"
    TRANSFER_START = "transfer-start"
    TRANSFER_PROGRESS = "transfer-progress"
    TRANSFER_COMPLETE = "transfer-complete"
    TRANSFER_ERROR = "transfer-error"


class EventEmitter:
    """Holds subscriber callbacks and fans events out to them."""

    def __init__(self) -> None:
        self._event_callbacks: list = []  # async fn(event_type, data)

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: EventType, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in list(self._event_callbacks):
            try:
                await cb(event_type.value, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")
