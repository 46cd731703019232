"""Pydantic models for the peer session."""

from enum import Enum

from pydantic import BaseModel, Field

from config import RECONNECT_DELAY


class SessionState(str, Enum):
    """Lifecycle of the local peer identity."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    OPEN = "open"
    ERROR = "error"


class ReconnectPolicy(BaseModel):
    """
    Delay schedule for re-initializing after a transport error.

    The default is a fixed delay retried forever; a multiplier above 1
    grows the delay per consecutive failure, capped by max_delay.
    """
    delay: float = Field(default=RECONNECT_DELAY, ge=0)
    multiplier: float = Field(default=1.0, ge=1.0)
    max_delay: float | None = None

    def next_delay(self, attempt: int) -> float:
        delay = self.delay * (self.multiplier ** attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


class SessionInfo(BaseModel):
    """Session state exposed to the frontend."""
    peer_id: str | None
    state: SessionState
    connected: bool
    remote_peer: str | None = None
