"""REST API routes for WebDrop."""

import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from errors import NotInitialized, TransportError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_session = None
_engine = None
_downloads = None


def init_routes(session, engine, downloads) -> None:
    """Inject service dependencies into the routes module."""
    global _session, _engine, _downloads
    _session = session
    _engine = engine
    _downloads = downloads


# --- Session ---

@router.get("/session")
async def get_session():
    """Return the local peer id and connection state."""
    return _session.get_info().model_dump()


@router.post("/session/reinitialize")
async def reinitialize_session():
    """Drop the current identity and request a new one."""
    peer_id = await _session.initialize()
    return {"peer_id": peer_id}


class ConnectBody(BaseModel):
    peer_id: str


@router.post("/connect")
async def connect(body: ConnectBody):
    """Connect to a remote peer, replacing any current connection."""
    remote_id = body.peer_id.strip()
    if not remote_id:
        raise HTTPException(status_code=400, detail="Peer id is required")
    try:
        conn = await _session.connect_to(remote_id)
    except NotInitialized as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransportError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"status": "connecting", "peer": conn.peer}


@router.post("/disconnect")
async def disconnect():
    await _session.disconnect()
    return {"status": "disconnected"}


# --- Transfers ---

class CreateTransferBody(BaseModel):
    file_paths: list[str]


@router.get("/transfers")
async def get_transfers():
    """Return the current inbound and outbound transfer state."""
    return _engine.get_status().model_dump()


@router.post("/transfers")
async def create_transfer(body: CreateTransferBody):
    """Send files to the connected peer using absolute file paths.

    No file upload is required; the backend reads files directly from disk.
    """
    valid_paths = []
    for path in body.file_paths:
        if os.path.isfile(path):
            valid_paths.append(path)
        else:
            logger.warning(f"Skipping invalid file path: {path}")

    if not valid_paths:
        raise HTTPException(status_code=400, detail="No valid files selected")

    if not _session.is_connected:
        raise HTTPException(status_code=409, detail="No connection")

    _engine.queue_batch(valid_paths)

    return {
        "files": [os.path.basename(p) for p in valid_paths],
        "message": f"Queued {len(valid_paths)} file(s) for transfer",
    }


# --- Settings ---

class SettingsBody(BaseModel):
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return {"save_dir": _downloads.save_dir}


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.save_dir is not None:
        try:
            _downloads.save_dir = body.save_dir
        except OSError as e:
            raise HTTPException(
                status_code=400, detail=f"Invalid directory: {e}"
            )
    return {"status": "updated"}
