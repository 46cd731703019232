"""
WebDrop: FastAPI application entry point.

Opens the peer session on startup, wires session and transfer events
to the UI WebSocket, serves the REST API and hosts the chat relay.
"""

import logging
import socket
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from api.routes import init_routes, router
from api.websocket import ChatRelay, ConnectionManager
from config import API_HOST, API_PORT, DEFAULT_SAVE_DIR, TRANSPORT
from session.manager import PeerSessionManager
from transfer.engine import TransferEngine
from transfer.sink import DownloadDirectory
from transport.memory import MemoryNetwork
from transport.tcp import TcpTransport

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def get_local_ip() -> str:
    """Best-effort LAN address of this host, for display only."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            # No packets are sent; this only selects the outbound interface
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
    except OSError:
        return "localhost"


if TRANSPORT == "memory":
    transport_factory = MemoryNetwork().create_transport
else:
    transport_factory = TcpTransport

# --- Service singletons ---
session = PeerSessionManager(transport_factory)
transfer_engine = TransferEngine(session)
downloads = DownloadDirectory(DEFAULT_SAVE_DIR)
ws_manager = ConnectionManager()
chat_relay = ChatRelay()

# Wire up event broadcasting
session.on_event(ws_manager.handle_event)
transfer_engine.on_event(ws_manager.handle_event)
transfer_engine.on_file(downloads.save)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info("Starting WebDrop services...")

    try:
        await chat_relay.start()
        await session.initialize()

        logger.info(
            f"WebDrop ready. "
            f"API: {API_HOST}:{API_PORT}, "
            f"Peer ID: {session.peer_id}"
        )

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        # Shutdown
        logger.info("Shutting down WebDrop services...")
        await transfer_engine.close()
        await session.close()
        await chat_relay.stop()


# --- FastAPI app ---
app = FastAPI(
    title="WebDrop",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Inject services into routes
init_routes(session, transfer_engine, downloads)
app.include_router(router)


@app.get("/network-info")
async def network_info():
    return {"localIP": get_local_ip(), "port": API_PORT}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.connect(websocket)
    try:
        while True:
            # Keep the connection alive; we don't expect client messages
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)
    except Exception:
        await ws_manager.disconnect(websocket)


@app.websocket("/messaging")
async def messaging_endpoint(websocket: WebSocket):
    await chat_relay.connect(websocket)
    try:
        while True:
            text = await websocket.receive_text()
            await chat_relay.handle_message(websocket, text)
    except WebSocketDisconnect:
        await chat_relay.disconnect(websocket)
    except Exception:
        await chat_relay.disconnect(websocket)


# --- Static Files (Frontend) ---
BASE_DIR = Path(__file__).parent.parent / "frontend" / "dist"

if BASE_DIR.exists():
    app.mount("/assets", StaticFiles(directory=BASE_DIR / "assets"), name="assets")

    @app.get("/")
    async def read_index():
        return FileResponse(BASE_DIR / "index.html")
else:
    logger.warning(f"Frontend dist not found at {BASE_DIR}. API only mode.")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
