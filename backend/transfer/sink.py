"""Download side: writes received files into a directory."""

import asyncio
import logging
import os

from config import DEFAULT_SAVE_DIR
from transfer.models import ReceivedFile

logger = logging.getLogger(__name__)


class DownloadDirectory:
    """Saves each ReceivedFile under save_dir without overwriting existing files."""

    def __init__(self, save_dir: str = DEFAULT_SAVE_DIR) -> None:
        self._save_dir = save_dir

    @property
    def save_dir(self) -> str:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._save_dir = path

    async def save(self, received: ReceivedFile) -> str:
        """Write the file and return the path it was saved to."""
        path = await asyncio.to_thread(self._write, received)
        logger.info(f"Saved '{received.name}' to {path}")
        return path

    def _write(self, received: ReceivedFile) -> str:
        os.makedirs(self._save_dir, exist_ok=True)
        # Never trust a remote name with path components
        name = os.path.basename(received.name.replace("\\", "/")) or "download"
        stem, ext = os.path.splitext(name)

        path = os.path.join(self._save_dir, name)
        counter = 1
        while os.path.exists(path):
            path = os.path.join(self._save_dir, f"{stem} ({counter}){ext}")
            counter += 1

        with open(path, "wb") as f:
            f.write(received.data)
        return path
