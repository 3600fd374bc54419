# tixpay/services/storage.py
import logging
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class Storage(Protocol):
    def upload(self, data: bytes, path: str, content_type: str = "image/png") -> str:
        """Store ``data`` under ``path`` (overwriting) and return its public URL."""


class LocalStorage:
    """Writes objects below a directory that is served at ``public_url``."""

    def __init__(self, root: str, public_url: str):
        self.root = Path(root)
        self.public_url = public_url.rstrip("/")

    def upload(self, data: bytes, path: str, content_type: str = "image/png") -> str:
        relative = Path(path.lstrip("/"))
        if ".." in relative.parts:
            raise ValueError(f"refusing to write outside storage root: {path}")
        target = self.root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.debug("stored %s (%d bytes, %s)", relative, len(data), content_type)
        return f"{self.public_url}/{relative.as_posix()}"
