import logging
import os
import re
from pathlib import Path
from typing import NamedTuple, Optional
from uuid import uuid4

import anyio

logger = logging.getLogger(__name__)

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./uploads")
UPLOAD_BASE_URL = os.getenv("UPLOAD_BASE_URL", "/uploads")

_EXTENSION = re.compile(r"[a-z0-9]{1,8}")


class StoredBlob(NamedTuple):
    key: str
    url: str


class LocalBlobStore:
    """Blob store on the local filesystem.

    Keys are unique per upload and double as the relative path under `root`.
    """

    def __init__(self, root: Optional[str] = None, base_url: Optional[str] = None):
        self.root = Path(root or UPLOAD_DIR)
        self.base_url = (base_url or UPLOAD_BASE_URL).rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"invalid blob key {key!r}")
        return path

    def new_key(self, prefix: str, filename: Optional[str]) -> str:
        ext = ""
        if filename and "." in filename:
            suffix = filename.rsplit(".", 1)[1].lower()
            if _EXTENSION.fullmatch(suffix):
                ext = "." + suffix
        return f"{prefix.strip('/')}/{uuid4().hex}{ext}"

    async def store(self, content: bytes, prefix: str, filename: Optional[str] = None) -> StoredBlob:
        key = self.new_key(prefix, filename)
        path = self._path(key)

        def _write():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)

        await anyio.to_thread.run_sync(_write)
        logger.debug("Stored blob key=%s size=%s", key, len(content))
        return StoredBlob(key=key, url=f"{self.base_url}/{key}")

    async def delete(self, key: str) -> bool:
        """Remove a blob; False when it was not there."""
        path = self._path(key)

        def _unlink():
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            return True

        removed = await anyio.to_thread.run_sync(_unlink)
        if not removed:
            logger.warning("Blob not found on delete key=%s", key)
        return removed
