"""
SealPay SDK - Blob Store
Content-addressed filesystem storage for sealed blobs.

Blobs are written under a temporary name and only renamed to
`<content id>.bin` once their digest is known, so a partial write is
never visible under a real id.
"""

import os
import asyncio
import logging
import secrets
from pathlib import Path
from typing import AsyncIterator, BinaryIO, List

from .crypto import validate_content_id
from .errors import IntegrityError, NotFoundError

logger = logging.getLogger("sealpay.blob_store")


class BlobStore:
    """
    Filesystem blob store.

    Example:
        store = BlobStore("blobs")
        temp = store.new_temp()
        ...write sealed bytes to temp...
        path = await store.commit(temp, content_id)
    """

    TEMP_PREFIX = "tmp-"
    SUFFIX = ".bin"
    READ_CHUNK_SIZE = 64 * 1024

    def __init__(self, root: os.PathLike):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, content_id: str) -> Path:
        validate_content_id(content_id)
        return self.root / f"{content_id}{self.SUFFIX}"

    def new_temp(self) -> Path:
        return self.root / f"{self.TEMP_PREFIX}{secrets.token_hex(8)}{self.SUFFIX}"

    def open_temp(self, temp: Path) -> BinaryIO:
        return open(temp, "xb")

    def exists(self, content_id: str) -> bool:
        return self.path_for(content_id).is_file()

    async def commit(self, temp: Path, content_id: str) -> Path:
        """
        Publish a fully written temp file under its content-addressed name.

        Raises:
            IntegrityError: if a finalized blob already sits at that name
        """
        final = self.path_for(content_id)
        if final.exists():
            raise IntegrityError(f"Finalized blob {content_id[:12]}... already exists without a record")

        await asyncio.to_thread(os.replace, temp, final)
        logger.debug(f"Published blob {content_id[:12]}...")
        return final

    async def discard_temp(self, temp: Path):
        try:
            await asyncio.to_thread(os.unlink, temp)
        except FileNotFoundError:
            pass

    async def remove(self, content_id: str):
        """Roll back a published blob whose metadata row never landed."""
        try:
            await asyncio.to_thread(os.unlink, self.path_for(content_id))
            logger.warning(f"Rolled back published blob {content_id[:12]}...")
        except FileNotFoundError:
            pass

    async def read(self, content_id: str) -> AsyncIterator[bytes]:
        """Stream a sealed blob in chunks."""
        path = self.path_for(content_id)
        if not await asyncio.to_thread(path.is_file):
            raise NotFoundError(f"Blob {content_id[:12]}... not found")

        fh = await asyncio.to_thread(open, path, "rb")
        try:
            while True:
                chunk = await asyncio.to_thread(fh.read, self.READ_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            await asyncio.to_thread(fh.close)

    def list_ids(self) -> List[str]:
        """Ids of every finalized blob (temp files excluded)."""
        ids = []
        for entry in self.root.iterdir():
            name = entry.name
            if name.startswith(self.TEMP_PREFIX) or not name.endswith(self.SUFFIX):
                continue
            ids.append(name[: -len(self.SUFFIX)])
        return sorted(ids)
