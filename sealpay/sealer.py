"""
SealPay SDK - Content Sealer
Encrypts an upload, names it by the digest of its ciphertext and records it.
"""

import os
import asyncio
import logging
from pathlib import Path
from typing import AsyncIterable, Optional

from .blob_store import BlobStore
from .crypto import ALGORITHM, StreamSealer, random_key, random_nonce
from .errors import InputError, IntegrityError, PayloadTooLargeError
from .key_vault import KeyVault
from .models import ContentRecord, SealResult
from .store import MetadataStore

logger = logging.getLogger("sealpay.sealer")


class ContentSealer:
    """
    Seals uploads into content-addressed blobs.

    Ordering is strict: the blob is fsync'd under a temp name, published
    under its digest name, then the metadata row is inserted. If the insert
    does not land (failure, duplicate race, cancellation) the published
    blob is removed again, so no finalized blob exists without its row.

    Example:
        sealer = ContentSealer(vault, blobs, store, max_size=10_000_000)
        result = await sealer.seal(request.stream())
        print(result.id, result.size)
    """

    def __init__(
        self,
        vault: KeyVault,
        blobs: BlobStore,
        store: MetadataStore,
        max_size: Optional[int] = None
    ):
        self.vault = vault
        self.blobs = blobs
        self.store = store
        self.max_size = max_size

    async def seal(self, chunks: AsyncIterable[bytes]) -> SealResult:
        """
        Encrypt, digest and publish one upload in a single pass.

        Args:
            chunks: Finite async sequence of plaintext chunks, read once

        Returns:
            SealResult; created=False when identical content already exists

        Raises:
            InputError: empty payload
            PayloadTooLargeError: payload over max_size
        """
        content_key = random_key()
        nonce = random_nonce()
        stream = StreamSealer(content_key, nonce)
        fingerprint = self.vault.fingerprinter()

        temp = self.blobs.new_temp()
        try:
            content_id = await self._write_sealed(chunks, stream, fingerprint, temp)
        except BaseException:
            await self.blobs.discard_temp(temp)
            raise

        size = stream.plaintext_size
        digest = fingerprint.hexdigest()

        existing = await self.store.get_by_fingerprint(digest) or await self.store.get_content(content_id)
        if existing:
            await self.blobs.discard_temp(temp)
            logger.info(f"Duplicate upload of {existing.id[:12]}... ({existing.payment_state.value}) - kept as is")
            return SealResult(existing.id, existing.algorithm, existing.size, created=False)

        wrapped = self.vault.wrap(content_key, content_id)
        record = ContentRecord(
            id=content_id,
            wrapped_key=wrapped.wrapped,
            wrap_nonce=wrapped.wrap_nonce,
            wrap_tag=wrapped.wrap_tag,
            content_nonce=nonce,
            algorithm=ALGORITHM,
            size=size,
            fingerprint=digest
        )

        publish = asyncio.ensure_future(self._publish(temp, record))
        try:
            winner = await asyncio.shield(publish)
        except asyncio.CancelledError:
            # Blob and row land together or not at all; cancel once settled
            await asyncio.wait([publish])
            if not publish.cancelled() and publish.exception() is not None:
                logger.error(f"Publish of {content_id[:12]}... failed after cancellation: {publish.exception()}")
            raise

        if winner is not None:
            return SealResult(winner.id, winner.algorithm, winner.size, created=False)

        logger.info(f"Sealed {content_id[:12]}... ({size} bytes)")
        return SealResult(content_id, ALGORITHM, size, created=True)

    async def _publish(self, temp: Path, record: ContentRecord) -> Optional[ContentRecord]:
        """
        Rename the blob into place and insert its row as one unit.

        Returns:
            None when our row was inserted, else the record that won a race
            against an identical upload
        """
        try:
            await self.blobs.commit(temp, record.id)
        except BaseException:
            await self.blobs.discard_temp(temp)
            raise

        try:
            inserted = await self.store.insert_content(record)
        except BaseException:
            # The insert may have committed before failing to return
            if await self.store.get_content(record.id) is None:
                await self.blobs.remove(record.id)
            raise

        if inserted:
            return None

        winner = await self.store.get_by_fingerprint(record.fingerprint) or await self.store.get_content(record.id)
        if winner is None or winner.id != record.id:
            await self.blobs.remove(record.id)
        if winner is None:
            raise IntegrityError(f"Insert of {record.id[:12]}... conflicted with an unknown record")
        return winner

    async def _write_sealed(self, chunks, stream: StreamSealer, fingerprint, temp: Path) -> str:
        fh = await asyncio.to_thread(self.blobs.open_temp, temp)
        try:
            async for chunk in chunks:
                if not chunk:
                    continue
                if self.max_size is not None and stream.plaintext_size + len(chunk) > self.max_size:
                    raise PayloadTooLargeError(f"Upload exceeds {self.max_size} bytes")
                fingerprint.update(chunk)
                await asyncio.to_thread(fh.write, stream.update(chunk))

            if stream.plaintext_size == 0:
                raise InputError("Empty payload")

            tail, content_id = stream.finalize()
            await asyncio.to_thread(fh.write, tail)
            await asyncio.to_thread(fh.flush)
            await asyncio.to_thread(os.fsync, fh.fileno())
        finally:
            await asyncio.to_thread(fh.close)

        return content_id
