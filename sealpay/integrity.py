"""
SealPay SDK - Integrity Checks
Detects finalized blobs without metadata rows and rows without blobs.
Nothing here repairs anything: mismatches need an operator.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from .blob_store import BlobStore
from .errors import IntegrityError, NotFoundError
from .store import MetadataStore

logger = logging.getLogger("sealpay.integrity")


@dataclass
class IntegrityReport:
    orphaned_blobs: List[str] = field(default_factory=list)
    missing_blobs: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.orphaned_blobs and not self.missing_blobs

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "orphaned_blobs": self.orphaned_blobs,
            "missing_blobs": self.missing_blobs,
        }


async def audit(blobs: BlobStore, store: MetadataStore) -> IntegrityReport:
    """Compare the blob directory with the metadata table."""
    on_disk = set(await asyncio.to_thread(blobs.list_ids))
    recorded = set(await store.list_content_ids())

    report = IntegrityReport(
        orphaned_blobs=sorted(on_disk - recorded),
        missing_blobs=sorted(recorded - on_disk),
    )
    if not report.ok:
        logger.error(
            f"Integrity violation: {len(report.orphaned_blobs)} orphaned blob(s), "
            f"{len(report.missing_blobs)} missing blob(s)"
        )
    return report


async def resolve_blob(blobs: BlobStore, store: MetadataStore, content_id: str) -> Path:
    """
    Path of a downloadable blob, checked against its metadata row.

    Raises:
        NotFoundError: neither blob nor row exists
        IntegrityError: exactly one of them exists
    """
    has_blob = await asyncio.to_thread(blobs.exists, content_id)
    has_row = await store.get_content(content_id) is not None

    if has_blob and has_row:
        return blobs.path_for(content_id)
    if not has_blob and not has_row:
        raise NotFoundError(f"Content {content_id[:12]}... not found")

    what = "finalized blob without metadata row" if has_blob else "metadata row without blob"
    logger.error(f"Integrity violation for {content_id[:12]}...: {what}")
    raise IntegrityError(f"Integrity violation: {what}")
