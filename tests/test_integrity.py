"""Tests for blob/metadata consistency checks."""
import threading

import pytest

from sealpay.errors import IntegrityError, NotFoundError
from sealpay.integrity import audit, resolve_blob


async def test_clean_store(sealer, blobs, store, as_chunks):
    sealed = await sealer.seal(as_chunks(b"consistent" * 10))

    report = await audit(blobs, store)

    assert report.ok
    assert await resolve_blob(blobs, store, sealed.id) == blobs.path_for(sealed.id)


async def test_orphaned_blob(blobs, store):
    orphan = "cd" * 32
    blobs.path_for(orphan).write_bytes(b"no row")

    report = await audit(blobs, store)
    assert report.orphaned_blobs == [orphan]
    assert report.to_dict()["ok"] is False

    with pytest.raises(IntegrityError):
        await resolve_blob(blobs, store, orphan)


async def test_missing_blob(sealer, blobs, store, as_chunks):
    sealed = await sealer.seal(as_chunks(b"vanishing" * 10))
    blobs.path_for(sealed.id).unlink()

    report = await audit(blobs, store)
    assert report.missing_blobs == [sealed.id]

    with pytest.raises(IntegrityError):
        await resolve_blob(blobs, store, sealed.id)


async def test_temp_files_ignored(blobs, store):
    (blobs.root / "tmp-0123456789abcdef.bin").write_bytes(b"partial")
    assert (await audit(blobs, store)).ok


async def test_unknown_id(blobs, store):
    with pytest.raises(NotFoundError):
        await resolve_blob(blobs, store, "ef" * 32)


async def test_blob_read_streams_whole_file(sealer, blobs, as_chunks, monkeypatch):
    monkeypatch.setattr(blobs, "READ_CHUNK_SIZE", 4096)
    sealed = await sealer.seal(as_chunks(b"z" * 50_000, size=8192))

    chunks = [chunk async for chunk in blobs.read(sealed.id)]

    assert len(chunks) > 1
    assert b"".join(chunks) == blobs.path_for(sealed.id).read_bytes()


async def test_blob_read_unknown_id(blobs):
    with pytest.raises(NotFoundError):
        async for _ in blobs.read("ef" * 32):
            pass


async def test_directory_scans_run_off_the_event_loop(sealer, blobs, store, as_chunks, monkeypatch):
    sealed = await sealer.seal(as_chunks(b"scanned in a worker" * 10))
    threads = []
    real_exists, real_list_ids = blobs.exists, blobs.list_ids

    def exists(content_id):
        threads.append(threading.current_thread())
        return real_exists(content_id)

    def list_ids():
        threads.append(threading.current_thread())
        return real_list_ids()

    monkeypatch.setattr(blobs, "exists", exists)
    monkeypatch.setattr(blobs, "list_ids", list_ids)

    assert (await audit(blobs, store)).ok
    await resolve_blob(blobs, store, sealed.id)

    assert len(threads) == 2
    assert threading.current_thread() not in threads
