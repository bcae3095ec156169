from __future__ import annotations

import asyncio
import os
import stat

import pytest

from lancache.cache_proxy.store import CacheStore
from tests.utils.files import cache_files, staging_files


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


async def _drain(generator) -> bytes:
    collected = bytearray()
    async for chunk in generator:
        collected.extend(chunk)
    return bytes(collected)


@pytest.fixture
def store(tmp_path) -> CacheStore:
    store = CacheStore(tmp_path / "cache")
    store.initialise()
    return store


def test_lookup_misses_absent_and_directories(store: CacheStore) -> None:
    target = store.resolve("/depot/730/chunk1")

    assert store.lookup(target) is None
    target.mkdir(parents=True)
    assert store.lookup(target) is None
    assert store.lookup(store.root) is None


@pytest.mark.asyncio
async def test_populate_commits_complete_object(store: CacheStore) -> None:
    target = store.resolve("/depot/730/chunk1")
    store.ensure_parent(target)
    staging = store.stage(target)

    body = await _drain(store.populate(staging, _chunks(b"abc", b"", b"def")))

    assert body == b"abcdef"
    assert staging.committed
    assert staging.bytes_written == 6
    entry = store.lookup(target)
    assert entry is not None
    assert entry.size == 6
    assert target.read_bytes() == b"abcdef"
    assert stat.S_IMODE(os.stat(target).st_mode) == 0o644
    assert staging_files(store.root) == []


def test_staging_file_lives_beside_target(store: CacheStore) -> None:
    target = store.resolve("/depot/730/chunk1")
    store.ensure_parent(target)

    staging = store.stage(target)
    try:
        assert staging.path.parent == target.parent
        assert staging.path.name.startswith("chunk1.tmp")
        assert store.lookup(target) is None
    finally:
        staging.discard()
    assert not staging.path.exists()


@pytest.mark.asyncio
async def test_readers_never_see_partial_object(store: CacheStore) -> None:
    target = store.resolve("/depot/730/chunk1")
    store.ensure_parent(target)
    target.write_bytes(b"old")
    release = asyncio.Event()
    observed: list[bytes | None] = []

    async def gated():
        yield b"new-"
        await release.wait()
        yield b"object"

    async def populate() -> bytes:
        return await _drain(store.populate(store.stage(target), gated()))

    task = asyncio.create_task(populate())
    for _ in range(5):
        await asyncio.sleep(0.01)
        entry = store.lookup(target)
        observed.append(entry.path.read_bytes() if entry else None)
    release.set()
    await task

    assert set(observed) == {b"old"}
    assert target.read_bytes() == b"new-object"
    assert staging_files(store.root) == []


@pytest.mark.asyncio
async def test_source_failure_discards_staging(store: CacheStore) -> None:
    target = store.resolve("/depot/730/chunk1")
    store.ensure_parent(target)

    async def broken():
        yield b"partial"
        raise ConnectionResetError("origin went away")

    with pytest.raises(ConnectionResetError):
        await _drain(store.populate(store.stage(target), broken()))

    assert cache_files(store.root) == []


@pytest.mark.asyncio
async def test_consumer_stopping_early_discards_staging(store: CacheStore) -> None:
    target = store.resolve("/depot/730/chunk1")
    store.ensure_parent(target)
    staging = store.stage(target)
    tee = store.populate(staging, _chunks(b"a", b"b", b"c"))

    assert await tee.__anext__() == b"a"
    await tee.aclose()

    assert not staging.committed
    assert cache_files(store.root) == []


@pytest.mark.asyncio
async def test_rename_failure_discards_staging(store: CacheStore, monkeypatch) -> None:
    target = store.resolve("/depot/730/chunk1")
    store.ensure_parent(target)

    def refuse(src, dst):
        raise PermissionError("rename refused")

    monkeypatch.setattr(os, "replace", refuse)

    with pytest.raises(PermissionError):
        await _drain(store.populate(store.stage(target), _chunks(b"payload")))

    assert cache_files(store.root) == []


def test_discard_is_idempotent(store: CacheStore) -> None:
    target = store.resolve("/depot/730/chunk1")
    store.ensure_parent(target)
    staging = store.stage(target)

    staging.discard()
    staging.discard()

    assert staging.closed
    assert cache_files(store.root) == []


def test_ensure_parent_rejects_directory_targets(store: CacheStore) -> None:
    with pytest.raises(IsADirectoryError):
        store.ensure_parent(store.root)

    occupied = store.resolve("/depot/730")
    occupied.mkdir(parents=True)
    with pytest.raises(IsADirectoryError):
        store.ensure_parent(occupied)


def test_ensure_parent_fails_when_file_blocks_path(store: CacheStore) -> None:
    (store.root / "depot").write_bytes(b"")

    with pytest.raises(OSError):
        store.ensure_parent(store.resolve("/depot/730/chunk1"))
