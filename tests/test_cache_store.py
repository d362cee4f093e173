"""
Tests for the persistent content-addressed cache store.
"""

import asyncio

import pytest

from conftest import make_media_info
from embedbot.exceptions import CacheIOError
from embedbot.pipeline.cache_store import CacheStore
from embedbot.pipeline.fingerprint import fingerprint_content, fingerprint_reference
from embedbot.pipeline.types import (
    CacheEntry,
    EvictionPolicy,
    MediaReference,
    Variant,
    VariantOutput,
)

DAY = 86400.0


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_entry(fp, uri_prefix="mxc://hs.test/"):
    return CacheEntry(
        fingerprint=fp.digest,
        variants=[
            Variant("thumbnail", 4, "image/jpeg", media_reference=MediaReference(uri_prefix + "thumb"),
                    width=600, height=338, blurhash="LEHV6nWB2yk8pyo0adR*.7kCMdnj"),
            Variant("preview-clip", 6, "video/mp4", media_reference=MediaReference(uri_prefix + "clip"),
                    width=720, height=404),
        ],
        media_info=make_media_info(),
        source_reference="https://x/video.mp4",
    )


def make_outputs():
    return {
        "thumbnail": VariantOutput("thumbnail", b"jpeg", "image/jpeg", ".jpg", 600, 338),
        "preview-clip": VariantOutput("preview-clip", b"mp4mp4", "video/mp4", ".mp4", 720, 404),
    }


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(tmp_path, clock):
    s = CacheStore(tmp_path / "cache", clock=clock)
    yield s
    s.close()


class TestLookupInsert:
    @pytest.mark.asyncio
    async def test_miss_on_empty_store(self, store):
        assert await store.lookup(fingerprint_content(b"nothing")) is None
        assert await store.lookup(fingerprint_reference("https://x/none")) is None

    @pytest.mark.asyncio
    async def test_round_trip(self, store):
        fp = fingerprint_content(b"video")
        inserted = await store.insert(fp, make_entry(fp), outputs=make_outputs())

        found = await store.lookup(fp)
        assert found is not None
        assert found.variant_kinds == ["thumbnail", "preview-clip"]
        assert [v.media_reference for v in found.variants] == [v.media_reference for v in inserted.variants]
        assert found.media_info == make_media_info()
        assert found.total_bytes == 10
        assert found.variants[0].blurhash == "LEHV6nWB2yk8pyo0adR*.7kCMdnj"
        assert found.variants[1].blurhash is None
        assert await store.read_variant(fp, "preview-clip") == b"mp4mp4"
        assert await store.read_variant(fp, "thumbnail") == b"jpeg"

    @pytest.mark.asyncio
    async def test_insert_is_idempotent(self, store):
        fp = fingerprint_content(b"video")
        first = await store.insert(fp, make_entry(fp, "mxc://hs.test/first-"), outputs=make_outputs())
        second = await store.insert(fp, make_entry(fp, "mxc://hs.test/second-"), outputs=make_outputs())

        assert second.primary_reference == first.primary_reference
        found = await store.lookup(fp)
        assert found.primary_reference == MediaReference("mxc://hs.test/first-clip")
        assert len(found.variants) == 2
        assert store.stats()["entries"] == 1

    @pytest.mark.asyncio
    async def test_alias_resolves_reference_fingerprint(self, store):
        content = fingerprint_content(b"video")
        ref = fingerprint_reference("https://x/video.mp4")
        await store.insert(content, make_entry(content), outputs=make_outputs(), alias=ref)

        found = await store.lookup(ref)
        assert found is not None
        assert found.fingerprint == content.digest

        other = fingerprint_reference("https://mirror/video.mp4")
        await store.add_alias(other, content)
        assert (await store.lookup(other)).fingerprint == content.digest

    @pytest.mark.asyncio
    async def test_survives_reopen(self, tmp_path, clock):
        fp = fingerprint_content(b"video")
        first = CacheStore(tmp_path / "cache", clock=clock)
        await first.insert(fp, make_entry(fp), outputs=make_outputs())
        first.close()

        reopened = CacheStore(tmp_path / "cache", clock=clock)
        try:
            found = await reopened.lookup(fp)
            assert found is not None
            assert await reopened.read_variant(fp, "thumbnail") == b"jpeg"
        finally:
            reopened.close()


class TestCorruption:
    @pytest.mark.asyncio
    async def test_corrupt_row_is_a_miss(self, store):
        fp = fingerprint_content(b"video")
        await store.insert(fp, make_entry(fp), outputs=make_outputs())
        with store._conn:
            store._conn.execute("UPDATE entries SET data = ? WHERE fingerprint = ?", ("{not json", fp.digest))

        assert await store.lookup(fp) is None

    @pytest.mark.asyncio
    async def test_corrupt_row_is_replaced_on_insert(self, store):
        fp = fingerprint_content(b"video")
        with store._conn:
            store._conn.execute(
                "INSERT INTO entries (fingerprint, data, total_bytes, created_at, last_access) VALUES (?, ?, 0, 0, 0)",
                (fp.digest, '{"variants": []}'),
            )
        await store.insert(fp, make_entry(fp), outputs=make_outputs())
        assert (await store.lookup(fp)).variant_kinds == ["thumbnail", "preview-clip"]


class TestAtomicity:
    @pytest.mark.asyncio
    async def test_failed_insert_leaves_no_entry_or_blobs(self, store, mocker):
        fp = fingerprint_content(b"video")
        mocker.patch_object(store, "_write_blob", side_effect=[None, OSError("disk full")])

        with pytest.raises(CacheIOError):
            await store.insert(fp, make_entry(fp), outputs=make_outputs())

        assert await store.lookup(fp) is None
        assert not store._entry_dir(fp.digest).exists()

    @pytest.mark.asyncio
    async def test_cancelled_insert_commits_nothing(self, store, mocker):
        fp = fingerprint_content(b"video")
        started = asyncio.Event()
        real_write = store._write_blob

        async def stalled(path, data):
            await real_write(path, data)
            started.set()
            await asyncio.sleep(3600)

        mocker.patch_object(store, "_write_blob", side_effect=stalled)
        task = asyncio.create_task(store.insert(fp, make_entry(fp), outputs=make_outputs()))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await store.lookup(fp) is None
        assert not store._entry_dir(fp.digest).exists()

    @pytest.mark.asyncio
    async def test_orphan_blobs_swept(self, store):
        orphan = store.blob_dir / "ab" / ("ab" + "0" * 30)
        orphan.mkdir(parents=True)
        (orphan / "thumbnail.jpg").write_bytes(b"leftover")

        fp = fingerprint_content(b"video")
        await store.insert(fp, make_entry(fp), outputs=make_outputs())

        assert await store.sweep_orphans() == 1
        assert not orphan.exists()
        assert await store.read_variant(fp, "thumbnail") == b"jpeg"


class TestTouchAndEviction:
    @pytest.mark.asyncio
    async def test_touch_updates_last_access(self, store, clock):
        fp = fingerprint_content(b"video")
        await store.insert(fp, make_entry(fp), outputs=make_outputs())
        clock.now += 100
        assert await store.touch(fp) is True
        assert (await store.lookup(fp)).last_access == clock.now
        assert await store.touch(fingerprint_content(b"absent")) is False

    @pytest.mark.asyncio
    async def test_expired_entries_evicted_and_storage_freed(self, store, clock):
        old = fingerprint_content(b"old")
        fresh = fingerprint_content(b"fresh")
        old_ref = fingerprint_reference("https://x/old.mp4")
        await store.insert(old, make_entry(old), outputs=make_outputs(), alias=old_ref)
        clock.now += 20 * DAY
        await store.insert(fresh, make_entry(fresh), outputs=make_outputs())
        clock.now += 15 * DAY

        report = await store.evict_expired(EvictionPolicy(retention_seconds=30 * DAY, max_bytes=10**9))

        assert report.expired == [old.digest]
        assert report.freed_bytes == 10
        assert await store.lookup(old) is None
        assert await store.lookup(old_ref) is None
        assert not store._entry_dir(old.digest).exists()
        assert await store.lookup(fresh) is not None
        assert store.stats() == {"entries": 1, "total_bytes": 10, "aliases": 0}

    @pytest.mark.asyncio
    async def test_size_cap_evicts_least_recently_used_first(self, store, clock):
        fps = [fingerprint_content(bytes([i])) for i in range(3)]
        for fp in fps:
            await store.insert(fp, make_entry(fp), outputs=make_outputs())
            clock.now += 10
        # Oldest insert becomes most recently used
        await store.touch(fps[0])

        report = await store.evict_expired(EvictionPolicy(retention_seconds=DAY, max_bytes=20))

        assert report.over_cap == [fps[1].digest]
        assert await store.lookup(fps[1]) is None
        assert await store.lookup(fps[0]) is not None
        assert await store.lookup(fps[2]) is not None
        assert store.stats()["total_bytes"] == 20

    @pytest.mark.asyncio
    async def test_eviction_keeps_remote_references_untouched(self, store, clock):
        fp = fingerprint_content(b"video")
        entry = await store.insert(fp, make_entry(fp), outputs=make_outputs())
        clock.now += 40 * DAY

        report = await store.evict_expired(EvictionPolicy(retention_seconds=30 * DAY, max_bytes=10**9))

        assert report.evicted == [fp.digest]
        # Published references are immutable; the entry that carried them is still a valid object
        assert entry.primary_reference == MediaReference("mxc://hs.test/clip")
