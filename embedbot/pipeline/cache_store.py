"""
Persistent content-addressed cache of published media. [CA][RM]

Layout under the cache directory:
- `index.sqlite3` (WAL): `entries` keyed by content fingerprint, with an
  index on `last_access` for eviction scans, and `aliases` mapping
  reference fingerprints to content fingerprints.
- `blobs/<fp[:2]>/<fp>/<kind><ext>`: stored variant bytes.

Blobs are written to a temporary name and renamed into place before the
entry row is committed, so a reader either sees a complete entry or none.
Blob directories without a committed row are crash leftovers and are
removed by `sweep_orphans()`.
"""
from __future__ import annotations

import asyncio
import dataclasses
import json
import os
import shutil
import sqlite3
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

import aiofiles

from ..exceptions import CacheCorruptError, CacheIOError
from ..utils.logging import get_logger
from .types import CacheEntry, EvictionPolicy, EvictionReport, Fingerprint, VariantOutput

logger = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS entries (
    fingerprint TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    total_bytes INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL,
    last_access REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_entries_last_access ON entries(last_access);
CREATE TABLE IF NOT EXISTS aliases (
    reference TEXT PRIMARY KEY,
    fingerprint TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_aliases_fingerprint ON aliases(fingerprint);
"""

FingerprintLike = Union[Fingerprint, str]


def _key(fingerprint: FingerprintLike) -> Tuple[str, str]:
    if isinstance(fingerprint, Fingerprint):
        return fingerprint.kind, fingerprint.digest
    return "content", fingerprint


class CacheStore:
    """Durable fingerprint -> CacheEntry mapping with blob storage and eviction."""

    def __init__(self, root: Union[Path, str], clock: Callable[[], float] = time.time):
        self.root = Path(root).expanduser()
        self.blob_dir = self.root / "blobs"
        self._clock = clock
        try:
            self.blob_dir.mkdir(parents=True, exist_ok=True)
            # One connection, used only from the event loop thread
            self._conn = sqlite3.connect(str(self.root / "index.sqlite3"), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.executescript(_SCHEMA)
        except (OSError, sqlite3.Error) as e:
            raise CacheIOError(f"cannot open cache at {self.root}: {e}") from e
        self._write_lock = asyncio.Lock()
        removed = self._sweep_orphans_sync()
        logger.info(
            f"💾 Cache store opened at {self.root} (orphans removed: {removed})",
            extra={"subsys": "cache"},
        )

    # Reads

    def _resolve(self, fingerprint: FingerprintLike) -> Optional[str]:
        kind, digest = _key(fingerprint)
        if kind == "content":
            return digest
        row = self._conn.execute(
            "SELECT fingerprint FROM aliases WHERE reference = ?", (digest,)
        ).fetchone()
        return row[0] if row else None

    def _load(self, digest: str) -> Optional[CacheEntry]:
        row = self._conn.execute(
            "SELECT data, last_access FROM entries WHERE fingerprint = ?", (digest,)
        ).fetchone()
        if row is None:
            return None
        try:
            entry = CacheEntry.from_dict(json.loads(row[0]))
        except ValueError as e:
            raise CacheCorruptError(f"entry {digest[:12]} is not valid JSON: {e}") from e
        entry.last_access = float(row[1])
        return entry

    async def lookup(self, fingerprint: FingerprintLike) -> Optional[CacheEntry]:
        """Return the committed entry for a content or reference fingerprint.

        A corrupt entry is reported as a miss so the pipeline re-derives it.
        """
        try:
            digest = self._resolve(fingerprint)
            if digest is None:
                return None
            return self._load(digest)
        except CacheCorruptError as e:
            logger.warning(
                f"⚠️ Corrupt cache entry treated as miss: {e}",
                extra={"subsys": "cache", "fingerprint": str(fingerprint)},
            )
            return None
        except sqlite3.Error as e:
            logger.warning(f"⚠️ Cache lookup failed, treating as miss: {e}", extra={"subsys": "cache"})
            return None

    async def read_variant(self, fingerprint: FingerprintLike, kind: str) -> Optional[bytes]:
        entry = await self.lookup(fingerprint)
        if entry is None:
            return None
        variant = entry.variant(kind)
        if variant is None or not variant.storage_ref:
            return None
        path = self.root / variant.storage_ref
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except FileNotFoundError:
            return None

    def stats(self) -> Dict[str, int]:
        count, total = self._conn.execute(
            "SELECT COUNT(*), COALESCE(SUM(total_bytes), 0) FROM entries"
        ).fetchone()
        (aliases,) = self._conn.execute("SELECT COUNT(*) FROM aliases").fetchone()
        return {"entries": int(count), "total_bytes": int(total), "aliases": int(aliases)}

    # Writes

    def _entry_dir(self, digest: str) -> Path:
        return self.blob_dir / digest[:2] / digest

    async def _write_blob(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        async with aiofiles.open(tmp, "wb") as f:
            await f.write(data)
            await f.flush()
        os.replace(tmp, path)

    async def insert(
        self,
        fingerprint: FingerprintLike,
        entry: CacheEntry,
        outputs: Optional[Dict[str, VariantOutput]] = None,
        alias: Optional[Fingerprint] = None,
    ) -> CacheEntry:
        """Durably record `entry`; idempotent per fingerprint.

        If a readable entry already exists it is returned unchanged. Variant
        bytes in `outputs` are stored before the row commits; `alias` is
        committed in the same transaction.
        """
        _, digest = _key(fingerprint)
        async with self._write_lock:
            try:
                existing = self._load(digest)
            except CacheCorruptError as e:
                logger.warning(f"⚠️ Replacing corrupt cache entry: {e}", extra={"subsys": "cache"})
                existing = None
            except sqlite3.Error as e:
                raise CacheIOError(f"cannot read entry {digest[:12]}: {e}") from e
            if existing is not None:
                if alias is not None:
                    self._commit_alias(alias, digest)
                logger.debug(
                    f"Cache insert for {digest[:12]} is a no-op (entry exists)",
                    extra={"subsys": "cache"},
                )
                return existing

            entry_dir = self._entry_dir(digest)
            stored_variants = []
            stored_bytes = 0
            try:
                for variant in entry.variants:
                    output = (outputs or {}).get(variant.kind)
                    if output is None:
                        stored_variants.append(dataclasses.replace(variant))
                        continue
                    path = entry_dir / f"{variant.kind}{output.extension}"
                    await self._write_blob(path, output.data)
                    stored_bytes += len(output.data)
                    stored_variants.append(
                        dataclasses.replace(variant, storage_ref=str(path.relative_to(self.root)))
                    )

                now = self._clock()
                record = dataclasses.replace(
                    entry,
                    fingerprint=digest,
                    variants=stored_variants,
                    created_at=now,
                    last_access=now,
                )
                with self._conn:
                    self._conn.execute(
                        """INSERT OR REPLACE INTO entries
                           (fingerprint, data, total_bytes, created_at, last_access)
                           VALUES (?, ?, ?, ?, ?)""",
                        (digest, json.dumps(record.to_dict()), stored_bytes, now, now),
                    )
                    if alias is not None:
                        self._conn.execute(
                            "INSERT OR REPLACE INTO aliases (reference, fingerprint) VALUES (?, ?)",
                            (alias.digest, digest),
                        )
            except BaseException as e:
                # Includes cancellation: no row was committed, drop partial blobs
                shutil.rmtree(entry_dir, ignore_errors=True)
                if isinstance(e, (OSError, sqlite3.Error)):
                    raise CacheIOError(f"cannot record entry {digest[:12]}: {e}") from e
                raise

        logger.info(
            f"💾 Cached {digest[:12]} ({', '.join(record.variant_kinds)}; {stored_bytes} bytes)",
            extra={"subsys": "cache", "fingerprint": digest},
        )
        return record

    def _commit_alias(self, reference: Fingerprint, digest: str) -> None:
        try:
            with self._conn:
                self._conn.execute(
                    "INSERT OR REPLACE INTO aliases (reference, fingerprint) VALUES (?, ?)",
                    (reference.digest, digest),
                )
        except sqlite3.Error as e:
            raise CacheIOError(f"cannot record alias: {e}") from e

    async def add_alias(self, reference: Fingerprint, content: FingerprintLike) -> None:
        """Point a reference fingerprint at an existing content entry."""
        _, digest = _key(content)
        async with self._write_lock:
            self._commit_alias(reference, digest)

    async def touch(self, fingerprint: FingerprintLike) -> bool:
        """Refresh last-access; returns False when no entry exists."""
        async with self._write_lock:
            try:
                digest = self._resolve(fingerprint)
                if digest is None:
                    return False
                with self._conn:
                    cur = self._conn.execute(
                        "UPDATE entries SET last_access = ? WHERE fingerprint = ?",
                        (self._clock(), digest),
                    )
                return cur.rowcount > 0
            except sqlite3.Error as e:
                logger.warning(f"⚠️ Cache touch failed: {e}", extra={"subsys": "cache"})
                return False

    # Eviction

    def _delete_entries(self, digests: List[str]) -> None:
        with self._conn:
            for digest in digests:
                self._conn.execute("DELETE FROM entries WHERE fingerprint = ?", (digest,))
                self._conn.execute("DELETE FROM aliases WHERE fingerprint = ?", (digest,))

    async def _remove_blobs(self, digests: List[str]) -> None:
        for digest in digests:
            await asyncio.to_thread(shutil.rmtree, self._entry_dir(digest), True)

    async def evict_expired(self, policy: EvictionPolicy, now: Optional[float] = None) -> EvictionReport:
        """Drop entries past the retention window, then the least recently
        used ones until stored bytes fit under the cap.

        Rows go first, then blobs. Published remote media is never touched.
        """
        now = self._clock() if now is None else now
        report = EvictionReport()
        async with self._write_lock:
            try:
                cutoff = now - policy.retention_seconds
                rows = self._conn.execute(
                    "SELECT fingerprint, total_bytes FROM entries WHERE last_access < ? ORDER BY last_access ASC",
                    (cutoff,),
                ).fetchall()
                report.expired = [r[0] for r in rows]
                report.freed_bytes += sum(int(r[1]) for r in rows)
                self._delete_entries(report.expired)

                (total,) = self._conn.execute(
                    "SELECT COALESCE(SUM(total_bytes), 0) FROM entries"
                ).fetchone()
                total = int(total)
                if total > policy.max_bytes:
                    for digest, size in self._conn.execute(
                        "SELECT fingerprint, total_bytes FROM entries ORDER BY last_access ASC"
                    ).fetchall():
                        if total <= policy.max_bytes:
                            break
                        report.over_cap.append(digest)
                        total -= int(size)
                        report.freed_bytes += int(size)
                    self._delete_entries(report.over_cap)
            except sqlite3.Error as e:
                raise CacheIOError(f"eviction failed: {e}") from e

            await self._remove_blobs(report.evicted)
            report.orphans_removed = self._sweep_orphans_sync()

        if report.evicted or report.orphans_removed:
            logger.info(
                f"🧹 Evicted {len(report.expired)} expired and {len(report.over_cap)} over-cap entries "
                f"({report.freed_bytes} bytes), {report.orphans_removed} orphans",
                extra={"subsys": "cache", "event": "cache.evict"},
            )
        return report

    def _sweep_orphans_sync(self) -> int:
        committed = {row[0] for row in self._conn.execute("SELECT fingerprint FROM entries")}
        removed = 0
        if not self.blob_dir.exists():
            return 0
        for shard in self.blob_dir.iterdir():
            if not shard.is_dir():
                continue
            for entry_dir in shard.iterdir():
                if entry_dir.name in committed:
                    for leftover in entry_dir.glob("*.tmp"):
                        leftover.unlink(missing_ok=True)
                    continue
                shutil.rmtree(entry_dir, ignore_errors=True)
                removed += 1
            if not any(shard.iterdir()):
                shard.rmdir()
        return removed

    async def sweep_orphans(self) -> int:
        """Remove blob directories that no committed entry references."""
        async with self._write_lock:
            return self._sweep_orphans_sync()

    def close(self) -> None:
        self._conn.close()
