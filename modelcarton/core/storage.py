"""
Archive Store.

Turns a pack reference (local path, ``file://`` URL or ``http(s)://`` URL)
into a local, integrity-verified archive path.

Remote archives are cached content-addressed under ``cache_dir``::

    cache_dir/
        index.json                 cache key -> {url, sha256, size, last_used}
        blobs/<sha256>.carton      verified archives
        tmp/*.part                 in-progress downloads

The cache key of a URL is the sha256 of the URL. Concurrent resolves of the
same URL share one download.
"""

import os
import time
import uuid
import errno
import shutil
import asyncio
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse
from urllib.request import url2pathname

from modelcarton.config import CartonSettings, get_settings
from modelcarton.core.exceptions import (
    CorruptArchive,
    DownloadFailed,
    IntegrityMismatch,
    ReferenceNotFound,
)
from modelcarton.core.fetcher import ArchiveFetcher, HttpArchiveFetcher
from modelcarton.core.metrics import get_metrics
from modelcarton.packs.format import verify_archive
from modelcarton.utils.hashing import sha256_bytes
from modelcarton.utils.serialization import dumps_canonical, loads_json


logger = logging.getLogger(__name__)


REMOTE_SCHEMES = ("http", "https")

BLOB_SUFFIX = ".carton"


def is_remote(reference: str) -> bool:
    return urlparse(reference).scheme.lower() in REMOTE_SCHEMES


def local_path(reference: Union[str, Path]) -> Path:
    """Map a local reference (plain path or ``file://`` URL) to a Path."""
    if isinstance(reference, Path):
        return reference
    parsed = urlparse(reference)
    if parsed.scheme.lower() == "file":
        return Path(url2pathname(parsed.path))
    if len(parsed.scheme) > 1:
        raise ReferenceNotFound(reference, f"unsupported scheme '{parsed.scheme}'")
    return Path(reference).expanduser()


@dataclass
class CacheEntry:
    """Index record for one cached URL."""
    url: str
    sha256: str
    size: int
    last_used: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "sha256": self.sha256,
            "size": self.size,
            "last_used": self.last_used,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            url=data["url"],
            sha256=data["sha256"],
            size=int(data["size"]),
            last_used=float(data.get("last_used", 0.0)),
        )


class CacheIndex:
    """
    Thread-safe cache index persisted as JSON.

    Every mutation rewrites the file atomically (temp file + rename).
    """

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.RLock()
        self._entries: Dict[str, CacheEntry] = self._load()

    def _load(self) -> Dict[str, CacheEntry]:
        if not self.path.exists():
            return {}
        try:
            raw = loads_json(self.path.read_bytes())
            return {key: CacheEntry.from_dict(value) for key, value in raw.items()}
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Cache index {self.path} is unreadable, starting empty: {e}")
            return {}

    def _save(self) -> None:
        tmp = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex}")
        try:
            tmp.write_bytes(dumps_canonical({k: v.to_dict() for k, v in self._entries.items()}))
            os.replace(tmp, self.path)
        finally:
            tmp.unlink(missing_ok=True)

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[key] = entry
            self._save()

    def delete(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is not None:
                self._save()
            return entry

    def touch(self, key: str) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.last_used = time.time()
                self._save()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._save()

    def items(self) -> List[Tuple[str, CacheEntry]]:
        with self._lock:
            return list(self._entries.items())

    def references(self, sha256: str) -> bool:
        """Check whether any key still points at a blob."""
        with self._lock:
            return any(e.sha256 == sha256 for e in self._entries.values())

    def total_size(self) -> int:
        """Size of all distinct blobs referenced by the index."""
        with self._lock:
            return sum({e.sha256: e.size for e in self._entries.values()}.values())


class ArchiveStore:
    """
    Resolves pack references to verified local archives.

    Example:
        store = ArchiveStore()

        path = await store.resolve("https://example.com/model.carton")
        path = await store.resolve("/models/local.carton")

        await store.evict("https://example.com/model.carton")
    """

    def __init__(
        self,
        cache_dir: Optional[Union[str, Path]] = None,
        fetcher: Optional[ArchiveFetcher] = None,
        max_cache_bytes: Optional[int] = None,
        settings: Optional[CartonSettings] = None,
    ):
        settings = settings or get_settings()
        self.cache_dir = Path(cache_dir or settings.cache_dir).expanduser()
        self.max_cache_bytes = settings.max_cache_bytes if max_cache_bytes is None else max_cache_bytes
        self.fetcher = fetcher or HttpArchiveFetcher(
            timeout_s=settings.download_timeout_s,
            chunk_size=settings.download_chunk_size,
        )

        self._blobs_dir = self.cache_dir / "blobs"
        self._tmp_dir = self.cache_dir / "tmp"
        self._index: Optional[CacheIndex] = None

        # Guards the in-flight map, index creation and eviction
        self._lock = threading.RLock()
        self._inflight: Dict[str, asyncio.Future] = {}

        self._metrics = get_metrics()

    @staticmethod
    def cache_key(url: str) -> str:
        return sha256_bytes(url.encode("utf-8"))

    def blob_path(self, sha256: str) -> Path:
        return self._blobs_dir / f"{sha256}{BLOB_SUFFIX}"

    @property
    def index(self) -> CacheIndex:
        with self._lock:
            if self._index is None:
                self._blobs_dir.mkdir(parents=True, exist_ok=True)
                self._tmp_dir.mkdir(parents=True, exist_ok=True)
                self._index = CacheIndex(self.cache_dir / "index.json")
            return self._index

    # -------------------------------------------------------------------------
    # Resolve
    # -------------------------------------------------------------------------

    async def resolve(
        self,
        reference: Union[str, Path],
        expected_sha256: Optional[str] = None,
    ) -> Path:
        """
        Resolve a reference to a verified local archive path.

        Args:
            reference: Local path, ``file://`` URL or ``http(s)://`` URL
            expected_sha256: Content hash the caller expects, if known

        Raises:
            ReferenceNotFound: Local path missing or unsupported scheme
            DownloadFailed: Network, HTTP or disk failure
            IntegrityMismatch: Cached or downloaded archive failed verification
            CorruptArchive: Downloaded bytes are not a carton archive
        """
        if isinstance(reference, str) and is_remote(reference):
            return await self._resolve_remote(reference, expected_sha256)

        path = local_path(reference)
        if not path.is_file():
            raise ReferenceNotFound(str(reference), "no such file")
        if expected_sha256:
            await asyncio.to_thread(verify_archive, path, str(reference), expected_sha256)
        return path

    async def _resolve_remote(self, url: str, expected_sha256: Optional[str]) -> Path:
        key = self.cache_key(url)

        while True:
            with self._lock:
                future = self._inflight.get(key)
                leader = future is None
                if leader:
                    future = asyncio.get_running_loop().create_future()
                    self._inflight[key] = future

            if not leader:
                try:
                    path = await asyncio.shield(future)
                except asyncio.CancelledError:
                    if future.cancelled():
                        # The leader gave up, take over the download
                        continue
                    raise
                self._check_expected(url, path, expected_sha256)
                return path

            try:
                path = await self._resolve_uncoalesced(url, key, expected_sha256)
            except asyncio.CancelledError:
                future.cancel()
                raise
            except BaseException as e:
                future.set_exception(e)
                # Mark retrieved so an unobserved failure is not reported twice
                future.exception()
                raise
            else:
                future.set_result(path)
                return path
            finally:
                with self._lock:
                    if self._inflight.get(key) is future:
                        del self._inflight[key]

    async def _resolve_uncoalesced(self, url: str, key: str, expected_sha256: Optional[str]) -> Path:
        index = self.index
        entry = index.get(key)

        if entry is not None:
            path = self.blob_path(entry.sha256)
            try:
                await asyncio.to_thread(verify_archive, path, url, entry.sha256)
            except ReferenceNotFound:
                logger.warning(f"Cached archive for {url} disappeared, downloading again")
                self._discard(key)
            except (IntegrityMismatch, CorruptArchive) as e:
                self._metrics.increment_counter("carton_integrity_failures_total")
                self._discard(key)
                logger.warning(f"Discarded cached archive for {url}: {e}")
                if isinstance(e, IntegrityMismatch):
                    raise
                raise IntegrityMismatch(url, entry.sha256, None) from e
            else:
                self._metrics.increment_counter("carton_cache_hits_total")
                index.touch(key)
                self._check_expected(url, path, expected_sha256)
                logger.debug(f"Cache hit for {url}: {path}")
                return path

        self._metrics.increment_counter("carton_cache_misses_total")
        return await self._download(url, key, expected_sha256)

    async def _download(self, url: str, key: str, expected_sha256: Optional[str]) -> Path:
        part = self._tmp_dir / f"{key[:16]}-{uuid.uuid4().hex}.part"
        logger.info(f"Downloading carton {url}")

        try:
            with self._metrics.measure_time("carton_download_duration_seconds"):
                with self._metrics.tracer.start_span("carton.download", attributes={"url": url}):
                    await self.fetcher.fetch(url, part)
            self._metrics.increment_counter("carton_downloads_total")

            try:
                manifest = await asyncio.to_thread(verify_archive, part, url, expected_sha256)
            except IntegrityMismatch:
                self._metrics.increment_counter("carton_integrity_failures_total")
                raise
            except ReferenceNotFound:
                raise DownloadFailed(url, "fetcher produced no file")

            blob = self.blob_path(manifest.content_sha256)
            os.replace(part, blob)
            entry = CacheEntry(
                url=url,
                sha256=manifest.content_sha256,
                size=blob.stat().st_size,
                last_used=time.time(),
            )
            self.index.put(key, entry)

        except OSError as e:
            if e.errno == errno.ENOSPC:
                raise DownloadFailed(url, "no space left on device")
            raise
        finally:
            part.unlink(missing_ok=True)

        logger.info(f"Cached carton {url} as {blob.name} ({entry.size} bytes)")
        self._evict_if_needed(keep=key)
        return blob

    def _check_expected(self, url: str, path: Path, expected_sha256: Optional[str]) -> None:
        if expected_sha256 and path.stem != expected_sha256.lower():
            raise IntegrityMismatch(url, expected_sha256.lower(), path.stem)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def _discard(self, key: str) -> int:
        """Drop an index entry, deleting its blob if nothing else uses it."""
        entry = self.index.delete(key)
        if entry is None:
            return 0
        if self.index.references(entry.sha256):
            return 0
        self.blob_path(entry.sha256).unlink(missing_ok=True)
        return entry.size

    def _evict_if_needed(self, keep: Optional[str] = None) -> int:
        """Evict least recently used entries until under ``max_cache_bytes``."""
        if not self.max_cache_bytes:
            return 0

        index = self.index
        evicted = 0
        with self._lock:
            total = index.total_size()
            for key, entry in sorted(index.items(), key=lambda item: item[1].last_used):
                if total <= self.max_cache_bytes:
                    break
                if key == keep or key in self._inflight:
                    continue
                total -= self._discard(key)
                evicted += 1
                logger.info(f"Evicted cached carton {entry.url}")
        return evicted

    async def evict(self, reference: str) -> bool:
        """Remove one URL from the cache. Returns True if it was cached."""
        key = self.cache_key(reference)
        with self._lock:
            if key in self._inflight:
                return False
        if self.index.get(key) is None:
            return False
        self._discard(key)
        return True

    async def clear(self) -> None:
        """Remove every cached archive."""
        index = self.index
        with self._lock:
            index.clear()
            shutil.rmtree(self._blobs_dir, ignore_errors=True)
            self._blobs_dir.mkdir(parents=True, exist_ok=True)

    def list_cached(self) -> List[CacheEntry]:
        return [entry for _, entry in self.index.items()]
