"""
Archive Fetchers.

Stream a remote archive into a local file. The archive store owns caching,
verification and the final rename; fetchers only move bytes.
"""

import errno
import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import aiohttp

from modelcarton.core.exceptions import DownloadFailed


logger = logging.getLogger(__name__)


class ArchiveFetcher(ABC):
    """Base class for anything that can download an archive to a path."""

    @abstractmethod
    async def fetch(self, url: str, destination: Path) -> int:
        """
        Download ``url`` into ``destination``.

        Returns:
            Number of bytes written

        Raises:
            DownloadFailed: On network, HTTP or disk errors
        """
        pass


class HttpArchiveFetcher(ArchiveFetcher):
    """
    Streams archives over HTTP(S) with aiohttp.

    Example:
        fetcher = HttpArchiveFetcher(timeout_s=60)
        size = await fetcher.fetch(url, Path("/tmp/model.part"))
    """

    def __init__(
        self,
        timeout_s: float = 300.0,
        chunk_size: int = 1 << 20,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.timeout_s = timeout_s
        self.chunk_size = chunk_size
        self._session = session

    async def fetch(self, url: str, destination: Path) -> int:
        if self._session is not None:
            return await self._fetch(self._session, url, destination)

        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            return await self._fetch(session, url, destination)

    async def _fetch(self, session: aiohttp.ClientSession, url: str, destination: Path) -> int:
        written = 0
        try:
            async with session.get(url) as response:
                if response.status >= 400:
                    raise DownloadFailed(url, f"HTTP {response.status}", response.status)

                with open(destination, "wb") as f:
                    async for chunk in response.content.iter_chunked(self.chunk_size):
                        f.write(chunk)
                        written += len(chunk)

        except aiohttp.ClientError as e:
            raise DownloadFailed(url, str(e) or type(e).__name__)
        except asyncio.TimeoutError:
            raise DownloadFailed(url, f"timed out after {self.timeout_s}s")
        except OSError as e:
            if e.errno == errno.ENOSPC:
                raise DownloadFailed(url, "no space left on device")
            raise DownloadFailed(url, f"cannot write {destination}: {e}")

        logger.debug(f"Fetched {written} bytes from {url}")
        return written
