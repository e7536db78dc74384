"""
Fetch-with-progress capability.
Streams a URL to a local file, optionally continuing from a byte offset.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import httpx

from offlaine.config import DOWNLOAD_CHUNK_SIZE, DOWNLOAD_TIMEOUT
from offlaine.errors import TransportFailure
from offlaine.utils.logging import logger

ChunkCallback = Callable[[int, int], None]  # (bytes_so_far, total_bytes)


@dataclass
class FetchResult:
    """Outcome of a single fetch call."""

    bytes_written: int  # Total bytes in the destination file
    total_bytes: int  # 0 when the server did not say
    completed: bool  # False when stopped before the end
    resumed_from: int = 0  # Offset the transfer actually continued from


class Fetcher(ABC):
    """
    Pluggable transport.

    ``supports_range`` tells the caller whether ``offset`` is honoured. When
    it is False a resume has to restart from byte zero.
    """

    supports_range: bool = False

    @abstractmethod
    async def fetch(
        self,
        url: str,
        dest_path: Path,
        on_chunk: Optional[ChunkCallback] = None,
        offset: int = 0,
        stop_event: Optional[asyncio.Event] = None,
    ) -> FetchResult:
        """
        Stream url into dest_path.

        Args:
            url: Source URL
            dest_path: File to write (appended to when offset > 0)
            on_chunk: Called after each received chunk with (bytes_so_far, total_bytes)
            offset: Byte offset to continue from; ignored without range support
            stop_event: Checked between chunks; when set, the fetch returns early

        Returns:
            FetchResult describing how far the transfer got

        Raises:
            TransportFailure: Network or file I/O error
        """


class HttpFetcher(Fetcher):
    """httpx streaming client with HTTP Range support."""

    supports_range = True

    def __init__(
        self,
        chunk_size: int = DOWNLOAD_CHUNK_SIZE,
        timeout: float = DOWNLOAD_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.chunk_size = chunk_size
        self.timeout = timeout
        self._client = client

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(self.timeout, connect=10.0),
        )

    async def fetch(
        self,
        url: str,
        dest_path: Path,
        on_chunk: Optional[ChunkCallback] = None,
        offset: int = 0,
        stop_event: Optional[asyncio.Event] = None,
    ) -> FetchResult:
        headers = {}
        if offset > 0:
            headers["Range"] = f"bytes={offset}-"

        client = self._client or self._make_client()
        try:
            async with client.stream("GET", url, headers=headers) as response:
                # Nothing left to send: the partial file is already complete
                if offset > 0 and response.status_code == 416:
                    return FetchResult(offset, offset, True, offset)

                if response.status_code >= 400:
                    raise TransportFailure(
                        f"GET {url} returned {response.status_code}",
                        status_code=response.status_code,
                    )

                # Server ignored the Range header: start over
                if offset > 0 and response.status_code != 206:
                    logger.warning(f"Server ignored range request for {url}, restarting")
                    offset = 0

                content_length = int(response.headers.get("content-length", 0))
                total = content_length + offset if content_length else 0
                written = offset
                mode = "ab" if offset > 0 else "wb"

                if on_chunk:
                    on_chunk(written, total)

                f = await asyncio.to_thread(open, dest_path, mode)
                try:
                    async for chunk in response.aiter_bytes(chunk_size=self.chunk_size):
                        if stop_event and stop_event.is_set():
                            return FetchResult(written, total, False, offset)
                        if not chunk:
                            continue
                        await asyncio.to_thread(f.write, chunk)
                        written += len(chunk)
                        if on_chunk:
                            on_chunk(written, total)
                finally:
                    await asyncio.to_thread(f.close)

                return FetchResult(written, total, True, offset)

        except httpx.HTTPError as e:
            raise TransportFailure(f"GET {url} failed: {e}") from e
        except OSError as e:
            raise TransportFailure(f"Writing {dest_path} failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()
