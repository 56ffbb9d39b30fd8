"""
Crosspost Chunked Uploader
==========================
Shared driver for resumable/chunked vendor uploads.

Flow (every protocol):
  start    - negotiate a session for the total size     (phase retry policy)
  transfer - send chunks sequentially                    (per-chunk retry policy)
  finish   - finalize with metadata, own longer timeout  (phase retry policy)

Protocols (Facebook Graph, TikTok) only describe the HTTP calls; retry,
chunking and client lifetime live here.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Iterator, Tuple, Callable, Awaitable

import httpx

from .models import UploadResult
from .retry import MB, phase_policy, chunk_policy

logger = logging.getLogger("crosspost")

# start < finish; transfer is sized for one chunk
START_TIMEOUT = httpx.Timeout(30.0)
TRANSFER_TIMEOUT = httpx.Timeout(120.0)
FINISH_TIMEOUT = httpx.Timeout(180.0)


def select_chunk_size(total_size: int) -> int:
    if total_size < 20 * MB:
        return 2 * MB
    if total_size <= 100 * MB:
        return 5 * MB
    if total_size <= 500 * MB:
        return 10 * MB
    return 20 * MB


def chunk_count(total_size: int, chunk_size: int) -> int:
    return max(1, math.ceil(total_size / chunk_size))


def iter_chunks(data: bytes, chunk_size: int) -> Iterator[Tuple[int, int, bytes]]:
    """Yields (index, start_offset, chunk)."""
    view = memoryview(data)
    for index, offset in enumerate(range(0, len(data), chunk_size)):
        yield index, offset, bytes(view[offset:offset + chunk_size])


def content_range(offset: int, chunk_len: int, total_size: int) -> str:
    return f"bytes {offset}-{offset + chunk_len - 1}/{total_size}"


@dataclass
class UploadSession:
    """Vendor handle returned by start and threaded through transfer/finish."""
    session_id: str
    upload_url: Optional[str] = None
    video_id: Optional[str] = None
    extra: dict = field(default_factory=dict)


class ChunkedProtocol(ABC):
    """HTTP calls for one vendor's chunked upload."""

    name = "chunked"

    @abstractmethod
    async def start(self, client: httpx.AsyncClient, total_size: int, chunk_size: int) -> UploadSession:
        ...

    @abstractmethod
    async def transfer(
        self,
        client: httpx.AsyncClient,
        session: UploadSession,
        index: int,
        offset: int,
        chunk: bytes,
        total_size: int,
    ) -> None:
        ...

    @abstractmethod
    async def finish(self, client: httpx.AsyncClient, session: UploadSession) -> UploadResult:
        ...


class ChunkedUploader:
    """Runs a ChunkedProtocol over a byte buffer with the shared retry policies."""

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport = transport
        self.sleep = sleep

    async def upload(self, protocol: ChunkedProtocol, data: bytes) -> UploadResult:
        total_size = len(data)
        chunk_size = select_chunk_size(total_size)
        total_chunks = chunk_count(total_size, chunk_size)
        phases = phase_policy(total_size, sleep=self.sleep)
        chunks = chunk_policy(sleep=self.sleep)

        logger.info(
            f"{protocol.name}: chunked upload {total_size} bytes, "
            f"{total_chunks} x {chunk_size // MB}MB"
        )

        async with httpx.AsyncClient(transport=self.transport, timeout=TRANSFER_TIMEOUT) as client:
            session = await phases.run(
                lambda: protocol.start(client, total_size, chunk_size),
                label=f"{protocol.name} start",
            )

            for index, offset, chunk in iter_chunks(data, chunk_size):
                await chunks.run(
                    lambda index=index, offset=offset, chunk=chunk: protocol.transfer(
                        client, session, index, offset, chunk, total_size
                    ),
                    label=f"{protocol.name} chunk {index + 1}/{total_chunks}",
                )

            result = await phases.run(
                lambda: protocol.finish(client, session),
                label=f"{protocol.name} finish",
            )

        logger.info(f"{protocol.name}: upload complete video_id={result.video_id}")
        return result
