"""Deployment artifact download: streaming HTTP → gunzip → untar.

The response body is fed chunk by chunk through a bounded queue into a
worker thread running ``tarfile`` in stream mode, so memory use does not
depend on the artifact size and the event loop never blocks on
decompression or disk writes.

Provides:
  - fetch_artifact(): download and unpack one artifact into a directory
  - MESH_TOKEN_HEADER: header carrying the execution token
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import shutil
import tarfile
from pathlib import Path
from typing import Any

import aiohttp

from meshexec.errors import DownloadError
from meshexec.logger import logger

MESH_TOKEN_HEADER = "x-mesh-token"

# Chunks buffered between the HTTP reader and the extraction thread.
_QUEUE_DEPTH = 8


class _ChunkReader(io.RawIOBase):
    """Blocking file-like view of an asyncio.Queue of byte chunks.

    Only ever read from the extraction thread. ``None`` marks end of
    stream; an exception instance aborts the read with that exception.
    """

    def __init__(self, queue: asyncio.Queue[Any], loop: asyncio.AbstractEventLoop) -> None:
        super().__init__()
        self._queue = queue
        self._loop = loop
        self._buf = b""
        self._eof = False

    def readable(self) -> bool:
        return True

    def readinto(self, b: Any) -> int:
        while not self._buf:
            if self._eof:
                return 0
            item = asyncio.run_coroutine_threadsafe(self._queue.get(), self._loop).result()
            if item is None:
                self._eof = True
                return 0
            if isinstance(item, BaseException):
                raise item
            self._buf = item
        n = min(len(b), len(self._buf))
        b[:n] = self._buf[:n]
        self._buf = self._buf[n:]
        return n


def _strip_component(name: str) -> str:
    """Drop the archive's top-level directory from a member path."""
    parts = [p for p in name.split("/") if p not in ("", ".")]
    return "/".join(parts[1:])


def _extract(fileobj: io.RawIOBase, dest: Path) -> int:
    """Unpack a gzip tar stream into *dest*, stripping one path component."""
    if dest.exists():
        shutil.rmtree(dest)
    dest.mkdir(parents=True)

    count = 0
    stream = io.BufferedReader(fileobj)
    with tarfile.open(fileobj=stream, mode="r|gz") as tar:
        for member in tar:
            name = _strip_component(member.name)
            if not name:
                continue
            member.name = name
            if member.islnk():
                member.linkname = _strip_component(member.linkname)
            tar.extract(member, dest, filter="data")
            count += 1
    return count


async def _feed(queue: asyncio.Queue[Any], item: Any, extract: asyncio.Future[Any]) -> bool:
    """Put *item* on the queue unless extraction finishes first.

    Returns False when the extraction thread is already done, in which case
    nothing more should be fed.
    """
    if extract.done():
        return False
    put = asyncio.ensure_future(queue.put(item))
    done, _ = await asyncio.wait({put, extract}, return_when=asyncio.FIRST_COMPLETED)
    if put not in done:
        put.cancel()
        return False
    return True


def _abort(queue: asyncio.Queue[Any], exc: BaseException) -> None:
    """Replace anything still buffered with *exc* so the reader stops promptly."""
    while not queue.empty():
        queue.get_nowait()
    queue.put_nowait(exc)


async def fetch_artifact(
    url: str,
    token: str | None,
    dest: Path,
    *,
    session: aiohttp.ClientSession | None = None,
    chunk_size: int = 65536,
) -> int:
    """Download the gzip tarball at *url* and unpack it into *dest*.

    The execution token travels in the ``x-mesh-token`` header, never in
    the URL. Returns the number of archive members written.

    Raises DownloadError for a non-200 response or any failure while
    streaming, decompressing or extracting. The error is raised once, after
    the extraction thread has been reaped.
    """
    headers = {MESH_TOKEN_HEADER: token} if token else {}
    owns_session = session is None
    if session is None:
        session = aiohttp.ClientSession()

    try:
        async with session.get(url, headers=headers) as resp:
            logger.debug("Artifact download response", url=url, status=resp.status)
            if resp.status != 200:
                raise DownloadError(f"status code {resp.status}", status=resp.status)
            return await _stream_into(resp, dest, chunk_size)
    except DownloadError:
        raise
    except (aiohttp.ClientError, TimeoutError, OSError) as exc:
        raise DownloadError(f"download failed: {exc}") from exc
    finally:
        if owns_session:
            await session.close()


async def _stream_into(resp: aiohttp.ClientResponse, dest: Path, chunk_size: int) -> int:
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=_QUEUE_DEPTH)
    reader = _ChunkReader(queue, loop)
    extract = asyncio.ensure_future(asyncio.to_thread(_extract, reader, dest))

    try:
        async for chunk in resp.content.iter_chunked(chunk_size):
            if not await _feed(queue, chunk, extract):
                break
        else:
            await _feed(queue, None, extract)
    except BaseException as exc:
        # Network failure or cancellation: stop the reader, reap the thread,
        # then surface the original error.
        _abort(queue, DownloadError(f"download interrupted: {exc}"))
        with contextlib.suppress(Exception):
            await extract
        raise

    try:
        return await extract
    except asyncio.CancelledError:
        _abort(queue, DownloadError("download cancelled"))
        raise
    except Exception as exc:
        raise DownloadError(f"extract failed: {exc}") from exc
