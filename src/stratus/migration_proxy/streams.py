"""Byte stream helpers, including a tee with independent readers."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Optional

import structlog

LOGGER = structlog.get_logger("stratus.migration_proxy.streams")

DEFAULT_CHUNK_SIZE = 64 * 1024

_END = object()


class StreamAborted(Exception):
    """Raised to tee readers when the shared source was cancelled mid-stream."""


class _Failure:
    __slots__ = ("error",)

    def __init__(self, error: BaseException) -> None:
        self.error = error


class TeeBranch:
    """One reader of a :class:`TeeStream`; never waits on its siblings."""

    def __init__(self, tee: "TeeStream") -> None:
        self._tee = tee
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._finished = False
        self.detached = False

    def __aiter__(self) -> "TeeBranch":
        return self

    async def __anext__(self) -> bytes:
        if self._finished or self.detached:
            raise StopAsyncIteration
        self._tee.start()
        item = await self._queue.get()
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._finished = True
            raise item.error
        return item

    def _feed(self, item: Any) -> None:
        if not self.detached:
            self._queue.put_nowait(item)

    def close(self) -> None:
        """Stop receiving chunks and release anything already queued."""
        self.detached = True
        while not self._queue.empty():
            self._queue.get_nowait()

    async def aclose(self) -> None:
        self.close()


class TeeStream:
    """Fan a single async byte source out to several independent readers.

    A pump task reads the source once and appends every chunk to an unbounded
    queue per branch, so a slow or abandoned reader costs memory but never
    stalls the others. The pump starts when any branch is first read.
    """

    def __init__(self, source: AsyncIterator[bytes], branches: int = 2) -> None:
        if branches < 1:
            raise ValueError("TeeStream needs at least one branch")
        self._source = source
        self.branches: tuple[TeeBranch, ...] = tuple(TeeBranch(self) for _ in range(branches))
        self._pump_task: Optional[asyncio.Task[None]] = None
        self.bytes_read = 0

    def start(self) -> None:
        if self._pump_task is None:
            self._pump_task = asyncio.get_running_loop().create_task(self._pump(), name="stratus-tee-pump")

    async def _pump(self) -> None:
        outcome: Any = _END
        try:
            async for chunk in self._source:
                if not chunk:
                    continue
                self.bytes_read += len(chunk)
                live = [branch for branch in self.branches if not branch.detached]
                if not live:
                    LOGGER.debug("tee_abandoned", bytes_read=self.bytes_read)
                    break
                for branch in live:
                    branch._feed(chunk)
        except asyncio.CancelledError:
            outcome = _Failure(StreamAborted("source cancelled"))
            raise
        except Exception as exc:  # noqa: BLE001
            outcome = _Failure(exc)
        finally:
            for branch in self.branches:
                branch._feed(outcome)
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                await aclose()


async def iter_bytes(data: bytes) -> AsyncIterator[bytes]:
    if data:
        yield data


async def release_on_exit(reader: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    """Yield from ``reader`` and detach it however iteration ends, e.g. a client disconnect."""

    try:
        async for chunk in reader:
            yield chunk
    finally:
        if isinstance(reader, TeeBranch):
            reader.close()
        else:
            aclose = getattr(reader, "aclose", None)
            if aclose is not None:
                await aclose()


async def buffer_stream(source: AsyncIterator[bytes], copies: int = 2) -> list[AsyncIterator[bytes]]:
    """Read ``source`` fully and return ``copies`` replays of it."""

    data = bytearray()
    async for chunk in source:
        data.extend(chunk)
    payload = bytes(data)
    return [iter_bytes(payload) for _ in range(copies)]


async def duplicate_stream(
    source: AsyncIterator[bytes],
    copies: int,
    *,
    content_length: Optional[int],
    tee_enabled: bool = True,
) -> list[AsyncIterator[bytes]]:
    """Return ``copies`` readers of ``source``.

    Buffering is used only when teeing is disabled and the size is unknown.
    """

    if not tee_enabled and content_length is None:
        return await buffer_stream(source, copies)
    return list(TeeStream(source, copies).branches)


async def iter_file(body, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Iterate a blocking file-like object (e.g. a botocore ``StreamingBody``) off the event loop."""

    try:
        while True:
            chunk = await asyncio.to_thread(body.read, chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        close = getattr(body, "close", None)
        if close is not None:
            await asyncio.to_thread(close)
