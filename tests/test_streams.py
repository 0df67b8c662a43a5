from __future__ import annotations

import asyncio
import io

import pytest

from stratus.migration_proxy.streams import (
    TeeStream,
    buffer_stream,
    duplicate_stream,
    iter_bytes,
    iter_file,
    release_on_exit,
)


async def _source(chunks: list[bytes], *, fail_after: int | None = None, gate: asyncio.Event | None = None):
    for index, chunk in enumerate(chunks):
        if fail_after is not None and index == fail_after:
            raise ConnectionResetError("origin went away")
        if gate is not None:
            await gate.wait()
        yield chunk


async def _drain(stream) -> bytes:
    return b"".join([chunk async for chunk in stream])


@pytest.mark.asyncio
async def test_tee_delivers_every_chunk_to_every_branch() -> None:
    tee = TeeStream(_source([b"a", b"bc", b"", b"def"]), branches=3)
    results = await asyncio.gather(*(_drain(branch) for branch in tee.branches))
    assert results == [b"abcdef"] * 3
    assert tee.bytes_read == 6


@pytest.mark.asyncio
async def test_slow_reader_does_not_block_fast_reader() -> None:
    tee = TeeStream(_source([b"x" * 10] * 50), branches=2)
    fast, slow = tee.branches
    assert await _drain(fast) == b"x" * 500
    # The slow reader has not consumed anything yet but still sees the full body.
    assert await _drain(slow) == b"x" * 500


@pytest.mark.asyncio
async def test_detached_branch_stops_receiving() -> None:
    gate = asyncio.Event()
    tee = TeeStream(_source([b"one", b"two"], gate=gate), branches=2)
    client, persist = tee.branches
    client.close()
    gate.set()
    assert await _drain(persist) == b"onetwo"
    assert await _drain(client) == b""


@pytest.mark.asyncio
async def test_pump_stops_once_every_branch_is_detached() -> None:
    produced: list[bytes] = []

    async def counting_source():
        for chunk in (b"1", b"2", b"3"):
            await asyncio.sleep(0)
            produced.append(chunk)
            yield chunk

    tee = TeeStream(counting_source(), branches=1)
    (branch,) = tee.branches
    assert await branch.__anext__() == b"1"
    await branch.aclose()
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert len(produced) < 3


@pytest.mark.asyncio
async def test_source_error_reaches_every_branch() -> None:
    tee = TeeStream(_source([b"a", b"b", b"c"], fail_after=2), branches=2)
    for branch in tee.branches:
        received = []
        with pytest.raises(ConnectionResetError):
            async for chunk in branch:
                received.append(chunk)
        assert received == [b"a", b"b"]


def test_tee_requires_a_branch() -> None:
    with pytest.raises(ValueError):
        TeeStream(_source([]), branches=0)


@pytest.mark.asyncio
async def test_buffer_stream_replays_body() -> None:
    copies = await buffer_stream(_source([b"he", b"llo"]), copies=2)
    assert [await _drain(copy) for copy in copies] == [b"hello", b"hello"]


@pytest.mark.asyncio
async def test_duplicate_stream_buffers_only_for_unknown_length_without_tee() -> None:
    buffered = await duplicate_stream(_source([b"abc"]), 2, content_length=None, tee_enabled=False)
    assert not any(hasattr(reader, "detached") for reader in buffered)

    teed = await duplicate_stream(_source([b"abc"]), 2, content_length=3, tee_enabled=False)
    assert all(hasattr(reader, "detached") for reader in teed)
    assert [await _drain(reader) for reader in teed] == [b"abc", b"abc"]

    default = await duplicate_stream(_source([b"abc"]), 2, content_length=None)
    assert all(hasattr(reader, "detached") for reader in default)


@pytest.mark.asyncio
async def test_iter_file_reads_in_chunks_and_closes() -> None:
    handle = io.BytesIO(b"0123456789")
    chunks = [chunk async for chunk in iter_file(handle, chunk_size=4)]
    assert chunks == [b"0123", b"4567", b"89"]
    assert handle.closed


@pytest.mark.asyncio
async def test_abandoned_client_branch_is_released() -> None:
    gate = asyncio.Event()

    async def gated_source():
        yield b"head"
        await gate.wait()
        for _ in range(99):
            yield b"z" * 1024

    tee = TeeStream(gated_source(), branches=2)
    client, persist = tee.branches
    wrapped = release_on_exit(client)
    first_read = asyncio.Event()

    async def disconnecting_client() -> None:
        assert await wrapped.__anext__() == b"head"
        first_read.set()
        await wrapped.__anext__()

    task = asyncio.create_task(disconnecting_client())
    await first_read.wait()
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    gate.set()
    assert await _drain(persist) == b"head" + b"z" * 1024 * 99
    assert client.detached
    assert client._queue.qsize() == 0


@pytest.mark.asyncio
async def test_release_on_exit_closes_plain_generators() -> None:
    closed: list[bool] = []

    async def source():
        try:
            yield b"a"
            yield b"b"
        finally:
            closed.append(True)

    wrapped = release_on_exit(source())
    assert await wrapped.__anext__() == b"a"
    await wrapped.aclose()
    assert closed == [True]
    assert await _drain(release_on_exit(iter_bytes(b"whole"))) == b"whole"
