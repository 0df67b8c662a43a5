from __future__ import annotations

import asyncio

import pytest

from stratus.migration_proxy import writeback
from stratus.migration_proxy.primary import LocalPrimaryStore, PrimaryStore
from stratus.migration_proxy.streams import TeeStream, iter_bytes
from stratus.migration_proxy.writeback import DetachedTaskGroup, WriteBackCoordinator


class FailingStore(PrimaryStore):
    async def put(self, key, body, content_metadata, custom_metadata):  # noqa: ANN001
        raise RuntimeError("primary unavailable")


class RecordingLogger:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict]] = []

    def _record(self, level: str, event: str, **kwargs) -> None:
        self.events.append((level, event, kwargs))

    def info(self, event, **kwargs) -> None:  # noqa: ANN001
        self._record("info", event, **kwargs)

    def warning(self, event, **kwargs) -> None:  # noqa: ANN001
        self._record("warning", event, **kwargs)

    def error(self, event, **kwargs) -> None:  # noqa: ANN001
        self._record("error", event, **kwargs)


@pytest.mark.asyncio
async def test_detached_group_drains_pending_tasks() -> None:
    group = DetachedTaskGroup()
    done = asyncio.Event()

    async def work():
        await asyncio.sleep(0.01)
        done.set()

    group.spawn(work(), name="work")
    assert len(group) == 1
    assert await group.drain(timeout=1.0) == 0
    assert done.is_set()
    assert len(group) == 0


@pytest.mark.asyncio
async def test_drain_cancels_tasks_past_deadline(monkeypatch) -> None:
    logger = RecordingLogger()
    monkeypatch.setattr(writeback, "LOGGER", logger)
    group = DetachedTaskGroup()
    group.spawn(asyncio.sleep(10), name="stuck")
    assert await group.drain(timeout=0.01) == 1
    await asyncio.sleep(0)
    assert ("warning", "detached_tasks_abandoned") in [(level, event) for level, event, _ in logger.events]


@pytest.mark.asyncio
async def test_failed_task_is_logged_not_raised(monkeypatch) -> None:
    logger = RecordingLogger()
    monkeypatch.setattr(writeback, "LOGGER", logger)
    group = DetachedTaskGroup()

    async def boom():
        raise ValueError("boom")

    group.spawn(boom(), name="boom")
    await group.drain(timeout=1.0)
    await asyncio.sleep(0)
    assert any(event == "detached_task_failed" for _, event, _ in logger.events)


@pytest.mark.asyncio
async def test_writeback_persists_body_and_metadata(make_settings) -> None:
    store = LocalPrimaryStore(make_settings())
    group = DetachedTaskGroup()
    outcomes: list[tuple[str, bool, int]] = []
    coordinator = WriteBackCoordinator(store, group, on_complete=lambda *args: outcomes.append(args))

    coordinator.schedule(
        "data-bucket/file.txt",
        iter_bytes(b"hello"),
        {"content-type": "text/plain", "content-length": "5", "x-amz-request-id": "r1"},
        {"x-amz-website-redirect-location": "https://example.org/"},
    )
    await group.drain(timeout=1.0)

    head = await store.head("data-bucket/file.txt")
    assert head is not None
    assert head.content_metadata == {"content-type": "text/plain"}
    assert head.redirect_location == "https://example.org/"
    assert outcomes == [("data-bucket/file.txt", True, 5)]


@pytest.mark.asyncio
async def test_writeback_failure_is_contained(monkeypatch) -> None:
    logger = RecordingLogger()
    monkeypatch.setattr(writeback, "LOGGER", logger)
    group = DetachedTaskGroup()
    outcomes: list[tuple[str, bool, int]] = []
    coordinator = WriteBackCoordinator(FailingStore(), group, on_complete=lambda *args: outcomes.append(args))
    failures_before = writeback.WRITEBACK_FAILURE_COUNTER.value

    tee = TeeStream(iter_bytes(b"payload"), branches=2)
    client, persist = tee.branches
    task = coordinator.schedule("data-bucket/file.bin", persist, {}, {})
    assert b"".join([chunk async for chunk in client]) == b"payload"
    await group.drain(timeout=1.0)

    assert task.exception() is None
    assert persist.detached is True
    assert outcomes == [("data-bucket/file.bin", False, 0)]
    assert writeback.WRITEBACK_FAILURE_COUNTER.value == failures_before + 1
    assert ("error", "writeback_failed") in [(level, event) for level, event, _ in logger.events]
