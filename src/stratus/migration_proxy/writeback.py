"""Detached persistence of origin objects into the primary store."""

from __future__ import annotations

import asyncio
import time
from typing import AsyncIterator, Awaitable, Callable, Mapping, Optional

import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge
from .primary import PrimaryStore, content_metadata_from_headers

LOGGER = structlog.get_logger("stratus.migration_proxy.writeback")
TRACER = trace.get_tracer("stratus.migration_proxy.writeback")

WRITEBACK_SUCCESS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("stratus_writeback_success_total", "Objects copied into the primary store")
)
WRITEBACK_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("stratus_writeback_failures_total", "Write-backs that failed and will be retried by the next miss")
)
WRITEBACK_BYTES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("stratus_writeback_bytes_total", "Bytes written into the primary store")
)
PENDING_TASKS_GAUGE = GLOBAL_REGISTRY.register(
    Gauge("stratus_detached_tasks_pending", "Background tasks still running after their response was sent")
)


class DetachedTaskGroup:
    """Background tasks that outlive the request that spawned them.

    Tasks are held by strong reference until they settle, and the application
    lifespan calls :meth:`drain` so the process is not torn down while copies
    are still in flight.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable[None], *, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        PENDING_TASKS_GAUGE.set(float(len(self._tasks)))
        task.add_done_callback(self._settled)
        return task

    def _settled(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        PENDING_TASKS_GAUGE.set(float(len(self._tasks)))
        if task.cancelled():
            LOGGER.warning("detached_task_cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("detached_task_failed", task=task.get_name(), error=str(exc), exc_info=exc)

    async def drain(self, timeout: Optional[float] = None) -> int:
        """Wait for pending tasks; returns how many were still running at the deadline."""

        if not self._tasks:
            return 0
        pending_before = len(self._tasks)
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            LOGGER.warning("detached_tasks_abandoned", pending=len(pending), total=pending_before)
            for task in pending:
                task.cancel()
        return len(pending)


class WriteBackCoordinator:
    def __init__(
        self,
        store: PrimaryStore,
        tasks: DetachedTaskGroup,
        on_complete: Optional[Callable[[str, bool, int], None]] = None,
    ) -> None:
        self._store = store
        self._tasks = tasks
        self._on_complete = on_complete

    def schedule(
        self,
        storage_key: str,
        body: AsyncIterator[bytes],
        headers: Mapping[str, str],
        custom_metadata: Optional[Mapping[str, str]] = None,
    ) -> asyncio.Task:
        """Copy ``body`` into the primary store without blocking the caller."""

        content_metadata = content_metadata_from_headers(headers)
        return self._tasks.spawn(
            self._persist(storage_key, body, content_metadata, dict(custom_metadata or {})),
            name=f"writeback:{storage_key}",
        )

    async def _persist(
        self,
        storage_key: str,
        body: AsyncIterator[bytes],
        content_metadata: dict[str, str],
        custom_metadata: dict[str, str],
    ) -> None:
        start = time.perf_counter()
        with TRACER.start_as_current_span("migration_proxy.writeback", attributes={"stratus.storage_key": storage_key}):
            try:
                written = await self._store.put(storage_key, body, content_metadata, custom_metadata)
            except Exception as exc:  # noqa: BLE001
                # No retry queue: the next request for this key repeats the origin fetch.
                WRITEBACK_FAILURE_COUNTER.inc()
                LOGGER.error("writeback_failed", storage_key=storage_key, error=str(exc))
                self._notify(storage_key, False, 0)
                return
            finally:
                aclose = getattr(body, "aclose", None)
                if aclose is not None:
                    await aclose()
        WRITEBACK_SUCCESS_COUNTER.inc()
        WRITEBACK_BYTES_COUNTER.inc(written)
        LOGGER.info(
            "writeback_complete",
            storage_key=storage_key,
            bytes=written,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        self._notify(storage_key, True, written)

    def _notify(self, storage_key: str, success: bool, written: int) -> None:
        if self._on_complete is None:
            return
        try:
            self._on_complete(storage_key, success, written)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("writeback_callback_failed", storage_key=storage_key, error=str(exc))
