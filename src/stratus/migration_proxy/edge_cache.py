"""Response cache in front of the pipeline, keyed by the normalized request."""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional

from fastapi import Request, Response
import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .paths import raw_request_path
from .writeback import DetachedTaskGroup

LOGGER = structlog.get_logger("stratus.migration_proxy.edge_cache")

EDGE_HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("stratus_edge_cache_hits_total", "Responses served from the edge cache"))
EDGE_STORE_COUNTER = GLOBAL_REGISTRY.register(Counter("stratus_edge_cache_stores_total", "Responses stored in the edge cache"))

_FRAMING_HEADERS = {"content-length", "transfer-encoding"}


@dataclass
class CachedResponse:
    status_code: int
    headers: list[tuple[str, str]]
    body: bytes
    stored_at: float = field(default_factory=time.time)

    @classmethod
    def from_response(cls, response: Response, body: bytes) -> "CachedResponse":
        headers = [
            (name.decode("latin-1"), value.decode("latin-1"))
            for name, value in response.raw_headers
            if name.decode("latin-1").lower() not in _FRAMING_HEADERS
        ]
        return cls(status_code=response.status_code, headers=headers, body=body)

    def to_response(self) -> Response:
        response = Response(content=self.body, status_code=self.status_code)
        response.raw_headers = [
            *((name.encode("latin-1"), value.encode("latin-1")) for name, value in self.headers),
            (b"content-length", str(len(self.body)).encode("latin-1")),
        ]
        return response


class EdgeCache:
    async def match(self, key: str) -> Optional[CachedResponse]:  # pragma: no cover - interface
        raise NotImplementedError

    async def put(self, key: str, entry: CachedResponse) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def __len__(self) -> int:  # pragma: no cover - interface
        raise NotImplementedError


class InMemoryEdgeCache(EdgeCache):
    """Per-process LRU with a fixed time-to-live."""

    def __init__(self, ttl_seconds: int, max_entries: int, clock: Callable[[], float] = time.time) -> None:
        self._ttl = max(0, ttl_seconds)
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: OrderedDict[str, CachedResponse] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    async def match(self, key: str) -> Optional[CachedResponse]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at > self._ttl:
            self._entries.pop(key, None)
            return None
        self._entries.move_to_end(key)
        return entry

    async def put(self, key: str, entry: CachedResponse) -> None:
        entry.stored_at = self._clock()
        self._entries[key] = entry
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)


def edge_cache_key(request: Request, *, vary_referer: bool = False) -> str:
    raw_path = raw_request_path(request.scope)
    key = f"{request.method} {request.url.scheme}://{request.headers.get('host', '').lower()}{raw_path}"
    query = request.scope.get("query_string") or b""
    if query:
        key += "?" + query.decode("latin-1")
    if vary_referer:
        key += " referer=" + ("1" if request.headers.get("referer") else "0")
    return key


class EdgeCacheRecorder:
    """Stores terminal responses, capturing streamed bodies in the background."""

    def __init__(self, cache: EdgeCache, tasks: DetachedTaskGroup, max_body_bytes: int) -> None:
        self._cache = cache
        self._tasks = tasks
        self._max_body_bytes = max(0, max_body_bytes)

    @property
    def cache(self) -> EdgeCache:
        return self._cache

    async def lookup(self, key: str) -> Optional[Response]:
        entry = await self._cache.match(key)
        if entry is None:
            return None
        EDGE_HIT_COUNTER.inc()
        LOGGER.debug("edge_cache_hit", key=key)
        return entry.to_response()

    async def store(self, key: str, response: Response) -> None:
        await self._put(key, CachedResponse.from_response(response, bytes(response.body)))

    def store_stream(self, key: str, response: Response, body: AsyncIterator[bytes]) -> None:
        """Capture ``body`` (a spare tee branch) and cache it once complete and small enough."""

        self._tasks.spawn(self._capture(key, response, body), name=f"edge-cache:{key}")

    async def _capture(self, key: str, response: Response, body: AsyncIterator[bytes]) -> None:
        data = bytearray()
        try:
            async for chunk in body:
                data.extend(chunk)
                if len(data) > self._max_body_bytes:
                    LOGGER.debug("edge_cache_body_too_large", key=key, limit=self._max_body_bytes)
                    return
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("edge_cache_capture_failed", key=key, error=str(exc))
            return
        finally:
            aclose = getattr(body, "aclose", None)
            if aclose is not None:
                await aclose()
        await self._put(key, CachedResponse.from_response(response, bytes(data)))

    async def _put(self, key: str, entry: CachedResponse) -> None:
        try:
            await self._cache.put(key, entry)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("edge_cache_store_failed", key=key, error=str(exc))
            return
        EDGE_STORE_COUNTER.inc()
