"""Request state machine: primary store first, signed origin fallback second."""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Mapping, Optional

from fastapi import Request, Response, status
from fastapi.responses import PlainTextResponse, RedirectResponse, StreamingResponse
import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter, LabeledCounter
from ..common.schemas import BucketConfig
from ..common.settings import MigrationProxySettings
from .edge_cache import EdgeCacheRecorder, edge_cache_key
from .origin import OriginFetcher, OriginResponseError, OriginTimeoutError, REDIRECT_LOCATION_HEADER, FetchedObject
from .paths import InvalidObjectPath, normalize_object_path, raw_request_path
from .policy import AccessPolicy
from .primary import ObjectHead, PrimaryStore, PrimaryStoreUnavailable
from .routing import HostRouter, RootObjectBlocked, UnknownHostError, normalise_host, resolve_object_key, storage_key
from .stats import MigrationStats
from .streams import duplicate_stream, release_on_exit
from .usage import UsageLimiter, client_fingerprint
from .writeback import WriteBackCoordinator

LOGGER = structlog.get_logger("stratus.migration_proxy.pipeline")
TRACER = trace.get_tracer("stratus.migration_proxy.pipeline")

RESPONSE_COUNTER = GLOBAL_REGISTRY.register(
    LabeledCounter("stratus_responses_total", "status", "Responses by HTTP status")
)
PRIMARY_HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("stratus_primary_hits_total", "Objects served by the primary store"))
PRIMARY_MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("stratus_primary_misses_total", "Primary store misses"))
ORIGIN_BYTES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("stratus_origin_bytes_total", "Bytes announced by origin responses")
)
USAGE_REJECTED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("stratus_usage_rejections_total", "Requests refused by the download limit")
)

_HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)


@dataclass
class _Outcome:
    response: Response
    cacheable: bool = True
    capture: Optional[AsyncIterator[bytes]] = None


def _text(body: str, status_code: int, *, cacheable: bool = True) -> _Outcome:
    return _Outcome(PlainTextResponse(body, status_code=status_code), cacheable=cacheable)


def _redirect(location: str) -> _Outcome:
    return _Outcome(RedirectResponse(location, status_code=status.HTTP_302_FOUND))


def _forwardable_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {name: value for name, value in headers.items() if name.lower() not in _HOP_BY_HOP_HEADERS}


class MigrationProxy:
    """Serves one request at a time through the migration state machine.

    Every exit is terminal. Responses other than 429 and unexpected errors are
    offered to the edge cache; streamed bodies reach the cache through an
    extra tee branch so the client never waits on it.
    """

    def __init__(
        self,
        settings: MigrationProxySettings,
        *,
        router: HostRouter,
        policy: AccessPolicy,
        primary: PrimaryStore,
        origin: OriginFetcher,
        limiter: UsageLimiter,
        writeback: WriteBackCoordinator,
        edge_cache: Optional[EdgeCacheRecorder] = None,
        stats: Optional[MigrationStats] = None,
    ) -> None:
        self.settings = settings
        self.router = router
        self.policy = policy
        self.primary = primary
        self.origin = origin
        self.limiter = limiter
        self.writeback = writeback
        self.edge_cache = edge_cache
        self.stats = stats

    async def handle(self, request: Request) -> Response:
        client_ip = request.headers.get(self.settings.client_ip_header)
        if not client_ip:
            return self._finish(_text("IP address not found", status.HTTP_400_BAD_REQUEST, cacheable=False))

        host = normalise_host(request.headers.get("host"))
        raw_path = raw_request_path(request.scope)
        with structlog.contextvars.bound_contextvars(host=host, path=raw_path, client_ip=client_ip):
            cache_key: Optional[str] = None
            if self.edge_cache is not None:
                cache_key = edge_cache_key(request, vary_referer=self.policy.varies_on_referer(host))
                cached = await self.edge_cache.lookup(cache_key)
                if cached is not None:
                    RESPONSE_COUNTER.inc(cached.status_code)
                    return cached

            try:
                outcome = await self._dispatch(request, host, raw_path)
            except Exception:
                LOGGER.exception("request_failed", method=request.method)
                return self._finish(
                    _text("Internal Server Error", status.HTTP_500_INTERNAL_SERVER_ERROR, cacheable=False)
                )

            if outcome.cacheable and self.settings.edge_cache_control:
                outcome.response.headers.setdefault("cache-control", self.settings.edge_cache_control)
            if outcome.cacheable and cache_key is not None and self.edge_cache is not None:
                if outcome.capture is not None:
                    self.edge_cache.store_stream(cache_key, outcome.response, outcome.capture)
                elif not isinstance(outcome.response, StreamingResponse):
                    await self.edge_cache.store(cache_key, outcome.response)
            return self._finish(outcome)

    @staticmethod
    def _finish(outcome: _Outcome) -> Response:
        RESPONSE_COUNTER.inc(outcome.response.status_code)
        return outcome.response

    async def _dispatch(self, request: Request, host: str, raw_path: str) -> _Outcome:
        try:
            config = self.router.resolve(host)
        except UnknownHostError:
            LOGGER.info("unknown_host")
            return _text("Unknown host", status.HTTP_404_NOT_FOUND)

        try:
            key = normalize_object_path(raw_path)
        except InvalidObjectPath:
            LOGGER.warning("invalid_path_rejected")
            return _text("Invalid request", status.HTTP_400_BAD_REQUEST)

        decision = self.policy.evaluate(host, key, request.headers)
        if not decision.allowed:
            return _text("Forbidden", status.HTTP_403_FORBIDDEN)

        try:
            key = resolve_object_key(config, key)
        except RootObjectBlocked:
            return _text("Bad Request", status.HTTP_400_BAD_REQUEST)

        if request.method != "GET":
            return _text("Method Not Allowed", status.HTTP_405_METHOD_NOT_ALLOWED)

        primary_key = storage_key(config, key)
        try:
            with TRACER.start_as_current_span("migration_proxy.primary_head", attributes={"stratus.storage_key": primary_key}):
                head = await self.primary.head(primary_key)
            if head is not None:
                outcome = await self._serve_primary(config, head)
                if outcome is not None:
                    return outcome
        except PrimaryStoreUnavailable as exc:
            LOGGER.error("primary_store_unavailable", storage_key=primary_key, error=str(exc))
            return _text("Service Unavailable", status.HTTP_503_SERVICE_UNAVAILABLE, cacheable=False)

        PRIMARY_MISS_COUNTER.inc()
        return await self._serve_origin(request, config, key, primary_key)

    async def _serve_primary(self, config: BucketConfig, head: ObjectHead) -> Optional[_Outcome]:
        PRIMARY_HIT_COUNTER.inc()
        self._record("record_primary_hit", head.key)
        if head.redirect_location:
            LOGGER.info("primary_redirect", storage_key=head.key, location=head.redirect_location)
            return _redirect(head.redirect_location)

        if self.settings.primary_hit_mode == "redirect" and self.settings.primary_public_url:
            return _redirect(f"{self.settings.primary_public_url}/{head.key}")

        stored = await self.primary.get(head.key)
        if stored is None:
            # Deleted between head and get; fall back to the origin.
            LOGGER.warning("primary_object_vanished", storage_key=head.key)
            return None
        headers = stored.head.response_headers()
        if config.cache_control:
            headers["cache-control"] = config.cache_control
        client_body, *capture = await self._split(stored.body, stored.head.size, consumers=1)
        response = StreamingResponse(release_on_exit(client_body), status_code=status.HTTP_200_OK, headers=headers)
        return _Outcome(response, capture=capture[0] if capture else None)

    async def _serve_origin(self, request: Request, config: BucketConfig, key: str, primary_key: str) -> _Outcome:
        fingerprint = client_fingerprint(
            request.headers, self.settings.tls_fingerprint_header, self.settings.asn_header
        )
        if await self.limiter.check(fingerprint):
            USAGE_REJECTED_COUNTER.inc()
            return _text("Download limit exceeded", status.HTTP_429_TOO_MANY_REQUESTS, cacheable=False)

        LOGGER.info("origin_fetch", bucket=config.bucket_name, key=key)
        try:
            fetched = await self.origin.fetch(config.bucket_name, key)
        except OriginTimeoutError as exc:
            return _text(str(exc), status.HTTP_504_GATEWAY_TIMEOUT)
        except OriginResponseError as exc:
            LOGGER.warning("origin_bad_status", status=exc.status_code)
            return _text("Bad Gateway", status.HTTP_502_BAD_GATEWAY)
        if fetched is None:
            return _text(f"Object {key} not found", status.HTTP_404_NOT_FOUND)

        try:
            return await self._relay_origin(config, fingerprint, fetched, primary_key)
        except BaseException:
            await fetched.aclose()
            raise

    async def _relay_origin(
        self,
        config: BucketConfig,
        fingerprint: str,
        fetched: FetchedObject,
        primary_key: str,
    ) -> _Outcome:
        custom_metadata: dict[str, str] = {}
        redirect_to = fetched.redirect_location
        if redirect_to:
            custom_metadata[REDIRECT_LOCATION_HEADER] = redirect_to

        content_length = fetched.content_length
        if content_length:
            ORIGIN_BYTES_COUNTER.inc(content_length)
            await self.limiter.track(fingerprint, content_length)
        self._record("record_origin_fetch", primary_key, content_length or 0)

        if redirect_to:
            self.writeback.schedule(primary_key, fetched.body(), fetched.headers, custom_metadata)
            return _redirect(redirect_to)

        headers = _forwardable_headers(fetched.headers)
        if config.cache_control:
            headers["cache-control"] = config.cache_control
        client_body, persist_body, *capture = await self._split(fetched.body(), content_length, consumers=2)
        self.writeback.schedule(primary_key, persist_body, fetched.headers, custom_metadata)
        response = StreamingResponse(release_on_exit(client_body), status_code=fetched.status_code, headers=headers)
        return _Outcome(response, capture=capture[0] if capture else None)

    async def _split(
        self,
        body: AsyncIterator[bytes],
        content_length: Optional[int],
        *,
        consumers: int,
    ) -> list[AsyncIterator[bytes]]:
        """Return one reader per consumer, plus a trailing edge-cache reader when the body may be cached."""

        if self._capturable(content_length):
            consumers += 1
        if consumers == 1:
            return [body]
        return await duplicate_stream(
            body,
            consumers,
            content_length=content_length,
            tee_enabled=self.settings.stream_tee_enabled,
        )

    def _capturable(self, content_length: Optional[int]) -> bool:
        if self.edge_cache is None:
            return False
        return content_length is None or content_length <= self.settings.edge_cache_max_body_bytes

    def _record(self, method: str, *args) -> None:
        if self.stats is None:
            return
        try:
            getattr(self.stats, method)(*args)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("stats_update_failed", operation=method, error=str(exc))
