"""FastAPI applications for the migration proxy and its admin surface."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, PlainTextResponse
import httpx
from redis.asyncio import Redis
import structlog
from opentelemetry import trace
from starlette.convertors import Convertor, register_url_convertor

from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.settings import MigrationProxySettings
from .edge_cache import EdgeCache, EdgeCacheRecorder, InMemoryEdgeCache
from .origin import OriginFetcher
from .pipeline import MigrationProxy
from .policy import AccessPolicy
from .primary import PrimaryStore, build_primary_store
from .routing import HostRouter
from .stats import MigrationStats
from .usage import InMemoryUsageLedger, RedisUsageLedger, UsageLedger, UsageLimiter
from .writeback import DetachedTaskGroup, WriteBackCoordinator

LOGGER = structlog.get_logger("stratus.migration_proxy")
TRACER = trace.get_tracer("stratus.migration_proxy")

SERVICE_NAME = "stratus.migration_proxy"
REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("stratus_requests_total", "Total proxied requests"))
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "stratus_request_latency_seconds",
        buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 20.0],
        description="Time to first byte of proxy responses",
    )
)
EDGE_CACHE_ENTRIES_GAUGE = GLOBAL_REGISTRY.register(
    Gauge("stratus_edge_cache_entries", "Entries held by the edge cache")
)


class ObjectPathConvertor(Convertor):
    """Like the builtin path convertor, but control characters match too so the sanitizer can reject them."""

    regex = r"[\s\S]*"

    def convert(self, value: str) -> str:
        return value

    def to_string(self, value: str) -> str:
        return value


register_url_convertor("object_path", ObjectPathConvertor())


@dataclass
class ProxyState:
    settings: MigrationProxySettings
    proxy: MigrationProxy
    tasks: DetachedTaskGroup
    ledger: UsageLedger
    http_client: httpx.AsyncClient
    stats: Optional[MigrationStats] = None

    async def close(self) -> None:
        abandoned = await self.tasks.drain(self.settings.writeback_drain_timeout_seconds)
        if abandoned:
            LOGGER.warning("Shutdown abandoned background tasks", abandoned=abandoned)
        await self.http_client.aclose()
        if isinstance(self.ledger, RedisUsageLedger):
            await self.ledger.close()
        if self.stats is not None:
            self.stats.dispose()

    def status_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "primary": self.proxy.primary.status(),
            "hosts": self.proxy.router.hosts,
            "pending_tasks": len(self.tasks),
            "usage_limit_bytes": self.proxy.limiter.limit_bytes,
        }
        edge = self.proxy.edge_cache
        if edge is not None:
            entries = len(edge.cache)
            EDGE_CACHE_ENTRIES_GAUGE.set(float(entries))
            payload["edge_cache_entries"] = entries
        if self.stats is not None:
            payload["totals"] = self.stats.totals()
            payload["top_entries"] = self.stats.top_entries()
        return payload


def build_ledger(settings: MigrationProxySettings) -> UsageLedger:
    if settings.usage_redis_url:
        return RedisUsageLedger(Redis.from_url(settings.usage_redis_url))
    LOGGER.warning("No usage ledger configured, download limits are per process")
    return InMemoryUsageLedger()


def build_state(
    settings: MigrationProxySettings,
    *,
    primary: Optional[PrimaryStore] = None,
    ledger: Optional[UsageLedger] = None,
    edge_cache: Optional[EdgeCache] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProxyState:
    tasks = DetachedTaskGroup()
    if primary is None:
        primary = build_primary_store(settings)
    if ledger is None:
        ledger = build_ledger(settings)
    stats = MigrationStats(settings.stats_database_url) if settings.stats_database_url else None
    http_client = httpx.AsyncClient(transport=transport, timeout=httpx.Timeout(settings.origin_timeout_seconds))

    recorder: Optional[EdgeCacheRecorder] = None
    if settings.edge_cache_enabled:
        cache = edge_cache
        if cache is None:
            cache = InMemoryEdgeCache(settings.edge_cache_ttl_seconds, settings.edge_cache_max_entries)
        recorder = EdgeCacheRecorder(cache, tasks, settings.edge_cache_max_body_bytes)

    writeback = WriteBackCoordinator(primary, tasks, on_complete=stats.record_writeback if stats else None)
    proxy = MigrationProxy(
        settings,
        router=HostRouter(settings.host_table()),
        policy=AccessPolicy(settings.access_rules()),
        primary=primary,
        origin=OriginFetcher(settings, http_client),
        limiter=UsageLimiter(
            ledger,
            limit_bytes=settings.usage_limit_bytes,
            window_seconds=settings.usage_window_seconds,
        ),
        writeback=writeback,
        edge_cache=recorder,
        stats=stats,
    )
    return ProxyState(
        settings=settings,
        proxy=proxy,
        tasks=tasks,
        ledger=ledger,
        http_client=http_client,
        stats=stats,
    )


def get_state(request: Request) -> ProxyState:
    return request.app.state.proxy_state  # type: ignore[attr-defined]


def create_app(
    settings: Optional[MigrationProxySettings] = None,
    *,
    primary: Optional[PrimaryStore] = None,
    ledger: Optional[UsageLedger] = None,
    edge_cache: Optional[EdgeCache] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or MigrationProxySettings()
    configure_logging(SERVICE_NAME, settings.log_level)
    configure_tracing(
        service_name=SERVICE_NAME,
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    state = build_state(settings, primary=primary, ledger=ledger, edge_cache=edge_cache, transport=transport)
    LOGGER.info(
        "Migration proxy configured",
        hosts=len(state.proxy.router),
        primary_backend=settings.primary_backend,
        edge_cache=settings.edge_cache_enabled,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            await state.close()

    # The catch-all route owns every path, including the ones FastAPI would use for docs.
    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    instrument_fastapi_app(app)
    app.state.proxy_state = state

    @app.middleware("http")
    async def access_log(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        REQUEST_COUNTER.inc()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                host=request.headers.get("host"),
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": request.method,
            "host": request.headers.get("host"),
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    async def proxy_object(request: Request) -> Response:
        return await get_state(request).proxy.handle(request)

    # No method list: every verb, including unusual ones, reaches the pipeline.
    app.add_route("/{object_path:object_path}", proxy_object)

    return app


def _admin_token(state: ProxyState) -> Optional[str]:
    token = state.settings.metrics_token
    return token.get_secret_value() if token else None


def create_admin_app(state: ProxyState) -> FastAPI:
    app = FastAPI()
    app.state.proxy_state = state

    @app.get("/status")
    async def status_endpoint(request: Request, state: ProxyState = Depends(get_state)) -> JSONResponse:
        require_metrics_access(request, _admin_token(state))
        with TRACER.start_as_current_span("migration_proxy.status"):
            return JSONResponse(jsonable_encoder(state.status_payload()))

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: ProxyState = Depends(get_state)) -> PlainTextResponse:
        require_metrics_access(request, _admin_token(state))
        edge = state.proxy.edge_cache
        if edge is not None:
            EDGE_CACHE_ENTRIES_GAUGE.set(float(len(edge.cache)))
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: ProxyState = Depends(get_state)) -> dict:
        health: dict = {"status": "healthy", "checks": {}}
        try:
            primary_status = state.proxy.primary.status()
            health["checks"]["primary"] = primary_status.get("backend", "unknown")
            if primary_status.get("circuit_open"):
                health["status"] = "degraded"
        except Exception as exc:  # noqa: BLE001
            health["checks"]["primary"] = f"error: {exc}"
            health["status"] = "unhealthy"
        health["checks"]["pending_tasks"] = len(state.tasks)

        if health["status"] == "unhealthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    return app
