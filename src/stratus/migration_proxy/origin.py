"""Signed fallback fetches against the origin object store."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Optional
from urllib.parse import quote

from botocore.auth import S3SigV4Auth, SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials
import httpx
import structlog
from opentelemetry import trace

from ..common.settings import MigrationProxySettings

LOGGER = structlog.get_logger("stratus.migration_proxy.origin")
TRACER = trace.get_tracer("stratus.migration_proxy.origin")

REDIRECT_LOCATION_HEADER = "x-amz-website-redirect-location"


class OriginError(Exception):
    """Base class for origin fetch failures."""


class OriginSigningError(OriginError):
    """The request could not be signed; fatal for the request."""


class OriginTimeoutError(OriginError):
    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Upstream S3 fetch timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class OriginResponseError(OriginError):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"Upstream S3 responded with status {status_code}")
        self.status_code = status_code


def parse_content_length(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        length = int(value.strip())
    except ValueError:
        return None
    return length if length >= 0 else None


@dataclass
class FetchedObject:
    """Headers and raw body stream of a successful origin response."""

    status_code: int
    headers: httpx.Headers
    response: httpx.Response

    @property
    def content_length(self) -> Optional[int]:
        return parse_content_length(self.headers.get("content-length"))

    @property
    def redirect_location(self) -> Optional[str]:
        return self.headers.get(REDIRECT_LOCATION_HEADER) or None

    async def body(self) -> AsyncIterator[bytes]:
        # Raw bytes keep any Content-Encoding intact for both the client and the primary copy.
        try:
            async for chunk in self.response.aiter_raw():
                yield chunk
        finally:
            await self.response.aclose()

    async def aclose(self) -> None:
        await self.response.aclose()


class OriginFetcher:
    def __init__(self, settings: MigrationProxySettings, http_client: httpx.AsyncClient) -> None:
        self._client = http_client
        self._endpoint = settings.resolved_origin_endpoint
        self._service = settings.origin_service
        self._region = settings.origin_region
        self._access_key = settings.origin_access_key_id
        self._secret_key = (
            settings.origin_secret_access_key.get_secret_value() if settings.origin_secret_access_key else None
        )
        self._timeout = settings.origin_timeout_seconds
        self._user_agent = settings.origin_user_agent

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def object_url(self, bucket: str, key: str) -> str:
        return f"{self._endpoint}/{quote(bucket, safe='')}/{quote(key, safe='/')}"

    def sign(self, url: str) -> dict[str, str]:
        """Return the headers of a SigV4-signed GET for ``url``."""

        if not self._access_key or not self._secret_key:
            raise OriginSigningError("Origin credentials are not configured")
        request = AWSRequest(method="GET", url=url, headers={"User-Agent": self._user_agent})
        signer_cls = S3SigV4Auth if self._service == "s3" else SigV4Auth
        try:
            signer_cls(Credentials(self._access_key, self._secret_key), self._service, self._region).add_auth(request)
        except Exception as exc:  # noqa: BLE001
            raise OriginSigningError(f"Failed to sign origin request: {exc}") from exc
        return dict(request.headers.items())

    async def fetch(self, bucket: str, key: str) -> Optional[FetchedObject]:
        """Fetch ``bucket/key``; ``None`` means the origin does not have it."""

        url = self.object_url(bucket, key)
        with TRACER.start_as_current_span(
            "migration_proxy.origin_fetch",
            attributes={"stratus.bucket": bucket, "stratus.key": key},
        ) as span:
            headers = self.sign(url)
            request = self._client.build_request("GET", url, headers=headers)
            try:
                response = await asyncio.wait_for(self._client.send(request, stream=True), timeout=self._timeout)
            except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
                LOGGER.warning("Origin fetch timed out", bucket=bucket, key=key, timeout=self._timeout)
                span.set_attribute("stratus.origin_timeout", True)
                raise OriginTimeoutError(self._timeout) from exc

            span.set_attribute("http.status_code", response.status_code)
            if response.status_code == 404:
                await response.aclose()
                return None
            if response.status_code >= 300:
                await response.aclose()
                LOGGER.warning("Origin returned unexpected status", bucket=bucket, key=key, status=response.status_code)
                raise OriginResponseError(response.status_code)
            return FetchedObject(status_code=response.status_code, headers=response.headers, response=response)
