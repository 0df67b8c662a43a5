"""Primary object store backends (S3-compatible or local disk)."""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import tempfile
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import format_datetime, parsedate_to_datetime
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Mapping, Optional

import boto3
from botocore.exceptions import ClientError
import structlog

from ..common.settings import MigrationProxySettings
from .origin import REDIRECT_LOCATION_HEADER
from .streams import iter_file

LOGGER = structlog.get_logger("stratus.migration_proxy.primary")

# Response header -> boto3 parameter for metadata mirrored onto stored objects.
CONTENT_METADATA_FIELDS = {
    "content-type": "ContentType",
    "content-language": "ContentLanguage",
    "content-disposition": "ContentDisposition",
    "content-encoding": "ContentEncoding",
    "cache-control": "CacheControl",
    "expires": "Expires",
}
_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


class PrimaryStoreError(Exception):
    """Raised when the primary store fails for reasons other than a missing key."""


class PrimaryStoreUnavailable(PrimaryStoreError):
    """Raised when retries are exhausted or the circuit breaker is open."""


def _format_header_value(value: Any) -> str:
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return format_datetime(aware.astimezone(UTC), usegmt=True)
    return str(value)


def content_metadata_from_headers(headers: Mapping[str, str]) -> dict[str, str]:
    metadata: dict[str, str] = {}
    for name in CONTENT_METADATA_FIELDS:
        value = headers.get(name)
        if value:
            metadata[name] = value
    return metadata


@dataclass
class ObjectHead:
    key: str
    size: Optional[int] = None
    etag: Optional[str] = None
    last_modified: Optional[datetime] = None
    content_metadata: dict[str, str] = field(default_factory=dict)
    custom_metadata: dict[str, str] = field(default_factory=dict)

    @property
    def redirect_location(self) -> Optional[str]:
        return self.custom_metadata.get(REDIRECT_LOCATION_HEADER) or None

    def response_headers(self) -> dict[str, str]:
        headers = dict(self.content_metadata)
        if self.size is not None:
            headers["content-length"] = str(self.size)
        if self.etag:
            headers["etag"] = self.etag
        if self.last_modified is not None:
            headers["last-modified"] = _format_header_value(self.last_modified)
        return headers


@dataclass
class StoredObject:
    head: ObjectHead
    body: AsyncIterator[bytes]


class PrimaryStore:
    async def head(self, key: str) -> Optional[ObjectHead]:  # pragma: no cover - interface
        raise NotImplementedError

    async def get(self, key: str) -> Optional[StoredObject]:  # pragma: no cover - interface
        raise NotImplementedError

    async def put(
        self,
        key: str,
        body: AsyncIterator[bytes],
        content_metadata: Mapping[str, str],
        custom_metadata: Mapping[str, str],
    ) -> int:  # pragma: no cover - interface
        raise NotImplementedError

    def status(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError


class CircuitBreaker:
    def __init__(self, failure_threshold: int, reset_timeout: float):
        self._failure_threshold = max(1, failure_threshold)
        self._reset_timeout = max(0.0, reset_timeout)
        self._failure_count = 0
        self._opened_at: float | None = None

    def _maybe_reset(self) -> None:
        if self._opened_at is None:
            return
        if time.monotonic() - self._opened_at >= self._reset_timeout:
            self._opened_at = None
            self._failure_count = 0

    def allow_request(self) -> bool:
        self._maybe_reset()
        return self._opened_at is None

    def record_success(self) -> None:
        self._failure_count = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._failure_count >= self._failure_threshold:
            self._opened_at = time.monotonic()

    @property
    def is_open(self) -> bool:
        self._maybe_reset()
        return self._opened_at is not None


def _is_missing(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code", "") in _MISSING_CODES


class S3PrimaryStore(PrimaryStore):
    """S3-compatible primary store (R2, MinIO, S3) driven through boto3."""

    def __init__(self, settings: MigrationProxySettings, client=None):
        if not settings.primary_s3_bucket:
            raise RuntimeError("S3 configuration incomplete for primary store")
        if client is None:
            session = boto3.session.Session()
            client_args: dict[str, Optional[str]] = {
                "endpoint_url": settings.primary_s3_endpoint_url,
                "region_name": settings.primary_s3_region,
            }
            client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._client = client
        self._bucket = settings.primary_s3_bucket
        self._endpoint = settings.primary_s3_endpoint_url
        self._spool_bytes = max(0, settings.writeback_spool_bytes)
        self._max_retries = max(0, settings.primary_s3_max_retries)
        self._retry_base = max(0.0, settings.primary_s3_retry_base_seconds)
        self._retry_max = max(self._retry_base, settings.primary_s3_retry_max_seconds)
        self._breaker = CircuitBreaker(
            failure_threshold=settings.primary_s3_circuit_breaker_failures,
            reset_timeout=settings.primary_s3_circuit_breaker_reset_seconds,
        )

    async def head(self, key: str) -> Optional[ObjectHead]:
        try:
            response = await self._call_with_retry(self._client.head_object, Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if _is_missing(exc):
                return None
            raise PrimaryStoreError(f"head_object failed for {key}") from exc
        return self._head_from_response(key, response)

    async def get(self, key: str) -> Optional[StoredObject]:
        try:
            response = await self._call_with_retry(self._client.get_object, Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if _is_missing(exc):
                return None
            raise PrimaryStoreError(f"get_object failed for {key}") from exc
        return StoredObject(head=self._head_from_response(key, response), body=iter_file(response["Body"]))

    async def put(
        self,
        key: str,
        body: AsyncIterator[bytes],
        content_metadata: Mapping[str, str],
        custom_metadata: Mapping[str, str],
    ) -> int:
        extra_args = self._extra_args(content_metadata, custom_metadata)
        with tempfile.SpooledTemporaryFile(max_size=self._spool_bytes) as spool:
            size = 0
            async for chunk in body:
                spool.write(chunk)
                size += len(chunk)

            def _upload() -> None:
                spool.seek(0)
                self._client.upload_fileobj(spool, self._bucket, key, ExtraArgs=extra_args)

            try:
                await self._call_with_retry(_upload)
            except ClientError as exc:
                raise PrimaryStoreError(f"upload failed for {key}") from exc
        return size

    def status(self) -> dict[str, object]:
        return {
            "backend": "s3",
            "bucket": self._bucket,
            "endpoint": self._endpoint,
            "circuit_open": self._breaker.is_open,
        }

    @staticmethod
    def _extra_args(content_metadata: Mapping[str, str], custom_metadata: Mapping[str, str]) -> dict[str, Any]:
        extra: dict[str, Any] = {}
        for header, param in CONTENT_METADATA_FIELDS.items():
            value = content_metadata.get(header)
            if not value:
                continue
            if param == "Expires":
                try:
                    extra[param] = parsedate_to_datetime(value)
                except (TypeError, ValueError):
                    continue
            else:
                extra[param] = value
        if custom_metadata:
            extra["Metadata"] = dict(custom_metadata)
        return extra

    @staticmethod
    def _head_from_response(key: str, response: Mapping[str, Any]) -> ObjectHead:
        content_metadata: dict[str, str] = {}
        for header, param in CONTENT_METADATA_FIELDS.items():
            value = response.get(param)
            if value is not None:
                content_metadata[header] = _format_header_value(value)
        length = response.get("ContentLength")
        return ObjectHead(
            key=key,
            size=int(length) if length is not None else None,
            etag=response.get("ETag"),
            last_modified=response.get("LastModified"),
            content_metadata=content_metadata,
            custom_metadata=dict(response.get("Metadata") or {}),
        )

    async def _call_with_retry(self, func: Callable[..., Any], **kwargs) -> Any:
        if not self._breaker.allow_request():
            raise PrimaryStoreUnavailable("Primary store temporarily unavailable")

        attempt = 0
        while True:
            try:
                result = await asyncio.to_thread(func, **kwargs)
                self._breaker.record_success()
                return result
            except ClientError as exc:
                if _is_missing(exc):
                    self._breaker.record_success()
                    raise
                error = exc
            except Exception as exc:  # noqa: BLE001
                error = exc
            attempt += 1
            if attempt > self._max_retries:
                self._breaker.record_failure()
                LOGGER.error("Primary store call failed", operation=getattr(func, "__name__", "call"), error=str(error))
                raise PrimaryStoreUnavailable("Primary store temporarily unavailable") from error
            delay = min(self._retry_base * (2 ** (attempt - 1)), self._retry_max)
            if delay:
                await asyncio.sleep(delay)


class LocalPrimaryStore(PrimaryStore):
    """Filesystem primary store: object bytes plus a JSON metadata sidecar."""

    def __init__(self, settings: MigrationProxySettings):
        self._root = Path(settings.primary_local_path).expanduser().resolve()
        self._objects = self._root / "objects"
        self._metadata = self._root / "metadata"

    def _resolve(self, base: Path, key: str, suffix: str = "") -> Path:
        candidate = base.joinpath(*key.split("/"))
        resolved = candidate.with_name(candidate.name + suffix).resolve(strict=False)
        if not resolved.is_relative_to(base.resolve()):
            raise PrimaryStoreError(f"Invalid storage key {key!r}")
        return resolved

    def _load_head(self, key: str) -> Optional[ObjectHead]:
        data_path = self._resolve(self._objects, key)
        meta_path = self._resolve(self._metadata, key, ".json")
        if not data_path.is_file() or not meta_path.is_file():
            return None
        meta = json.loads(meta_path.read_text(encoding="utf-8"))
        stat = data_path.stat()
        return ObjectHead(
            key=key,
            size=stat.st_size,
            etag=meta.get("etag"),
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
            content_metadata=dict(meta.get("content_metadata") or {}),
            custom_metadata=dict(meta.get("custom_metadata") or {}),
        )

    async def head(self, key: str) -> Optional[ObjectHead]:
        return self._load_head(key)

    async def get(self, key: str) -> Optional[StoredObject]:
        head = self._load_head(key)
        if head is None:
            return None
        handle = self._resolve(self._objects, key).open("rb")
        return StoredObject(head=head, body=iter_file(handle))

    async def put(
        self,
        key: str,
        body: AsyncIterator[bytes],
        content_metadata: Mapping[str, str],
        custom_metadata: Mapping[str, str],
    ) -> int:
        data_path = self._resolve(self._objects, key)
        meta_path = self._resolve(self._metadata, key, ".json")
        data_path.parent.mkdir(parents=True, exist_ok=True)
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        digest = hashlib.md5(usedforsecurity=False)
        size = 0
        fd, tmp_name = tempfile.mkstemp(dir=data_path.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as handle:
                async for chunk in body:
                    handle.write(chunk)
                    digest.update(chunk)
                    size += len(chunk)
            os.replace(tmp_name, data_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        meta = {
            "etag": f'"{digest.hexdigest()}"',
            "content_metadata": dict(content_metadata),
            "custom_metadata": dict(custom_metadata),
        }
        self._write_atomic(meta_path, json.dumps(meta).encode("utf-8"))
        return size

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".meta-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def status(self) -> dict[str, object]:
        self._root.mkdir(parents=True, exist_ok=True)
        return {
            "backend": "local",
            "storage_path": str(self._root),
            "writable": os.access(self._root, os.W_OK),
        }


def build_primary_store(settings: MigrationProxySettings) -> PrimaryStore:
    if settings.primary_backend == "s3":
        return S3PrimaryStore(settings)
    return LocalPrimaryStore(settings)
