"""Per-client download quota over a sliding time window.

Clients are identified by a fingerprint built from their TLS client
extensions hash and autonomous system number, so rotating IP addresses does
not reset the quota. The ledger is a plain key/value store updated with
read-modify-write and last-writer-wins semantics: concurrent transfers for
the same fingerprint can lose updates and the limit is approximate.
"""

from __future__ import annotations

import json
import time
from typing import Callable, Mapping, Optional

from pydantic import ValidationError
from redis.asyncio import Redis
import structlog

from ..common.schemas import UsageRecord

LOGGER = structlog.get_logger("stratus.migration_proxy.usage")

DEFAULT_LIMIT_BYTES = 5 * 1024 * 1024 * 1024
DEFAULT_WINDOW_SECONDS = 24 * 60 * 60


def client_fingerprint(
    headers: Mapping[str, str],
    tls_header: str = "X-TLS-Client-Extensions-SHA1",
    asn_header: str = "X-Client-ASN",
) -> str:
    tls_hash = headers.get(tls_header) or "unknown"
    asn = headers.get(asn_header) or "unknown"
    return f"{tls_hash}:{asn}"


def ledger_key(fingerprint: str) -> str:
    return f"fp:{fingerprint}"


class UsageLedger:
    async def get(self, key: str) -> Optional[dict]:  # pragma: no cover - interface
        raise NotImplementedError

    async def put(self, key: str, value: dict) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class RedisUsageLedger(UsageLedger):
    """Ledger stored as JSON strings in Redis, without server-side expiry."""

    def __init__(self, redis: Redis):
        self._redis = redis

    async def get(self, key: str) -> Optional[dict]:
        raw = await self._redis.get(key)
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)

    async def put(self, key: str, value: dict) -> None:
        await self._redis.set(key, json.dumps(value))

    async def close(self) -> None:
        await self._redis.aclose()


class InMemoryUsageLedger(UsageLedger):
    """Per-process ledger for development and single-instance deployments."""

    def __init__(self):
        self._entries: dict[str, str] = {}

    async def get(self, key: str) -> Optional[dict]:
        raw = self._entries.get(key)
        return json.loads(raw) if raw is not None else None

    async def put(self, key: str, value: dict) -> None:
        self._entries[key] = json.dumps(value)


class UsageLimiter:
    def __init__(
        self,
        ledger: UsageLedger,
        *,
        limit_bytes: int = DEFAULT_LIMIT_BYTES,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ledger = ledger
        self._limit = limit_bytes
        self._window_ms = window_seconds * 1000
        self._clock = clock

    @property
    def limit_bytes(self) -> int:
        return self._limit

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def _read(self, fingerprint: str) -> Optional[UsageRecord]:
        payload = await self._ledger.get(ledger_key(fingerprint))
        if payload is None:
            return None
        try:
            return UsageRecord.model_validate(payload)
        except ValidationError:
            LOGGER.warning("Discarding malformed usage record", fingerprint=fingerprint)
            return None

    async def check(self, fingerprint: str) -> bool:
        """Return True when ``fingerprint`` has exhausted its quota for the current window."""

        try:
            record = await self._read(fingerprint)
        except Exception as exc:  # noqa: BLE001
            # Fail open so a ledger outage never takes downloads offline.
            LOGGER.error("Usage ledger read failed, failing open", fingerprint=fingerprint, error=str(exc))
            return False
        if record is None:
            return False
        if self._now_ms() - record.timestamp > self._window_ms:
            return False
        exceeded = record.usage >= self._limit
        if exceeded:
            LOGGER.warning(
                "Download limit exceeded",
                fingerprint=fingerprint,
                usage=record.usage,
                limit=self._limit,
            )
        return exceeded

    async def track(self, fingerprint: str, transferred: int) -> int:
        """Add ``transferred`` bytes to the fingerprint's usage and return the new total."""

        now = self._now_ms()
        try:
            record = await self._read(fingerprint)
            usage = transferred
            if record is not None and now - record.timestamp <= self._window_ms:
                usage += record.usage
            await self._ledger.put(
                ledger_key(fingerprint),
                UsageRecord(usage=usage, timestamp=now).model_dump(),
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("Usage ledger update failed", fingerprint=fingerprint, error=str(exc))
            return 0
        return usage
