"""Command-line utilities for operating the Stratus migration proxy."""

from __future__ import annotations

import argparse
import asyncio
import json
from datetime import UTC, datetime
from typing import Any, Optional, Sequence

import httpx
from redis.asyncio import Redis

from ..common.settings import MigrationProxySettings
from ..migration_proxy.paths import InvalidObjectPath, normalize_object_path
from ..migration_proxy.routing import HostRouter, RootObjectBlocked, UnknownHostError, resolve_object_key, storage_key
from ..migration_proxy.usage import RedisUsageLedger, UsageLimiter, client_fingerprint, ledger_key


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Operate the Stratus migration proxy")
    subparsers = parser.add_subparsers(dest="command", required=True)

    status_parser = subparsers.add_parser("status", help="Show primary store status and migration totals")
    status_parser.add_argument("--admin-url", default="http://127.0.0.1:9460", help="Admin server base URL")
    status_parser.add_argument("--token", help="Bearer token for the admin surface (/status and /metrics)")
    status_parser.add_argument("--json", action="store_true", help="Output raw JSON")

    sanitize_parser = subparsers.add_parser("sanitize", help="Preview how a request path maps to a storage key")
    sanitize_parser.add_argument("path", help="Raw request path, e.g. /v2/../x")
    sanitize_parser.add_argument("--host", help="Resolve against this host's bucket configuration")

    usage_parser = subparsers.add_parser("usage", help="Inspect a client's download usage record")
    usage_parser.add_argument("--redis-url", help="Usage ledger Redis URL (defaults to STRATUS_USAGE_REDIS_URL)")
    usage_parser.add_argument("--tls-hash", help="TLS client extensions hash")
    usage_parser.add_argument("--asn", help="Client autonomous system number")
    usage_parser.add_argument("--fingerprint", help="Full fingerprint (hash:asn), overrides --tls-hash/--asn")

    return parser.parse_args(argv)


async def fetch_status(admin_url: str, token: Optional[str]) -> dict[str, Any]:
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.get(f"{admin_url.rstrip('/')}/status", headers=headers)
        response.raise_for_status()
        return response.json()


def print_status(payload: dict[str, Any]) -> None:
    primary = payload.get("primary", {})
    print(f"Primary backend: {primary.get('backend', '-')}")
    if primary.get("circuit_open"):
        print("Primary circuit breaker: OPEN")
    print(f"Hosts: {', '.join(payload.get('hosts', [])) or 'none'}")
    print(f"Pending background tasks: {payload.get('pending_tasks', 0)}")
    if "edge_cache_entries" in payload:
        print(f"Edge cache entries: {payload['edge_cache_entries']}")
    totals = payload.get("totals")
    if totals:
        print("Migration totals:")
        for key, value in sorted(totals.items()):
            print(f"  {key}: {value}")
    entries = payload.get("top_entries") or []
    if entries:
        print("Top objects:")
        for entry in entries:
            print(
                f"  {entry.get('storage_key')}: hits={entry.get('primary_hits', 0)} "
                f"fetches={entry.get('origin_fetches', 0)} bytes={entry.get('origin_bytes', 0)}"
            )


def describe_path(raw_path: str, host: Optional[str], settings: MigrationProxySettings) -> tuple[int, list[str]]:
    lines: list[str] = []
    try:
        key = normalize_object_path(raw_path)
    except InvalidObjectPath:
        return 1, [f"{raw_path!r}: rejected (Invalid request)"]
    lines.append(f"key: {key!r}")
    if host is None:
        return 0, lines
    try:
        config = HostRouter(settings.host_table()).resolve(host)
    except UnknownHostError:
        return 1, [*lines, f"host {host!r}: unknown"]
    try:
        resolved = resolve_object_key(config, key)
    except RootObjectBlocked:
        return 1, [*lines, "resolved: rejected (Bad Request)"]
    lines.append(f"resolved: {resolved!r}")
    lines.append(f"storage key: {storage_key(config, resolved)!r}")
    return 0, lines


def format_timestamp(value: Optional[int]) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value / 1000, tz=UTC).strftime("%Y-%m-%d %H:%M:%S")


async def fetch_usage(redis_url: str, fingerprint: str, settings: MigrationProxySettings) -> dict[str, Any]:
    ledger = RedisUsageLedger(Redis.from_url(redis_url))
    try:
        record = await ledger.get(ledger_key(fingerprint))
        limiter = UsageLimiter(
            ledger,
            limit_bytes=settings.usage_limit_bytes,
            window_seconds=settings.usage_window_seconds,
        )
        exceeded = await limiter.check(fingerprint)
    finally:
        await ledger.close()
    return {"fingerprint": fingerprint, "record": record, "exceeded": exceeded, "limit_bytes": settings.usage_limit_bytes}


async def run(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    if args.command == "status":
        payload = await fetch_status(args.admin_url, args.token)
        if args.json:
            print(json.dumps(payload, indent=2, default=str))
        else:
            print_status(payload)
        return 0

    settings = MigrationProxySettings()
    if args.command == "sanitize":
        code, lines = describe_path(args.path, args.host, settings)
        for line in lines:
            print(line)
        return code

    redis_url = args.redis_url or settings.usage_redis_url
    if not redis_url:
        print("No Redis URL given and STRATUS_USAGE_REDIS_URL is not set")
        return 2
    fingerprint = args.fingerprint or client_fingerprint(
        {"tls": args.tls_hash or "", "asn": args.asn or ""}, tls_header="tls", asn_header="asn"
    )
    result = await fetch_usage(redis_url, fingerprint, settings)
    record = result["record"] or {}
    print(f"Fingerprint: {fingerprint}")
    print(f"Usage: {record.get('usage', 0)} / {result['limit_bytes']} bytes")
    print(f"Last updated: {format_timestamp(record.get('timestamp'))}")
    print(f"Limit exceeded: {'yes' if result['exceeded'] else 'no'}")
    return 0


def main() -> None:
    raise SystemExit(asyncio.run(run()))


if __name__ == "__main__":
    main()
