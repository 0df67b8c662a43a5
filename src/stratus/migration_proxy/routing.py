"""Host to bucket resolution and root-key policy."""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from ..common.schemas import BucketConfig


class UnknownHostError(LookupError):
    """Raised when a request targets a host with no bucket configuration."""


class RootObjectBlocked(ValueError):
    """Raised when a key resolves to a bucket root that may not be served."""


def normalise_host(host: str | None) -> str:
    if not host:
        return ""
    host = host.strip().lower()
    if host.startswith("["):
        return host.split("]", 1)[0] + "]"
    return host.rsplit(":", 1)[0] if host.count(":") == 1 else host


class HostRouter:
    """Immutable exact-match lookup from request host to bucket configuration."""

    def __init__(self, table: Mapping[str, BucketConfig]) -> None:
        self._table = MappingProxyType({normalise_host(host): config for host, config in table.items()})

    def __contains__(self, host: str) -> bool:
        return normalise_host(host) in self._table

    def __len__(self) -> int:
        return len(self._table)

    @property
    def hosts(self) -> list[str]:
        return sorted(self._table)

    def resolve(self, host: str | None) -> BucketConfig:
        config = self._table.get(normalise_host(host))
        if config is None:
            raise UnknownHostError(host or "")
        return config


def resolve_object_key(config: BucketConfig, key: str) -> str:
    """Apply the bucket's root policy to a sanitized key."""

    if key == "" or key.endswith("/"):
        if config.block_root:
            raise RootObjectBlocked(key)
        if config.index_file:
            key += config.index_file
    if not key:
        raise RootObjectBlocked(key)
    return key


def storage_key(config: BucketConfig, key: str) -> str:
    return f"{config.bucket_name}/{key}"
