"""Application configuration for the migration proxy service."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .schemas import BucketConfig, RefererRule

GIB = 1024 * 1024 * 1024
MIB = 1024 * 1024


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class MigrationProxySettings(BaseSettings):
    """Runtime settings for the lazy migration proxy and its admin surface."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    # Host table
    buckets: dict[str, BucketConfig] = Field(default_factory=dict, validation_alias="STRATUS_BUCKETS")
    referer_rules: list[RefererRule] = Field(default_factory=list, validation_alias="STRATUS_REFERER_RULES")
    host_table_path: Optional[Path] = env_field(None, "STRATUS_HOST_TABLE")

    # Client identification
    client_ip_header: str = env_field("CF-Connecting-IP", "STRATUS_CLIENT_IP_HEADER")
    tls_fingerprint_header: str = env_field("X-TLS-Client-Extensions-SHA1", "STRATUS_TLS_FINGERPRINT_HEADER")
    asn_header: str = env_field("X-Client-ASN", "STRATUS_ASN_HEADER")

    # Origin store
    origin_access_key_id: Optional[str] = env_field(None, "STRATUS_ORIGIN_ACCESS_KEY_ID")
    origin_secret_access_key: Optional[SecretStr] = env_field(None, "STRATUS_ORIGIN_SECRET_ACCESS_KEY")
    origin_service: str = env_field("s3", "STRATUS_ORIGIN_SERVICE")
    origin_region: str = env_field("us-east-1", "STRATUS_ORIGIN_REGION")
    origin_endpoint_url: Optional[str] = env_field(None, "STRATUS_ORIGIN_ENDPOINT")
    origin_timeout_seconds: float = env_field(20.0, "STRATUS_ORIGIN_TIMEOUT")
    origin_user_agent: str = env_field("Stratus-Migration-Proxy/1.0", "STRATUS_ORIGIN_USER_AGENT")

    # Primary store
    primary_backend: Literal["s3", "local"] = env_field("local", "STRATUS_PRIMARY_BACKEND")
    primary_local_path: Path = env_field(Path("./primary"), "STRATUS_PRIMARY_LOCAL_PATH")
    primary_s3_bucket: Optional[str] = env_field(None, "STRATUS_PRIMARY_S3_BUCKET")
    primary_s3_endpoint_url: Optional[str] = env_field(None, "STRATUS_PRIMARY_S3_ENDPOINT")
    primary_s3_region: Optional[str] = env_field(None, "STRATUS_PRIMARY_S3_REGION")
    primary_s3_max_retries: int = env_field(3, "STRATUS_PRIMARY_S3_MAX_RETRIES")
    primary_s3_retry_base_seconds: float = env_field(0.2, "STRATUS_PRIMARY_S3_RETRY_BASE")
    primary_s3_retry_max_seconds: float = env_field(2.0, "STRATUS_PRIMARY_S3_RETRY_MAX")
    primary_s3_circuit_breaker_failures: int = env_field(5, "STRATUS_PRIMARY_S3_CIRCUIT_FAILURES")
    primary_s3_circuit_breaker_reset_seconds: float = env_field(30.0, "STRATUS_PRIMARY_S3_CIRCUIT_RESET")
    primary_hit_mode: Literal["stream", "redirect"] = env_field("stream", "STRATUS_PRIMARY_HIT_MODE")
    primary_public_url: Optional[str] = env_field(None, "STRATUS_PRIMARY_PUBLIC_URL")

    # Write-back
    writeback_spool_bytes: int = env_field(8 * MIB, "STRATUS_WRITEBACK_SPOOL_BYTES")
    writeback_drain_timeout_seconds: float = env_field(30.0, "STRATUS_WRITEBACK_DRAIN_TIMEOUT")
    stream_tee_enabled: bool = env_field(True, "STRATUS_STREAM_TEE")

    # Usage limiter
    usage_redis_url: Optional[str] = env_field(None, "STRATUS_USAGE_REDIS_URL")
    usage_limit_bytes: int = env_field(5 * GIB, "STRATUS_USAGE_LIMIT_BYTES")
    usage_window_seconds: int = env_field(24 * 3600, "STRATUS_USAGE_WINDOW")

    # Edge response cache
    edge_cache_enabled: bool = env_field(True, "STRATUS_EDGE_CACHE_ENABLE")
    edge_cache_ttl_seconds: int = env_field(3600, "STRATUS_EDGE_CACHE_TTL")
    edge_cache_max_entries: int = env_field(1024, "STRATUS_EDGE_CACHE_MAX_ENTRIES")
    edge_cache_max_body_bytes: int = env_field(8 * MIB, "STRATUS_EDGE_CACHE_MAX_BODY_BYTES")
    edge_cache_control: Optional[str] = env_field("public, max-age=3600", "STRATUS_EDGE_CACHE_CONTROL")

    # Statistics and admin surface
    stats_database_url: Optional[str] = env_field(None, "STRATUS_STATS_DB")
    metrics_token: Optional[SecretStr] = env_field(None, "STRATUS_METRICS_TOKEN")
    proxy_host: str = env_field("0.0.0.0", "STRATUS_PROXY_HOST")
    proxy_port: int = env_field(8080, "STRATUS_PROXY_PORT")
    admin_host: str = env_field("127.0.0.1", "STRATUS_ADMIN_HOST")
    admin_port: int = env_field(9460, "STRATUS_ADMIN_PORT")

    log_level: str = env_field("INFO", "STRATUS_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "STRATUS_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "STRATUS_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "STRATUS_OTEL_SAMPLER_RATIO")

    @field_validator("stats_database_url", mode="before")
    @classmethod
    def _normalize_stats_url(cls, value):
        if value in (None, ""):
            return None
        if isinstance(value, Path):
            value = str(value)
        if isinstance(value, str) and "://" not in value:
            path = Path(value).expanduser().resolve()
            return f"sqlite+pysqlite:///{path.as_posix()}"
        return value

    @field_validator("buckets", mode="before")
    @classmethod
    def _lowercase_hosts(cls, value):
        if isinstance(value, dict):
            return {str(host).strip().lower(): config for host, config in value.items()}
        return value

    @field_validator("origin_endpoint_url", "primary_public_url", mode="before")
    @classmethod
    def _strip_trailing_slash(cls, value):
        if isinstance(value, str):
            value = value.strip().rstrip("/")
            return value or None
        return value

    @property
    def resolved_origin_endpoint(self) -> str:
        if self.origin_endpoint_url:
            return self.origin_endpoint_url
        return f"https://s3.{self.origin_region}.amazonaws.com"

    def host_table(self) -> dict[str, BucketConfig]:
        """Merge the YAML host table with environment entries (environment wins)."""

        table: dict[str, BucketConfig] = {}
        payload = self._load_host_table_file()
        for host, entry in (payload.get("hosts") or {}).items():
            table[str(host).strip().lower()] = BucketConfig.model_validate(entry)
        table.update(self.buckets)
        return table

    def access_rules(self) -> list[RefererRule]:
        payload = self._load_host_table_file()
        rules = [RefererRule.model_validate(entry) for entry in payload.get("referer_rules") or []]
        return [*rules, *self.referer_rules]

    def _load_host_table_file(self) -> dict[str, Any]:
        if self.host_table_path is None:
            return {}
        raw = yaml.safe_load(Path(self.host_table_path).read_text(encoding="utf-8")) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Host table {self.host_table_path} must be a mapping")
        return raw
