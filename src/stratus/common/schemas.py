"""Shared data models for the migration proxy."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BucketConfig(BaseModel):
    """Static per-host bucket configuration."""

    model_config = ConfigDict(frozen=True)

    bucket_name: str = Field(min_length=1)
    index_file: Optional[str] = None
    block_root: bool = False
    cache_control: Optional[str] = None


class RefererRule(BaseModel):
    """Requires a Referer header for keys under ``path_prefix`` on ``host``."""

    model_config = ConfigDict(frozen=True)

    host: str
    path_prefix: str
    require_referer: bool = True

    @field_validator("host", mode="before")
    @classmethod
    def _normalise_host(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("path_prefix", mode="before")
    @classmethod
    def _strip_leading_slash(cls, value):
        if isinstance(value, str):
            return value.lstrip("/")
        return value


class UsageRecord(BaseModel):
    """Ledger entry for a client fingerprint; ``timestamp`` is epoch milliseconds."""

    usage: int = Field(ge=0)
    timestamp: int
