from __future__ import annotations

from pathlib import Path

import pytest

from stratus.common.schemas import BucketConfig, RefererRule
from stratus.common.settings import MigrationProxySettings


DATA_HOST = "data.example.org"
V2_HOST = "v2.example.org"
BATCH_HOST = "batch.example.org"


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):
    for name in (
        "STRATUS_BUCKETS",
        "STRATUS_REFERER_RULES",
        "STRATUS_HOST_TABLE",
        "STRATUS_USAGE_REDIS_URL",
        "STRATUS_STATS_DB",
        "STRATUS_METRICS_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_settings(tmp_path: Path):
    def _make(**overrides) -> MigrationProxySettings:
        values = {
            "buckets": {
                DATA_HOST: BucketConfig(bucket_name="data-bucket", index_file="index.html", cache_control="public, max-age=60"),
                V2_HOST: BucketConfig(bucket_name="v2-bucket", block_root=True),
                BATCH_HOST: BucketConfig(bucket_name="batch-bucket"),
            },
            "referer_rules": [RefererRule(host=BATCH_HOST, path_prefix="/private/")],
            "origin_access_key_id": "AKIDEXAMPLE",
            "origin_secret_access_key": "wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY",
            "origin_timeout_seconds": 1.0,
            "primary_backend": "local",
            "primary_local_path": tmp_path / "primary",
            "writeback_drain_timeout_seconds": 5.0,
            "edge_cache_enabled": False,
        }
        values.update(overrides)
        return MigrationProxySettings(**values)

    return _make
