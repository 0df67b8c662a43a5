from __future__ import annotations

import pytest
from pydantic import ValidationError

from stratus.common.schemas import BucketConfig
from stratus.migration_proxy.routing import (
    HostRouter,
    RootObjectBlocked,
    UnknownHostError,
    normalise_host,
    resolve_object_key,
    storage_key,
)


@pytest.fixture
def router() -> HostRouter:
    return HostRouter(
        {
            "Data.Example.org": BucketConfig(bucket_name="data-bucket", index_file="index.html"),
            "v2.example.org": BucketConfig(bucket_name="v2-bucket", block_root=True),
        }
    )


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("data.example.org", "data.example.org"),
        ("DATA.example.org:8443", "data.example.org"),
        ("[::1]:8080", "[::1]"),
        ("", ""),
        (None, ""),
    ],
)
def test_normalise_host(raw, expected) -> None:
    assert normalise_host(raw) == expected


def test_resolve_exact_host_ignoring_port_and_case(router: HostRouter) -> None:
    assert router.resolve("data.example.org:443").bucket_name == "data-bucket"
    assert "DATA.EXAMPLE.ORG" in router
    assert len(router) == 2
    assert router.hosts == ["data.example.org", "v2.example.org"]


@pytest.mark.parametrize("host", ["example.org", "sub.data.example.org", "data.example.org.evil.net", None])
def test_unknown_hosts_are_rejected(router: HostRouter, host) -> None:
    with pytest.raises(UnknownHostError):
        router.resolve(host)


def test_host_table_is_immutable(router: HostRouter) -> None:
    with pytest.raises(TypeError):
        router._table["evil.example.org"] = BucketConfig(bucket_name="evil")  # type: ignore[index]
    with pytest.raises(ValidationError):
        router.resolve("v2.example.org").block_root = False  # type: ignore[misc]


def test_index_file_is_appended_to_directory_keys(router: HostRouter) -> None:
    config = router.resolve("data.example.org")
    assert resolve_object_key(config, "") == "index.html"
    assert resolve_object_key(config, "docs/") == "docs/index.html"
    assert resolve_object_key(config, "docs/file.csv") == "docs/file.csv"


def test_block_root_wins_over_index_file() -> None:
    config = BucketConfig(bucket_name="b", index_file="index.html", block_root=True)
    with pytest.raises(RootObjectBlocked):
        resolve_object_key(config, "")
    with pytest.raises(RootObjectBlocked):
        resolve_object_key(config, "dir/")
    assert resolve_object_key(config, "dir/file") == "dir/file"


def test_empty_key_without_index_is_rejected() -> None:
    with pytest.raises(RootObjectBlocked):
        resolve_object_key(BucketConfig(bucket_name="b"), "")


def test_directory_key_without_index_is_served_as_is() -> None:
    assert resolve_object_key(BucketConfig(bucket_name="b"), "dir/") == "dir/"


def test_storage_key_prefixes_bucket() -> None:
    assert storage_key(BucketConfig(bucket_name="v2-bucket"), "us/ca/file.zip") == "v2-bucket/us/ca/file.zip"
