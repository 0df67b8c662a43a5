from __future__ import annotations

import json

import pytest

from stratus.cli import migration


def test_describe_path_without_host(make_settings) -> None:
    assert migration.describe_path("/us//ca/file.zip", None, make_settings()) == (0, ["key: 'us/ca/file.zip'"])
    code, lines = migration.describe_path("/a/../b", None, make_settings())
    assert code == 1
    assert lines == ["'/a/../b': rejected (Invalid request)"]


def test_describe_path_resolves_storage_key(make_settings) -> None:
    code, lines = migration.describe_path("/docs/", "Data.Example.org", make_settings())
    assert code == 0
    assert lines == ["key: 'docs/'", "resolved: 'docs/index.html'", "storage key: 'data-bucket/docs/index.html'"]


def test_describe_path_reports_blocked_root_and_unknown_host(make_settings) -> None:
    assert migration.describe_path("/", "v2.example.org", make_settings()) == (
        1,
        ["key: ''", "resolved: rejected (Bad Request)"],
    )
    assert migration.describe_path("/x", "nowhere.example.org", make_settings())[0] == 1


@pytest.mark.asyncio
async def test_run_sanitize_prints_key(capsys) -> None:
    assert await migration.run(["sanitize", "/files/$weird$name.txt"]) == 0
    assert capsys.readouterr().out.strip() == "key: 'files/weirdname.txt'"


@pytest.mark.asyncio
async def test_run_sanitize_rejects_control_bytes(capsys) -> None:
    assert await migration.run(["sanitize", "/a%00b"]) == 1
    assert "rejected" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_run_status_plain(monkeypatch, capsys) -> None:
    async def fake_status(admin_url: str, token):  # noqa: ANN001
        assert admin_url == "http://admin:9460"
        assert token == "secret"
        return {
            "primary": {"backend": "s3", "circuit_open": True},
            "hosts": ["data.example.org"],
            "pending_tasks": 2,
            "totals": {"origin_fetches": 4, "primary_hits": 10},
            "top_entries": [{"storage_key": "data-bucket/a", "primary_hits": 10, "origin_fetches": 4, "origin_bytes": 99}],
        }

    monkeypatch.setattr(migration, "fetch_status", fake_status)
    assert await migration.run(["status", "--admin-url", "http://admin:9460", "--token", "secret"]) == 0
    output = capsys.readouterr().out
    assert "Primary backend: s3" in output
    assert "Primary circuit breaker: OPEN" in output
    assert "Hosts: data.example.org" in output
    assert "  origin_fetches: 4" in output
    assert "data-bucket/a: hits=10 fetches=4 bytes=99" in output


@pytest.mark.asyncio
async def test_run_status_json(monkeypatch, capsys) -> None:
    async def fake_status(admin_url: str, token):  # noqa: ANN001
        return {"primary": {"backend": "local"}, "hosts": []}

    monkeypatch.setattr(migration, "fetch_status", fake_status)
    await migration.run(["status", "--json"])
    assert json.loads(capsys.readouterr().out)["primary"]["backend"] == "local"


@pytest.mark.asyncio
async def test_run_usage_requires_redis(capsys) -> None:
    assert await migration.run(["usage", "--tls-hash", "abc"]) == 2
    assert "STRATUS_USAGE_REDIS_URL" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_run_usage_prints_record(monkeypatch, capsys) -> None:
    async def fake_usage(redis_url: str, fingerprint: str, settings):  # noqa: ANN001
        assert redis_url == "redis://localhost:6379/0"
        assert fingerprint == "abc:64500"
        return {
            "fingerprint": fingerprint,
            "record": {"usage": 1024, "timestamp": 0},
            "exceeded": False,
            "limit_bytes": 2048,
        }

    monkeypatch.setattr(migration, "fetch_usage", fake_usage)
    code = await migration.run(
        ["usage", "--redis-url", "redis://localhost:6379/0", "--tls-hash", "abc", "--asn", "64500"]
    )
    output = capsys.readouterr().out
    assert code == 0
    assert "Fingerprint: abc:64500" in output
    assert "Usage: 1024 / 2048 bytes" in output
    assert "Last updated: 1970-01-01 00:00:00" in output
    assert "Limit exceeded: no" in output


@pytest.mark.asyncio
async def test_run_usage_defaults_missing_fingerprint_parts(monkeypatch, capsys) -> None:
    seen: list[str] = []

    async def fake_usage(redis_url: str, fingerprint: str, settings):  # noqa: ANN001
        seen.append(fingerprint)
        return {"fingerprint": fingerprint, "record": None, "exceeded": False, "limit_bytes": 1}

    monkeypatch.setattr(migration, "fetch_usage", fake_usage)
    await migration.run(["usage", "--redis-url", "redis://localhost", "--asn", "64500"])
    assert seen == ["unknown:64500"]
    assert "Last updated: -" in capsys.readouterr().out
