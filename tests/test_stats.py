from __future__ import annotations

import pytest

from stratus.migration_proxy.stats import MigrationStats


@pytest.fixture
def stats(tmp_path):
    store = MigrationStats(f"sqlite:///{tmp_path / 'stats' / 'migration.db'}")
    yield store
    store.dispose()


def test_counters_accumulate_per_object(stats) -> None:
    stats.record_origin_fetch("v2-bucket/a.zip", 100)
    stats.record_origin_fetch("v2-bucket/a.zip", 50)
    stats.record_writeback("v2-bucket/a.zip", True, 100)
    stats.record_writeback("v2-bucket/a.zip", False)
    stats.record_primary_hit("v2-bucket/a.zip")

    entry = stats.get("v2-bucket/a.zip")
    assert entry is not None
    assert entry["origin_fetches"] == 2
    assert entry["origin_bytes"] == 150
    assert entry["writeback_successes"] == 1
    assert entry["writeback_failures"] == 1
    assert entry["primary_hits"] == 1
    assert stats.get("v2-bucket/missing.zip") is None


def test_negative_lengths_do_not_reduce_bytes(stats) -> None:
    stats.record_origin_fetch("k", -5)
    assert stats.get("k")["origin_bytes"] == 0


def test_top_entries_and_totals(stats) -> None:
    for _ in range(3):
        stats.record_primary_hit("hot")
    stats.record_origin_fetch("cold", 10)

    top = stats.top_entries(limit=1)
    assert [entry["storage_key"] for entry in top] == ["hot"]
    assert stats.totals() == {
        "objects": 2,
        "primary_hits": 3,
        "origin_fetches": 1,
        "origin_bytes": 10,
        "writeback_successes": 0,
        "writeback_failures": 0,
    }


def test_empty_totals_are_zero(stats) -> None:
    assert stats.totals()["objects"] == 0
    assert stats.top_entries() == []


def test_relative_sqlite_path_is_created(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    store = MigrationStats("sqlite:///nested/dir/stats.db")
    try:
        store.record_primary_hit("k")
    finally:
        store.dispose()
    assert (tmp_path / "nested" / "dir" / "stats.db").exists()
