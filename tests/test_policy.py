from __future__ import annotations

from stratus.common.schemas import RefererRule
from stratus.migration_proxy.policy import AccessPolicy


def _policy() -> AccessPolicy:
    return AccessPolicy(
        [
            RefererRule(host="Batch.Example.org", path_prefix="/private/"),
            RefererRule(host="batch.example.org", path_prefix="private/public/", require_referer=False),
        ]
    )


def test_rule_requires_referer_under_prefix() -> None:
    decision = _policy().evaluate("batch.example.org", "private/report.csv", {})
    assert decision.allowed is False
    assert "private/" in (decision.reason or "")


def test_referer_header_satisfies_rule() -> None:
    decision = _policy().evaluate("batch.example.org", "private/report.csv", {"referer": "https://batch.example.org/"})
    assert decision.allowed is True


def test_longer_prefix_can_relax_rule() -> None:
    assert _policy().evaluate("batch.example.org", "private/public/file", {}).allowed is True


def test_other_paths_and_hosts_are_unaffected() -> None:
    policy = _policy()
    assert policy.evaluate("batch.example.org", "open/file", {}).allowed is True
    assert policy.evaluate("data.example.org", "private/report.csv", {}).allowed is True


def test_varies_on_referer_only_for_hosts_with_rules() -> None:
    policy = _policy()
    assert policy.varies_on_referer("batch.example.org") is True
    assert policy.varies_on_referer("data.example.org") is False
