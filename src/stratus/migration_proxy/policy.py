"""Per-host access rules evaluated before any storage lookup."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

import structlog

from ..common.schemas import RefererRule

LOGGER = structlog.get_logger("stratus.migration_proxy.policy")


@dataclass
class PolicyDecision:
    allowed: bool
    reason: Optional[str] = None


class AccessPolicy:
    """Data-driven ``(host, path_prefix) -> require_referer`` rule table."""

    def __init__(self, rules: Iterable[RefererRule]) -> None:
        self._rules: dict[str, list[RefererRule]] = {}
        for rule in rules:
            self._rules.setdefault(rule.host, []).append(rule)
        for host_rules in self._rules.values():
            # Longest prefix first so a narrower rule can relax a broader one.
            host_rules.sort(key=lambda rule: len(rule.path_prefix), reverse=True)

    def varies_on_referer(self, host: str) -> bool:
        return any(rule.require_referer for rule in self._rules.get(host, ()))

    def evaluate(self, host: str, key: str, headers: Mapping[str, str]) -> PolicyDecision:
        for rule in self._rules.get(host, ()):
            if not key.startswith(rule.path_prefix):
                continue
            if rule.require_referer and not headers.get("referer"):
                LOGGER.info("referer_required", host=host, key=key, prefix=rule.path_prefix)
                return PolicyDecision(False, f"referer required for {rule.path_prefix!r}")
            return PolicyDecision(True)
        return PolicyDecision(True)
