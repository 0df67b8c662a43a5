"""Normalisation of attacker-controlled URL paths into object keys.

The request path is used directly as a storage key, so it is reduced to a
conservative character set and every input that needed traversal or control
byte stripping is rejected outright instead of being served under its
stripped name.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

_CONTROL_OR_NON_ASCII = re.compile(r"[\x00-\x1f\x7f-\xff]")
_ENCODED_CONTROL = re.compile(r"%[01][0-9A-Fa-f]")
_REPEATED_SLASHES = re.compile(r"/+")
_DISALLOWED = re.compile(r"[^A-Za-z0-9_.\-/]")
_DOT_SEGMENTS = frozenset({".", ".."})


class InvalidObjectPath(ValueError):
    """Raised when a request path carries control bytes or traversal segments."""


def raw_request_path(scope: Mapping[str, Any]) -> str:
    """Return the undecoded request path, one character per byte."""

    raw = scope.get("raw_path")
    if raw is None:
        raw = scope.get("path", "").encode("utf-8")
    # Some ASGI clients leave the query string on raw_path.
    return raw.split(b"?", 1)[0].decode("latin-1")


def _drop_dot_segments(path: str) -> str:
    collapsed = _REPEATED_SLASHES.sub("/", path)
    return "/".join(part for part in collapsed.split("/") if part not in _DOT_SEGMENTS)


def sanitize_path(raw: str) -> str:
    """Return ``raw`` reduced to a relative key over ``[A-Za-z0-9_.-/]``."""

    sanitized = _CONTROL_OR_NON_ASCII.sub("", raw)
    sanitized = _ENCODED_CONTROL.sub("", sanitized)
    sanitized = _drop_dot_segments(sanitized)
    sanitized = _DISALLOWED.sub("", sanitized)
    # Dropping characters can surface new empty or dot segments ("a/$/b", "..%").
    while True:
        normalised = _drop_dot_segments(sanitized)
        if normalised == sanitized:
            break
        sanitized = normalised
    return sanitized.lstrip("/")


def is_unsafe_path(raw: str) -> bool:
    if _CONTROL_OR_NON_ASCII.search(raw) or _ENCODED_CONTROL.search(raw):
        return True
    return any(segment in _DOT_SEGMENTS for segment in raw.split("/"))


def normalize_object_path(raw: str) -> str:
    """Sanitize ``raw`` and reject it if the original input was unsafe."""

    sanitized = sanitize_path(raw)
    if is_unsafe_path(raw):
        raise InvalidObjectPath("Invalid request")
    return sanitized
