"""Helpers for safe debug logging.

Requests to the hosted backend carry the project API key and the
signed-in user's bearer token, and broker connections carry passwords.
``redact_for_log`` masks them before anything reaches a DEBUG log.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

_SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "apikey",
        "api_key",
        "authorization",
        "password",
        "cookie",
        "secret",
    }
)

_MASK = "<redacted>"


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    # access_token, refresh_token, provider_token, ...
    return lowered in _SENSITIVE_KEYS or lowered.endswith("token")


def redact_for_log(value: Any, *, max_string: int = 256, _depth: int = 0) -> Any:
    """Return a copy of *value* with credentials masked and long strings cut."""
    if _depth > 16:
        return "<max-depth>"

    if value is None or isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, str):
        if value.startswith("Bearer "):
            return f"Bearer {_MASK}"
        if len(value) > max_string:
            return f"{value[:max_string]}…<truncated>"
        return value

    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        return {
            str(k): _MASK if _is_sensitive(str(k)) else redact_for_log(v, max_string=max_string, _depth=_depth + 1)
            for k, v in value.items()
        }

    if isinstance(value, Sequence):
        return [redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value]

    return repr(value)
