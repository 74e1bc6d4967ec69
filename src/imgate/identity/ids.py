"""Backend uid normalisation and connect-code parsing."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from imgate.core.constants import DEFAULT_IDENTITY_PREFIX


def normalize_uid(value: Any, prefix: str = DEFAULT_IDENTITY_PREFIX) -> str | None:
    """Return the bare uid: stripped, without the backend prefix. None when empty."""
    if value is None:
        return None
    s = str(value).strip()
    if prefix and s.startswith(prefix):
        s = s[len(prefix) :]
    return s or None


def to_backend_uid(value: Any, prefix: str = DEFAULT_IDENTITY_PREFIX) -> str | None:
    """Return the prefixed uid used to log in to the backend."""
    uid = normalize_uid(value, prefix)
    return f"{prefix}{uid}" if uid else None


@dataclass
class ParsedLogin:
    uid: str | None
    token: str
    used_connect_code: bool = False


def _split(s: str) -> list[str]:
    return [p for p in s.split() if p]


def parse_uid_token(uid_input: Any, token_input: Any, prefix: str = DEFAULT_IDENTITY_PREFIX) -> ParsedLogin:
    """Parse login fields, accepting a pasted connect code ("uid token") in either field."""
    raw_uid = str(uid_input if uid_input is not None else "").strip()
    raw_token = str(token_input if token_input is not None else "").strip()
    uid, token = raw_uid, raw_token

    token_parts = _split(raw_token)
    if len(token_parts) >= 2:
        uid = token_parts[0]
        token = " ".join(token_parts[1:])

    uid_parts = _split(raw_uid)
    if len(uid_parts) >= 2:
        uid = uid_parts[0]
        token = " ".join(uid_parts[1:])

    return ParsedLogin(
        uid=normalize_uid(uid, prefix),
        token=token.strip(),
        used_connect_code=len(token_parts) >= 2 or len(uid_parts) >= 2,
    )
