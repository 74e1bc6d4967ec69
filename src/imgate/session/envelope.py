"""Command envelope: the JSON text carried by a one-to-one backend message."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from imgate.core.constants import DEFAULT_COMMAND_CODE


@dataclass(frozen=True)
class CommandEnvelope:
    """{code, id-or-data, token}. Opaque beyond this shape."""

    code: str
    token: str
    id: str | None = None
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code}
        if self.id is not None:
            body["id"] = self.id
        else:
            body["data"] = self.data
        body["token"] = self.token
        return body

    def to_text(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))


def build_envelope(payload: Any, token: str | None, *, default_code: str = DEFAULT_COMMAND_CODE) -> CommandEnvelope:
    """Build an envelope from a client payload; a bare value is taken as the command id."""
    session_token = str(token or "").strip()
    if isinstance(payload, dict):
        code = str(payload.get("code") or "").strip() or default_code
        own_token = str(payload.get("token") or "").strip()
        if "id" in payload or "data" not in payload:
            raw_id = payload.get("id")
            return CommandEnvelope(
                code=code,
                id=str(raw_id if raw_id is not None else "").strip(),
                token=own_token or session_token,
            )
        return CommandEnvelope(code=code, data=payload.get("data"), token=own_token or session_token)
    return CommandEnvelope(code=default_code, id=str(payload).strip(), token=session_token)
