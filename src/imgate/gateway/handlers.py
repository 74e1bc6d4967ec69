"""Control message handling for gateway connections."""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Awaitable, Callable

from loguru import logger

from imgate.core.constants import DEFAULT_COMMAND_CODE, DEFAULT_COMMAND_TIMEOUT, DEFAULT_IDENTITY_PREFIX
from imgate.core.errors import DispatchFailed, GatewayError, SignatureError
from imgate.gateway.connection import GatewayConnection
from imgate.gateway.dispatcher import CommandDispatcher, build_candidates, new_trace_id
from imgate.gateway.registry import SessionRegistry
from imgate.identity.ids import parse_uid_token, to_backend_uid
from imgate.identity.signer import CredentialProvider
from imgate.session.envelope import build_envelope

_COMMAND_ID_RE = re.compile(r"[A-Za-z0-9_-]{1,64}")

Handler = Callable[[GatewayConnection, dict[str, Any]], Awaitable[None]]


def _first(msg: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = msg.get(key)
        if value not in (None, ""):
            return value
    return None


class GatewayHandler:
    """Routes inbound control messages to the registry, sessions and dispatcher."""

    def __init__(
        self,
        registry: SessionRegistry,
        dispatcher: CommandDispatcher,
        *,
        credentials: CredentialProvider | None = None,
        command_code: str = DEFAULT_COMMAND_CODE,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        identity_prefix: str = DEFAULT_IDENTITY_PREFIX,
    ) -> None:
        self._registry = registry
        self._dispatcher = dispatcher
        self._credentials = credentials
        self.command_code = command_code
        self.command_timeout = command_timeout
        self._prefix = identity_prefix
        self._handlers: dict[str, Handler] = {
            "login": self._login,
            "logout": self._logout,
            "sendCommand": self._send_command,
            "getStatus": self._get_status,
            "ping": self._ping,
            "diagnose": self._diagnose,
        }

    async def handle_text(self, conn: GatewayConnection, text: str) -> None:
        try:
            msg = json.loads(text)
        except ValueError:
            logger.warning("[{}] ignored non-JSON message", conn.id)
            return
        if not isinstance(msg, dict):
            logger.warning("[{}] ignored non-object message", conn.id)
            return
        await self.handle(conn, msg)

    async def handle(self, conn: GatewayConnection, msg: dict[str, Any]) -> None:
        kind = msg.get("type")
        handler = self._handlers.get(kind) if isinstance(kind, str) else None
        if handler is None:
            conn.notify("error", message=f"unknown message type: {kind}")
            return
        await handler(conn, msg)

    async def _login(self, conn: GatewayConnection, msg: dict[str, Any]) -> None:
        parsed = parse_uid_token(_first(msg, "identity", "uid"), msg.get("token"), self._prefix)
        if not parsed.uid or not parsed.token:
            conn.notify("error", message="login requires uid and token")
            return
        if parsed.used_connect_code:
            conn.notify_log("info", "Parsed uid and token from connect code")

        session = self._registry.session_for(conn)
        conn.notify_log("info", f"Logging in as {parsed.uid}")
        try:
            await session.login_with(parsed.uid, parsed.token)
        except GatewayError as exc:
            logger.warning("[{}] login failed: {}", conn.id, exc)
            conn.notify("error", message=f"login failed: {exc}", code=exc.code)
            conn.notify_status()

    async def _logout(self, conn: GatewayConnection, msg: dict[str, Any]) -> None:
        session = conn.session
        if session is not None:
            await session.destroy()
        conn.notify_log("info", "Logged out")
        conn.notify_status()

    async def _send_command(self, conn: GatewayConnection, msg: dict[str, Any]) -> None:
        trace_id = str(_first(msg, "traceId") or new_trace_id())
        session = self._registry.session_for(conn)
        if not session.ready:
            conn.notify(
                "commandResult",
                success=False,
                recipient=None,
                attempts=[],
                traceId=trace_id,
                message="session not ready; login first",
            )
            return
        payload = msg.get("payload")
        if payload in (None, ""):
            conn.notify(
                "commandResult",
                success=False,
                recipient=None,
                attempts=[],
                traceId=trace_id,
                message="payload is required",
            )
            return

        envelope = build_envelope(payload, session.token or "", default_code=self.command_code)
        override = _first(msg, "recipientOverride", "targetId")
        try:
            result = await asyncio.wait_for(
                self._dispatcher.dispatch(
                    session,
                    envelope,
                    recipient_override=override,
                    trace_id=trace_id,
                ),
                self.command_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("[{}] {} timed out", conn.id, trace_id)
            conn.notify(
                "error",
                message=f"command timed out after {self.command_timeout:g}s",
                traceId=trace_id,
            )
            return
        except DispatchFailed as exc:
            conn.notify(
                "commandResult",
                success=False,
                recipient=None,
                attempts=[a.to_dict() for a in exc.attempts],
                traceId=trace_id,
                message=str(exc),
            )
            return

        conn.notify(
            "commandResult",
            success=True,
            recipient=result.recipient,
            attempts=[a.to_dict() for a in result.attempts],
            traceId=trace_id,
        )

    async def _get_status(self, conn: GatewayConnection, msg: dict[str, Any]) -> None:
        conn.notify_status()

    async def _ping(self, conn: GatewayConnection, msg: dict[str, Any]) -> None:
        conn.mark_alive()
        conn.notify("pong")

    async def _diagnose(self, conn: GatewayConnection, msg: dict[str, Any]) -> None:
        """Check uid/token/command id and the signing endpoint without logging in."""
        session = conn.session
        parsed = parse_uid_token(
            _first(msg, "identity", "uid") or (session.uid if session else None),
            _first(msg, "token") or (session.token if session else None),
            self._prefix,
        )
        command_id = str(_first(msg, "commandId", "id") or "").strip()
        candidates = build_candidates(
            [
                _first(msg, "recipientOverride", "targetId"),
                self._dispatcher.fallback_target,
                session.remote_user_id if session else None,
                parsed.uid,
            ],
            prefix=self._prefix,
        )
        checks: dict[str, Any] = {
            "ready": bool(session and session.ready),
            "uid": parsed.uid,
            "backendUid": to_backend_uid(parsed.uid, self._prefix),
            "usedConnectCode": parsed.used_connect_code,
            "tokenLength": len(parsed.token),
            "tokenHasWhitespace": any(c.isspace() for c in parsed.token),
            "commandId": command_id or None,
            "commandIdLooksValid": bool(_COMMAND_ID_RE.fullmatch(command_id)),
            "candidates": candidates,
            "signing": await self._check_signing(parsed.uid, parsed.token),
        }

        hints: list[str] = []
        if not parsed.uid or not parsed.token:
            hints.append("uid or token missing; paste the connect code or fill both fields")
        if checks["tokenHasWhitespace"]:
            hints.append("token contains whitespace; copy it again")
        if command_id and not checks["commandIdLooksValid"]:
            hints.append("command id should be letters, digits, '-' or '_'")
        if parsed.uid and parsed.token and not checks["signing"]["ok"]:
            hints.append("signing failed; the token may be expired")
        if not candidates:
            hints.append("no recipient candidates; set targetId or command_fallback_target")
        conn.notify("diagnoseResult", checks=checks, hints=hints)

    async def _check_signing(self, uid: str | None, token: str) -> dict[str, Any]:
        if not uid or not token:
            return {"ok": False, "message": "uid/token missing"}
        if self._credentials is None:
            return {"ok": False, "message": "no credential provider configured"}
        try:
            creds = await self._credentials.fetch(to_backend_uid(uid, self._prefix) or uid, token)
        except SignatureError as exc:
            return {"ok": False, "message": str(exc), "code": exc.code}
        return {
            "ok": True,
            "appIdentity": creds.app_identity,
            "remoteUserId": creds.remote_user_id,
            "signatureLength": len(creds.session_signature),
        }
