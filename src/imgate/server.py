"""HTTP/WebSocket server: client gateway endpoint plus the admin control surface."""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import Any

from aiohttp import WSMsgType, web
from loguru import logger

from imgate.config import Config
from imgate.core.errors import DispatchFailed, GatewayConfigurationError, GatewayError, is_transient_network_timeout
from imgate.gateway import (
    CommandDispatcher,
    GatewayConnection,
    GatewayHandler,
    LivenessMonitor,
    SessionRegistry,
)
from imgate.gateway.dispatcher import new_trace_id
from imgate.identity.ids import parse_uid_token
from imgate.identity.signer import CredentialProvider
from imgate.session.envelope import CommandEnvelope, build_envelope
from imgate.session.remote import RemoteSession
from imgate.transport.base import TransportFactory

_OPEN_PATHS = ("/health",)


def load_state_file(path: str | Path) -> tuple[str, str]:
    """Read ``{"uid", "token"}`` from the admin state file."""
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise GatewayConfigurationError(
            f"state file not found: {p}",
            code="state_file_missing",
            original_error=exc,
        ) from exc
    except ValueError as exc:
        raise GatewayConfigurationError(
            f"state file is not valid JSON: {p}",
            code="state_file_invalid",
            original_error=exc,
        ) from exc
    uid = str(data.get("uid") or "").strip() if isinstance(data, dict) else ""
    token = str(data.get("token") or "").strip() if isinstance(data, dict) else ""
    if not uid or not token:
        raise GatewayConfigurationError(
            f"state file {p} lacks uid/token",
            code="state_file_incomplete",
        )
    return uid, token


def loop_exception_handler(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    """Log unhandled asyncio errors; backend request timeouts are dropped."""
    exc = context.get("exception")
    message = context.get("message", "unhandled error")
    if is_transient_network_timeout(exc if exc is not None else message):
        logger.debug("Suppressed transient backend timeout: {}", exc or message)
        return
    logger.opt(exception=exc).error("Unhandled async error: {}", message)


async def _read_json(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class GatewayServer:
    """Wires config, registry, dispatcher and liveness into an aiohttp app."""

    def __init__(
        self,
        config: Config,
        *,
        credentials: CredentialProvider,
        transport_factory: TransportFactory,
    ) -> None:
        self._config = config
        self._credentials = credentials
        self._transport_factory = transport_factory
        self._started_at = time.time()
        self._shutting_down = False

        self.registry = SessionRegistry(self._new_session)
        self.dispatcher = CommandDispatcher(
            fallback_target=config.command_fallback_target,
            identity_prefix=config.identity_prefix,
        )
        self.handler = GatewayHandler(
            self.registry,
            self.dispatcher,
            credentials=credentials,
            command_code=config.command_code,
            command_timeout=config.command_timeout_seconds,
            identity_prefix=config.identity_prefix,
        )
        self.liveness = LivenessMonitor(self.registry, interval=config.heartbeat_interval_seconds)

    def _new_session(self, session_id: str) -> RemoteSession:
        return RemoteSession(
            session_id,
            self._credentials,
            self._transport_factory,
            ready_timeout=self._config.ready_timeout_seconds,
            identity_prefix=self._config.identity_prefix,
        )

    def apply_config(self, config: Config) -> None:
        """Pick up reloadable settings (SIGHUP)."""
        self._config = config
        self.dispatcher.fallback_target = config.command_fallback_target
        self.handler.command_code = config.command_code
        self.handler.command_timeout = config.command_timeout_seconds
        self.liveness.interval = config.heartbeat_interval_seconds

    # -- app -----------------------------------------------------------------

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[self._shutdown_middleware])
        app.router.add_get(self._config.ws_path, self._handle_websocket)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/api/status", self._handle_status)
        app.router.add_post("/api/login", self._handle_login)
        app.router.add_post("/api/reinit", self._handle_reinit)
        app.router.add_post("/api/send-command", self._handle_send_command)
        app.on_startup.append(self._on_startup)
        app.on_shutdown.append(self._on_shutdown)
        return app

    async def _on_startup(self, app: web.Application) -> None:
        await self.liveness.start()

    async def _on_shutdown(self, app: web.Application) -> None:
        self._shutting_down = True
        logger.info("Shutting down: closing {} client(s)", len(self.registry))
        await self.liveness.stop()
        await self.registry.close_all()

    @web.middleware
    async def _shutdown_middleware(self, request: web.Request, handler: Any) -> web.StreamResponse:
        if self._shutting_down and request.path not in _OPEN_PATHS:
            return web.json_response(
                {"success": False, "message": "service shutting down"},
                status=503,
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    # -- websocket ---------------------------------------------------------------

    async def _handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(autoping=False)
        await ws.prepare(request)

        conn = GatewayConnection(ws)
        self.registry.add(conn)
        conn.notify("welcome", sessionId=conn.id)
        conn.notify_status()
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    conn.spawn(self.handler.handle_text(conn, msg.data))
                elif msg.type == WSMsgType.PING:
                    conn.mark_alive()
                    await ws.pong(msg.data)
                elif msg.type == WSMsgType.PONG:
                    conn.mark_alive()
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("[{}] websocket error: {}", conn.id, ws.exception())
        finally:
            await conn.terminate()
            await self.registry.release(conn)
        return ws

    # -- admin ---------------------------------------------------------------------

    async def _handle_health(self, request: web.Request) -> web.Response:
        admin = self.registry.admin
        return web.json_response(
            {
                "ok": True,
                "uptime": round(time.time() - self._started_at, 1),
                "wsClients": len(self.registry),
                "admin": admin.describe(),
            }
        )

    async def _handle_status(self, request: web.Request) -> web.Response:
        admin = self.registry.admin
        return web.json_response(
            {
                "isReady": admin.ready,
                "session": admin.describe(),
                "wsClients": len(self.registry),
                "fallbackTarget": self.dispatcher.fallback_target,
            }
        )

    async def _admin_login(self, uid: Any, token: Any, *, used_connect_code: bool = False) -> web.Response:
        admin = self.registry.admin
        try:
            await admin.login_with(uid, token)
        except GatewayError as exc:
            logger.error("Admin login failed: {}", exc)
            return web.json_response(
                {"success": False, "message": str(exc), "code": exc.code},
                status=500,
            )
        return web.json_response(
            {"success": True, "data": {**admin.describe(), "usedConnectCode": used_connect_code}}
        )

    async def _handle_login(self, request: web.Request) -> web.Response:
        data = await _read_json(request)
        parsed = parse_uid_token(data.get("uid"), data.get("token"), self._config.identity_prefix)
        if not parsed.uid or not parsed.token:
            return web.json_response(
                {"success": False, "message": "uid and token are required"},
                status=400,
            )
        return await self._admin_login(parsed.uid, parsed.token, used_connect_code=parsed.used_connect_code)

    async def _handle_reinit(self, request: web.Request) -> web.Response:
        try:
            uid, token = load_state_file(self._config.admin_state_file)
        except GatewayConfigurationError as exc:
            return web.json_response({"success": False, "message": str(exc), "code": exc.code}, status=400)
        logger.info("Admin reinit from {}", self._config.admin_state_file)
        return await self._admin_login(uid, token)

    async def _handle_send_command(self, request: web.Request) -> web.Response:
        admin = self.registry.admin
        if not admin.ready:
            return web.json_response(
                {"success": False, "message": "admin session not ready; login first"},
                status=503,
            )
        data = await _read_json(request)
        payload = data.get("payload")
        command_id = str(data.get("commandId") or "").strip()
        if payload not in (None, ""):
            envelope = build_envelope(payload, admin.token or "", default_code=self._config.command_code)
        elif command_id:
            envelope = CommandEnvelope(code=command_id, token=admin.token or "", data=1)
        else:
            return web.json_response(
                {"success": False, "message": "commandId or payload is required"},
                status=400,
            )

        trace_id = new_trace_id()
        try:
            result = await asyncio.wait_for(
                self.dispatcher.dispatch(admin, envelope, recipient_override=data.get("targetId"), trace_id=trace_id),
                self._config.command_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return web.json_response(
                {"success": False, "message": "command timed out", "traceId": trace_id},
                status=504,
            )
        except DispatchFailed as exc:
            return web.json_response(
                {
                    "success": False,
                    "message": str(exc),
                    "attempts": [a.to_dict() for a in exc.attempts],
                    "traceId": trace_id,
                },
                status=502,
            )
        return web.json_response(
            {
                "success": True,
                "recipient": result.recipient,
                "attempts": [a.to_dict() for a in result.attempts],
                "traceId": trace_id,
            }
        )
