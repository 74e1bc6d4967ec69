"""GatewayConnection: one client socket, its outbound queue and its bound session."""

from __future__ import annotations

import asyncio
import contextlib
import json
import secrets
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Protocol

from loguru import logger

from imgate.core.errors import is_transient_network_timeout
from imgate.events import (
    BackendNotReady,
    BackendReady,
    DeliveryError,
    IncomingMessage,
    KickedOut,
    NetworkChange,
    SessionLog,
    StatusChange,
)

if TYPE_CHECKING:
    from imgate.session.remote import RemoteSession


class ClientSocket(Protocol):
    """The subset of aiohttp's WebSocketResponse a connection needs."""

    @property
    def closed(self) -> bool: ...

    async def send_str(self, data: str) -> None: ...

    async def ping(self, message: bytes = b"") -> None: ...

    async def close(self) -> Any: ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class GatewayConnection:
    """Client connection; receives its session's events and writes JSON notifications."""

    def __init__(self, socket: ClientSocket, *, connection_id: str | None = None) -> None:
        self.id = connection_id or f"ws_{secrets.token_hex(6)}"
        self.created_at = time.time()
        self.last_pong_at = self.created_at
        self.alive = True
        self.session: RemoteSession | None = None
        self.closed = False
        self._socket = socket
        self._outbound: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._writer: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    def __repr__(self) -> str:
        return f"<GatewayConnection {self.id} alive={self.alive}>"

    # -- session binding ----------------------------------------------------

    def bind(self, session: RemoteSession) -> None:
        self.session = session
        session.bus.register(self)

    def unbind(self) -> RemoteSession | None:
        session, self.session = self.session, None
        if session is not None:
            session.bus.unregister(self)
        return session

    # -- outbound -------------------------------------------------------------

    def notify(self, kind: str, **fields: Any) -> None:
        """Queue one notification; dropped once the connection is closed."""
        if self.closed:
            return
        self._outbound.put_nowait({"type": kind, "time": _now_iso(), **fields})
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(self._drain())

    def notify_log(self, level: str, message: str) -> None:
        self.notify("log", level=level, message=message)

    def notify_status(self) -> None:
        session = self.session
        self.notify(
            "status",
            ready=bool(session and session.ready),
            identity=session.uid if session else None,
        )

    async def _drain(self) -> None:
        while True:
            msg = await self._outbound.get()
            if self._socket.closed:
                logger.debug("[{}] socket closed; dropping {}", self.id, msg.get("type"))
                continue
            try:
                await self._socket.send_str(json.dumps(msg, ensure_ascii=False, default=str))
            except ConnectionError as exc:
                logger.debug("[{}] write failed: {}", self.id, exc)
            except Exception as exc:
                logger.exception("[{}] notification {} not sent: {}", self.id, msg.get("type"), exc)

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        """Run a message handler in the background; cancelled on terminate."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("[{}] handler failed: {}", self.id, exc)
            self.notify("error", message=str(exc))

    # -- liveness -------------------------------------------------------------

    def mark_alive(self) -> None:
        self.alive = True
        self.last_pong_at = time.time()

    async def probe(self) -> None:
        """Clear the alive flag and send a protocol ping; a pong sets it again."""
        self.alive = False
        if self._socket.closed:
            return
        try:
            await self._socket.ping()
        except ConnectionError as exc:
            logger.debug("[{}] ping failed: {}", self.id, exc)

    async def terminate(self) -> None:
        """Stop writing, cancel handlers and close the socket."""
        if self.closed:
            return
        self.closed = True
        tasks = [t for t in (self._writer, *self._tasks) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._writer = None
        if not self._socket.closed:
            await self._socket.close()

    # -- EventTarget ------------------------------------------------------------

    def accept_event(self, source: str, evt: object) -> bool:
        return self.session is not None and source == self.session.session_id

    def push_event(self, source: str, evt: object) -> None:
        if isinstance(evt, StatusChange):
            self.notify("status", ready=evt.ready, identity=evt.identity)
        elif isinstance(evt, SessionLog):
            self.notify_log(evt.level, evt.message)
        elif isinstance(evt, IncomingMessage):
            self.notify(
                "incomingMessage",
                **{"from": evt.from_id, "to": evt.to_id, "text": evt.text, "time": evt.time or _now_iso()},
            )
        elif isinstance(evt, KickedOut):
            self.notify("error", message=f"session revoked by backend ({evt.reason or 'kicked out'}); login again")
        elif isinstance(evt, DeliveryError):
            if is_transient_network_timeout(evt.message, evt.code):
                self.notify_log("warning", f"backend timeout: {evt.message}")
            else:
                self.notify("error", message=evt.message, code=evt.code)
        elif isinstance(evt, NetworkChange):
            self.notify_log("info", f"network state: {evt.state}")
        elif isinstance(evt, BackendReady):
            self.notify_log("info", "backend ready")
        elif isinstance(evt, BackendNotReady):
            self.notify_log("warning", "backend not ready")
