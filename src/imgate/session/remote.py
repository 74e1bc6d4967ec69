"""RemoteSession: one authenticated backend connection and its serialised send queue."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from loguru import logger

from imgate.bus import Bus
from imgate.core.constants import DEFAULT_IDENTITY_PREFIX, DEFAULT_READY_TIMEOUT
from imgate.core.errors import (
    ForcedLogout,
    GatewayError,
    NotReadyError,
    ReadyTimeoutError,
    TransportSendError,
)
from imgate.events import session_log, status_change
from imgate.identity.ids import normalize_uid, to_backend_uid
from imgate.identity.signer import CredentialProvider, SessionCredentials
from imgate.session.bridge import EventBridge
from imgate.session.envelope import CommandEnvelope
from imgate.transport.base import Transport, TransportFactory


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    DEGRADED = "degraded"
    DESTROYED = "destroyed"


@dataclass
class _PendingSend:
    recipient: str
    text: str
    future: asyncio.Future[Any]


def _consume_result(fut: asyncio.Future[Any]) -> None:
    # Callers may stop awaiting; keep asyncio from reporting the exception as lost.
    if not fut.cancelled():
        fut.exception()


class RemoteSession:
    """Backend session state machine.

    Initialisation is cached as a task so concurrent ``ensure_ready`` callers
    share it. Sends go through one FIFO worker, so at most one transport send
    is in flight. Only a backend forced logout tears the whole session down.
    """

    def __init__(
        self,
        session_id: str,
        credentials: CredentialProvider,
        transport_factory: TransportFactory,
        *,
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
        identity_prefix: str = DEFAULT_IDENTITY_PREFIX,
        identity: str | None = None,
        token: str | None = None,
    ) -> None:
        self.session_id = session_id
        self.bus = Bus()
        self._credentials = credentials
        self._transport_factory = transport_factory
        self._ready_timeout = ready_timeout
        self._prefix = identity_prefix
        self._bridge = EventBridge(session_id, self.bus, self)

        self._state = SessionState.UNINITIALIZED
        self._uid: str | None = normalize_uid(identity, identity_prefix)
        self._token: str | None = str(token).strip() if token else None
        self._creds: SessionCredentials | None = None
        self._transport: Transport | None = None
        self._generation = 0
        self._destroy_reason: GatewayError | None = None

        self._ready_signal = asyncio.Event()
        self._init_task: asyncio.Task[None] | None = None
        self._login_task: asyncio.Task[None] | None = None
        self._login_key: tuple[str, str] | None = None

        self._queue: asyncio.Queue[_PendingSend] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._cleanup_tasks: set[asyncio.Task[None]] = set()
        self.last_active_at = time.time()

    def __repr__(self) -> str:
        return f"<RemoteSession {self.session_id} {self._state.value} uid={self._uid}>"

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state is SessionState.READY

    @property
    def uid(self) -> str | None:
        return self._uid

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def credentials(self) -> SessionCredentials | None:
        return self._creds

    @property
    def remote_user_id(self) -> str | None:
        return self._creds.remote_user_id if self._creds else None

    @property
    def has_transport(self) -> bool:
        return self._transport is not None

    @property
    def pending_sends(self) -> int:
        return self._queue.qsize()

    def describe(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "state": self._state.value,
            "ready": self.ready,
            "uid": self._uid,
            "remoteUserId": self.remote_user_id,
            "appIdentity": self._creds.app_identity if self._creds else None,
        }

    # -- notifications -------------------------------------------------------

    def _log(self, level: str, message: str, extra: dict[str, Any] | None = None) -> None:
        logger.log(level.upper(), "[{}] {}", self.session_id, message)
        _, evt = session_log(self.session_id, level, message, extra=extra)
        self.bus.publish(self.session_id, evt)

    def _publish_status(self) -> None:
        _, evt = status_change(
            self.session_id,
            self.ready,
            identity=self._uid,
            remote_user_id=self.remote_user_id,
            app_identity=self._creds.app_identity if self._creds else None,
        )
        self.bus.publish(self.session_id, evt)

    def _not_ready_error(self) -> GatewayError:
        reason = self._destroy_reason
        if self._state is SessionState.DESTROYED and isinstance(reason, ForcedLogout):
            return ForcedLogout(str(reason), code=reason.code, details=dict(reason.details))
        if self._state is SessionState.DESTROYED:
            return NotReadyError("session destroyed; login again", code="destroyed")
        if not self._uid or not self._token:
            return NotReadyError("not logged in", code="not_logged_in")
        return NotReadyError(f"session not ready ({self._state.value})", code="not_ready")

    # -- readiness hooks (called by EventBridge) ----------------------------

    def on_backend_ready(self) -> None:
        self._ready_signal.set()
        if self._state is SessionState.DEGRADED:
            self._state = SessionState.READY
            self._log("info", "Backend ready again")
            self._publish_status()

    def on_backend_not_ready(self) -> None:
        self._ready_signal.clear()
        if self._state is SessionState.READY:
            self._state = SessionState.DEGRADED
            self._log("warning", "Backend signaled not ready")
            self._publish_status()

    def on_kicked_out(self, reason: str | None) -> None:
        self._force_logout(ForcedLogout(f"session revoked by backend ({reason or 'kicked out'})", code="kicked_out"))

    def _force_logout(self, err: ForcedLogout) -> None:
        if self._state is SessionState.DESTROYED:
            return
        self._log("error", str(err))
        transport = self._mark_destroyed(err)
        if transport is not None:
            self._release_in_background(transport)

    # -- lifecycle ------------------------------------------------------------

    async def ensure_ready(self, timeout: float | None = None) -> None:
        """Return once READY; share any in-flight initialisation."""
        if self._state is SessionState.READY:
            return
        if self._state is SessionState.DESTROYED:
            raise self._not_ready_error()
        if self._init_task is not None and self._init_task.done():
            self._init_task = None
        if self._init_task is None:
            if not self._uid or not self._token:
                raise self._not_ready_error()
            bound = timeout if timeout is not None else self._ready_timeout
            if self._state is not SessionState.DEGRADED:
                self._state = SessionState.INITIALIZING
            self._init_task = asyncio.create_task(self._initialize(bound, self._generation))
            self._init_task.add_done_callback(self._on_init_done)
        task = self._init_task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise self._not_ready_error() from None
            raise

    def _on_init_done(self, task: asyncio.Task[None]) -> None:
        if self._init_task is task:
            self._init_task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("[{}] Initialization failed: {}", self.session_id, exc)

    async def _initialize(self, timeout: float, generation: int) -> None:
        if self._state is SessionState.DEGRADED and self._transport is not None:
            await self._wait_ready(timeout)
            if generation == self._generation and self._state is SessionState.DEGRADED:
                self._state = SessionState.READY
                self._publish_status()
            return

        backend_uid = to_backend_uid(self._uid, self._prefix) or ""
        token = self._token or ""
        self._ready_signal.clear()
        transport: Transport | None = None
        try:
            self._log("info", f"Fetching credentials for {backend_uid}")
            creds = await self._credentials.fetch(backend_uid, token)
            transport = self._transport_factory(creds.app_identity)
            self._transport = transport
            self._bridge.bind(transport)
            self._log("info", f"Logging in: app={creds.app_identity} user={backend_uid}")
            await transport.login(backend_uid, creds.session_signature)
            await self._wait_ready(timeout)
        except BaseException:
            if transport is not None and self._transport is transport:
                self._bridge.unbind()
                self._transport = None
                await asyncio.shield(self._release_in_background(transport))
            if generation == self._generation and self._state is SessionState.INITIALIZING:
                self._state = SessionState.UNINITIALIZED
            raise

        if generation != self._generation:
            return
        self._creds = SessionCredentials(creds.app_identity, creds.session_signature, creds.remote_user_id)
        self._state = SessionState.READY
        self.last_active_at = time.time()
        self._log("success", "Backend session ready", {"uid": self._uid, "remoteUserId": self.remote_user_id})
        self._publish_status()

    async def _wait_ready(self, timeout: float) -> None:
        if self._ready_signal.is_set():
            return
        try:
            await asyncio.wait_for(self._ready_signal.wait(), timeout)
        except asyncio.TimeoutError as exc:
            raise ReadyTimeoutError(
                f"backend not ready within {timeout:g}s",
                code="ready_timeout",
                details={"timeout": timeout},
            ) from exc

    async def login_with(self, identity: Any, token: Any, timeout: float | None = None) -> None:
        """Log in with the given credentials, replacing any session held under others."""
        uid = normalize_uid(identity, self._prefix)
        tok = str(token or "").strip()
        if not uid or not tok:
            raise GatewayError("uid and token are required", code="missing_credentials")
        key = (uid, tok)

        login = self._login_task
        if login is not None and not login.done():
            if self._login_key == key:
                await self._await_shared(login)
                return
            login.cancel()
        same = key == (self._uid, self._token)
        if same and self._state is SessionState.READY:
            return
        if same and self._state is SessionState.INITIALIZING and self._init_task is not None:
            await self.ensure_ready(timeout)
            return

        self._login_key = key
        self._login_task = asyncio.create_task(self._relogin(uid, tok, timeout, self._generation))
        await self._await_shared(self._login_task)

    async def _await_shared(self, task: asyncio.Task[None]) -> None:
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise NotReadyError("login superseded", code="login_superseded") from None
            raise

    async def _relogin(self, uid: str, token: str, timeout: float | None, generation: int) -> None:
        if generation != self._generation:
            # Torn down between login_with and this task starting.
            raise NotReadyError("session destroyed before login started", code="login_superseded")
        old = self._mark_destroyed(None)
        self._uid, self._token = uid, token
        self._state = SessionState.UNINITIALIZED
        self._destroy_reason = None
        if old is not None:
            await asyncio.shield(self._release_in_background(old))
        await self.ensure_ready(timeout)

    async def destroy(self, reason: GatewayError | None = None) -> None:
        """Idempotent teardown: logs out, releases the handle, fails pending sends."""
        transport = self._mark_destroyed(reason)
        if transport is not None:
            await asyncio.shield(self._release_in_background(transport))

    def _mark_destroyed(self, reason: GatewayError | None) -> Transport | None:
        """Synchronous part of teardown; returns the transport still to be released."""
        self._generation += 1
        was = self._state
        self._state = SessionState.DESTROYED
        if reason is not None or was is not SessionState.DESTROYED:
            self._destroy_reason = reason
        self._bridge.unbind()
        self._ready_signal.clear()
        transport, self._transport = self._transport, None
        self._creds = None

        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
        self._init_task = None
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
        self._fail_pending()

        if was not in (SessionState.DESTROYED, SessionState.UNINITIALIZED):
            logger.info("[{}] Session destroyed (was {})", self.session_id, was.value)
            self._publish_status()
        return transport

    def _release_in_background(self, transport: Transport) -> asyncio.Task[None]:
        """Release on a tracked task; cancelling the awaiting caller does not interrupt it."""
        task = asyncio.create_task(self._release(transport))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)
        return task

    async def _release(self, transport: Transport) -> None:
        try:
            await transport.logout()
        except Exception as exc:
            logger.warning("[{}] Transport logout failed: {}", self.session_id, exc)
        try:
            await transport.destroy()
        except Exception as exc:
            logger.warning("[{}] Transport destroy failed: {}", self.session_id, exc)

    async def wait_closed(self) -> None:
        """Wait for transport releases still running in the background."""
        if self._cleanup_tasks:
            await asyncio.gather(*self._cleanup_tasks, return_exceptions=True)

    # -- sends ---------------------------------------------------------------

    async def send(self, envelope: CommandEnvelope | str, recipient: str) -> Any:
        """Queue one send; fails fast when the session is not READY."""
        if self._state is not SessionState.READY:
            raise self._not_ready_error()
        if not recipient:
            raise TransportSendError("recipient is required", code="missing_recipient")
        text = envelope.to_text() if isinstance(envelope, CommandEnvelope) else str(envelope)
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        fut.add_done_callback(_consume_result)
        self._queue.put_nowait(_PendingSend(str(recipient), text, fut))
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._consume_sends())
        self.last_active_at = time.time()
        return await asyncio.shield(fut)

    async def _consume_sends(self) -> None:
        while True:
            item = await self._queue.get()
            if item.future.done():
                continue
            transport = self._transport
            if self._state is not SessionState.READY or transport is None:
                item.future.set_exception(self._not_ready_error())
                continue
            try:
                result = await transport.send_text(item.recipient, item.text)
            except asyncio.CancelledError:
                if not item.future.done():
                    item.future.set_exception(self._not_ready_error())
                raise
            except ForcedLogout as exc:
                if not item.future.done():
                    item.future.set_exception(exc)
                self._force_logout(exc)
            except TransportSendError as exc:
                item.future.set_exception(exc)
            except Exception as exc:
                item.future.set_exception(
                    TransportSendError(
                        f"send to {item.recipient} failed: {exc}",
                        code="send_failed",
                        details={"recipient": item.recipient},
                        original_error=exc,
                    )
                )
            else:
                self.last_active_at = time.time()
                item.future.set_result(result)

    def _fail_pending(self) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if not item.future.done():
                item.future.set_exception(self._not_ready_error())


async def close_quietly(session: RemoteSession) -> None:
    """Destroy a session, logging instead of raising."""
    try:
        await session.destroy()
        await session.wait_closed()
    except Exception as exc:
        logger.warning("Failed to destroy session {}: {}", session.session_id, exc)
