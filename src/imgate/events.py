"""Event types and dispatcher: typed session events, one bus per session."""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from typing import Any, Protocol

from loguru import logger


@dataclass
class BackendReady:
    """Backend signaled the session is ready for sends."""

    session_id: str


@dataclass
class BackendNotReady:
    """Backend signaled the session is temporarily not ready."""

    session_id: str


@dataclass
class KickedOut:
    """Backend revoked the session (e.g. login elsewhere)."""

    session_id: str
    reason: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class NetworkChange:
    """Backend network state changed."""

    session_id: str
    state: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryError:
    """Backend reported an asynchronous error."""

    session_id: str
    message: str
    code: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class IncomingMessage:
    """Inbound message from the remote side (device replies, receipts)."""

    session_id: str
    from_id: str | None
    to_id: str | None
    text: str | None
    time: Any = None
    conversation_id: str | None = None
    msg_type: str | None = None


@dataclass
class SessionLog:
    """Human-readable progress line for the owning client."""

    session_id: str
    level: str
    message: str
    extra: dict[str, Any] | None = None


@dataclass
class StatusChange:
    """Externally visible readiness changed."""

    session_id: str
    ready: bool
    identity: str | None = None
    remote_user_id: str | None = None
    app_identity: str | None = None


class EventTarget(Protocol):
    """Consumer interface: accept_event + push_event."""

    def accept_event(self, source: str, evt: object) -> bool:
        """Return True if this target wants the event."""
        ...

    def push_event(self, source: str, evt: object) -> None:
        """Handle the event (may be async via queue)."""
        ...


def event(type_name: str):
    """Decorator to mark a factory as producing an event with a given type."""

    def decorator(f: Any) -> Any:
        @functools.wraps(f)
        def wrapper(*args: Any, **kwargs: Any) -> tuple[str, object]:
            evt = f(*args, **kwargs)
            return (type_name, evt)

        wrapper.TYPE = type_name  # type: ignore[attr-defined]
        return wrapper

    return decorator


@event("backend_ready")
def backend_ready(session_id: str) -> BackendReady:
    return BackendReady(session_id=session_id)


@event("backend_not_ready")
def backend_not_ready(session_id: str) -> BackendNotReady:
    return BackendNotReady(session_id=session_id)


@event("kicked_out")
def kicked_out(session_id: str, *, reason: str | None = None, raw: dict[str, Any] | None = None) -> KickedOut:
    return KickedOut(session_id=session_id, reason=reason, raw=raw or {})


@event("network_change")
def network_change(session_id: str, state: str, *, raw: dict[str, Any] | None = None) -> NetworkChange:
    return NetworkChange(session_id=session_id, state=state, raw=raw or {})


@event("delivery_error")
def delivery_error(
    session_id: str,
    message: str,
    *,
    code: str | None = None,
    raw: dict[str, Any] | None = None,
) -> DeliveryError:
    return DeliveryError(session_id=session_id, message=message, code=code, raw=raw or {})


@event("incoming_message")
def incoming_message(
    session_id: str,
    from_id: str | None,
    to_id: str | None,
    text: str | None,
    *,
    time: Any = None,
    conversation_id: str | None = None,
    msg_type: str | None = None,
) -> IncomingMessage:
    return IncomingMessage(
        session_id=session_id,
        from_id=from_id,
        to_id=to_id,
        text=text,
        time=time,
        conversation_id=conversation_id,
        msg_type=msg_type,
    )


@event("session_log")
def session_log(
    session_id: str,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> SessionLog:
    return SessionLog(session_id=session_id, level=level, message=message, extra=extra)


@event("status_change")
def status_change(
    session_id: str,
    ready: bool,
    *,
    identity: str | None = None,
    remote_user_id: str | None = None,
    app_identity: str | None = None,
) -> StatusChange:
    return StatusChange(
        session_id=session_id,
        ready=ready,
        identity=identity,
        remote_user_id=remote_user_id,
        app_identity=app_identity,
    )


class Dispatcher:
    """Event dispatcher; targets filter by type and receive events."""

    def __init__(self) -> None:
        self._targets: list[EventTarget] = []

    def register(self, target: EventTarget) -> None:
        self._targets.append(target)

    def unregister(self, target: EventTarget) -> None:
        if target in self._targets:
            self._targets.remove(target)

    def dispatch(self, source: str, evt: object) -> None:
        """Dispatch event to all targets that accept it."""
        for target in list(self._targets):
            try:
                if target.accept_event(source, evt):
                    target.push_event(source, evt)
            except Exception as exc:
                logger.exception("Failed to pass event to target {}: {}", target, exc)
