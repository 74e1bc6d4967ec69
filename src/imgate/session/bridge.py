"""EventBridge: normalises raw transport events and routes them to the session's bus."""

from __future__ import annotations

from typing import Any, Protocol

from loguru import logger

from imgate.bus import Bus
from imgate.core.errors import is_transient_network_timeout
from imgate.events import (
    backend_not_ready,
    backend_ready,
    delivery_error,
    incoming_message,
    kicked_out,
    network_change,
)
from imgate.transport.base import (
    ERROR,
    KICKED_OUT,
    MESSAGE_RECEIVED,
    NET_STATE_CHANGE,
    NOT_READY,
    READY,
    Transport,
)


class ReadinessListener(Protocol):
    """Session callbacks driven by backend readiness events."""

    def on_backend_ready(self) -> None: ...
    def on_backend_not_ready(self) -> None: ...
    def on_kicked_out(self, reason: str | None) -> None: ...


def _first(obj: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if obj.get(key) is not None:
            return obj[key]
    return None


def _inner(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    data = payload.get("data")
    return data if isinstance(data, dict) else payload


def extract_messages(payload: Any) -> list[dict[str, Any]]:
    """Pull the message list out of a MESSAGE_RECEIVED payload (several shapes seen)."""
    if isinstance(payload, list):
        return [m for m in payload if isinstance(m, dict)]
    if not isinstance(payload, dict):
        return []
    data = payload.get("data")
    candidates = [data, payload.get("messageList")]
    if isinstance(data, dict):
        candidates = [data.get("messageList"), data.get("message"), *candidates[1:]]
    for value in candidates:
        if isinstance(value, list):
            return [m for m in value if isinstance(m, dict)]
        if isinstance(value, dict):
            return [value]
    return []


class EventBridge:
    """Binds to one transport handle at a time; silent once unbound."""

    def __init__(self, session_id: str, bus: Bus, listener: ReadinessListener) -> None:
        self._session_id = session_id
        self._bus = bus
        self._listener = listener
        self._transport: Transport | None = None

    @property
    def bound(self) -> bool:
        return self._transport is not None

    def bind(self, transport: Transport) -> None:
        self.unbind()
        self._transport = transport
        transport.add_listener(self._on_transport_event)

    def unbind(self) -> None:
        if self._transport is not None:
            self._transport.remove_listener(self._on_transport_event)
            self._transport = None

    def _publish(self, pair: tuple[str, object]) -> None:
        _, evt = pair
        self._bus.publish(self._session_id, evt)

    def _on_transport_event(self, kind: str, payload: Any) -> None:
        if self._transport is None:
            return
        sid = self._session_id
        if kind == READY:
            self._listener.on_backend_ready()
            self._publish(backend_ready(sid))
        elif kind == NOT_READY:
            self._listener.on_backend_not_ready()
            self._publish(backend_not_ready(sid))
        elif kind == KICKED_OUT:
            inner = _inner(payload)
            reason = _first(inner, ("type", "reason"))
            reason = str(reason) if reason is not None else None
            logger.warning("Session {} kicked out by backend ({})", sid, reason)
            self._publish(kicked_out(sid, reason=reason, raw=payload if isinstance(payload, dict) else {}))
            self._listener.on_kicked_out(reason)
        elif kind == NET_STATE_CHANGE:
            inner = _inner(payload)
            state = _first(inner, ("state", "netState")) or "unknown"
            self._publish(network_change(sid, str(state), raw=payload if isinstance(payload, dict) else {}))
        elif kind == ERROR:
            inner = _inner(payload)
            message = str(_first(inner, ("message", "msg")) or payload)
            code = _first(inner, ("code",))
            if is_transient_network_timeout(message, code):
                logger.debug("Session {} transient backend timeout: {}", sid, message)
            else:
                logger.warning("Session {} backend error {}: {}", sid, code, message)
            self._publish(
                delivery_error(
                    sid,
                    message,
                    code=str(code) if code is not None else None,
                    raw=payload if isinstance(payload, dict) else {},
                )
            )
        elif kind == MESSAGE_RECEIVED:
            for m in extract_messages(payload):
                body = m.get("payload")
                text = body.get("text") if isinstance(body, dict) else None
                from_id = _first(m, ("from", "fromUser", "fromUserID"))
                to_id = _first(m, ("to", "toUser", "toUserID"))
                self._publish(
                    incoming_message(
                        sid,
                        str(from_id) if from_id is not None else None,
                        str(to_id) if to_id is not None else None,
                        text if isinstance(text, str) else None,
                        time=m.get("time"),
                        conversation_id=m.get("conversationID"),
                        msg_type=m.get("type"),
                    )
                )
        else:
            logger.debug("Session {} ignoring transport event {}", sid, kind)

