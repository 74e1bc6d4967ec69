"""Transport boundary: one authenticated handle to the messaging backend."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable

from loguru import logger

# Raw event kinds a transport emits to its listeners
READY = "ready"
NOT_READY = "not_ready"
KICKED_OUT = "kicked_out"
NET_STATE_CHANGE = "net_state_change"
ERROR = "error"
MESSAGE_RECEIVED = "message_received"

EVENT_KINDS = (READY, NOT_READY, KICKED_OUT, NET_STATE_CHANGE, ERROR, MESSAGE_RECEIVED)

TransportListener = Callable[[str, Any], None]


class Transport(ABC):
    """Backend handle. Subclasses call _emit() for backend events."""

    def __init__(self, app_identity: str) -> None:
        self.app_identity = app_identity
        self._listeners: list[TransportListener] = []

    def add_listener(self, listener: TransportListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: TransportListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, kind: str, payload: Any = None) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind, payload)
            except Exception as exc:
                logger.exception("Transport listener failed on {}: {}", kind, exc)

    @abstractmethod
    async def login(self, user_id: str, signature: str) -> None:
        """Authenticate; readiness is signaled later via a READY event."""
        ...

    @abstractmethod
    async def logout(self) -> None: ...

    @abstractmethod
    async def destroy(self) -> None:
        """Release the handle. No events may be emitted afterwards."""
        ...

    @abstractmethod
    async def send_text(self, to: str, text: str) -> Any:
        """Send a one-to-one text message. Raise ForcedLogout on revoked auth."""
        ...


TransportFactory = Callable[[str], Transport]
