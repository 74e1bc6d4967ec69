"""Dev-only loopback transport: ready on login, echoes sends back as inbound."""

from __future__ import annotations

import asyncio
import time
from typing import Any

from loguru import logger

from imgate.core.errors import TransportSendError
from imgate.transport.base import MESSAGE_RECEIVED, READY, Transport


class LoopbackTransport(Transport):
    """Transport for local development without backend access."""

    def __init__(self, app_identity: str, *, ready_delay: float = 0.05) -> None:
        super().__init__(app_identity)
        self._ready_delay = ready_delay
        self._user_id: str | None = None
        self._closed = False
        self.sent: list[tuple[str, str]] = []

    async def login(self, user_id: str, signature: str) -> None:
        if self._closed:
            raise RuntimeError("loopback transport destroyed")
        self._user_id = user_id
        loop = asyncio.get_running_loop()
        loop.call_later(self._ready_delay, self._signal_ready)
        logger.debug("Loopback login as {}", user_id)

    def _signal_ready(self) -> None:
        if not self._closed:
            self._emit(READY)

    async def logout(self) -> None:
        self._user_id = None

    async def destroy(self) -> None:
        self._closed = True
        self._listeners.clear()

    async def send_text(self, to: str, text: str) -> Any:
        if self._closed or self._user_id is None:
            raise TransportSendError("loopback transport not logged in", code="not_logged_in")
        self.sent.append((to, text))
        self._emit(
            MESSAGE_RECEIVED,
            {
                "data": [
                    {
                        "from": to,
                        "to": self._user_id,
                        "type": "TIMTextElem",
                        "time": int(time.time()),
                        "payload": {"text": text},
                    }
                ]
            },
        )
        return {"to": to}
