"""Session registry: one RemoteSession per gateway connection, plus the admin slot."""

from __future__ import annotations

from typing import Callable

from loguru import logger

from imgate.core.constants import ADMIN_SESSION_NAME
from imgate.gateway.connection import GatewayConnection
from imgate.session.remote import RemoteSession, close_quietly

SessionFactory = Callable[[str], RemoteSession]


class SessionRegistry:
    """Tracks live connections and owns the lifetime of their sessions."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._factory = session_factory
        self._connections: dict[str, GatewayConnection] = {}
        self._admin: RemoteSession | None = None

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, conn: object) -> bool:
        return isinstance(conn, GatewayConnection) and conn.id in self._connections

    def add(self, conn: GatewayConnection) -> None:
        self._connections[conn.id] = conn
        logger.info("Client connected: {} ({} total)", conn.id, len(self._connections))

    def get(self, connection_id: str) -> GatewayConnection | None:
        return self._connections.get(connection_id)

    def connections(self) -> list[GatewayConnection]:
        return list(self._connections.values())

    def session_for(self, conn: GatewayConnection) -> RemoteSession:
        """Return the connection's session, creating it on first use."""
        if conn.session is None:
            conn.bind(self._factory(conn.id))
            logger.debug("Session created for {}", conn.id)
        return conn.session  # type: ignore[return-value]

    async def release(self, conn: GatewayConnection) -> None:
        """Forget the connection and destroy its session. Safe to call twice."""
        if self._connections.pop(conn.id, None) is not None:
            logger.info("Client disconnected: {} ({} left)", conn.id, len(self._connections))
        session = conn.unbind()
        if session is not None:
            await close_quietly(session)

    @property
    def admin(self) -> RemoteSession:
        if self._admin is None:
            self._admin = self._factory(ADMIN_SESSION_NAME)
        return self._admin

    async def close_all(self) -> None:
        """Terminate every connection and destroy every session, admin included."""
        for conn in self.connections():
            await conn.terminate()
            await self.release(conn)
        if self._admin is not None:
            await close_quietly(self._admin)
