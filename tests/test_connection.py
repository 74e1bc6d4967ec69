"""Tests for GatewayConnection notifications and event mapping."""

from __future__ import annotations

import pytest

from imgate.events import (
    backend_ready,
    delivery_error,
    incoming_message,
    kicked_out,
    network_change,
    session_log,
    status_change,
)
from imgate.gateway.connection import GatewayConnection
from tests.mocks import FakeSocket, make_session, settle


class TestNotify:
    """Outbound queue."""

    @pytest.mark.asyncio
    async def test_notifications_written_in_order(self):
        # Arrange
        socket = FakeSocket()
        conn = GatewayConnection(socket)

        # Act
        conn.notify("welcome", sessionId=conn.id)
        conn.notify_log("info", "hello")
        conn.notify("pong")
        await settle()

        # Assert
        assert [m["type"] for m in socket.sent] == ["welcome", "log", "pong"]
        assert socket.sent[0]["sessionId"] == conn.id
        assert "time" in socket.sent[2]

    @pytest.mark.asyncio
    async def test_writer_survives_unexpected_write_error(self):
        # Arrange
        class FlakySocket(FakeSocket):
            async def send_str(self, data: str) -> None:
                if '"boom"' in data:
                    raise RuntimeError("frame rejected")
                await super().send_str(data)

        socket = FlakySocket()
        conn = GatewayConnection(socket)

        # Act
        conn.notify("boom")
        conn.notify("pong")
        await settle()

        # Assert
        assert [m["type"] for m in socket.sent] == ["pong"]
        assert not conn._writer.done()

    @pytest.mark.asyncio
    async def test_ids_are_unique_and_prefixed(self):
        a = GatewayConnection(FakeSocket())
        b = GatewayConnection(FakeSocket())
        assert a.id != b.id
        assert a.id.startswith("ws_")

    @pytest.mark.asyncio
    async def test_status_without_session(self):
        # Arrange
        socket = FakeSocket()
        conn = GatewayConnection(socket)

        # Act
        conn.notify_status()
        await settle()

        # Assert
        assert socket.of_type("status")[0]["ready"] is False
        assert socket.of_type("status")[0]["identity"] is None

    @pytest.mark.asyncio
    async def test_terminate_closes_socket_and_drops_later_notifications(self):
        # Arrange
        socket = FakeSocket()
        conn = GatewayConnection(socket)

        # Act
        await conn.terminate()
        conn.notify("pong")
        await settle()

        # Assert
        assert socket.closed
        assert conn.closed
        assert socket.sent == []

    @pytest.mark.asyncio
    async def test_failed_handler_reports_error(self):
        # Arrange
        socket = FakeSocket()
        conn = GatewayConnection(socket)

        async def broken():
            raise RuntimeError("handler blew up")

        # Act
        conn.spawn(broken())
        await settle()

        # Assert
        assert socket.of_type("error")[0]["message"] == "handler blew up"


class TestLiveness:
    """alive flag, probe and pong."""

    @pytest.mark.asyncio
    async def test_probe_clears_alive_and_pings(self):
        # Arrange
        socket = FakeSocket()
        conn = GatewayConnection(socket)

        # Act
        await conn.probe()

        # Assert
        assert conn.alive is False
        assert socket.pings == 1

    @pytest.mark.asyncio
    async def test_mark_alive_updates_last_pong(self):
        # Arrange
        conn = GatewayConnection(FakeSocket())
        await conn.probe()
        before = conn.last_pong_at

        # Act
        conn.mark_alive()

        # Assert
        assert conn.alive is True
        assert conn.last_pong_at >= before


class TestEventMapping:
    """Session events become client notifications."""

    @pytest.mark.asyncio
    async def test_accepts_only_bound_session_events(self):
        # Arrange
        session, _, _ = make_session(session_id="s1")
        conn = GatewayConnection(FakeSocket())

        # Assert
        assert not conn.accept_event("s1", object())
        conn.bind(session)
        assert conn.accept_event("s1", object())
        assert not conn.accept_event("other", object())

    @pytest.mark.asyncio
    async def test_bus_events_reach_client(self):
        # Arrange
        socket = FakeSocket()
        session, _, _ = make_session(session_id="s1")
        conn = GatewayConnection(socket)
        conn.bind(session)

        # Act
        for _, evt in (
            status_change("s1", True, identity="42"),
            session_log("s1", "warning", "careful"),
            incoming_message("s1", "dev", "42", "ok", time=1700000000),
            network_change("s1", "connected"),
            backend_ready("s1"),
        ):
            session.bus.publish("s1", evt)
        await settle()

        # Assert
        assert socket.of_type("status")[0]["ready"] is True
        assert socket.of_type("status")[0]["identity"] == "42"
        incoming = socket.of_type("incomingMessage")[0]
        assert incoming["from"] == "dev"
        assert incoming["to"] == "42"
        assert incoming["text"] == "ok"
        assert incoming["time"] == 1700000000
        messages = [m["message"] for m in socket.of_type("log")]
        assert "careful" in messages
        assert "network state: connected" in messages

    @pytest.mark.asyncio
    async def test_kicked_out_and_delivery_errors(self):
        # Arrange
        socket = FakeSocket()
        conn = GatewayConnection(socket)
        conn.bind(make_session(session_id="s1")[0])

        # Act
        conn.push_event("s1", kicked_out("s1", reason="multi_login")[1])
        conn.push_event("s1", delivery_error("s1", "bad sig", code="70001")[1])
        conn.push_event("s1", delivery_error("s1", "请求超时", code="2801")[1])
        await settle()

        # Assert
        errors = socket.of_type("error")
        assert "multi_login" in errors[0]["message"]
        assert errors[1]["message"] == "bad sig"
        assert len(errors) == 2
        assert any("backend timeout" in m["message"] for m in socket.of_type("log"))

    @pytest.mark.asyncio
    async def test_unbind_stops_delivery(self):
        # Arrange
        socket = FakeSocket()
        session, _, _ = make_session(session_id="s1")
        conn = GatewayConnection(socket)
        conn.bind(session)

        # Act
        returned = conn.unbind()
        session.bus.publish("s1", session_log("s1", "info", "ignored")[1])
        await settle()

        # Assert
        assert returned is session
        assert conn.session is None
        assert socket.sent == []
