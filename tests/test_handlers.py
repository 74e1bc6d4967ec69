"""Tests for GatewayHandler control messages."""

from __future__ import annotations

import asyncio
import json

import pytest

from imgate.core.errors import SignatureError, TransportSendError
from imgate.gateway.connection import GatewayConnection
from imgate.gateway.dispatcher import CommandDispatcher
from imgate.gateway.handlers import GatewayHandler
from imgate.gateway.registry import SessionRegistry
from imgate.session.remote import RemoteSession, SessionState
from tests.mocks import FakeCredentials, FakeSocket, FakeTransportFactory, settle


class _Harness:
    def __init__(self, *, fallback: str | None = None, command_timeout: float = 1.0, **cred_kwargs) -> None:
        self.factory = FakeTransportFactory()
        self.creds = FakeCredentials(**cred_kwargs)
        self.registry = SessionRegistry(self._new_session)
        self.dispatcher = CommandDispatcher(fallback_target=fallback)
        self.handler = GatewayHandler(
            self.registry,
            self.dispatcher,
            credentials=self.creds,
            command_timeout=command_timeout,
        )
        self.socket = FakeSocket()
        self.conn = GatewayConnection(self.socket)
        self.registry.add(self.conn)

    def _new_session(self, session_id: str) -> RemoteSession:
        return RemoteSession(session_id, self.creds, self.factory, ready_timeout=1.0)

    async def send(self, **msg) -> None:
        await self.handler.handle(self.conn, msg)
        await settle()

    async def login(self, uid: str = "42", token: str = "tok") -> None:
        await self.send(type="login", uid=uid, token=token)


class TestLoginLogout:
    """login / logout / getStatus."""

    @pytest.mark.asyncio
    async def test_login_reports_ready_status(self):
        # Arrange
        h = _Harness()

        # Act
        await h.send(type="login", identity="game_42", token="tok")

        # Assert
        assert h.conn.session is not None
        assert h.conn.session.ready
        status = h.socket.of_type("status")[-1]
        assert status["ready"] is True
        assert status["identity"] == "42"

    @pytest.mark.asyncio
    async def test_login_accepts_connect_code(self):
        # Arrange
        h = _Harness()

        # Act
        await h.send(type="login", uid="42 tok", token="")

        # Assert
        assert h.conn.session.uid == "42"
        assert h.conn.session.token == "tok"

    @pytest.mark.asyncio
    async def test_logout_frame_right_after_login_frame_sticks(self):
        # Arrange
        h = _Harness()
        login = json.dumps({"type": "login", "uid": "42", "token": "tok"})

        # Act
        h.conn.spawn(h.handler.handle_text(h.conn, login))
        h.conn.spawn(h.handler.handle_text(h.conn, '{"type": "logout"}'))
        await settle(30)

        # Assert
        session = h.conn.session
        assert session.state is SessionState.DESTROYED
        assert not session.has_transport
        assert h.factory.created == []
        assert h.socket.of_type("status")[-1]["ready"] is False

    @pytest.mark.asyncio
    async def test_login_missing_fields(self):
        # Arrange
        h = _Harness()

        # Act
        await h.send(type="login", uid="42")

        # Assert
        assert "uid and token" in h.socket.of_type("error")[0]["message"]
        assert h.conn.session is None

    @pytest.mark.asyncio
    async def test_login_failure_reports_error_and_status(self):
        # Arrange
        h = _Harness(error=SignatureError("signing rejected: expired", code="signing_rejected"))

        # Act
        await h.login()

        # Assert
        error = h.socket.of_type("error")[0]
        assert "expired" in error["message"]
        assert error["code"] == "signing_rejected"
        assert h.socket.of_type("status")[-1]["ready"] is False

    @pytest.mark.asyncio
    async def test_logout_destroys_session(self):
        # Arrange
        h = _Harness()
        await h.login()
        transport = h.factory.last

        # Act
        await h.send(type="logout")

        # Assert
        assert h.conn.session.state is SessionState.DESTROYED
        assert transport.destroyed
        assert h.socket.of_type("status")[-1]["ready"] is False

    @pytest.mark.asyncio
    async def test_get_status(self):
        # Arrange
        h = _Harness()
        await h.login()
        h.socket.sent.clear()

        # Act
        await h.send(type="getStatus")

        # Assert
        statuses = h.socket.of_type("status")
        assert len(statuses) == 1
        assert statuses[0]["ready"] is True
        assert statuses[0]["identity"] == "42"


class TestSendCommand:
    """sendCommand -> commandResult."""

    @pytest.mark.asyncio
    async def test_success(self):
        # Arrange
        h = _Harness(remote_user_id="dev-1")
        await h.login()

        # Act
        await h.send(type="sendCommand", payload="7", traceId="trace_abc")

        # Assert
        result = h.socket.of_type("commandResult")[0]
        assert result["success"] is True
        assert result["recipient"] == "dev-1"
        assert result["traceId"] == "trace_abc"
        assert result["attempts"] == [{"recipient": "dev-1", "ok": True, "error": None}]
        to, text = h.factory.last.sent[0]
        assert to == "dev-1"
        assert json.loads(text) == {"code": "game_cmd", "id": "7", "token": "tok"}

    @pytest.mark.asyncio
    async def test_fallback_after_override_fails(self):
        # Arrange
        h = _Harness(fallback="F")
        await h.login()
        h.factory.last.fail_for["X"] = TransportSendError("offline")

        # Act
        await h.send(type="sendCommand", payload={"id": "9"}, targetId="X")

        # Assert
        result = h.socket.of_type("commandResult")[0]
        assert result["success"] is True
        assert result["recipient"] == "F"
        assert [a["recipient"] for a in result["attempts"]] == ["X", "F"]

    @pytest.mark.asyncio
    async def test_all_fail(self):
        # Arrange
        h = _Harness(remote_user_id="game_42")
        await h.login()
        h.factory.last.fail_for["42"] = TransportSendError("offline")

        # Act
        await h.send(type="sendCommand", payload="7")

        # Assert
        result = h.socket.of_type("commandResult")[0]
        assert result["success"] is False
        assert result["recipient"] is None
        assert result["attempts"] == [{"recipient": "42", "ok": False, "error": "offline"}]
        assert result["traceId"].startswith("trace_")

    @pytest.mark.asyncio
    async def test_before_login_fails_fast(self):
        # Arrange
        h = _Harness()

        # Act
        await h.send(type="sendCommand", payload="7")

        # Assert
        result = h.socket.of_type("commandResult")[0]
        assert result["success"] is False
        assert "not ready" in result["message"]
        assert h.factory.created == []

    @pytest.mark.asyncio
    async def test_missing_payload(self):
        # Arrange
        h = _Harness()
        await h.login()

        # Act
        await h.send(type="sendCommand")

        # Assert
        assert h.socket.of_type("commandResult")[0]["message"] == "payload is required"

    @pytest.mark.asyncio
    async def test_timeout_yields_error(self):
        # Arrange
        h = _Harness(command_timeout=0.05)
        await h.login()
        h.factory.last.gate = asyncio.Event()

        # Act
        await h.send(type="sendCommand", payload="7", traceId="trace_t")

        # Assert
        error = h.socket.of_type("error")[0]
        assert "timed out" in error["message"]
        assert error["traceId"] == "trace_t"
        assert h.socket.of_type("commandResult") == []
        h.factory.last.gate.set()


class TestMisc:
    """ping, unknown types, raw text, diagnose."""

    @pytest.mark.asyncio
    async def test_ping_refreshes_liveness(self):
        # Arrange
        h = _Harness()
        await h.conn.probe()

        # Act
        await h.send(type="ping")

        # Assert
        assert h.conn.alive
        assert len(h.socket.of_type("pong")) == 1

    @pytest.mark.asyncio
    async def test_unknown_type(self):
        # Arrange
        h = _Harness()

        # Act
        await h.send(type="explode")

        # Assert
        assert "explode" in h.socket.of_type("error")[0]["message"]

    @pytest.mark.asyncio
    async def test_invalid_json_ignored(self):
        # Arrange
        h = _Harness()

        # Act
        await h.handler.handle_text(h.conn, "{not json")
        await h.handler.handle_text(h.conn, "[1, 2]")
        await settle()

        # Assert
        assert h.socket.sent == []

    @pytest.mark.asyncio
    async def test_handle_text_dispatches(self):
        # Arrange
        h = _Harness()

        # Act
        await h.handler.handle_text(h.conn, '{"type": "ping"}')
        await settle()

        # Assert
        assert h.socket.of_type("pong")

    @pytest.mark.asyncio
    async def test_diagnose_reports_checks(self):
        # Arrange
        h = _Harness(fallback="F", remote_user_id="R")

        # Act
        await h.send(type="diagnose", uid="42 tok", commandId="open-door")

        # Assert
        result = h.socket.of_type("diagnoseResult")[0]
        checks = result["checks"]
        assert checks["uid"] == "42"
        assert checks["backendUid"] == "game_42"
        assert checks["usedConnectCode"] is True
        assert checks["commandIdLooksValid"] is True
        assert checks["signing"]["ok"] is True
        assert checks["signing"]["remoteUserId"] == "R"
        assert checks["candidates"] == ["F", "42"]
        assert result["hints"] == []
        assert h.conn.session is None

    @pytest.mark.asyncio
    async def test_diagnose_hints_on_problems(self):
        # Arrange
        h = _Harness(error=SignatureError("signing rejected", code="signing_rejected"))

        # Act
        await h.send(type="diagnose", uid="42", token="tok", commandId="bad id!")

        # Assert
        result = h.socket.of_type("diagnoseResult")[0]
        assert result["checks"]["signing"] == {"ok": False, "message": "signing rejected", "code": "signing_rejected"}
        assert any("expired" in hint for hint in result["hints"])
        assert any("command id" in hint for hint in result["hints"])
