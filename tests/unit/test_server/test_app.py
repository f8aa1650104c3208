"""Tests for the FastAPI application (REST and WebSocket surfaces)."""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from termrelay.config.settings import Settings
from termrelay.connection.auth import StaticTokenAuthenticator
from termrelay.domain.models import ShellKind
from termrelay.server.app import WS_UNAUTHORIZED, InputRequest, create_app
from termrelay.sessions.orchestrator import SessionOrchestrator


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def client(settings: Settings, orchestrator: SessionOrchestrator):
    app = create_app(settings, orchestrator=orchestrator)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_client(settings: Settings, orchestrator: SessionOrchestrator):
    authenticator = StaticTokenAuthenticator({"alice": "alice-token", "bob": "bob-token"})
    app = create_app(settings, orchestrator=orchestrator, authenticator=authenticator)
    with TestClient(app) as test_client:
        yield test_client


def create(client: TestClient, **body) -> dict:
    body.setdefault("shell_kind", "bash")
    resp = client.post("/sessions", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


def poll_output(client: TestClient, session_id: str, needle: str, timeout: float = 3.0) -> list[dict]:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        chunks = client.get(f"/sessions/{session_id}/output").json()
        if needle in "".join(c["data"] for c in chunks):
            return chunks
        time.sleep(0.02)
    raise AssertionError(f"{needle!r} never appeared in output")


def auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class TestHealth:
    def test_health(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["sessions"] == 0


class TestSessions:
    """Tests for the session REST routes."""

    def test_create_session(self, client: TestClient, tmp_path) -> None:
        data = create(client, name="build")
        assert data["name"] == "build"
        assert data["shell_kind"] == "bash"
        assert data["status"] == "active"
        assert data["connection"] == "detached"
        assert data["working_directory"] == str(tmp_path)

    def test_list_and_get(self, client: TestClient) -> None:
        created = create(client)
        listed = client.get("/sessions").json()
        assert [s["session_id"] for s in listed] == [created["session_id"]]
        resp = client.get(f"/sessions/{created['session_id']}")
        assert resp.json()["session_id"] == created["session_id"]

    def test_unknown_session_is_404(self, client: TestClient) -> None:
        resp = client.get("/sessions/missing")
        assert resp.status_code == 404
        assert resp.json()["code"] == "session_not_found"

    def test_invalid_config_is_422(self, client: TestClient) -> None:
        resp = client.post("/sessions", json={"shell_kind": "bash", "rows": 0})
        assert resp.status_code == 422

    def test_delete(self, client: TestClient) -> None:
        session_id = create(client)["session_id"]
        assert client.delete(f"/sessions/{session_id}").status_code == 204
        assert client.get(f"/sessions/{session_id}").status_code == 404
        assert client.delete(f"/sessions/{session_id}").status_code == 404

    def test_session_limit_is_429(self, settings: Settings, fake_spawner, tmp_path) -> None:
        orchestrator = SessionOrchestrator(
            default_working_directory=str(tmp_path), max_sessions=1, spawner=fake_spawner
        )
        with TestClient(create_app(settings, orchestrator=orchestrator)) as client:
            create(client)
            resp = client.post("/sessions", json={"shell_kind": "bash"})
        assert resp.status_code == 429
        assert resp.json()["code"] == "session_limit_reached"

    def test_unavailable_shell_is_422(self, settings: Settings, fake_spawner, tmp_path) -> None:
        fake_spawner.unavailable.add(ShellKind.FISH)
        orchestrator = SessionOrchestrator(
            default_working_directory=str(tmp_path),
            fallback_to_default_shell=False,
            spawner=fake_spawner,
        )
        with TestClient(create_app(settings, orchestrator=orchestrator)) as client:
            resp = client.post("/sessions", json={"shell_kind": "fish"})
        assert resp.status_code == 422
        assert resp.json()["code"] == "shell_unavailable"

    def test_shells(self, client: TestClient) -> None:
        resp = client.get("/shells")
        assert resp.status_code == 200
        assert all(kind in {k.value for k in ShellKind} for kind in resp.json())


class TestInput:
    """Tests for commands, raw input, resize and output."""

    def test_execute_command_and_read_output(self, client: TestClient) -> None:
        session_id = create(client)["session_id"]
        resp = client.post(f"/sessions/{session_id}/commands", json={"command": "echo hi"})
        assert resp.status_code == 202
        assert resp.json()["sequence"] == 1
        chunks = poll_output(client, session_id, "echo hi")
        assert [c["sequence"] for c in chunks] == list(range(1, len(chunks) + 1))

    def test_output_after_sequence(self, client: TestClient) -> None:
        session_id = create(client)["session_id"]
        client.post(f"/sessions/{session_id}/commands", json={"command": "first"})
        first = poll_output(client, session_id, "first")
        last = first[-1]["sequence"]
        client.post(f"/sessions/{session_id}/commands", json={"command": "second"})
        poll_output(client, session_id, "second")
        later = client.get(f"/sessions/{session_id}/output", params={"after": last}).json()
        assert later and all(c["sequence"] > last for c in later)
        assert "first" not in "".join(c["data"] for c in later)

    def test_command_history(self, client: TestClient) -> None:
        session_id = create(client)["session_id"]
        client.post(f"/sessions/{session_id}/commands", json={"command": "ls"})
        client.post(f"/sessions/{session_id}/commands", json={"command": "token=abc"})
        history = client.get(f"/sessions/{session_id}/commands").json()
        assert [h["text"] for h in history] == ["ls", "token=[REDACTED]"]

    def test_named_keys(self, client: TestClient, fake_spawner) -> None:
        session_id = create(client)["session_id"]
        assert client.post(f"/sessions/{session_id}/input", json={"key": "Up"}).status_code == 204
        assert client.post(f"/sessions/{session_id}/input", json={"key": "c", "ctrl": True}).status_code == 204
        assert client.post(f"/sessions/{session_id}/input", json={"data": "q"}).status_code == 204
        assert bytes(fake_spawner.last.written) == b"\x1b[A\x03q"

    def test_unknown_key_is_422(self, client: TestClient) -> None:
        session_id = create(client)["session_id"]
        resp = client.post(f"/sessions/{session_id}/input", json={"key": "Hyper"})
        assert resp.status_code == 422
        assert resp.json()["code"] == "invalid_message"

    def test_data_and_key_together_rejected(self, client: TestClient) -> None:
        session_id = create(client)["session_id"]
        resp = client.post(f"/sessions/{session_id}/input", json={"data": "x", "key": "Enter"})
        assert resp.status_code == 422

    def test_resize(self, client: TestClient, fake_spawner) -> None:
        session_id = create(client)["session_id"]
        resp = client.post(f"/sessions/{session_id}/resize", json={"rows": 40, "cols": 120})
        assert resp.status_code == 200
        assert (resp.json()["rows"], resp.json()["cols"]) == (40, 120)
        assert fake_spawner.last.cols == 120

    def test_write_to_dead_shell_is_409(self, client: TestClient, fake_spawner) -> None:
        session_id = create(client)["session_id"]
        fake_spawner.last.fail_writes = True
        resp = client.post(f"/sessions/{session_id}/commands", json={"command": "ls"})
        assert resp.status_code == 409
        assert resp.json()["code"] == "shell_write_failed"


class TestInputRequest:
    def test_enter(self) -> None:
        assert InputRequest(key="Enter").to_terminal_input() == "\r"

    def test_single_character_key(self) -> None:
        assert InputRequest(key="y").to_terminal_input() == "y"

    def test_unsupported_ctrl(self) -> None:
        with pytest.raises(ValueError):
            InputRequest(key="Up", ctrl=True).to_terminal_input()


class TestAuth:
    """Tests for token checks and session ownership."""

    def test_missing_token_is_401(self, auth_client: TestClient) -> None:
        resp = auth_client.get("/sessions")
        assert resp.status_code == 401
        assert resp.json()["code"] == "unauthorized"

    def test_health_is_public(self, auth_client: TestClient) -> None:
        assert auth_client.get("/health").status_code == 200

    def test_bearer_and_query_tokens(self, auth_client: TestClient) -> None:
        assert auth_client.get("/sessions", headers=auth("alice-token")).status_code == 200
        assert auth_client.get("/sessions", params={"token": "alice-token"}).status_code == 200
        assert auth_client.get("/sessions", headers=auth("nope")).status_code == 401

    def test_sessions_are_private_to_their_owner(self, auth_client: TestClient) -> None:
        resp = auth_client.post("/sessions", json={"shell_kind": "bash"}, headers=auth("bob-token"))
        session_id = resp.json()["session_id"]
        assert auth_client.get("/sessions", headers=auth("alice-token")).json() == []
        resp = auth_client.get(f"/sessions/{session_id}", headers=auth("alice-token"))
        assert resp.status_code == 401
        resp = auth_client.get(f"/sessions/{session_id}", headers=auth("bob-token"))
        assert resp.status_code == 200

    def test_websocket_rejects_bad_token(self, auth_client: TestClient) -> None:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with auth_client.websocket_connect("/ws?token=wrong"):
                pass
        assert exc_info.value.code == WS_UNAUTHORIZED


class TestWebSocket:
    """Tests for the streaming protocol over /ws."""

    def test_ping(self, client: TestClient) -> None:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_attach_execute_and_stream(self, client: TestClient) -> None:
        session_id = create(client)["session_id"]
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "attach", "session_id": session_id})
            attached = ws.receive_json()
            assert attached["type"] == "attached"
            assert attached["sequence"] == 0

            ws.send_json({"type": "execute_command", "session_id": session_id, "command": "uptime"})
            seen = ""
            while "uptime" not in seen:
                message = ws.receive_json()
                assert message["type"] == "output"
                seen += message["data"]
            assert client.get(f"/sessions/{session_id}").json()["connection"] == "attached"

    def test_reattach_replays_after_sequence(self, client: TestClient) -> None:
        session_id = create(client)["session_id"]
        client.post(f"/sessions/{session_id}/commands", json={"command": "early"})
        chunks = poll_output(client, session_id, "early")
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "attach", "session_id": session_id, "last_seen_sequence": 0})
            assert ws.receive_json()["type"] == "attached"
            replayed = [ws.receive_json() for _ in chunks]
        assert [m["sequence"] for m in replayed] == [c["sequence"] for c in chunks]

    def test_malformed_message_reports_error(self, client: TestClient) -> None:
        with client.websocket_connect("/ws") as ws:
            ws.send_text("not json")
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["code"] == "invalid_message"
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

    def test_unknown_session_error(self, client: TestClient) -> None:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "attach", "session_id": "ghost"})
            error = ws.receive_json()
            assert error["code"] == "session_not_found"
            assert error["session_id"] == "ghost"
