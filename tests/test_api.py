"""
Integration tests for the HTTP endpoints via TestClient.

Tests cover:
- GET /health (and /api/health): status, counters, uptime
- GET /rooms/{room_id} (and /api/rooms/...): existing rooms, 404, shape
- Lifespan: reaper started and stopped with the app
- CORS headers for allowed origins
"""

import pytest
from fastapi.testclient import TestClient

from codesync.app import create_app
from codesync.config import Settings


class TestHealth:
    @pytest.mark.parametrize("path", ["/health", "/api/health"])
    def test_returns_healthy(self, client, path):
        resp = client.get(path)
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["roomCount"] == 0
        assert data["connectionCount"] == 0
        assert data["uptime"] >= 0

    def test_counts_rooms(self, client, registry):
        registry.get_or_create("R1")
        registry.get_or_create("R2")
        assert client.get("/health").json()["roomCount"] == 2

    def test_counts_open_connections(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "ping"})
            ws.receive_json()
            assert client.get("/health").json()["connectionCount"] == 1


class TestRoomInfo:
    @pytest.mark.parametrize("prefix", ["", "/api"])
    def test_missing_room_is_404(self, client, prefix):
        resp = client.get(f"{prefix}/rooms/nope")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Room not found"}

    @pytest.mark.parametrize("prefix", ["", "/api"])
    def test_existing_room(self, client, registry, prefix):
        room = registry.get_or_create("R1")
        registry.add_participant(room, "c1", "Ann")
        registry.update_buffer(room, language="python")
        resp = client.get(f"{prefix}/rooms/R1")
        assert resp.status_code == 200
        data = resp.json()
        assert data["id"] == "R1"
        assert data["participantCount"] == 1
        assert data["language"] == "python"
        assert "createdAt" in data
        assert "lastActivity" in data

    def test_does_not_expose_buffer(self, client, registry):
        registry.get_or_create("R1")
        data = client.get("/rooms/R1").json()
        assert set(data) == {
            "id",
            "participantCount",
            "language",
            "createdAt",
            "lastActivity",
        }

    def test_room_ids_are_case_sensitive(self, client, registry):
        registry.get_or_create("abc")
        assert client.get("/rooms/ABC").status_code == 404

    def test_room_visible_while_joined(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "join-room", "roomId": "live", "username": "Ann"})
            ws.receive_json()
            data = client.get("/rooms/live").json()
            assert data["participantCount"] == 1


class TestLifespan:
    def test_reaper_runs_while_app_is_up(self, registry, python_sandbox):
        app = create_app(
            settings=Settings(allowed_origins=["*"]),
            registry=registry,
            sandbox=python_sandbox,
        )
        with TestClient(app):
            assert app.state.reaper.running
        assert not app.state.reaper.running

    def test_reaper_uses_configured_thresholds(self, registry, python_sandbox):
        app = create_app(
            settings=Settings(sweep_interval_seconds=5, room_max_idle_seconds=7),
            registry=registry,
            sandbox=python_sandbox,
        )
        assert app.state.reaper.interval_seconds == 5
        assert app.state.reaper.max_idle_seconds == 7


class TestCors:
    def test_allowed_origin_gets_header(self, registry, python_sandbox):
        app = create_app(
            settings=Settings(allowed_origins=["http://localhost:5173"]),
            registry=registry,
            sandbox=python_sandbox,
        )
        with TestClient(app) as client:
            resp = client.get("/health", headers={"Origin": "http://localhost:5173"})
            assert resp.headers["access-control-allow-origin"] == "http://localhost:5173"

    def test_other_origin_gets_no_header(self, registry, python_sandbox):
        app = create_app(
            settings=Settings(allowed_origins=["http://localhost:5173"]),
            registry=registry,
            sandbox=python_sandbox,
        )
        with TestClient(app) as client:
            resp = client.get("/health", headers={"Origin": "http://evil.example"})
            assert "access-control-allow-origin" not in resp.headers
