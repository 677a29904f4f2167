# tests/test_websocket.py - WebSocket registry, health, and security tests
import pytest
from httpx import AsyncClient

from auth import AuthService
from realtime import ConnectionManager
from routers.websocket_router import _authenticate
from tests.conftest import get_auth_headers


class FakeSocket:
    def __init__(self, broken=False):
        self.broken = broken
        self.accepted = False
        self.closed_with = None
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def close(self, code=1000, reason=None):
        self.closed_with = code

    async def send_json(self, message):
        if self.broken:
            raise RuntimeError("connection reset")
        self.sent.append(message)


@pytest.mark.asyncio
async def test_health_endpoint(client: AsyncClient):
    """Health endpoint returns OK"""
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["version"] == "1.0.0"


@pytest.mark.asyncio
async def test_security_headers(client: AsyncClient):
    """Responses include security headers"""
    resp = await client.get("/health")
    assert resp.headers.get("X-Content-Type-Options") == "nosniff"
    assert resp.headers.get("X-Frame-Options") == "DENY"
    assert "X-Request-ID" in resp.headers


@pytest.mark.asyncio
async def test_request_id_is_echoed(client: AsyncClient, dev_user):
    resp = await client.get("/api/v1/projects/999", headers={**get_auth_headers(dev_user), "X-Request-ID": "abc-123"})
    assert resp.status_code == 404
    assert resp.headers["X-Request-ID"] == "abc-123"
    assert resp.json() == {"detail": "Project not found", "request_id": "abc-123"}


@pytest.mark.asyncio
async def test_ws_stats(client: AsyncClient):
    resp = await client.get("/ws/stats")
    assert resp.status_code == 200
    assert "total_connections" in resp.json()


@pytest.mark.asyncio
class TestConnectionManager:
    async def test_broadcast_reaches_everyone(self):
        manager = ConnectionManager()
        a, b = FakeSocket(), FakeSocket()
        await manager.connect(a, 1)
        await manager.connect(b, 2)

        await manager.broadcast({"type": "entity.changed"})
        assert a.sent == [{"type": "entity.changed"}]
        assert b.sent == [{"type": "entity.changed"}]
        assert manager.get_online_users() == [1, 2]

    async def test_dead_sockets_are_dropped(self):
        manager = ConnectionManager()
        await manager.connect(FakeSocket(broken=True), 1)
        healthy = FakeSocket()
        await manager.connect(healthy, 2)

        await manager.broadcast({"type": "ping"})
        assert manager.get_online_users() == [2]
        assert healthy.sent == [{"type": "ping"}]

    async def test_new_connection_supersedes_old(self):
        manager = ConnectionManager()
        old, new = FakeSocket(), FakeSocket()
        await manager.connect(old, 1)
        await manager.connect(new, 1)
        assert old.closed_with == 4000

        manager.disconnect(1, old)
        assert manager.get_stats() == {"total_connections": 1}
        manager.disconnect(1, new)
        assert manager.get_stats() == {"total_connections": 0}


@pytest.mark.asyncio
class TestSocketAuthentication:
    async def test_valid_token(self, db_session, dev_user):
        token = AuthService.token_for(dev_user)
        user = await _authenticate(token, db_session)
        assert user.id == dev_user.id

    async def test_garbage_token(self, db_session, roles):
        assert await _authenticate("garbage", db_session) is None

    async def test_unverified_user(self, db_session, unverified_user):
        assert await _authenticate(AuthService.token_for(unverified_user), db_session) is None
