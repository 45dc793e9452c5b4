"""
Integration tests for the HTTP and WebSocket API.

The poll thread is disabled; tests drive the poller through tick() so
deliveries are deterministic.

Tests cover:
- Health and status endpoints
- Table browsing
- The per-row delta channel (/ws)
- The snapshot channel (/ws/realtime)
- Closing open sockets on shutdown
"""

import asyncio
import json
import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from vrcx_realtime.api.main import SETUP_ERROR_CLOSE_CODE, create_app
from vrcx_realtime.api.subscribers import GOING_AWAY
from vrcx_realtime.config.settings import Settings
from tests.conftest import TOKEN_A, USER_A


def make_settings(path, **overrides):
    values = dict(
        vrcx_sqlite_filepath=path,
        cdc_enabled=False,
        snapshot_interval=60.0,
        log_level="WARNING",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def app(vrcx_db):
    """Create an app over the test database."""
    return create_app(make_settings(vrcx_db.path))


@pytest.fixture
def client(app):
    """Create a test client running the app's lifespan."""
    with TestClient(app) as client:
        yield client


class TestStatusEndpoints:
    """Tests for health and status."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_cdc_status(self, vrcx_db, app, client):
        vrcx_db.create_table("gamelog_location")
        app.state.poller.tick()

        data = client.get("/cdc/status").json()

        assert data["status"] == "success"
        assert data["poller"]["is_running"] is False
        assert [w["table"] for w in data["poller"]["watchers"]] == ["gamelog_location"]
        assert data["hub"]["subscribers"] == 0


class TestTableEndpoints:
    """Tests for table browsing."""

    def test_list_tables(self, vrcx_db, client):
        vrcx_db.create_table("gamelog_location")
        vrcx_db.insert("gamelog_location", 3)
        vrcx_db.set_active_user(USER_A)

        response = client.get("/api/tables")

        assert response.status_code == 200
        assert response.json() == [
            {"name": "configs", "count": 1},
            {"name": "gamelog_location", "count": 3},
        ]

    def test_get_records_paginated(self, vrcx_db, client):
        vrcx_db.create_table("gamelog_location")
        vrcx_db.insert("gamelog_location", 5)

        first = client.get("/api/tables/gamelog_location", params={"page": 1, "limit": 2}).json()
        second = client.get("/api/tables/gamelog_location", params={"page": 2, "limit": 2}).json()

        assert [row["id"] for row in first] == [5, 4]
        assert [row["id"] for row in second] == [3, 2]

    def test_unknown_table(self, vrcx_db, client):
        vrcx_db.create_table("gamelog_location")

        assert client.get("/api/tables/nope").status_code == 404

    def test_invalid_page(self, vrcx_db, client):
        vrcx_db.create_table("gamelog_location")

        assert client.get("/api/tables/gamelog_location", params={"page": 0}).status_code == 400
        assert client.get("/api/tables/gamelog_location", params={"limit": 0}).status_code == 400

    def test_missing_store(self, tmp_path):
        app = create_app(make_settings(str(tmp_path / "missing.sqlite3")))

        with TestClient(app) as client:
            assert client.get("/api/tables").status_code == 503


class TestDeltaChannel:
    """Tests for /ws."""

    def test_ping(self, client):
        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"type": "ping"})

            assert websocket.receive_json() == {"type": "pong"}

    def test_new_rows_are_pushed(self, vrcx_db, app, client):
        vrcx_db.create_table("gamelog_location")
        vrcx_db.insert("gamelog_location", 5)
        app.state.poller.tick()

        with client.websocket_connect("/ws") as websocket:
            vrcx_db.insert("gamelog_location", 2)
            app.state.poller.tick()

            first = websocket.receive_json()
            second = websocket.receive_json()

        assert first["event"] == "record"
        assert first["scope"] == "gamelog"
        assert first["type"] == "location"
        assert [first["record"]["id"], second["record"]["id"]] == [6, 7]

    def test_feed_rows_are_pushed(self, vrcx_db, app, client):
        vrcx_db.set_active_user(USER_A)
        vrcx_db.create_table(f"{TOKEN_A}_feed_avatar")
        app.state.poller.tick()

        with client.websocket_connect("/ws") as websocket:
            vrcx_db.insert(f"{TOKEN_A}_feed_avatar")
            app.state.poller.tick()

            message = websocket.receive_json()

        assert message["scope"] == "feed"
        assert message["type"] == "avatar"

    def test_unsubscribe_and_resubscribe(self, vrcx_db, app, client):
        vrcx_db.create_table("gamelog_event")
        app.state.poller.tick()

        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"type": "unsubscribe"})
            websocket.send_json({"type": "ping"})
            assert websocket.receive_json() == {"type": "pong"}
            assert app.state.hub.subscriber_count == 0

            vrcx_db.insert("gamelog_event")
            app.state.poller.tick()

            websocket.send_json({"type": "subscribe"})
            websocket.send_json({"type": "ping"})
            assert websocket.receive_json() == {"type": "pong"}

            vrcx_db.insert("gamelog_event")
            app.state.poller.tick()

            assert websocket.receive_json()["record"]["id"] == 2

    def test_malformed_messages_ignored(self, client):
        with client.websocket_connect("/ws") as websocket:
            websocket.send_text("not json")
            websocket.send_json(["a", "list"])
            websocket.send_json({"type": "dance"})
            websocket.send_json({"type": "ping"})

            assert websocket.receive_json() == {"type": "pong"}

    def test_disconnect_removes_subscriber(self, app, client):
        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"type": "ping"})
            websocket.receive_json()
            assert app.state.hub.subscriber_count == 1

        assert app.state.hub.broadcast({"type": "noop"}) == 0
        assert app.state.hub.subscriber_count == 0


class TestSnapshotChannel:
    """Tests for /ws/realtime."""

    def test_gamelog_snapshot(self, vrcx_db, client):
        vrcx_db.create_table("gamelog_location")
        vrcx_db.insert("gamelog_location", 3)

        with client.websocket_connect("/ws/realtime?channel=gamelog&limit=2") as websocket:
            message = websocket.receive_json()

        assert message["type"] == "gamelog"
        assert [row["id"] for row in message["data"]["location"]] == [3, 2]
        assert message["data"]["join_leave"] == []

    def test_feed_snapshot(self, vrcx_db, client):
        vrcx_db.create_table(f"{TOKEN_A}_feed_gps")
        vrcx_db.insert(f"{TOKEN_A}_feed_gps")

        with client.websocket_connect(f"/ws/realtime?channel=feed&userId={USER_A}") as websocket:
            message = websocket.receive_json()

        assert message["type"] == "feed"
        assert len(message["data"]["gps"]) == 1
        assert message["data"]["status"] == []

    def test_ping(self, vrcx_db, client):
        with client.websocket_connect("/ws/realtime?channel=gamelog") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "ping"})

            assert websocket.receive_json() == {"type": "pong"}

    @pytest.mark.parametrize("query,error", [
        ("channel=feed", "userId is required"),
        ("channel=friends", 'channel must be "feed" or "gamelog"'),
        ("", 'channel must be "feed" or "gamelog"'),
    ])
    def test_setup_errors_close_connection(self, client, query, error):
        with client.websocket_connect(f"/ws/realtime?{query}") as websocket:
            message = websocket.receive_json()
            with pytest.raises(WebSocketDisconnect) as exc_info:
                websocket.receive_json()

        assert message == {"type": "error", "message": error}
        assert exc_info.value.code == SETUP_ERROR_CLOSE_CODE

    def test_missing_store_reports_error(self, tmp_path):
        app = create_app(make_settings(str(tmp_path / "missing.sqlite3")))

        with TestClient(app) as client:
            with client.websocket_connect("/ws/realtime?channel=gamelog") as websocket:
                message = websocket.receive_json()

        assert message["type"] == "error"
        assert message["message"].startswith("Failed to read gamelog data")


class AsgiWebSocket:
    """In-process WebSocket client speaking raw ASGI messages to the app"""

    def __init__(self, app, path, query_string=b""):
        self.inbound = asyncio.Queue()
        self.outbound = asyncio.Queue()
        scope = {
            "type": "websocket",
            "asgi": {"version": "3.0"},
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "scheme": "ws",
            "query_string": query_string,
            "headers": [(b"host", b"testserver")],
            "server": ("testserver", 80),
            "client": ("testclient", 50000),
            "subprotocols": [],
        }
        self.inbound.put_nowait({"type": "websocket.connect"})
        self.task = asyncio.create_task(app(scope, self.inbound.get, self.outbound.put))

    async def receive(self, timeout=5):
        return await asyncio.wait_for(self.outbound.get(), timeout)

    async def receive_json(self):
        message = await self.receive()
        assert message["type"] == "websocket.send"
        return json.loads(message["text"])

    def send_json(self, data):
        self.inbound.put_nowait({"type": "websocket.receive", "text": json.dumps(data)})

    async def disconnect(self):
        self.inbound.put_nowait({"type": "websocket.disconnect", "code": 1000})
        await asyncio.wait_for(self.task, 5)


class TestShutdown:
    """Tests for closing open sockets when the app stops."""

    @pytest.mark.asyncio
    async def test_shutdown_closes_every_socket(self, vrcx_db):
        """Unsubscribed delta clients and snapshot clients both get a going-away close."""
        vrcx_db.create_table("gamelog_location")
        app = create_app(make_settings(vrcx_db.path))

        async with app.router.lifespan_context(app):
            delta = AsgiWebSocket(app, "/ws")
            assert (await delta.receive())["type"] == "websocket.accept"
            delta.send_json({"type": "unsubscribe"})
            delta.send_json({"type": "ping"})
            assert await delta.receive_json() == {"type": "pong"}
            assert app.state.hub.subscriber_count == 0

            snapshot = AsgiWebSocket(app, "/ws/realtime", b"channel=gamelog")
            assert (await snapshot.receive())["type"] == "websocket.accept"
            assert (await snapshot.receive_json())["type"] == "gamelog"

            started = time.monotonic()

        assert time.monotonic() - started < 4

        for client in (delta, snapshot):
            message = await client.receive()
            assert message["type"] == "websocket.close"
            assert message["code"] == GOING_AWAY
            await client.disconnect()
