import json

from fastapi.testclient import TestClient

from conftest import make_manifest
from lansend.api.websocket import ConnectionManager
from lansend.config import PREPARE_UPLOAD_PATH
from lansend.transfer.models import FileStatus, TransferEvent


class FakeClient:
    def __init__(self, host):
        self.host = host


class FakeWebSocket:
    def __init__(self, host="127.0.0.1", broken=False):
        self.client = FakeClient(host)
        self.broken = broken
        self.accepted = False
        self.close_code = None
        self.messages = []

    async def accept(self):
        self.accepted = True

    async def close(self, code=1000):
        self.close_code = code

    async def send_text(self, text):
        if self.broken:
            raise RuntimeError("connection lost")
        self.messages.append(json.loads(text))


async def test_event_feed_is_local_only():
    manager = ConnectionManager()
    remote = FakeWebSocket(host="192.168.1.20")

    assert not await manager.connect(remote)
    assert remote.close_code == 1008
    assert len(manager) == 0


async def test_broadcast_drops_dead_connections():
    manager = ConnectionManager()
    alive, dead = FakeWebSocket(), FakeWebSocket(broken=True)
    await manager.connect(alive)
    await manager.connect(dead)

    await manager.handle_transfer_event(
        TransferEvent(session_id="s", file_id="f", status=FileStatus.COMPLETED, bytes_total=3)
    )

    assert alive.messages[0]["event"] == "send_completed"
    assert alive.messages[0]["data"]["file_id"] == "f"
    assert len(manager) == 1


def test_websocket_receives_receiver_events(app, sender_info):
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            response = client.post(PREPARE_UPLOAD_PATH, json=make_manifest(sender_info, ("f1", "a.txt", 1)))
            assert response.status_code == 200

            first = json.loads(ws.receive_text())
            assert first["event"] == "session_request"
            assert "f1" in first["data"]["files"]


def test_unknown_route_is_404(app):
    with TestClient(app) as client:
        assert client.get("/api/localsend/v2/nothing").status_code == 404
