import asyncio
import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect, WebSocketState

from app.api.v2.dependencies import get_db
from app.main import app
from app.models.user.user_model import UserRole
from app.notifications.websocket_manager import OutcomeEventManager


class FakeWebSocket:
    def __init__(self, fail: bool = False):
        self.application_state = WebSocketState.CONNECTING
        self.sent = []
        self.fail = fail

    async def accept(self):
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("broken pipe")
        self.sent.append(json.loads(text))


def test_encode_handles_enums_and_datetimes():
    manager = OutcomeEventManager()
    text = manager.encode(
        {
            "type": "points_awarded",
            "role": UserRole.MANAGER,
            "sent_at": datetime(2024, 1, 2, 3, 4, tzinfo=timezone.utc),
        }
    )
    assert json.loads(text) == {
        "type": "points_awarded",
        "role": "manager",
        "sent_at": "2024-01-02T03:04:00+00:00",
    }


def test_send_reaches_every_socket_and_drops_dead_ones():
    manager = OutcomeEventManager()
    alive, broken = FakeWebSocket(), FakeWebSocket(fail=True)

    async def scenario():
        await manager.connect(7, alive)
        await manager.connect(7, broken)
        await manager.notify_async(7, {"type": "course_completed", "course_id": 3})

    asyncio.run(scenario())

    assert alive.sent == [{"type": "course_completed", "course_id": 3}]
    assert manager.connections[7] == {alive}


def test_notify_from_sync_code():
    manager = OutcomeEventManager()
    socket = FakeWebSocket()
    asyncio.run(manager.connect(1, socket))

    manager.notify(1, {"type": "streak_updated", "current_streak": 2})

    assert socket.sent[0]["type"] == "streak_updated"
    assert "sent_at" in socket.sent[0]


def test_notify_ignores_unknown_types_and_absent_users():
    manager = OutcomeEventManager()
    socket = FakeWebSocket()
    asyncio.run(manager.connect(1, socket))

    manager.notify(1, {"type": "chat_message"})
    manager.notify(2, {"type": "course_completed"})

    assert socket.sent == []


def test_disconnect_forgets_user():
    manager = OutcomeEventManager()
    socket = FakeWebSocket()
    asyncio.run(manager.connect(1, socket))

    manager.disconnect(1, socket)
    manager.disconnect(1, socket)

    assert manager.connections == {}


def test_websocket_without_token_is_refused(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    try:
        with pytest.raises(WebSocketDisconnect) as exc:
            with TestClient(app).websocket_connect("/api/v2/ws") as websocket:
                websocket.receive_text()
    finally:
        app.dependency_overrides.clear()

    assert exc.value.code == 1008


def test_notify_inside_running_loop_keeps_task_until_sent():
    manager = OutcomeEventManager()
    socket = FakeWebSocket()

    async def scenario():
        await manager.connect(4, socket)
        manager.notify(4, {"type": "points_awarded", "amount": 10})
        pending = set(manager._tasks)
        await asyncio.gather(*pending)
        await asyncio.sleep(0)
        return pending

    pending = asyncio.run(scenario())

    assert len(pending) == 1
    assert socket.sent[0]["amount"] == 10
    assert manager._tasks == set()


def test_failed_background_send_is_logged(caplog):
    manager = OutcomeEventManager()
    socket = FakeWebSocket()

    async def _boom(user_id, payload):
        raise RuntimeError("loop closing")

    manager._send = _boom

    async def scenario():
        await manager.connect(5, socket)
        manager.notify(5, {"type": "course_completed"})
        await asyncio.gather(*manager._tasks, return_exceptions=True)
        await asyncio.sleep(0)

    with caplog.at_level("ERROR", logger="ws"):
        asyncio.run(scenario())

    assert manager._tasks == set()
    assert "loop closing" in caplog.text
