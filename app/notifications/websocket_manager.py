# app/notifications/websocket_manager.py
import asyncio
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Set

import anyio
from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder
from starlette.websockets import WebSocketState

log = logging.getLogger("ws")

EVENT_TYPES = frozenset(
    {"course_completed", "points_awarded", "achievement_unlocked", "streak_updated", "error"}
)


class OutcomeEventManager:
    """Sockets ouvertes par utilisateur ; diffuse les événements (cours terminé, points, succès...)."""

    def __init__(self) -> None:
        self.connections: Dict[int, Set[WebSocket]] = {}
        # tâches lancées depuis notify() ; gardées jusqu'à leur fin
        self._tasks: Set[asyncio.Task] = set()

    async def connect(self, user_id: int, websocket: WebSocket) -> None:
        await websocket.accept()
        self.connections.setdefault(user_id, set()).add(websocket)
        log.info("[WS CONNECT] user=%s sockets=%s", user_id, len(self.connections[user_id]))

    def disconnect(self, user_id: int, websocket: WebSocket) -> None:
        conns = self.connections.get(user_id)
        if not conns:
            return
        conns.discard(websocket)
        if not conns:
            self.connections.pop(user_id, None)
        log.info("[WS DISCONNECT] user=%s remaining=%s", user_id, len(self.connections.get(user_id, ())))

    def encode(self, payload: dict) -> str:
        # Enums -> .value, datetime -> isoformat, Decimal -> float
        enc = jsonable_encoder(
            payload,
            custom_encoder={
                Enum: lambda e: getattr(e, "value", str(e)),
                datetime: lambda d: d.isoformat(),
                Decimal: float,
            },
        )
        return json.dumps(enc, ensure_ascii=False, separators=(",", ":"))

    async def _send(self, user_id: int, payload: dict) -> None:
        websockets = list(self.connections.get(user_id, ()))
        log.info("[WS SEND] user=%s sockets=%s type=%s", user_id, len(websockets), payload.get("type"))
        if not websockets:
            return

        # sérialise AVANT la boucle : une erreur d'encodage ne doit pas fermer les sockets
        try:
            text = self.encode(payload)
        except (TypeError, ValueError) as exc:
            log.error("[WS ENCODE ERROR] user=%s: %s payload=%r", user_id, exc, payload)
            return

        dead = []
        for ws in websockets:
            try:
                if ws.application_state != WebSocketState.CONNECTED:
                    dead.append(ws)
                    continue
                await ws.send_text(text)
            except Exception as exc:
                log.warning("[WS SEND ERROR] user=%s: %s", user_id, exc)
                dead.append(ws)

        for ws in dead:
            self.disconnect(user_id, ws)

    async def notify_async(self, user_id: int, payload: dict) -> None:
        await self._send(user_id, payload)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("[WS TASK ERROR] %s", exc, exc_info=exc)

    def notify(self, user_id: int, payload: dict) -> None:
        """Envoi depuis du code synchrone (routes exécutées dans le threadpool)."""
        if payload.get("type") not in EVENT_TYPES:
            log.warning("[WS] type d'événement inconnu ignoré : %r", payload.get("type"))
            return
        payload = {"sent_at": datetime.now(timezone.utc), **payload}
        if not self.connections.get(user_id):
            return
        try:
            anyio.from_thread.run(self._send, user_id, payload)
            return
        except RuntimeError:
            pass
        try:
            loop = asyncio.get_running_loop()
            task = loop.create_task(self._send(user_id, payload))
            self._tasks.add(task)
            task.add_done_callback(self._task_done)
        except RuntimeError:
            asyncio.run(self._send(user_id, payload))


outcome_event_manager = OutcomeEventManager()
