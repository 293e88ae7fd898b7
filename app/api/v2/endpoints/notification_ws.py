import logging

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session

from app.api.v2.dependencies import get_current_user_from_websocket, get_db
from app.notifications.websocket_manager import outcome_event_manager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def outcome_events_ws(websocket: WebSocket, db: Session = Depends(get_db)):
    """Canal des toasts : cours terminé, points, succès, série de connexion."""
    try:
        current_user = get_current_user_from_websocket(websocket, db)
    except HTTPException as exc:
        if exc.detail == "token_expired":
            logger.warning("WS refusée : token expiré.")
        else:
            logger.warning("WS refusée : token invalide (%s).", exc.detail)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    user_id = current_user.id
    # La session n'est plus utile une fois l'utilisateur identifié.
    db.close()

    await outcome_event_manager.connect(user_id, websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        outcome_event_manager.disconnect(user_id, websocket)
