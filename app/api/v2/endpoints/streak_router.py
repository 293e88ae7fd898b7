from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.v2.dependencies import get_current_user, get_db
from app.models.user.user_model import User
from app.notifications.websocket_manager import outcome_event_manager
from app.schemas.incentives.streak_schema import StreakRead
from app.services.learning_service import LearningService
from app.services.streak_service import StreakResult, StreakService

router = APIRouter()


def _to_read(streak: StreakResult) -> StreakRead:
    return StreakRead(
        current_streak=streak.current_streak,
        longest_streak=streak.longest_streak,
        last_login=streak.last_login,
        changed=streak.changed,
        message=streak.message,
    )


@router.post("/login", response_model=StreakRead, summary="Enregistrer la connexion du jour")
def record_login(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    result = LearningService(db, current_user, notifier=outcome_event_manager).record_login()
    if not result.success:
        raise HTTPException(status_code=result.error.status_code, detail=result.error.code)
    return _to_read(result.data.streak)


@router.get("/me", response_model=StreakRead, summary="Série de connexion courante")
def get_my_streak(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _to_read(StreakService(db, current_user.id).get_streak())
