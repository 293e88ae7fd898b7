from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.api.v2.dependencies import get_current_user, get_db, require_manager
from app.core.errors import IncentivesError
from app.crud import reward_crud
from app.models.user.user_model import User
from app.notifications.websocket_manager import outcome_event_manager
from app.schemas.incentives.incentives_schema import (
    AchievementCheckResponse,
    AchievementSummary,
    AchievementWithStatus,
    AwardResultRead,
    PointsBalance,
    PointTransactionRead,
    RewardRead,
    UserRewardRead,
)
from app.services.award_service import AwardService
from app.services.learning_service import LearningService

router = APIRouter()


@router.get("/points", response_model=PointsBalance, summary="Solde de points")
def get_points_balance(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    total = AwardService(db, current_user.id).get_user_points()
    return PointsBalance(user_id=current_user.id, total_points=total)


@router.get(
    "/points/transactions",
    response_model=List[PointTransactionRead],
    summary="Historique des points (du plus récent au plus ancien)",
)
def list_point_transactions(
    limit: Optional[int] = Query(None, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return AwardService(db, current_user.id).get_point_transactions(limit=limit, offset=offset)


@router.get("/achievements", response_model=List[AchievementWithStatus], summary="Succès et progression")
def list_achievements(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return AwardService(db, current_user.id).get_achievements_with_status()


@router.get("/achievements/summary", response_model=AchievementSummary, summary="Résumé des succès")
def get_achievement_summary(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return AwardService(db, current_user.id).get_achievement_summary()


@router.post("/achievements/check", response_model=AchievementCheckResponse, summary="Réévaluer les succès")
def check_achievements(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    result = LearningService(db, current_user, notifier=outcome_event_manager).check_achievements()
    if not result.success:
        return AchievementCheckResponse(success=False, award=AwardResultRead(), error=result.error.code)
    return AchievementCheckResponse(success=True, award=result.data.to_schema())


@router.get("/rewards", response_model=List[UserRewardRead], summary="Récompenses obtenues")
def list_user_rewards(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return AwardService(db, current_user.id).list_user_rewards()


@router.get("/rewards/catalog", response_model=List[RewardRead], summary="Catalogue des récompenses")
def list_reward_catalog(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return reward_crud.list_rewards(db)


@router.post("/rewards/{user_reward_id}/claim", response_model=UserRewardRead, summary="Réclamer une récompense")
def claim_reward(
    user_reward_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        user_reward = AwardService(db, current_user.id).claim_reward(user_reward_id)
    except IncentivesError as exc:
        db.rollback()
        raise HTTPException(status_code=exc.status_code, detail=exc.code) from exc
    db.commit()
    db.refresh(user_reward)
    return user_reward


@router.post(
    "/rewards/{reward_id}/award/{user_id}",
    response_model=UserRewardRead,
    status_code=201,
    summary="Attribuer une récompense à un apprenant (manager)",
)
def award_reward(
    reward_id: int,
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_manager),
):
    if db.get(User, user_id) is None:
        raise HTTPException(status_code=404, detail="user_not_found")
    try:
        user_reward = AwardService(db, user_id).award_reward(reward_id)
    except IncentivesError as exc:
        db.rollback()
        raise HTTPException(status_code=exc.status_code, detail=exc.code) from exc
    db.commit()
    db.refresh(user_reward)
    return user_reward
