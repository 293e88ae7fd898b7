from datetime import datetime, timezone
from typing import Dict, List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.gamification.achievement_rules import progress_percentage
from app.models.incentives.achievement_model import Achievement, UserAchievement
from app.schemas.incentives.incentives_schema import AchievementRead, AchievementWithStatus


def list_achievements(db: Session) -> List[Achievement]:
    return db.query(Achievement).order_by(Achievement.created_at.asc(), Achievement.id.asc()).all()


def get_user_achievements_map(db: Session, user_id: int) -> Dict[int, UserAchievement]:
    rows = db.query(UserAchievement).filter(UserAchievement.user_id == user_id).all()
    return {row.achievement_id: row for row in rows}


def get_or_create_user_achievement(db: Session, user_id: int, achievement_id: int) -> UserAchievement:
    entry = (
        db.query(UserAchievement)
        .filter_by(user_id=user_id, achievement_id=achievement_id)
        .first()
    )
    if entry is not None:
        return entry

    entry = UserAchievement(user_id=user_id, achievement_id=achievement_id, progress=0, completed=False)
    try:
        with db.begin_nested():
            db.add(entry)
    except IntegrityError:
        entry = (
            db.query(UserAchievement)
            .filter_by(user_id=user_id, achievement_id=achievement_id)
            .one()
        )
    return entry


def mark_completed(entry: UserAchievement, required_progress: int, now: datetime | None = None) -> None:
    now = now or datetime.now(timezone.utc)
    entry.progress = max(entry.progress or 0, required_progress)
    entry.completed = True
    entry.completed_at = now
    entry.updated_at = now


def get_achievements_with_status(db: Session, user_id: int) -> List[AchievementWithStatus]:
    achievements = list_achievements(db)
    user_map = get_user_achievements_map(db, user_id)

    result: List[AchievementWithStatus] = []
    for achievement in achievements:
        entry = user_map.get(achievement.id)
        progress = entry.progress if entry else 0
        completed = bool(entry and entry.completed)
        result.append(
            AchievementWithStatus(
                achievement=AchievementRead.model_validate(achievement),
                progress=progress,
                progress_percentage=100 if completed else progress_percentage(progress, achievement.required_progress),
                completed=completed,
                completed_at=entry.completed_at if entry else None,
            )
        )
    return result
