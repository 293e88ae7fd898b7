from datetime import datetime, timezone
from typing import List

from sqlalchemy.orm import Session, joinedload

from app.core.errors import ConflictError, NotFoundError
from app.models.incentives.reward_model import Reward, UserReward


def list_rewards(db: Session) -> List[Reward]:
    return db.query(Reward).order_by(Reward.id.asc()).all()


def list_user_rewards(db: Session, user_id: int) -> List[UserReward]:
    return (
        db.query(UserReward)
        .options(joinedload(UserReward.reward))
        .filter(UserReward.user_id == user_id)
        .order_by(UserReward.earned_at.desc(), UserReward.id.desc())
        .all()
    )


def award_reward(db: Session, user_id: int, reward_id: int) -> UserReward:
    reward = db.get(Reward, reward_id)
    if reward is None:
        raise NotFoundError("reward_not_found")

    user_reward = UserReward(
        user_id=user_id,
        reward_id=reward.id,
        earned_at=datetime.now(timezone.utc),
        claimed=False,
    )
    db.add(user_reward)
    db.flush([user_reward])
    return user_reward


def claim_reward(db: Session, user_id: int, user_reward_id: int) -> UserReward:
    user_reward = db.get(UserReward, user_reward_id)
    # Une récompense d'un autre utilisateur est traitée comme introuvable.
    if user_reward is None or user_reward.user_id != user_id:
        raise NotFoundError("reward_not_found")
    if user_reward.claimed:
        raise ConflictError("reward_already_claimed")

    user_reward.claimed = True
    user_reward.claimed_at = datetime.now(timezone.utc)
    db.flush([user_reward])
    return user_reward
