"""Données de référence : catalogue de succès, récompenses et compte administrateur.

Toutes les fonctions sont idempotentes (mise à jour en place par clé naturelle)
et ne sont jamais appelées depuis le chemin des requêtes.
"""
import logging

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.security import get_password_hash
from app.gamification.achievement_rules import DEFAULT_ACHIEVEMENTS
from app.models.incentives.achievement_model import Achievement
from app.models.incentives.reward_model import Reward, RewardType
from app.models.user.user_model import User, UserRole

logger = logging.getLogger(__name__)

DEFAULT_REWARDS = [
    {
        "name": "Top Learner Badge",
        "description": "Awarded to learners who complete 10 courses",
        "type": RewardType.BADGE,
        "icon": "award",
        "value": 0,
    },
    {
        "name": "Certificate of Excellence",
        "description": "Certificate recognising outstanding course performance",
        "type": RewardType.CERTIFICATE,
        "icon": "file-badge",
        "value": 0,
    },
    {
        "name": "Bonus Points",
        "description": "Extra points granted for exceptional engagement",
        "type": RewardType.POINTS,
        "icon": "coins",
        "value": 250,
    },
    {
        "name": "Premium Resource Access",
        "description": "Unlocks access to premium learning resources",
        "type": RewardType.RESOURCE,
        "icon": "book-open",
        "value": 0,
    },
]


def seed_achievements(db: Session) -> int:
    logger.info("--- Seeding des succès ---")
    created = 0
    for definition in DEFAULT_ACHIEVEMENTS:
        achievement = db.query(Achievement).filter(Achievement.slug == definition.slug).first()
        if achievement is None:
            achievement = Achievement(slug=definition.slug)
            db.add(achievement)
            created += 1
        achievement.title = definition.title
        achievement.description = definition.description
        achievement.icon = definition.icon
        achievement.category = definition.category
        achievement.criteria_type = definition.criteria_type
        achievement.required_progress = definition.required_progress
        achievement.points = definition.points
    db.commit()
    logger.info("✅ %s succès créés, %s mis à jour.", created, len(DEFAULT_ACHIEVEMENTS) - created)
    return created


def seed_rewards(db: Session) -> int:
    logger.info("--- Seeding des récompenses ---")
    created = 0
    for data in DEFAULT_REWARDS:
        reward = db.query(Reward).filter(Reward.name == data["name"]).first()
        if reward is None:
            db.add(Reward(**data))
            created += 1
        else:
            reward.description = data["description"]
            reward.type = data["type"]
            reward.icon = data["icon"]
            reward.value = data["value"]
    db.commit()
    logger.info("✅ %s récompenses créées.", created)
    return created


def get_or_create_admin(db: Session, email: str, password: str) -> User:
    admin = db.query(User).filter(or_(User.email == email, User.username == email)).first()
    if admin is not None:
        logger.info("Administrateur '%s' déjà présent.", email)
        return admin

    logger.info("Création de l'administrateur '%s'.", email)
    admin = User(
        username=email.split("@")[0],
        email=email,
        hashed_password=get_password_hash(password),
        role=UserRole.ADMIN,
        is_active=True,
    )
    db.add(admin)
    db.commit()
    db.refresh(admin)
    return admin
