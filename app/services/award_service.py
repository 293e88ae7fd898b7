"""
Moteur de récompenses : points de fin de cours, succès et récompenses.

Règles :
 - Le grand livre (``point_transactions``) est append-only ; une récompense
   référencée n'est créditée qu'une fois (vérification + contrainte unique).
 - Chaque étape tourne dans son propre SAVEPOINT : un échec est journalisé,
   ajouté à ``errors`` et l'évaluation continue.
 - Ce service ne commit jamais ; l'orchestrateur choisit les frontières.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ConflictError, IncentivesError, classify_store_error, is_missing_table
from app.crud import achievement_crud, points_crud, reward_crud
from app.gamification.achievement_rules import get_metric
from app.models.incentives.achievement_model import Achievement, UserAchievement
from app.models.incentives.point_transaction_model import PointTransaction, ReferenceType
from app.models.incentives.reward_model import UserReward
from app.schemas.incentives.incentives_schema import (
    AchievementSummary,
    AchievementWithStatus,
    AwardResultRead,
)
from app.services.capability_probe import Capability, CapabilityProbe, get_capability_probe

logger = logging.getLogger(__name__)


@dataclass
class AwardResult:
    points_awarded: int = 0
    course_points_awarded: bool = False
    unlocked_achievements: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    # Événements à pousser au client une fois la transaction validée.
    events: List[Dict[str, Any]] = field(default_factory=list)

    def merge(self, other: "AwardResult") -> "AwardResult":
        self.points_awarded += other.points_awarded
        self.course_points_awarded = self.course_points_awarded or other.course_points_awarded
        self.unlocked_achievements.extend(other.unlocked_achievements)
        self.errors.extend(other.errors)
        self.events.extend(other.events)
        return self

    def to_schema(self) -> AwardResultRead:
        return AwardResultRead(
            points_awarded=self.points_awarded,
            course_points_awarded=self.course_points_awarded,
            unlocked_achievements=list(self.unlocked_achievements),
            errors=list(self.errors),
        )


class AwardService:
    def __init__(self, db: Session, user_id: int, probe: Optional[CapabilityProbe] = None):
        self.db = db
        self.user_id = user_id
        self.probe = probe or get_capability_probe(db)

    # ------------------------------------------------------------------
    # Fin de cours
    # ------------------------------------------------------------------
    def on_course_completed(self, course_id: int, course_title: str) -> AwardResult:
        """Crédite la fin de cours (une seule fois) puis évalue les succès."""
        result = AwardResult()
        amount = settings.COURSE_COMPLETION_POINTS

        if amount > 0 and self.probe.is_available(self.db, Capability.POINT_TRANSACTIONS):
            try:
                with self.db.begin_nested():
                    points_crud.append_transaction(
                        self.db,
                        self.user_id,
                        amount,
                        f"Completed course: {course_title}",
                        reference_type=ReferenceType.COURSE_COMPLETION,
                        reference_id=str(course_id),
                    )
                result.points_awarded += amount
                result.course_points_awarded = True
                result.events.append(
                    {
                        "type": "points_awarded",
                        "amount": amount,
                        "reason": ReferenceType.COURSE_COMPLETION,
                        "course_id": course_id,
                    }
                )
            except ConflictError:
                logger.info(
                    "Points de fin de cours %s déjà crédités à l'utilisateur %s : rien à faire.",
                    course_id,
                    self.user_id,
                )
            except (SQLAlchemyError, IncentivesError) as exc:
                self._record_failure(result, "course_completion", exc, Capability.POINT_TRANSACTIONS)
        else:
            logger.warning("Grand livre indisponible : points de fin de cours %s non crédités.", course_id)

        return result.merge(self.evaluate_achievements())

    # ------------------------------------------------------------------
    # Succès
    # ------------------------------------------------------------------
    def evaluate_achievements(self, now: Optional[datetime] = None) -> AwardResult:
        """Une passe sur le catalogue ; les succès déjà obtenus ne sont jamais retouchés."""
        result = AwardResult()
        if not (
            self.probe.is_available(self.db, Capability.ACHIEVEMENTS)
            and self.probe.is_available(self.db, Capability.USER_ACHIEVEMENTS)
        ):
            logger.warning("Tables de succès absentes : évaluation ignorée.")
            return result

        now = now or datetime.now(timezone.utc)
        # SELECT en SAVEPOINT : un échec ne doit pas annuler les points déjà crédités.
        try:
            with self.db.begin_nested():
                achievements = achievement_crud.list_achievements(self.db)
                user_map = achievement_crud.get_user_achievements_map(self.db, self.user_id)
        except SQLAlchemyError as exc:
            self._record_failure(result, "achievements", exc, Capability.ACHIEVEMENTS)
            return result

        metric_cache: Dict[str, int] = {}
        for achievement in achievements:
            entry = user_map.get(achievement.id)
            if entry is not None and entry.completed:
                continue

            value = self._metric_value(achievement.criteria_type, metric_cache)
            try:
                with self.db.begin_nested():
                    unlocked = self._apply_metric(achievement, entry, value, now)
            except (SQLAlchemyError, IncentivesError) as exc:
                self._record_failure(result, achievement.slug, exc, Capability.USER_ACHIEVEMENTS)
                continue

            if unlocked:
                result.unlocked_achievements.append(achievement.title)
                result.events.append(
                    {
                        "type": "achievement_unlocked",
                        "achievement_id": achievement.id,
                        "slug": achievement.slug,
                        "title": achievement.title,
                        "points": achievement.points,
                    }
                )
                if achievement.points > 0 and unlocked == "credited":
                    result.points_awarded += achievement.points
                    result.events.append(
                        {
                            "type": "points_awarded",
                            "amount": achievement.points,
                            "reason": ReferenceType.ACHIEVEMENT,
                            "achievement_id": achievement.id,
                        }
                    )
        return result

    def _metric_value(self, criteria_type: str, cache: Dict[str, int]) -> int:
        if criteria_type in cache:
            return cache[criteria_type]

        metric = get_metric(criteria_type)
        if metric is None:
            logger.warning("Métrique de succès inconnue '%s' : valeur 0.", criteria_type)
            value = 0
        elif not all(self.probe.is_available(self.db, table) for table in metric.requires):
            value = 0
        else:
            try:
                with self.db.begin_nested():
                    value = int(metric.compute(self.db, self.user_id) or 0)
            except SQLAlchemyError as exc:
                if is_missing_table(exc):
                    for table in metric.requires:
                        self.probe.mark_unavailable(table)
                logger.warning("Métrique '%s' indisponible (%s) : valeur 0.", criteria_type, exc)
                value = 0
        cache[criteria_type] = value
        return value

    def _apply_metric(
        self,
        achievement: Achievement,
        entry: Optional[UserAchievement],
        value: int,
        now: datetime,
    ) -> Optional[str]:
        """Retourne ``"credited"``/``"unlocked"`` si le succès vient d'être obtenu, sinon ``None``."""
        required = achievement.required_progress
        if value >= required:
            if entry is None:
                entry = achievement_crud.get_or_create_user_achievement(self.db, self.user_id, achievement.id)
                if entry.completed:
                    return None
            achievement_crud.mark_completed(entry, required, now)
            self.db.flush([entry])

            outcome = "unlocked"
            if achievement.points > 0:
                try:
                    points_crud.append_transaction(
                        self.db,
                        self.user_id,
                        achievement.points,
                        f"Completed achievement: {achievement.title}",
                        reference_type=ReferenceType.ACHIEVEMENT,
                        reference_id=str(achievement.id),
                    )
                    outcome = "credited"
                except ConflictError:
                    logger.info(
                        "Succès %s déjà crédité à l'utilisateur %s.", achievement.slug, self.user_id
                    )
            logger.info("🏆 Succès '%s' obtenu par l'utilisateur %s.", achievement.title, self.user_id)
            return outcome

        if value > (entry.progress if entry is not None else 0):
            if entry is None:
                entry = achievement_crud.get_or_create_user_achievement(self.db, self.user_id, achievement.id)
            if not entry.completed:
                entry.progress = value
                entry.updated_at = now
                self.db.flush([entry])
        return None

    def _record_failure(self, result: AwardResult, step: str, exc: BaseException, table: str) -> None:
        if is_missing_table(exc):
            self.probe.mark_unavailable(table)
        error = classify_store_error(exc)
        logger.error("Étape de récompense '%s' en échec pour l'utilisateur %s : %s", step, self.user_id, exc)
        result.errors.append(f"{step}: {error.code}")

    # ------------------------------------------------------------------
    # Points
    # ------------------------------------------------------------------
    def award_points(
        self,
        amount: int,
        description: str,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> Optional[PointTransaction]:
        """Ajoute des points ; ``None`` si l'entrée référencée existait déjà."""
        try:
            return points_crud.append_transaction(
                self.db, self.user_id, amount, description, reference_type, reference_id
            )
        except ConflictError:
            return None

    def get_user_points(self) -> int:
        if not self.probe.is_available(self.db, Capability.POINT_TRANSACTIONS):
            return 0
        return points_crud.sum_points(self.db, self.user_id)

    def refresh_points_cache(self) -> Optional[int]:
        if not (
            self.probe.is_available(self.db, Capability.USER_POINTS)
            and self.probe.is_available(self.db, Capability.POINT_TRANSACTIONS)
        ):
            return None
        return points_crud.rebuild_points_cache(self.db, self.user_id).total_points

    def get_point_transactions(self, limit: Optional[int] = None, offset: int = 0) -> List[PointTransaction]:
        if not self.probe.is_available(self.db, Capability.POINT_TRANSACTIONS):
            return []
        if limit is None:
            limit = settings.POINT_TRANSACTIONS_PAGE_SIZE
        return points_crud.list_transactions(self.db, self.user_id, limit=limit, offset=offset)

    # ------------------------------------------------------------------
    # Lecture des succès
    # ------------------------------------------------------------------
    def get_achievement_summary(self) -> AchievementSummary:
        if not (
            self.probe.is_available(self.db, Capability.ACHIEVEMENTS)
            and self.probe.is_available(self.db, Capability.USER_ACHIEVEMENTS)
        ):
            return AchievementSummary()

        total = len(achievement_crud.list_achievements(self.db))
        entries = achievement_crud.get_user_achievements_map(self.db, self.user_id).values()
        completed = sum(1 for entry in entries if entry.completed)
        in_progress = sum(1 for entry in entries if not entry.completed and (entry.progress or 0) > 0)

        percentage = (200 * completed + total) // (2 * total) if total else 0
        earned = 0
        if self.probe.is_available(self.db, Capability.POINT_TRANSACTIONS):
            earned = points_crud.sum_points(self.db, self.user_id, ReferenceType.ACHIEVEMENT)

        return AchievementSummary(
            total=total,
            completed=completed,
            in_progress=in_progress,
            completion_percentage=percentage,
            total_points_earned=earned,
        )

    def get_achievements_with_status(self) -> List[AchievementWithStatus]:
        if not self.probe.is_available(self.db, Capability.ACHIEVEMENTS):
            return []
        return achievement_crud.get_achievements_with_status(self.db, self.user_id)

    # ------------------------------------------------------------------
    # Récompenses
    # ------------------------------------------------------------------
    def award_reward(self, reward_id: int) -> UserReward:
        user_reward = reward_crud.award_reward(self.db, self.user_id, reward_id)
        logger.info("Récompense %s attribuée à l'utilisateur %s.", reward_id, self.user_id)
        return user_reward

    def claim_reward(self, user_reward_id: int) -> UserReward:
        return reward_crud.claim_reward(self.db, self.user_id, user_reward_id)

    def list_user_rewards(self) -> List[UserReward]:
        if not (
            self.probe.is_available(self.db, Capability.REWARDS)
            and self.probe.is_available(self.db, Capability.USER_REWARDS)
        ):
            return []
        return reward_crud.list_user_rewards(self.db, self.user_id)
