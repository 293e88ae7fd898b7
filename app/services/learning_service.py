"""
Orchestration des actions utilisateur :
action → completion store → recalcul de progression → récompenses → notification.

Chaque méthode publique renvoie un :class:`OperationResult` au lieu de lever.
La progression est validée (commit) avant les récompenses : un échec du moteur
de récompenses ne l'annule jamais.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import IncentivesError, NotFoundError, OperationResult, classify_store_error
from app.crud import completion_crud
from app.models.course.course_model import Lesson, Quiz
from app.models.user.user_model import User
from app.services.award_service import AwardResult, AwardService
from app.services.progress_service import ProgressResult, ProgressService
from app.services.streak_service import StreakResult, StreakService

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, user_id: int, payload: dict) -> None: ...


@dataclass
class ProgressOutcome:
    progress: ProgressResult
    award: Optional[AwardResult] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class LoginOutcome:
    streak: StreakResult
    award: Optional[AwardResult] = None
    warnings: List[str] = field(default_factory=list)


class LearningService:
    def __init__(self, db: Session, user: User, notifier: Optional[Notifier] = None):
        self.db = db
        self.user = user
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    def complete_lesson(self, lesson_id: int) -> OperationResult[ProgressOutcome]:
        try:
            lesson = self.db.get(Lesson, lesson_id)
            if lesson is None:
                raise NotFoundError("lesson_not_found")
            completion_crud.mark_lesson_complete(self.db, self.user.id, lesson.id, lesson.course_id)
            self.db.commit()
            outcome = self._after_completion_change(lesson.course_id)
            return OperationResult.ok(outcome, warnings=outcome.warnings)
        except Exception as exc:
            return self._fail("complete_lesson", exc)

    def uncomplete_lesson(self, lesson_id: int) -> OperationResult[ProgressOutcome]:
        """Retire la complétion ; les points déjà crédités restent acquis."""
        try:
            lesson = self.db.get(Lesson, lesson_id)
            if lesson is None:
                raise NotFoundError("lesson_not_found")
            removed = completion_crud.unmark_lesson(self.db, self.user.id, lesson.id)
            self.db.commit()
            if not removed:
                logger.info("Leçon %s non complétée par l'utilisateur %s : rien à retirer.", lesson_id, self.user.id)

            progress = ProgressService(self.db, self.user.id).recompute(lesson.course_id)
            self.db.commit()
            return OperationResult.ok(ProgressOutcome(progress=progress))
        except Exception as exc:
            return self._fail("uncomplete_lesson", exc)

    def submit_quiz(self, quiz_id: int, score: int) -> OperationResult[ProgressOutcome]:
        try:
            quiz = self.db.get(Quiz, quiz_id)
            if quiz is None:
                raise NotFoundError("quiz_not_found")
            completion_crud.record_quiz_attempt(self.db, self.user.id, quiz.id, quiz.course_id, score)
            self.db.commit()
            outcome = self._after_completion_change(quiz.course_id)
            return OperationResult.ok(outcome, warnings=outcome.warnings)
        except Exception as exc:
            return self._fail("submit_quiz", exc)

    def refresh_course(self, course_id: int) -> OperationResult[ProgressOutcome]:
        """Recalcul passif : ``last_accessed`` n'est pas modifié."""
        try:
            completion_crud.get_course(self.db, course_id)
            outcome = self._after_completion_change(course_id, touch=False)
            return OperationResult.ok(outcome, warnings=outcome.warnings)
        except Exception as exc:
            return self._fail("refresh_course", exc)

    def record_login(self, now: Optional[datetime] = None) -> OperationResult[LoginOutcome]:
        try:
            streak = StreakService(self.db, self.user.id).touch_login(now)
            self.db.commit()
        except Exception as exc:
            return self._fail("record_login", exc)

        outcome = LoginOutcome(streak=streak)
        events: List[Dict[str, Any]] = []
        if streak.changed:
            events.append(
                {
                    "type": "streak_updated",
                    "current_streak": streak.current_streak,
                    "longest_streak": streak.longest_streak,
                    "message": streak.message,
                }
            )
            outcome.award = self._run_awards(lambda awards: awards.evaluate_achievements(), outcome.warnings)
            if outcome.award is not None:
                events.extend(outcome.award.events)
                self._append_error_event(events, outcome.award)
        self._notify(events)
        return OperationResult.ok(outcome, warnings=outcome.warnings)

    def check_achievements(self) -> OperationResult[AwardResult]:
        try:
            awards = AwardService(self.db, self.user.id)
            award = awards.evaluate_achievements()
            self.db.commit()
            if award.points_awarded:
                awards.refresh_points_cache()
                self.db.commit()
        except Exception as exc:
            return self._fail("check_achievements", exc)

        events = list(award.events)
        self._append_error_event(events, award)
        self._notify(events)
        return OperationResult.ok(award, warnings=["awards_partially_failed"] if award.errors else [])

    # ------------------------------------------------------------------
    # Étapes internes
    # ------------------------------------------------------------------
    def _after_completion_change(self, course_id: int, touch: bool = True) -> ProgressOutcome:
        progress = ProgressService(self.db, self.user.id).recompute(course_id, touch=touch)
        self.db.commit()

        outcome = ProgressOutcome(progress=progress)
        events: List[Dict[str, Any]] = []
        if progress.is_new_completion:
            course = completion_crud.get_course(self.db, course_id)
            events.append({"type": "course_completed", "course_id": course.id, "title": course.title})
            outcome.award = self._run_awards(
                lambda awards: awards.on_course_completed(course.id, course.title), outcome.warnings
            )
        else:
            outcome.award = self._run_awards(lambda awards: awards.evaluate_achievements(), outcome.warnings)

        if outcome.award is not None:
            events.extend(outcome.award.events)
            self._append_error_event(events, outcome.award)
        self._notify(events)
        return outcome

    def _run_awards(self, step, warnings: List[str]) -> Optional[AwardResult]:
        """Exécute une étape de récompense et la valide ; ``None`` si elle échoue entièrement."""
        try:
            awards = AwardService(self.db, self.user.id)
            result = step(awards)
            self.db.commit()
            if result.points_awarded:
                awards.refresh_points_cache()
                self.db.commit()
            if result.errors:
                warnings.append("awards_partially_failed")
            return result
        except (SQLAlchemyError, IncentivesError) as exc:
            self.db.rollback()
            logger.error("Récompenses non attribuées pour l'utilisateur %s : %s", self.user.id, exc)
            warnings.append("awards_failed")
            return None

    @staticmethod
    def _append_error_event(events: List[Dict[str, Any]], award: AwardResult) -> None:
        if award.errors:
            events.append({"type": "error", "errors": list(award.errors)})

    def _notify(self, events: List[Dict[str, Any]]) -> None:
        if self.notifier is None:
            return
        for event in events:
            try:
                self.notifier.notify(self.user.id, event)
            except Exception as exc:
                logger.warning("Notification '%s' non envoyée à l'utilisateur %s : %s", event.get("type"), self.user.id, exc)

    def _fail(self, operation: str, exc: BaseException) -> OperationResult:
        self.db.rollback()
        error = classify_store_error(exc)
        if isinstance(exc, IncentivesError):
            logger.info("%s refusé pour l'utilisateur %s : %s", operation, self.user.id, error.code)
        else:
            logger.exception("%s en échec pour l'utilisateur %s", operation, self.user.id)
        return OperationResult(success=False, error=error)
