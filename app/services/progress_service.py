import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from app.core.errors import NoContentError
from app.crud import completion_crud
from app.crud.completion_crud import ItemRef, QuizScore
from app.models.progress.user_course_progress_model import UserCourseProgress
from app.schemas.progress.progress_schema import (
    CourseProgressSummary,
    LessonStats,
    ProgressSummary,
    QuizStats,
)
from app.services.award_service import AwardService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressResult:
    course_id: int
    percentage: int
    completed: bool
    is_new_completion: bool
    completed_items: int
    total_items: int


def round_half_up_percentage(done: int, total: int) -> int:
    """``round(100 * done / total)`` en arithmétique entière, demi arrondi vers le haut."""
    return (200 * done + total) // (2 * total)


def quiz_stats(scores: Iterable[QuizScore]) -> QuizStats:
    scores = list(scores)
    if not scores:
        return QuizStats()
    return QuizStats(
        total=len(scores),
        passed=sum(1 for entry in scores if entry.passed),
        average_score=round_half_up_percentage(sum(entry.score for entry in scores), 100 * len(scores)),
        perfect_scores=sum(1 for entry in scores if entry.score == 100),
    )


def compute_progress(all_items: Iterable[ItemRef], completed_items: Iterable[ItemRef]) -> tuple[int, bool]:
    """Retourne ``(pourcentage, terminé)`` pour un ensemble d'items.

    Seuls les items complétés appartenant au cours comptent. Un cours sans
    contenu lève :class:`NoContentError` : aucun agrégat ne doit être écrit.
    """
    all_set = set(all_items)
    if not all_set:
        raise NoContentError(message="Course has no lessons or quizzes yet")

    done = len(all_set.intersection(completed_items))
    percentage = round_half_up_percentage(done, len(all_set))
    return percentage, percentage == 100


class ProgressService:
    """Recalcule l'agrégat ``user_courses`` depuis les complétions stockées."""

    def __init__(self, db: Session, user_id: int):
        self.db = db
        self.user_id = user_id

    def recompute(
        self,
        course_id: int,
        all_items: Optional[Iterable[ItemRef]] = None,
        completed_items: Optional[Iterable[ItemRef]] = None,
        *,
        touch: bool = True,
        now: Optional[datetime] = None,
    ) -> ProgressResult:
        """Recalcule et persiste la progression d'un cours.

        Sans ensembles fournis, tout est relu depuis la base : l'agrégat n'est
        jamais incrémenté. ``touch`` met à jour ``last_accessed`` (action
        utilisateur) ; un recalcul passif le laisse intact.
        """
        if all_items is None:
            all_items = completion_crud.list_course_items(self.db, course_id)
        if completed_items is None:
            completed_items = completion_crud.list_completed_items(self.db, self.user_id, course_id)

        all_set = set(all_items)
        completed_set = set(completed_items) & all_set
        percentage, completed = compute_progress(all_set, completed_set)

        previous = completion_crud.get_course_progress(self.db, self.user_id, course_id)
        was_completed = bool(previous is not None and previous.completed)

        completion_crud.upsert_course_progress(
            self.db,
            self.user_id,
            course_id,
            progress=percentage,
            completed=completed,
            touch=touch,
            now=now or datetime.now(timezone.utc),
        )

        is_new_completion = completed and not was_completed
        logger.info(
            "--- [PROGRESS] Cours %s / utilisateur %s : %s/%s items (%s%%), terminé=%s, nouvelle complétion=%s ---",
            course_id,
            self.user_id,
            len(completed_set),
            len(all_set),
            percentage,
            completed,
            is_new_completion,
        )
        return ProgressResult(
            course_id=course_id,
            percentage=percentage,
            completed=completed,
            is_new_completion=is_new_completion,
            completed_items=len(completed_set),
            total_items=len(all_set),
        )

    def get_course_progress(self, course_id: int) -> UserCourseProgress:
        """Retourne l'agrégat stocké, ou un instantané à zéro non persisté."""
        entry = completion_crud.get_course_progress(self.db, self.user_id, course_id)
        if entry is None:
            return UserCourseProgress(user_id=self.user_id, course_id=course_id, progress=0, completed=False)
        return entry

    def list_course_progress(self) -> list[UserCourseProgress]:
        return completion_crud.list_course_progress(self.db, self.user_id)

    def get_progress_summary(self) -> ProgressSummary:
        """Résumé des cours suivis avec statistiques leçons / quiz, plus les succès.

        Une leçon n'a pas d'état partiel : dans un cours commencé et non terminé,
        les leçons restantes sont comptées ``in_progress``.
        """
        entries = self.list_course_progress()
        lesson_counts = completion_crud.lesson_counts_by_course(
            self.db, self.user_id, [entry.course_id for entry in entries]
        )
        scores = completion_crud.list_quiz_scores(self.db, self.user_id)

        courses = []
        for entry in entries:
            total, done = lesson_counts.get(entry.course_id, (0, 0))
            started = entry.progress > 0 and not entry.completed
            courses.append(
                CourseProgressSummary(
                    course_id=entry.course_id,
                    title=entry.course.title,
                    progress=entry.progress,
                    completed=entry.completed,
                    last_accessed=entry.last_accessed,
                    completed_at=entry.completed_at,
                    lessons=LessonStats(
                        total=total,
                        completed=done,
                        in_progress=total - done if started else 0,
                    ),
                    quizzes=quiz_stats(score for score in scores if score.course_id == entry.course_id),
                )
            )

        summary = ProgressSummary(
            courses=courses,
            quizzes=quiz_stats(scores),
            achievements=AwardService(self.db, self.user_id).get_achievement_summary(),
        )
        logger.info(
            "--- [PROGRESS] Résumé utilisateur %s : %s cours, %s quiz tentés ---",
            self.user_id,
            len(courses),
            summary.quizzes.total,
        )
        return summary
