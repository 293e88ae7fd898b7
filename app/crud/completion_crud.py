"""Completion store : complétions de leçons, résultats de quiz et agrégat par cours.

Les fonctions ne font que ``flush`` ; le commit appartient à l'appelant, qui
décide des frontières de l'unité de travail.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import NotFoundError, ValidationError
from app.models.course.course_model import Course, Lesson, Quiz
from app.models.progress.user_course_progress_model import UserCourseProgress
from app.models.progress.user_lesson_model import UserLessonCompletion
from app.models.progress.user_quiz_result_model import UserQuizResult

logger = logging.getLogger(__name__)


class ItemKind(str, enum.Enum):
    LESSON = "lesson"
    QUIZ = "quiz"


@dataclass(frozen=True)
class ItemRef:
    kind: ItemKind
    item_id: int

    @classmethod
    def lesson(cls, item_id: int) -> "ItemRef":
        return cls(ItemKind.LESSON, item_id)

    @classmethod
    def quiz(cls, item_id: int) -> "ItemRef":
        return cls(ItemKind.QUIZ, item_id)


@dataclass(frozen=True)
class QuizScore:
    course_id: int
    quiz_id: int
    score: int
    passed: bool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _passing_threshold():
    return func.coalesce(Quiz.passing_score, settings.DEFAULT_PASSING_SCORE)


# -----------------------------
# Catalogue
# -----------------------------

def get_course(db: Session, course_id: int) -> Course:
    course = db.get(Course, course_id)
    if course is None:
        raise NotFoundError("course_not_found")
    return course


def list_course_items(db: Session, course_id: int) -> set[ItemRef]:
    """Toutes les leçons et tous les quiz du cours."""
    lesson_ids = db.query(Lesson.id).filter(Lesson.course_id == course_id).all()
    quiz_ids = db.query(Quiz.id).filter(Quiz.course_id == course_id).all()
    items = {ItemRef.lesson(row.id) for row in lesson_ids}
    items.update(ItemRef.quiz(row.id) for row in quiz_ids)
    return items


# -----------------------------
# Leçons
# -----------------------------

def mark_lesson_complete(db: Session, user_id: int, lesson_id: int, course_id: int) -> UserLessonCompletion:
    """Upsert idempotent sur ``(user_id, lesson_id)`` ; un second appel ne change rien."""
    lesson = db.get(Lesson, lesson_id)
    if lesson is None:
        raise NotFoundError("lesson_not_found")
    if lesson.course_id != course_id:
        raise ValidationError("lesson_course_mismatch")

    entry = (
        db.query(UserLessonCompletion)
        .filter_by(user_id=user_id, lesson_id=lesson_id)
        .first()
    )
    if entry is not None:
        if not entry.completed:
            entry.completed = True
            entry.completed_at = _utcnow()
            db.flush([entry])
        return entry

    entry = UserLessonCompletion(
        user_id=user_id,
        lesson_id=lesson_id,
        course_id=course_id,
        completed=True,
        completed_at=_utcnow(),
    )
    try:
        with db.begin_nested():
            db.add(entry)
    except IntegrityError:
        # Double clic : l'autre requête a inséré la ligne entre-temps.
        logger.info("Complétion leçon %s déjà enregistrée pour l'utilisateur %s.", lesson_id, user_id)
        entry = (
            db.query(UserLessonCompletion)
            .filter_by(user_id=user_id, lesson_id=lesson_id)
            .one()
        )
    return entry


def unmark_lesson(db: Session, user_id: int, lesson_id: int) -> bool:
    """Supprime la complétion ; renvoie ``False`` si rien n'était enregistré."""
    deleted = (
        db.query(UserLessonCompletion)
        .filter_by(user_id=user_id, lesson_id=lesson_id)
        .delete(synchronize_session="fetch")
    )
    db.flush()
    return bool(deleted)


# -----------------------------
# Quiz
# -----------------------------

def record_quiz_attempt(db: Session, user_id: int, quiz_id: int, course_id: int, score: int) -> UserQuizResult:
    """Enregistre une tentative, réussie ou non.

    Une seule ligne par ``(user_id, quiz_id)`` : ``attempts`` compte les
    tentatives, ``last_score`` garde la dernière, ``score``/``passed`` la
    meilleure. Un échec ultérieur ne "dé-valide" donc jamais un quiz réussi.
    """
    if score is None or not 0 <= int(score) <= 100:
        raise ValidationError("invalid_score")
    score = int(score)

    quiz = db.get(Quiz, quiz_id)
    if quiz is None:
        raise NotFoundError("quiz_not_found")
    if quiz.course_id != course_id:
        raise ValidationError("quiz_course_mismatch")

    threshold = quiz.passing_score if quiz.passing_score is not None else settings.DEFAULT_PASSING_SCORE
    passed_now = score >= threshold
    now = _utcnow()

    result = (
        db.query(UserQuizResult)
        .filter_by(user_id=user_id, quiz_id=quiz_id)
        .first()
    )
    if result is None:
        result = UserQuizResult(
            user_id=user_id,
            quiz_id=quiz_id,
            course_id=course_id,
            score=score,
            last_score=score,
            passed=passed_now,
            attempts=1,
            completed_at=now if passed_now else None,
            last_attempt_at=now,
        )
        try:
            with db.begin_nested():
                db.add(result)
            return result
        except IntegrityError:
            result = (
                db.query(UserQuizResult)
                .filter_by(user_id=user_id, quiz_id=quiz_id)
                .one()
            )

    result.attempts = (result.attempts or 0) + 1
    result.last_score = score
    result.last_attempt_at = now
    if score > (result.score or 0):
        result.score = score
    if passed_now and not result.passed:
        result.passed = True
        result.completed_at = now
    db.flush([result])

    logger.info(
        "Quiz %s : tentative %s de l'utilisateur %s (score=%s, seuil=%s, réussi=%s).",
        quiz_id,
        result.attempts,
        user_id,
        score,
        threshold,
        passed_now,
    )
    return result


# -----------------------------
# Lecture des complétions
# -----------------------------

def list_completed_items(db: Session, user_id: int, course_id: int) -> set[ItemRef]:
    """Items comptant pour la progression : leçons terminées et quiz réussis.

    Un quiz compte dès que la meilleure tentative atteint le seuil *courant* du
    quiz. ``passed`` n'est qu'un instantané pris à la tentative : si le seuil
    baisse ensuite, le score stocké suffit.
    """
    lesson_rows = (
        db.query(UserLessonCompletion.lesson_id)
        .join(Lesson, Lesson.id == UserLessonCompletion.lesson_id)
        .filter(
            UserLessonCompletion.user_id == user_id,
            UserLessonCompletion.completed.is_(True),
            Lesson.course_id == course_id,
        )
        .all()
    )
    quiz_rows = (
        db.query(UserQuizResult.quiz_id)
        .join(Quiz, Quiz.id == UserQuizResult.quiz_id)
        .filter(
            UserQuizResult.user_id == user_id,
            UserQuizResult.score >= _passing_threshold(),
            Quiz.course_id == course_id,
        )
        .all()
    )
    items = {ItemRef.lesson(row.lesson_id) for row in lesson_rows}
    items.update(ItemRef.quiz(row.quiz_id) for row in quiz_rows)
    return items


def list_lesson_completions_between(
    db: Session,
    user_id: int,
    start: datetime,
    end: datetime,
) -> list[UserLessonCompletion]:
    return (
        db.query(UserLessonCompletion)
        .filter(
            UserLessonCompletion.user_id == user_id,
            UserLessonCompletion.completed.is_(True),
            UserLessonCompletion.completed_at >= start,
            UserLessonCompletion.completed_at < end,
        )
        .order_by(UserLessonCompletion.completed_at.asc())
        .all()
    )


# -----------------------------
# Agrégat par cours
# -----------------------------

def get_course_progress(db: Session, user_id: int, course_id: int) -> Optional[UserCourseProgress]:
    return db.get(UserCourseProgress, (user_id, course_id))


def list_course_progress(db: Session, user_id: int) -> list[UserCourseProgress]:
    return (
        db.query(UserCourseProgress)
        .filter(UserCourseProgress.user_id == user_id)
        .order_by(UserCourseProgress.last_accessed.desc(), UserCourseProgress.course_id.asc())
        .all()
    )


def upsert_course_progress(
    db: Session,
    user_id: int,
    course_id: int,
    *,
    progress: int,
    completed: bool,
    touch: bool,
    now: Optional[datetime] = None,
) -> UserCourseProgress:
    """Upsert sur ``(user_id, course_id)`` ; la valeur est toujours recalculée en entier."""
    now = now or _utcnow()
    entry = get_course_progress(db, user_id, course_id)
    if entry is None:
        entry = UserCourseProgress(user_id=user_id, course_id=course_id, progress=0, completed=False)
        try:
            with db.begin_nested():
                db.add(entry)
        except IntegrityError:
            entry = get_course_progress(db, user_id, course_id)

    entry.progress = progress
    if completed:
        if not entry.completed or entry.completed_at is None:
            entry.completed_at = now
    else:
        entry.completed_at = None
    entry.completed = completed
    if touch:
        entry.last_accessed = now
    db.flush([entry])
    return entry


# -----------------------------
# Compteurs (métriques de succès)
# -----------------------------

def count_completed_lessons(db: Session, user_id: int) -> int:
    return (
        db.query(func.count(UserLessonCompletion.id))
        .filter(UserLessonCompletion.user_id == user_id, UserLessonCompletion.completed.is_(True))
        .scalar()
        or 0
    )


def count_completed_courses(db: Session, user_id: int) -> int:
    return (
        db.query(func.count())
        .select_from(UserCourseProgress)
        .filter(UserCourseProgress.user_id == user_id, UserCourseProgress.completed.is_(True))
        .scalar()
        or 0
    )


def count_courses_in_progress(db: Session, user_id: int) -> int:
    return (
        db.query(func.count())
        .select_from(UserCourseProgress)
        .filter(
            UserCourseProgress.user_id == user_id,
            UserCourseProgress.completed.is_(False),
            UserCourseProgress.progress > 0,
        )
        .scalar()
        or 0
    )


def count_perfect_quizzes(db: Session, user_id: int) -> int:
    return (
        db.query(func.count(UserQuizResult.id))
        .filter(UserQuizResult.user_id == user_id, UserQuizResult.score == 100)
        .scalar()
        or 0
    )


def count_passed_quizzes(db: Session, user_id: int) -> int:
    return (
        db.query(func.count(UserQuizResult.id))
        .join(Quiz, Quiz.id == UserQuizResult.quiz_id)
        .filter(UserQuizResult.user_id == user_id, UserQuizResult.score >= _passing_threshold())
        .scalar()
        or 0
    )


def average_quiz_score(db: Session, user_id: int) -> int:
    """Moyenne arrondie (demi supérieur) des meilleurs scores, 0 sans tentative."""
    total, count = (
        db.query(func.coalesce(func.sum(UserQuizResult.score), 0), func.count(UserQuizResult.id))
        .filter(UserQuizResult.user_id == user_id)
        .one()
    )
    if not count:
        return 0
    return (2 * int(total) + int(count)) // (2 * int(count))


# -----------------------------
# Résumé de progression
# -----------------------------

def lesson_counts_by_course(db: Session, user_id: int, course_ids: list[int]) -> dict[int, tuple[int, int]]:
    """``{course_id: (leçons du cours, leçons terminées par l'utilisateur)}``."""
    if not course_ids:
        return {}
    counts = {course_id: (0, 0) for course_id in course_ids}
    totals = (
        db.query(Lesson.course_id, func.count(Lesson.id))
        .filter(Lesson.course_id.in_(course_ids))
        .group_by(Lesson.course_id)
        .all()
    )
    for course_id, total in totals:
        counts[course_id] = (int(total), 0)
    done_rows = (
        db.query(Lesson.course_id, func.count(UserLessonCompletion.id))
        .join(Lesson, Lesson.id == UserLessonCompletion.lesson_id)
        .filter(
            UserLessonCompletion.user_id == user_id,
            UserLessonCompletion.completed.is_(True),
            Lesson.course_id.in_(course_ids),
        )
        .group_by(Lesson.course_id)
        .all()
    )
    for course_id, done in done_rows:
        counts[course_id] = (counts[course_id][0], int(done))
    return counts


def list_quiz_scores(db: Session, user_id: int) -> list[QuizScore]:
    """Meilleur score par quiz tenté, réussite évaluée au seuil courant."""
    rows = (
        db.query(Quiz.course_id, UserQuizResult.quiz_id, UserQuizResult.score, _passing_threshold())
        .join(Quiz, Quiz.id == UserQuizResult.quiz_id)
        .filter(UserQuizResult.user_id == user_id)
        .order_by(Quiz.course_id.asc(), UserQuizResult.quiz_id.asc())
        .all()
    )
    return [
        QuizScore(course_id=course_id, quiz_id=quiz_id, score=score, passed=score >= threshold)
        for course_id, quiz_id, score, threshold in rows
    ]
