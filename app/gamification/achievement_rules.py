"""
Règles des succès : métriques évaluées, catégories et catalogue par défaut.

 - Une métrique est une fonction ``(db, user_id) -> int`` calculée depuis les
   données stockées (jamais depuis un état en mémoire).
 - Un succès est débloqué quand ``métrique >= required_progress``.
 - Le catalogue par défaut est inséré par l'étape de seed (app/db/initial_data.py),
   jamais depuis le chemin des requêtes.

On peut ajouter une métrique en l'enregistrant dans ``METRICS``.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from app.crud import completion_crud, points_crud
from app.models.progress.user_login_streak_model import UserLoginStreak
from app.services.capability_probe import Capability


MetricFn = Callable[[Session, int], int]


@dataclass(frozen=True)
class Metric:
    compute: MetricFn
    # Tables nécessaires ; si l'une manque la métrique vaut 0.
    requires: Tuple[str, ...] = ()


def _login_streak(db: Session, user_id: int) -> int:
    streak = db.get(UserLoginStreak, user_id)
    return streak.current_streak if streak else 0


METRICS: Dict[str, Metric] = {
    "courses_completed": Metric(completion_crud.count_completed_courses, (Capability.COURSE_PROGRESS,)),
    "courses_in_progress": Metric(completion_crud.count_courses_in_progress, (Capability.COURSE_PROGRESS,)),
    "lessons_completed": Metric(completion_crud.count_completed_lessons, (Capability.LESSON_COMPLETIONS,)),
    "perfect_quizzes": Metric(completion_crud.count_perfect_quizzes, (Capability.QUIZ_RESULTS,)),
    "quizzes_passed": Metric(completion_crud.count_passed_quizzes, (Capability.QUIZ_RESULTS,)),
    "average_quiz_score": Metric(completion_crud.average_quiz_score, (Capability.QUIZ_RESULTS,)),
    "login_streak": Metric(_login_streak, (Capability.LOGIN_STREAKS,)),
    "total_points": Metric(points_crud.sum_points, (Capability.POINT_TRANSACTIONS,)),
}

CATEGORY_BY_CRITERIA: Dict[str, str] = {
    "courses_completed": "courses",
    "courses_in_progress": "courses",
    "lessons_completed": "lessons",
    "perfect_quizzes": "quizzes",
    "quizzes_passed": "quizzes",
    "average_quiz_score": "quizzes",
    "login_streak": "engagement",
    "total_points": "general",
}


def get_metric(criteria_type: str) -> Optional[Metric]:
    return METRICS.get(criteria_type)


def progress_percentage(progress: int, required_progress: int) -> int:
    """Pourcentage d'avancement affiché (borné à 100)."""
    if required_progress <= 0:
        return 100
    return min(100, max(progress, 0) * 100 // required_progress)


@dataclass(frozen=True)
class AchievementDefinition:
    slug: str
    title: str
    description: str
    criteria_type: str
    required_progress: int
    points: int
    icon: Optional[str] = None

    @property
    def category(self) -> str:
        return CATEGORY_BY_CRITERIA.get(self.criteria_type, "general")


DEFAULT_ACHIEVEMENTS: Tuple[AchievementDefinition, ...] = (
    AchievementDefinition("course-completer", "Course Completer", "Complete your first course",
                          "courses_completed", 1, 100, "award"),
    AchievementDefinition("learning-enthusiast", "Learning Enthusiast", "Complete 5 courses",
                          "courses_completed", 5, 500, "rocket"),
    AchievementDefinition("lesson-explorer", "Lesson Explorer", "Complete 20 lessons across any courses",
                          "lessons_completed", 20, 100, "map"),
    AchievementDefinition("knowledge-seeker", "Knowledge Seeker", "Complete 50 lessons across any courses",
                          "lessons_completed", 50, 250, "book"),
    AchievementDefinition("quiz-master", "Quiz Master", "Score 100% on 5 different quizzes",
                          "perfect_quizzes", 5, 200, "brain"),
    AchievementDefinition("sharp-mind", "Sharp Mind", "Keep an average quiz score of 90% or more",
                          "average_quiz_score", 90, 150, "target"),
    AchievementDefinition("multitasker", "Multitasker", "Have 3 courses in progress at the same time",
                          "courses_in_progress", 3, 50, "layers"),
    AchievementDefinition("learning-streak", "Learning Streak", "Access the platform for 7 consecutive days",
                          "login_streak", 7, 50, "flame"),
    AchievementDefinition("dedicated-learner", "Dedicated Learner", "Access the platform for 30 consecutive days",
                          "login_streak", 30, 300, "fire"),
)


def format_streak_message(current_streak: int) -> str:
    if current_streak <= 0:
        return "Start your learning streak today!"
    if current_streak == 1:
        return "You've started your learning streak! Come back tomorrow to continue."
    if current_streak < 5:
        return f"You're on a {current_streak}-day streak! Keep it going!"
    if current_streak < 10:
        return f"Impressive! {current_streak}-day learning streak. You're building great habits!"
    if current_streak < 30:
        return f"Amazing dedication! {current_streak}-day streak and counting!"
    return f"Extraordinary commitment! {current_streak}-day learning streak. You're a learning champion!"
