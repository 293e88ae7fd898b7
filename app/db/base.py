"""Déclare l'ensemble des modèles SQLAlchemy pour la création des tables."""

from app.db.base_class import Base

# Utilisateurs
from app.models.user.user_model import User

# Catalogue pédagogique
from app.models.course.course_model import Course, Lesson, Quiz

# Progression
from app.models.progress.user_lesson_model import UserLessonCompletion
from app.models.progress.user_quiz_result_model import UserQuizResult
from app.models.progress.user_course_progress_model import UserCourseProgress
from app.models.progress.user_login_streak_model import UserLoginStreak

# Incentives
from app.models.incentives.achievement_model import Achievement, UserAchievement
from app.models.incentives.point_transaction_model import PointTransaction
from app.models.incentives.user_points_model import UserPoints
from app.models.incentives.reward_model import Reward, UserReward

__all__ = (
    "Base",
    "User",
    "Course",
    "Lesson",
    "Quiz",
    "UserLessonCompletion",
    "UserQuizResult",
    "UserCourseProgress",
    "UserLoginStreak",
    "Achievement",
    "UserAchievement",
    "PointTransaction",
    "UserPoints",
    "Reward",
    "UserReward",
)
