"""Utility helpers for test factories."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.db.session import enable_sqlite_savepoints
from app.models.course.course_model import Course, Lesson, Quiz
from app.models.incentives.achievement_model import Achievement
from app.models.incentives.reward_model import Reward, RewardType
from app.models.user.user_model import User, UserRole


def build_engine(tables=None):
    # StaticPool : une seule connexion partagée, visible depuis le threadpool de TestClient.
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine, tables=tables)
    return engine


def create_user(db, **kwargs) -> User:
    defaults = {
        "username": "user",
        "email": "user@example.com",
        "hashed_password": "x",
        "role": UserRole.LEARNER,
        "is_active": True,
        "created_at": datetime.now(timezone.utc),
    }
    defaults.update(kwargs)
    user = User(**defaults)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def create_course(db, *, title: str = "Onboarding", lessons: int = 2, quizzes: int = 1, passing_score=None):
    """Crée un cours avec ``lessons`` leçons et ``quizzes`` quiz ; retourne ``(course, lessons, quizzes)``."""
    course = Course(title=title, description="", is_published=True)
    for index in range(lessons):
        course.lessons.append(Lesson(title=f"Leçon {index + 1}", order=index))
    for index in range(quizzes):
        course.quizzes.append(Quiz(title=f"Quiz {index + 1}", passing_score=passing_score))

    db.add(course)
    db.commit()
    db.refresh(course)
    return course, list(course.lessons), list(course.quizzes)


def create_achievement(
    db,
    *,
    slug: str = "course-completer",
    title: str = "Course Completer",
    criteria_type: str = "courses_completed",
    required_progress: int = 1,
    points: int = 100,
    **kwargs,
) -> Achievement:
    achievement = Achievement(
        slug=slug,
        title=title,
        description=kwargs.pop("description", title),
        category=kwargs.pop("category", "general"),
        criteria_type=criteria_type,
        required_progress=required_progress,
        points=points,
        **kwargs,
    )
    db.add(achievement)
    db.commit()
    db.refresh(achievement)
    return achievement


def create_reward(db, *, name: str = "Top Learner Badge", type: RewardType = RewardType.BADGE, value: int = 0) -> Reward:
    reward = Reward(name=name, description=name, type=type, value=value)
    db.add(reward)
    db.commit()
    db.refresh(reward)
    return reward
