"""Schémas Pydantic pour les endpoints de progression de cours."""
from datetime import datetime
from pydantic import BaseModel, Field
from typing import List, Optional

from app.schemas.incentives.incentives_schema import AchievementSummary, AwardResultRead


class QuizAttemptCreate(BaseModel):
    """Score obtenu (en %) lors d'une tentative de quiz."""

    score: int = Field(..., ge=0, le=100)


class CourseProgressRead(BaseModel):
    course_id: int
    progress: int = 0
    completed: bool = False
    last_accessed: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ProgressUpdateResponse(BaseModel):
    """Structure de réponse renvoyée après une action de l'utilisateur."""

    status: str
    course_id: int
    progress: int
    completed: bool
    is_new_completion: bool = False
    completed_items: int = 0
    total_items: int = 0
    award: Optional[AwardResultRead] = None
    warnings: List[str] = Field(default_factory=list)


class LessonStats(BaseModel):
    total: int = 0
    completed: int = 0
    in_progress: int = 0


class QuizStats(BaseModel):
    total: int = 0
    passed: int = 0
    average_score: int = 0
    perfect_scores: int = 0


class CourseProgressSummary(CourseProgressRead):
    title: str
    lessons: LessonStats = Field(default_factory=LessonStats)
    quizzes: QuizStats = Field(default_factory=QuizStats)


class ProgressSummary(BaseModel):
    """Vue d'ensemble : cours suivis (du plus récent au plus ancien), quiz et succès."""

    courses: List[CourseProgressSummary] = Field(default_factory=list)
    quizzes: QuizStats = Field(default_factory=QuizStats)
    achievements: AchievementSummary = Field(default_factory=AchievementSummary)
