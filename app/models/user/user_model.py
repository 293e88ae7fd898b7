from sqlalchemy import Integer, String, Boolean, DateTime, func, Enum
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.db.base_class import Base
from typing import List, Optional, TYPE_CHECKING
from datetime import datetime
import enum

if TYPE_CHECKING:
    from ..progress.user_course_progress_model import UserCourseProgress
    from ..progress.user_lesson_model import UserLessonCompletion
    from ..progress.user_quiz_result_model import UserQuizResult
    from ..progress.user_login_streak_model import UserLoginStreak
    from ..incentives.achievement_model import UserAchievement
    from ..incentives.point_transaction_model import PointTransaction


class UserRole(str, enum.Enum):
    LEARNER = "learner"
    MANAGER = "manager"
    ADMIN = "admin"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    username: Mapped[str] = mapped_column(String(50), unique=True, index=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    hashed_password: Mapped[str] = mapped_column(String, nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    department: Mapped[Optional[str]] = mapped_column(String(100))
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="userrole", values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
        default=UserRole.LEARNER,
        server_default=UserRole.LEARNER.value,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    course_progress: Mapped[List["UserCourseProgress"]] = relationship(back_populates="user", cascade="all, delete-orphan")
    lesson_completions: Mapped[List["UserLessonCompletion"]] = relationship(back_populates="user", cascade="all, delete-orphan")
    quiz_results: Mapped[List["UserQuizResult"]] = relationship(back_populates="user", cascade="all, delete-orphan")
    login_streak: Mapped[Optional["UserLoginStreak"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", uselist=False
    )
    user_achievements: Mapped[List["UserAchievement"]] = relationship(back_populates="user", cascade="all, delete-orphan")
    point_transactions: Mapped[List["PointTransaction"]] = relationship(back_populates="user")

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}')>"
