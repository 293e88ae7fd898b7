from sqlalchemy import Integer, String, DateTime, ForeignKey, CheckConstraint, Index, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from typing import Optional, TYPE_CHECKING
from datetime import datetime

from app.db.base_class import Base

if TYPE_CHECKING:
    from ..user.user_model import User


class ReferenceType:
    COURSE_COMPLETION = "course_completion"
    ACHIEVEMENT = "achievement"
    MANUAL = "manual"


class PointTransaction(Base):
    """Entrée du grand livre de points : append-only, jamais modifiée ni supprimée."""

    __tablename__ = "point_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_point_transactions_amount_positive"),
        # Une même récompense (cours terminé, succès) ne peut être créditée qu'une fois.
        # Les lignes sans référence (NULL) ne sont pas concernées.
        UniqueConstraint("user_id", "reference_type", "reference_id", name="uq_point_transactions_reference"),
        Index("ix_point_transactions_user_created", "user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    reference_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    user: Mapped["User"] = relationship(back_populates="point_transactions")
