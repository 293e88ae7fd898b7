"""Grand livre de points (append-only) et cache de solde."""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import ConflictError, ValidationError
from app.models.incentives.point_transaction_model import PointTransaction
from app.models.incentives.user_points_model import UserPoints

logger = logging.getLogger(__name__)


def find_transaction(
    db: Session,
    user_id: int,
    reference_type: str,
    reference_id: str,
) -> Optional[PointTransaction]:
    return (
        db.query(PointTransaction)
        .filter(
            PointTransaction.user_id == user_id,
            PointTransaction.reference_type == reference_type,
            PointTransaction.reference_id == str(reference_id),
        )
        .first()
    )


def append_transaction(
    db: Session,
    user_id: int,
    amount: int,
    description: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> PointTransaction:
    """Ajoute une entrée au grand livre.

    Pour une entrée référencée, l'existence est vérifiée avant l'insertion et la
    contrainte unique ``(user_id, reference_type, reference_id)`` ferme la
    course restante : dans les deux cas on lève :class:`ConflictError`, que les
    appelants traitent comme un succès sans effet.
    """
    if not amount or amount <= 0:
        raise ValidationError("invalid_amount", "Points amount must be positive")
    if not description:
        raise ValidationError("missing_description", "Missing description")

    if reference_id is not None:
        reference_id = str(reference_id)

    if reference_type and reference_id is not None:
        if find_transaction(db, user_id, reference_type, reference_id) is not None:
            raise ConflictError("already_awarded")

    entry = PointTransaction(
        user_id=user_id,
        amount=int(amount),
        description=description[:255],
        reference_type=reference_type,
        reference_id=reference_id,
        created_at=datetime.now(timezone.utc),
    )
    try:
        with db.begin_nested():
            db.add(entry)
    except IntegrityError as exc:
        raise ConflictError("already_awarded", str(exc.orig)) from exc

    logger.info(
        "Points: +%s pour l'utilisateur %s (%s, ref=%s:%s).",
        amount,
        user_id,
        description,
        reference_type,
        reference_id,
    )
    return entry


def sum_points(db: Session, user_id: int, reference_type: Optional[str] = None) -> int:
    query = db.query(func.coalesce(func.sum(PointTransaction.amount), 0)).filter(
        PointTransaction.user_id == user_id
    )
    if reference_type is not None:
        query = query.filter(PointTransaction.reference_type == reference_type)
    return int(query.scalar() or 0)


def list_transactions(db: Session, user_id: int, limit: int = 10, offset: int = 0) -> List[PointTransaction]:
    return (
        db.query(PointTransaction)
        .filter(PointTransaction.user_id == user_id)
        .order_by(PointTransaction.created_at.desc(), PointTransaction.id.desc())
        .offset(max(offset, 0))
        .limit(max(limit, 0))
        .all()
    )


def rebuild_points_cache(db: Session, user_id: int) -> UserPoints:
    """Réécrit ``user_points`` à partir de la somme du grand livre."""
    total = sum_points(db, user_id)
    cache = db.get(UserPoints, user_id)
    if cache is None:
        cache = UserPoints(user_id=user_id)
        db.add(cache)
    cache.total_points = total
    cache.last_updated = datetime.now(timezone.utc)
    db.flush([cache])
    return cache
