import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.gamification.achievement_rules import format_streak_message
from app.models.progress.user_login_streak_model import UserLoginStreak
from app.models.user.user_model import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreakResult:
    current_streak: int
    longest_streak: int
    changed: bool
    last_login: Optional[datetime]

    @property
    def message(self) -> str:
        return format_streak_message(self.current_streak)


def _as_utc(value: datetime) -> datetime:
    # SQLite rend des datetimes naïfs : on les considère en UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _utc_day(value: datetime) -> date:
    return _as_utc(value).date()


def next_streak_state(
    current: int,
    longest: int,
    last_login: Optional[datetime],
    now: datetime,
) -> tuple[int, int, bool]:
    """Transition pure ``(current, longest, last_login, now) -> (current, longest, changed)``.

    Les jours sont des jours calendaires UTC. Une connexion le même jour (ou un
    ``last_login`` dans le futur) ne change rien ; le lendemain prolonge la
    série ; au-delà elle repart à 1. ``longest`` ne décroît jamais.
    """
    if last_login is None:
        return 1, max(longest, 1), True

    gap = (_utc_day(now) - _utc_day(last_login)).days
    if gap <= 0:
        return current, longest, False
    if gap == 1:
        current += 1
    else:
        current = 1
    return current, max(longest, current), True


class StreakService:
    """Suivi des jours de connexion consécutifs."""

    def __init__(self, db: Session, user_id: int):
        self.db = db
        self.user_id = user_id

    def touch_login(self, now: Optional[datetime] = None) -> StreakResult:
        now = _as_utc(now or datetime.now(timezone.utc))

        user = self.db.get(User, self.user_id)
        if user is not None:
            user.last_login_at = now

        streak = self.db.get(UserLoginStreak, self.user_id)
        if streak is None:
            streak = UserLoginStreak(
                user_id=self.user_id,
                current_streak=1,
                longest_streak=1,
                last_login=now,
                updated_at=now,
            )
            try:
                with self.db.begin_nested():
                    self.db.add(streak)
                logger.info("Série de connexion démarrée pour l'utilisateur %s.", self.user_id)
                return StreakResult(1, 1, True, now)
            except IntegrityError:
                # Deux premières connexions simultanées : on repart de la ligne gagnante.
                streak = self.db.get(UserLoginStreak, self.user_id)

        current, longest, changed = next_streak_state(
            streak.current_streak or 0,
            streak.longest_streak or 0,
            streak.last_login,
            now,
        )
        if changed:
            streak.current_streak = current
            streak.longest_streak = longest
            streak.last_login = now
            streak.updated_at = now
            logger.info(
                "Série de connexion de l'utilisateur %s : %s jour(s) (record %s).",
                self.user_id,
                current,
                longest,
            )
        self.db.flush()
        return StreakResult(current, longest, changed, streak.last_login)

    def get_streak(self) -> StreakResult:
        streak = self.db.get(UserLoginStreak, self.user_id)
        if streak is None:
            return StreakResult(0, 0, False, None)
        return StreakResult(streak.current_streak, streak.longest_streak, False, streak.last_login)
