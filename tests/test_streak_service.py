from datetime import datetime, timedelta, timezone

import pytest

from app.gamification.achievement_rules import format_streak_message
from app.models.progress.user_login_streak_model import UserLoginStreak
from app.models.user.user_model import User
from app.services.streak_service import StreakService, next_streak_state

NOW = datetime(2024, 5, 10, 8, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "current, longest, last_login, expected",
    [
        (5, 5, NOW - timedelta(days=1), (6, 6, True)),
        (5, 9, NOW - timedelta(days=1), (6, 9, True)),
        (5, 5, NOW - timedelta(days=3), (1, 5, True)),
        (5, 5, NOW.replace(hour=0, minute=1), (5, 5, False)),
        # Heure tardive la veille : un jour calendaire d'écart même si < 24 h.
        (2, 4, datetime(2024, 5, 9, 23, 59, tzinfo=timezone.utc), (3, 4, True)),
        # Horloge décalée : un last_login dans le futur ne change rien.
        (3, 3, NOW + timedelta(days=2), (3, 3, False)),
        (0, 0, None, (1, 1, True)),
    ],
)
def test_next_streak_state(current, longest, last_login, expected):
    assert next_streak_state(current, longest, last_login, NOW) == expected


def test_naive_datetimes_are_treated_as_utc():
    last_login = datetime(2024, 5, 9, 12, 0)
    assert next_streak_state(1, 1, last_login, NOW) == (2, 2, True)


def test_first_login_creates_streak(db_session):
    user = User(username="ana", email="ana@example.com", hashed_password="x")
    db_session.add(user)
    db_session.commit()

    result = StreakService(db_session, user.id).touch_login(NOW)
    db_session.commit()

    assert (result.current_streak, result.longest_streak, result.changed) == (1, 1, True)
    streak = db_session.get(UserLoginStreak, user.id)
    assert streak.current_streak == 1
    assert db_session.get(User, user.id).last_login_at is not None


def test_consecutive_days_extend_then_gap_resets(db_session):
    user = User(username="ana", email="ana@example.com", hashed_password="x")
    db_session.add(user)
    db_session.commit()
    service = StreakService(db_session, user.id)

    service.touch_login(NOW)
    same_day = service.touch_login(NOW + timedelta(hours=3))
    next_day = service.touch_login(NOW + timedelta(days=1))
    after_gap = service.touch_login(NOW + timedelta(days=4))
    db_session.commit()

    assert same_day.changed is False
    assert same_day.current_streak == 1
    assert (next_day.current_streak, next_day.longest_streak) == (2, 2)
    assert (after_gap.current_streak, after_gap.longest_streak) == (1, 2)
    assert service.get_streak().longest_streak == 2


def test_get_streak_without_record(db_session):
    result = StreakService(db_session, 42).get_streak()
    assert (result.current_streak, result.longest_streak, result.last_login) == (0, 0, None)
    assert result.message == "Start your learning streak today!"


@pytest.mark.parametrize(
    "days, expected",
    [
        (0, "Start your learning streak today!"),
        (1, "You've started your learning streak! Come back tomorrow to continue."),
        (3, "You're on a 3-day streak! Keep it going!"),
        (7, "Impressive! 7-day learning streak. You're building great habits!"),
        (12, "Amazing dedication! 12-day streak and counting!"),
        (45, "Extraordinary commitment! 45-day learning streak. You're a learning champion!"),
    ],
)
def test_format_streak_message(days, expected):
    assert format_streak_message(days) == expected
