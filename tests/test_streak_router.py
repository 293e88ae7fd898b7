from __future__ import annotations

from app.api.v2.endpoints.streak_router import get_my_streak, record_login
from tests.utils import create_user


def test_record_login_then_read_streak(db_session):
    user = create_user(db_session)

    before = get_my_streak(db=db_session, current_user=user)
    first = record_login(db=db_session, current_user=user)
    second = record_login(db=db_session, current_user=user)
    after = get_my_streak(db=db_session, current_user=user)

    assert (before.current_streak, before.last_login) == (0, None)
    assert (first.current_streak, first.changed) == (1, True)
    assert first.message == "You've started your learning streak! Come back tomorrow to continue."
    assert second.changed is False
    assert (after.current_streak, after.longest_streak) == (1, 1)
    assert after.last_login is not None
