from datetime import datetime, timezone

import pytest

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.crud import completion_crud, points_crud
from app.models.incentives.achievement_model import UserAchievement
from app.models.incentives.point_transaction_model import PointTransaction, ReferenceType
from app.models.incentives.user_points_model import UserPoints
from app.services.award_service import AwardService
from app.services.progress_service import ProgressService
from tests.utils import create_achievement, create_course, create_reward, create_user


def _complete_course(db, user, course, lessons, quizzes):
    for lesson in lessons:
        completion_crud.mark_lesson_complete(db, user.id, lesson.id, course.id)
    for quiz in quizzes:
        completion_crud.record_quiz_attempt(db, user.id, quiz.id, course.id, 100)
    result = ProgressService(db, user.id).recompute(course.id)
    db.commit()
    return result


def test_course_completion_awards_points_once(db_session):
    user = create_user(db_session)
    course, lessons, quizzes = create_course(db_session, title="Compliance 101")
    _complete_course(db_session, user, course, lessons, quizzes)
    service = AwardService(db_session, user.id)

    first = service.on_course_completed(course.id, course.title)
    db_session.commit()
    second = service.on_course_completed(course.id, course.title)
    db_session.commit()

    assert first.course_points_awarded is True
    assert first.points_awarded == 100
    assert second.course_points_awarded is False
    assert second.points_awarded == 0
    entries = db_session.query(PointTransaction).all()
    assert len(entries) == 1
    assert entries[0].reference_type == ReferenceType.COURSE_COMPLETION
    assert entries[0].reference_id == str(course.id)
    assert entries[0].description == "Completed course: Compliance 101"


def test_course_completion_unlocks_matching_achievement(db_session):
    user = create_user(db_session)
    achievement = create_achievement(db_session, points=100)
    create_achievement(
        db_session,
        slug="learning-enthusiast",
        title="Learning Enthusiast",
        required_progress=5,
        points=500,
    )
    course, lessons, quizzes = create_course(db_session)
    _complete_course(db_session, user, course, lessons, quizzes)

    result = AwardService(db_session, user.id).on_course_completed(course.id, course.title)
    db_session.commit()

    assert result.unlocked_achievements == ["Course Completer"]
    assert result.points_awarded == 200
    assert result.errors == []
    assert points_crud.sum_points(db_session, user.id) == 200
    entry = db_session.query(UserAchievement).filter_by(achievement_id=achievement.id).one()
    assert entry.completed is True
    assert entry.progress == 1
    assert {event["type"] for event in result.events} == {"points_awarded", "achievement_unlocked"}


def test_progress_only_update_below_threshold(db_session):
    user = create_user(db_session)
    achievement = create_achievement(
        db_session,
        slug="lesson-explorer",
        title="Lesson Explorer",
        criteria_type="lessons_completed",
        required_progress=20,
    )
    course, lessons, _ = create_course(db_session, lessons=3, quizzes=0)
    for lesson in lessons:
        completion_crud.mark_lesson_complete(db_session, user.id, lesson.id, course.id)
    db_session.commit()

    result = AwardService(db_session, user.id).evaluate_achievements()
    db_session.commit()

    entry = db_session.query(UserAchievement).filter_by(achievement_id=achievement.id).one()
    assert result.unlocked_achievements == []
    assert entry.progress == 3
    assert entry.completed is False
    assert points_crud.sum_points(db_session, user.id) == 0


def test_completed_achievement_is_never_touched_again(db_session):
    user = create_user(db_session)
    achievement = create_achievement(db_session)
    course, lessons, quizzes = create_course(db_session)
    _complete_course(db_session, user, course, lessons, quizzes)
    service = AwardService(db_session, user.id)
    service.evaluate_achievements(now=datetime(2024, 1, 1, tzinfo=timezone.utc))
    db_session.commit()
    entry = db_session.query(UserAchievement).filter_by(achievement_id=achievement.id).one()
    completed_at = entry.completed_at

    # Le cours repasse sous 100 % : le succès reste acquis.
    completion_crud.unmark_lesson(db_session, user.id, lessons[0].id)
    ProgressService(db_session, user.id).recompute(course.id)
    db_session.commit()
    again = service.evaluate_achievements(now=datetime(2024, 6, 1, tzinfo=timezone.utc))
    db_session.commit()

    db_session.refresh(entry)
    assert again.unlocked_achievements == []
    assert entry.completed is True
    assert entry.completed_at == completed_at
    assert points_crud.sum_points(db_session, user.id, ReferenceType.ACHIEVEMENT) == 100


def test_unknown_metric_counts_as_zero(db_session):
    user = create_user(db_session)
    create_achievement(db_session, slug="mystery", title="Mystery", criteria_type="does_not_exist")

    result = AwardService(db_session, user.id).evaluate_achievements()

    assert result.unlocked_achievements == []
    assert result.errors == []


def test_zero_point_achievement_skips_the_ledger(db_session):
    user = create_user(db_session)
    create_achievement(db_session, slug="free", title="Free", points=0)
    course, lessons, quizzes = create_course(db_session)
    _complete_course(db_session, user, course, lessons, quizzes)

    result = AwardService(db_session, user.id).evaluate_achievements()
    db_session.commit()

    assert result.unlocked_achievements == ["Free"]
    assert result.points_awarded == 0
    assert db_session.query(PointTransaction).count() == 0


def test_failing_achievement_does_not_block_the_others(db_session, monkeypatch):
    user = create_user(db_session)
    create_achievement(db_session, slug="broken", title="Broken")
    create_achievement(db_session)
    course, lessons, quizzes = create_course(db_session)
    _complete_course(db_session, user, course, lessons, quizzes)
    original_apply = AwardService._apply_metric

    def _apply(self, achievement, entry, value, now):
        if achievement.slug == "broken":
            raise ValidationError("boom")
        return original_apply(self, achievement, entry, value, now)

    monkeypatch.setattr(AwardService, "_apply_metric", _apply)

    result = AwardService(db_session, user.id).evaluate_achievements()
    db_session.commit()

    assert result.unlocked_achievements == ["Course Completer"]
    assert result.errors == ["broken: boom"]
    assert points_crud.sum_points(db_session, user.id) == 100


def test_award_points_validation_and_idempotence(db_session):
    user = create_user(db_session)
    service = AwardService(db_session, user.id)

    with pytest.raises(ValidationError) as excinfo:
        service.award_points(0, "nothing")
    assert excinfo.value.code == "invalid_amount"
    with pytest.raises(ValidationError) as excinfo:
        service.award_points(10, "")
    assert excinfo.value.code == "missing_description"

    assert service.award_points(10, "Bonus", ReferenceType.MANUAL, "welcome") is not None
    assert service.award_points(10, "Bonus", ReferenceType.MANUAL, "welcome") is None
    service.award_points(5, "Sans référence")
    service.award_points(5, "Sans référence")
    db_session.commit()

    assert service.get_user_points() == 20


def test_ledger_unique_constraint_closes_the_race(db_session, monkeypatch):
    user = create_user(db_session)
    points_crud.append_transaction(db_session, user.id, 100, "Completed course: A", ReferenceType.COURSE_COMPLETION, "1")
    db_session.commit()

    # Simule une requête concurrente qui n'a pas vu la ligne existante.
    monkeypatch.setattr(points_crud, "find_transaction", lambda *args, **kwargs: None)
    with pytest.raises(ConflictError):
        points_crud.append_transaction(
            db_session, user.id, 100, "Completed course: A", ReferenceType.COURSE_COMPLETION, "1"
        )

    db_session.commit()
    assert db_session.query(PointTransaction).count() == 1


def test_points_cache_and_history(db_session):
    user = create_user(db_session)
    service = AwardService(db_session, user.id)
    for index in range(12):
        service.award_points(index + 1, f"Entrée {index + 1}", ReferenceType.MANUAL, str(index))
    db_session.commit()

    assert service.refresh_points_cache() == 78
    assert db_session.get(UserPoints, user.id).total_points == 78

    page = service.get_point_transactions()
    assert len(page) == 10
    assert page[0].description == "Entrée 12"
    assert [entry.description for entry in service.get_point_transactions(limit=5, offset=10)] == [
        "Entrée 2",
        "Entrée 1",
    ]


def test_achievement_summary(db_session):
    user = create_user(db_session)
    create_achievement(db_session)
    create_achievement(db_session, slug="five", title="Five courses", required_progress=5, points=500)
    create_achievement(
        db_session, slug="streak", title="Streak", criteria_type="login_streak", required_progress=7, points=50
    )
    course, lessons, quizzes = create_course(db_session)
    _complete_course(db_session, user, course, lessons, quizzes)
    service = AwardService(db_session, user.id)
    service.evaluate_achievements()
    db_session.commit()

    summary = service.get_achievement_summary()

    assert summary.total == 3
    assert summary.completed == 1
    assert summary.in_progress == 1
    assert summary.completion_percentage == 33
    assert summary.total_points_earned == 100


def test_achievements_with_status(db_session):
    user = create_user(db_session)
    create_achievement(
        db_session, slug="lessons", title="Lessons", criteria_type="lessons_completed", required_progress=4
    )
    course, lessons, _ = create_course(db_session, lessons=1, quizzes=0)
    completion_crud.mark_lesson_complete(db_session, user.id, lessons[0].id, course.id)
    service = AwardService(db_session, user.id)
    service.evaluate_achievements()
    db_session.commit()

    [status] = service.get_achievements_with_status()

    assert status.progress == 1
    assert status.progress_percentage == 25
    assert status.completed is False


def test_rewards_award_and_claim(db_session):
    learner = create_user(db_session)
    other = create_user(db_session, username="other", email="other@example.com")
    reward = create_reward(db_session)
    service = AwardService(db_session, learner.id)

    user_reward = service.award_reward(reward.id)
    db_session.commit()
    claimed = service.claim_reward(user_reward.id)

    assert claimed.claimed is True
    assert claimed.claimed_at is not None
    with pytest.raises(ConflictError):
        service.claim_reward(user_reward.id)
    with pytest.raises(NotFoundError):
        AwardService(db_session, other.id).claim_reward(user_reward.id)
    with pytest.raises(NotFoundError):
        service.award_reward(9999)
    assert [entry.id for entry in service.list_user_rewards()] == [user_reward.id]


def test_failing_metric_query_keeps_course_completion_points(db_session, monkeypatch):
    from sqlalchemy import text

    from app.gamification import achievement_rules
    from app.gamification.achievement_rules import Metric
    from app.services.capability_probe import Capability

    user = create_user(db_session)
    create_achievement(db_session)
    course, lessons, quizzes = create_course(db_session)
    _complete_course(db_session, user, course, lessons, quizzes)
    seen = []

    def _broken_count(db, user_id):
        seen.append(db.in_nested_transaction())
        return db.execute(text("SELECT missing_column FROM user_courses")).scalar()

    monkeypatch.setitem(
        achievement_rules.METRICS,
        "courses_completed",
        Metric(_broken_count, (Capability.COURSE_PROGRESS,)),
    )
    service = AwardService(db_session, user.id)

    result = service.on_course_completed(course.id, course.title)
    db_session.commit()

    assert seen == [True]
    assert result.course_points_awarded is True
    assert result.unlocked_achievements == []
    assert points_crud.sum_points(db_session, user.id) == 100
    # Colonne absente : la table reste utilisable pour les autres métriques.
    assert service.probe.is_available(db_session, Capability.COURSE_PROGRESS) is True
