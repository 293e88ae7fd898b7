from sqlalchemy.orm import sessionmaker

from app.db.base import Base
from app.models.course.course_model import Course, Lesson, Quiz
from app.models.progress.user_course_progress_model import UserCourseProgress
from app.models.progress.user_lesson_model import UserLessonCompletion
from app.models.progress.user_quiz_result_model import UserQuizResult
from app.models.user.user_model import User
from app.services import capability_probe
from app.services.award_service import AwardService
from app.services.capability_probe import Capability, CapabilityProbe, get_capability_probe
from tests.utils import build_engine, create_course, create_user

CORE_TABLES = [
    User.__table__,
    Course.__table__,
    Lesson.__table__,
    Quiz.__table__,
    UserLessonCompletion.__table__,
    UserQuizResult.__table__,
    UserCourseProgress.__table__,
]


def _partial_session():
    engine = build_engine(tables=CORE_TABLES)
    return engine, sessionmaker(bind=engine, future=True)()


def test_probe_caches_and_invalidates(db_session, monkeypatch):
    calls = []
    real_inspect = capability_probe.inspect

    def counting_inspect(bind):
        calls.append(bind)
        return real_inspect(bind)

    monkeypatch.setattr(capability_probe, "inspect", counting_inspect)
    probe = CapabilityProbe()

    assert probe.is_available(db_session, Capability.ACHIEVEMENTS) is True
    assert probe.is_available(db_session, Capability.ACHIEVEMENTS) is True
    assert len(calls) == 1

    probe.mark_unavailable(Capability.ACHIEVEMENTS)
    assert probe.is_available(db_session, Capability.ACHIEVEMENTS) is False
    assert len(calls) == 1

    probe.invalidate(Capability.ACHIEVEMENTS)
    assert probe.is_available(db_session, Capability.ACHIEVEMENTS) is True
    assert len(calls) == 2


def test_probe_is_shared_per_engine(db_session):
    assert get_capability_probe(db_session) is get_capability_probe(db_session)


def test_missing_tables_degrade_to_empty_results():
    engine, db = _partial_session()
    try:
        probe = get_capability_probe(db)
        assert probe.is_available(db, Capability.ACHIEVEMENTS) is False
        assert probe.is_available(db, Capability.COURSE_PROGRESS) is True

        user = create_user(db)
        course, _, _ = create_course(db)
        service = AwardService(db, user.id)

        result = service.on_course_completed(course.id, course.title)

        assert result.points_awarded == 0
        assert result.errors == []
        assert service.get_user_points() == 0
        assert service.get_point_transactions() == []
        assert service.get_achievements_with_status() == []
        assert service.get_achievement_summary().total == 0
        assert service.refresh_points_cache() is None
        assert service.list_user_rewards() == []
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine, tables=CORE_TABLES)
        engine.dispose()
