"""Endpoints de progression : complétion de leçons, tentatives de quiz, agrégats par cours."""
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.api.v2.dependencies import get_current_user, get_db
from app.core.errors import IncentivesError, OperationResult
from app.crud import completion_crud
from app.models.user.user_model import User
from app.notifications.websocket_manager import outcome_event_manager
from app.schemas.progress.progress_schema import (
    CourseProgressRead,
    ProgressSummary,
    ProgressUpdateResponse,
    QuizAttemptCreate,
)
from app.services.learning_service import LearningService, ProgressOutcome
from app.services.progress_service import ProgressService

router = APIRouter()


def _unwrap(result: OperationResult):
    if not result.success:
        raise HTTPException(status_code=result.error.status_code, detail=result.error.code)
    return result.data


def _to_response(outcome: ProgressOutcome) -> ProgressUpdateResponse:
    progress = outcome.progress
    return ProgressUpdateResponse(
        status="success",
        course_id=progress.course_id,
        progress=progress.percentage,
        completed=progress.completed,
        is_new_completion=progress.is_new_completion,
        completed_items=progress.completed_items,
        total_items=progress.total_items,
        award=outcome.award.to_schema() if outcome.award is not None else None,
        warnings=outcome.warnings,
    )


@router.post(
    "/lessons/{lesson_id}/complete",
    response_model=ProgressUpdateResponse,
    summary="Marquer une leçon comme terminée",
)
def complete_lesson(
    lesson_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    service = LearningService(db, current_user, notifier=outcome_event_manager)
    return _to_response(_unwrap(service.complete_lesson(lesson_id)))


@router.delete(
    "/lessons/{lesson_id}/complete",
    response_model=ProgressUpdateResponse,
    summary="Retirer la complétion d'une leçon",
)
def uncomplete_lesson(
    lesson_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    service = LearningService(db, current_user, notifier=outcome_event_manager)
    return _to_response(_unwrap(service.uncomplete_lesson(lesson_id)))


@router.post(
    "/quizzes/{quiz_id}/attempts",
    response_model=ProgressUpdateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Soumettre une tentative de quiz",
)
def submit_quiz_attempt(
    quiz_id: int,
    payload: QuizAttemptCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    service = LearningService(db, current_user, notifier=outcome_event_manager)
    return _to_response(_unwrap(service.submit_quiz(quiz_id, payload.score)))


@router.get("/summary", response_model=ProgressSummary, summary="Résumé de progression (cours, quiz, succès)")
def get_progress_summary(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return ProgressService(db, current_user.id).get_progress_summary()


@router.get("/courses", response_model=List[CourseProgressRead], summary="Progression sur tous les cours")
def list_course_progress(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return ProgressService(db, current_user.id).list_course_progress()


@router.get("/courses/{course_id}", response_model=CourseProgressRead, summary="Progression sur un cours")
def get_course_progress(
    course_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        completion_crud.get_course(db, course_id)
    except IncentivesError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.code) from exc
    return ProgressService(db, current_user.id).get_course_progress(course_id)


@router.post(
    "/courses/{course_id}/recompute",
    response_model=ProgressUpdateResponse,
    summary="Recalculer la progression d'un cours",
)
def recompute_course_progress(
    course_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    service = LearningService(db, current_user, notifier=outcome_event_manager)
    return _to_response(_unwrap(service.refresh_course(course_id)))
