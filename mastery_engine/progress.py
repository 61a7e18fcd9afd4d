"""Read models for the presentation layer"""

from sqlalchemy.orm import Session
from datetime import date
from typing import List, Optional

from mastery_engine import crud
from mastery_engine.crud import practice_session as sessions
from mastery_engine.exceptions import SessionNotFoundError
from mastery_engine.schemas import (
    ConceptProgress,
    DailySummary,
    QuestionView,
    SessionView,
    numeric_id_sort_key
)


def session_view(db: Session, session_id: str) -> SessionView:
    """Status, ordered questions and answered question ids of a session"""
    session = sessions.get_session(db, session_id)
    if session is None:
        raise SessionNotFoundError(session_id)
    answered = sessions.latest_responses(db, session_id)
    return SessionView(
        id=session.id,
        concept_id=session.concept_id,
        book_id=session.book_id,
        session_type=session.session_type,
        status=session.status,
        current_index=session.current_index or 0,
        questions=[QuestionView.model_validate(q) for q in session.questions],
        answered_question_ids=[q.id for q in session.questions if q.id in answered],
        error_message=session.error_message
    )


def concept_progress(db: Session, book_id: str) -> List[ConceptProgress]:
    """Coverage summary of every concept of a book, in natural id order"""
    coverage_by_id = {c.concept_id: c for c in crud.list_coverage(db, book_id)}
    titles = {c.id: c.title for c in crud.list_concepts(db, book_id)}
    concept_ids = sorted(set(titles) | set(coverage_by_id), key=numeric_id_sort_key)

    progress = []
    for concept_id in concept_ids:
        coverage = coverage_by_id.get(concept_id)
        progress.append(ConceptProgress(
            concept_id=concept_id,
            title=titles.get(concept_id, concept_id),
            coverage_percentage=coverage.coverage_percentage if coverage else 0.0,
            current_accuracy=(coverage.current_accuracy or 0.0) if coverage else 0.0,
            is_fully_covered=crud.is_fully_covered(coverage),
            is_mastered=crud.is_mastered(coverage),
            spaced_follow_up_due_date=coverage.spaced_follow_up_due_date if coverage else None,
            curveball_due_date=coverage.curveball_due_date if coverage else None,
            next_review_date=coverage.review_state.next_review_date
            if coverage and coverage.review_state else None
        ))
    return progress


def daily_summary(db: Session, day: Optional[date] = None) -> DailySummary:
    return crud.get_day_totals(db, day)


def pending_review_count(db: Session, book_id: str) -> int:
    return crud.get_queue_statistics(db, book_id).total
