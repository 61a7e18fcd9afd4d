from sqlalchemy.orm import Session
from mastery_engine.models import PracticeSession, SessionQuestion, SessionResponse
from mastery_engine.schemas import SessionConfig, SessionStatus
from mastery_engine.database import commit_or_raise, utcnow
from datetime import datetime
from typing import Dict, List, Optional, Set
import logging

logger = logging.getLogger(__name__)

def get_session(db: Session, session_id: str) -> Optional[PracticeSession]:
    """Get practice session by ID"""
    return db.query(PracticeSession).filter(PracticeSession.id == session_id).first()

def find_open_session(db: Session, key: str, session_type: str, book_id: str) -> Optional[PracticeSession]:
    """Get the newest non-completed session for a (key, type, book)"""
    return db.query(PracticeSession).filter(
        PracticeSession.concept_id == key,
        PracticeSession.session_type == session_type,
        PracticeSession.book_id == book_id,
        PracticeSession.status != SessionStatus.COMPLETED.value
    ).order_by(PracticeSession.created_at.desc()).first()

def create_generating_session(
    db: Session,
    key: str,
    session_type: str,
    book_id: str,
    now: Optional[datetime] = None
) -> PracticeSession:
    """Create the in-flight marker row for a session being generated"""
    now = now or utcnow()
    session = PracticeSession(
        concept_id=key,
        book_id=book_id,
        session_type=session_type,
        status=SessionStatus.GENERATING.value,
        config=SessionConfig(),
        current_index=0,
        attention_pauses=0,
        created_at=now,
        updated_at=now
    )
    db.add(session)
    commit_or_raise(db, "create practice session")
    db.refresh(session)
    logger.info("Session %s generating for %s (%s)", session.id, key, session_type)
    return session

def mark_session_ready(
    db: Session,
    session: PracticeSession,
    questions: List[SessionQuestion],
    config: SessionConfig,
    now: Optional[datetime] = None
) -> PracticeSession:
    """Attach generated questions and flip the session to ready"""
    for index, question in enumerate(questions):
        question.order_index = index
        session.questions.append(question)
    session.config = config
    session.status = SessionStatus.READY.value
    session.error_message = None
    session.updated_at = now or utcnow()
    commit_or_raise(db, "save practice session")
    db.refresh(session)
    logger.info("Session %s ready with %d question(s)", session.id, len(questions))
    return session

def mark_session_error(db: Session, session: PracticeSession, message: str, now: Optional[datetime] = None):
    """Store a generation failure on the session"""
    session.status = SessionStatus.ERROR.value
    session.error_message = message
    session.updated_at = now or utcnow()
    commit_or_raise(db, "mark session error")
    logger.warning("Session %s failed: %s", session.id, message)

def set_session_status(db: Session, session: PracticeSession, status: SessionStatus, now: Optional[datetime] = None):
    """Persist a lifecycle status change"""
    previous = session.status
    session.status = status.value
    session.updated_at = now or utcnow()
    commit_or_raise(db, f"set session status to {status.value}")
    logger.info("Session %s: %s -> %s", session.id, previous, status.value)

def delete_session(db: Session, session: PracticeSession):
    """Delete a session with its questions and responses"""
    session_id = session.id
    db.delete(session)
    commit_or_raise(db, "delete practice session")
    logger.info("Session %s deleted", session_id)

def purge_stale_sessions(db: Session, book_id: str, stale_before: datetime) -> int:
    """Delete generating sessions older than `stale_before` and all error sessions of a book"""
    stale = db.query(PracticeSession).filter(
        PracticeSession.book_id == book_id,
        (
            (PracticeSession.status == SessionStatus.GENERATING.value) &
            (PracticeSession.updated_at < stale_before)
        ) | (PracticeSession.status == SessionStatus.ERROR.value)
    ).all()
    for session in stale:
        db.delete(session)
    if stale:
        commit_or_raise(db, "purge stale sessions")
        logger.info("Purged %d stale session(s) for book %s", len(stale), book_id)
    return len(stale)

def get_responses(db: Session, session_id: str) -> List[SessionResponse]:
    """Get all answer snapshots of a session in answer order"""
    return db.query(SessionResponse).filter(
        SessionResponse.session_id == session_id
    ).order_by(SessionResponse.answered_at, SessionResponse.id).all()

def latest_responses(db: Session, session_id: str) -> Dict[str, SessionResponse]:
    """Latest attempt per question id"""
    latest: Dict[str, SessionResponse] = {}
    for response in get_responses(db, session_id):
        current = latest.get(response.question_id)
        if current is None or response.attempt_number > current.attempt_number:
            latest[response.question_id] = response
    return latest

def get_response(db: Session, question_id: str, attempt_number: int) -> Optional[SessionResponse]:
    """Get the snapshot of one question attempt"""
    return db.query(SessionResponse).filter(
        SessionResponse.question_id == question_id,
        SessionResponse.attempt_number == attempt_number
    ).first()

def record_response(
    db: Session,
    session: PracticeSession,
    question: SessionQuestion,
    is_correct: bool,
    attempt_number: int = 1,
    latency_seconds: Optional[float] = None,
    hint_used: bool = False,
    answer_changes: int = 0,
    answer_text: Optional[str] = None,
    now: Optional[datetime] = None
) -> SessionResponse:
    """
    Persist an answer snapshot.

    Snapshots are write-once: an existing (question, attempt) row is returned
    unchanged.
    """
    existing = get_response(db, question.id, attempt_number)
    if existing:
        logger.debug("Response for question %s attempt %d already stored", question.id, attempt_number)
        return existing

    response = SessionResponse(
        session_id=session.id,
        question_id=question.id,
        attempt_number=attempt_number,
        is_correct=is_correct,
        latency_seconds=latency_seconds,
        hint_used=hint_used,
        answer_changes=answer_changes,
        answer_text=answer_text,
        answered_at=now or utcnow()
    )
    db.add(response)
    commit_or_raise(db, "record answer")
    db.refresh(response)
    return response

def claimed_review_item_ids(db: Session, book_id: str, exclude_session_id: Optional[str] = None) -> Set[str]:
    """Review item ids already bundled into other non-completed sessions of a book"""
    sessions = db.query(PracticeSession).filter(
        PracticeSession.book_id == book_id,
        PracticeSession.status != SessionStatus.COMPLETED.value
    ).all()
    claimed: Set[str] = set()
    for session in sessions:
        if session.id != exclude_session_id:
            claimed.update(session.config.review_item_ids)
    return claimed
