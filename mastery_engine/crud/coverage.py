from sqlalchemy.orm import Session
from mastery_engine.models import (
    ConceptCoverage,
    Concept,
    ReviewQueueItem,
    PracticeSession
)
from mastery_engine.schemas import (
    ALL_CATEGORIES,
    Category,
    Difficulty,
    Importance,
    QuestionType,
    ScoredResponse
)
from mastery_engine.fsrs import FSRSScheduler
from mastery_engine.config import settings
from mastery_engine.database import commit_or_raise, utcnow
from datetime import datetime, timedelta
from typing import Iterable, List, Optional
import logging

logger = logging.getLogger(__name__)

def get_coverage(db: Session, concept_id: str, book_id: str) -> Optional[ConceptCoverage]:
    """Get coverage row for a concept, if any"""
    return db.query(ConceptCoverage).filter(
        ConceptCoverage.concept_id == concept_id,
        ConceptCoverage.book_id == book_id
    ).first()

def get_or_create_coverage(db: Session, concept_id: str, book_id: str) -> ConceptCoverage:
    """Get coverage row for a concept, creating an empty one on first use"""
    coverage = get_coverage(db, concept_id, book_id)
    if coverage:
        return coverage

    coverage = ConceptCoverage(
        concept_id=concept_id,
        book_id=book_id,
        covered_categories=set(),
        total_questions_seen=0,
        total_questions_correct=0,
        mistakes_count=0,
        current_accuracy=0.0,
        curveball_passed=False
    )
    db.add(coverage)
    commit_or_raise(db, "create concept coverage")
    db.refresh(coverage)
    return coverage

def list_coverage(db: Session, book_id: str) -> List[ConceptCoverage]:
    """Get all coverage rows of a book"""
    return db.query(ConceptCoverage).filter(ConceptCoverage.book_id == book_id).all()

def is_fully_covered(coverage: Optional[ConceptCoverage]) -> bool:
    """All 8 categories answered correctly and at least 8 correct answers overall"""
    if coverage is None:
        return False
    return ALL_CATEGORIES <= set(coverage.covered_categories or ()) and \
        (coverage.total_questions_correct or 0) >= 8

def is_mastered(coverage: Optional[ConceptCoverage]) -> bool:
    """Full coverage plus a passed spaced follow-up and a passed curveball; sticky once granted"""
    if coverage is None:
        return False
    if coverage.mastered_at is not None:
        return True
    return is_fully_covered(coverage) and \
        coverage.spaced_follow_up_passed_at is not None and \
        bool(coverage.curveball_passed)

def _snapshot_rank(response: ScoredResponse) -> int:
    """Rank of a correct response as spaced follow-up calibration; 0 means unusable"""
    if response.question_type == QuestionType.MCQ:
        if response.difficulty == Difficulty.HARD:
            return 3
        if response.difficulty == Difficulty.MEDIUM:
            return 2
        return 0
    return 1

def record_responses(
    db: Session,
    concept_id: str,
    book_id: str,
    responses: Optional[Iterable[ScoredResponse]],
    now: Optional[datetime] = None,
    base_delay_days: Optional[int] = None
) -> ConceptCoverage:
    """
    Fold a batch of scored responses into the concept's coverage.

    Counters and the covered category set only ever grow. The spaced
    follow-up calibration snapshot is taken from the hardest correct answer
    in the batch and only when none exists yet. On the first transition into
    full coverage the memory model is seeded and the spaced follow-up is
    scheduled `base_delay_days` out.
    """
    responses = list(responses or [])
    coverage = get_or_create_coverage(db, concept_id, book_id)
    if not responses:
        return coverage

    now = now or utcnow()
    delay = settings.base_delay_days if base_delay_days is None else base_delay_days
    was_fully_covered = is_fully_covered(coverage)

    covered = set(coverage.covered_categories or ())
    seen = coverage.total_questions_seen or 0
    correct = coverage.total_questions_correct or 0
    mistakes = coverage.mistakes_count or 0

    for response in responses:
        seen += 1
        if response.is_correct:
            correct += 1
            covered.add(Category(response.category))
        else:
            mistakes += 1

    coverage.covered_categories = covered
    coverage.total_questions_seen = seen
    coverage.total_questions_correct = correct
    coverage.mistakes_count = mistakes
    coverage.current_accuracy = correct / seen * 100 if seen else 0.0

    if coverage.first_attempt_at is None:
        coverage.first_attempt_at = now
    coverage.last_attempt_at = now

    if coverage.spaced_follow_up_bloom is None:
        candidates = [r for r in responses if r.is_correct and _snapshot_rank(r) > 0]
        if candidates:
            # max() keeps the first of equally ranked answers
            best = max(candidates, key=_snapshot_rank)
            coverage.spaced_follow_up_bloom = Category(best.category).value
            if best.question_type == QuestionType.OPEN_ENDED:
                coverage.spaced_follow_up_difficulty = Difficulty.HARD.value
            else:
                coverage.spaced_follow_up_difficulty = Difficulty(best.difficulty).value

    if not was_fully_covered and is_fully_covered(coverage) and coverage.covered_at is None:
        coverage.covered_at = now
        concept = db.query(Concept).filter(Concept.id == concept_id).first()
        importance = Importance(concept.importance) if concept and concept.importance else None
        coverage.review_state = FSRSScheduler.initialize_review_state(importance, reference_date=now)
        if coverage.spaced_follow_up_due_date is None and coverage.spaced_follow_up_passed_at is None:
            coverage.spaced_follow_up_due_date = now + timedelta(days=delay)
        logger.info(
            "Concept %s fully covered; spaced follow-up due %s",
            concept_id, coverage.spaced_follow_up_due_date
        )

    commit_or_raise(db, "record responses")
    db.refresh(coverage)
    logger.debug(
        "Coverage %s: %d/8 categories, %d/%d correct",
        concept_id, len(covered), correct, seen
    )
    return coverage

def mark_mastered_if_earned(db: Session, coverage: ConceptCoverage, now: Optional[datetime] = None) -> bool:
    """
    Stamp mastered_at the first time the mastery gate is satisfied.

    Returns True only on that first transition, so callers can celebrate once.
    """
    if coverage.mastered_at is not None or not is_mastered(coverage):
        return False
    coverage.mastered_at = now or utcnow()
    commit_or_raise(db, "mark concept mastered")
    logger.info("Concept %s mastered", coverage.concept_id)
    return True

def delete_concept_data(db: Session, concept_id: str, book_id: str):
    """Remove coverage, review items and sessions of a concept"""
    db.query(ConceptCoverage).filter(
        ConceptCoverage.concept_id == concept_id,
        ConceptCoverage.book_id == book_id
    ).delete()
    db.query(ReviewQueueItem).filter(
        ReviewQueueItem.concept_id == concept_id,
        ReviewQueueItem.book_id == book_id
    ).delete()
    for session in db.query(PracticeSession).filter(
        PracticeSession.concept_id == concept_id,
        PracticeSession.book_id == book_id
    ).all():
        db.delete(session)
    commit_or_raise(db, "delete concept data")

def delete_book_data(db: Session, book_id: str):
    """Remove all coverage, review items and sessions of a book"""
    db.query(ConceptCoverage).filter(ConceptCoverage.book_id == book_id).delete()
    db.query(ReviewQueueItem).filter(ReviewQueueItem.book_id == book_id).delete()
    for session in db.query(PracticeSession).filter(PracticeSession.book_id == book_id).all():
        db.delete(session)
    commit_or_raise(db, "delete book data")
