from sqlalchemy.orm import Session
from pydantic import BaseModel, ConfigDict
from mastery_engine.models import ReviewQueueItem, ConceptCoverage
from mastery_engine.schemas import (
    Category,
    Difficulty,
    QuestionType,
    QueueStatistics,
    ScoredResponse
)
from mastery_engine.config import settings
from mastery_engine.database import commit_or_raise, utcnow
from datetime import datetime
from typing import Dict, Iterable, List, Optional
import logging

logger = logging.getLogger(__name__)


class DailyReviewItems(BaseModel):
    """Review items selected for today, split by question type"""
    mcq_items: List[ReviewQueueItem] = []
    open_ended_items: List[ReviewQueueItem] = []

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def ordered(self) -> List[ReviewQueueItem]:
        """MCQs first, then open-ended"""
        return list(self.mcq_items) + list(self.open_ended_items)

    @property
    def is_empty(self) -> bool:
        return not self.mcq_items and not self.open_ended_items


def concept_tested(category, difficulty) -> str:
    """Skill key of a question, e.g. "Apply-Easy" """
    return f"{Category(category).value}-{Difficulty(difficulty).value}"

def get_item(db: Session, item_id: str) -> Optional[ReviewQueueItem]:
    """Get queue item by ID"""
    return db.query(ReviewQueueItem).filter(ReviewQueueItem.id == item_id).first()

def get_items(db: Session, item_ids: Iterable[str]) -> List[ReviewQueueItem]:
    """Get queue items by ID, silently skipping ids that no longer exist"""
    item_ids = list(item_ids)
    if not item_ids:
        return []
    return db.query(ReviewQueueItem).filter(ReviewQueueItem.id.in_(item_ids)).all()

def get_pending_items(db: Session, book_id: str) -> List[ReviewQueueItem]:
    """Get all open items of a book, oldest first"""
    return db.query(ReviewQueueItem).filter(
        ReviewQueueItem.book_id == book_id,
        ReviewQueueItem.is_completed == False  # noqa: E712
    ).order_by(ReviewQueueItem.added_at, ReviewQueueItem.id).all()

def add_mistakes(
    db: Session,
    book_id: str,
    responses: Iterable[ScoredResponse],
    concept_titles: Optional[Dict[str, str]] = None,
    now: Optional[datetime] = None
) -> List[ReviewQueueItem]:
    """
    Queue every missed fresh question for later review.

    An item is skipped when an open mistake item already exists for the
    same concept, category and book.
    """
    concept_titles = concept_titles or {}
    now = now or utcnow()
    added = []
    queued_keys = set()

    for response in responses or []:
        if response.is_correct or response.is_review:
            continue
        if response.is_curveball or response.is_spaced_follow_up:
            continue

        category = Category(response.category).value
        key = (response.concept_id, category)
        if key in queued_keys:
            continue

        existing = db.query(ReviewQueueItem).filter(
            ReviewQueueItem.book_id == book_id,
            ReviewQueueItem.concept_id == response.concept_id,
            ReviewQueueItem.category == category,
            ReviewQueueItem.is_completed == False,  # noqa: E712
            ReviewQueueItem.is_curveball == False,  # noqa: E712
            ReviewQueueItem.is_spaced_follow_up == False  # noqa: E712
        ).first()
        if existing:
            logger.debug("Mistake for %s/%s already queued", response.concept_id, category)
            continue

        item = ReviewQueueItem(
            concept_id=response.concept_id,
            concept_title=concept_titles.get(response.concept_id, ""),
            book_id=book_id,
            question_type=QuestionType(response.question_type).value,
            difficulty=Difficulty(response.difficulty).value,
            category=category,
            concept_tested=concept_tested(category, response.difficulty),
            original_question_text=response.question_text,
            is_curveball=False,
            is_spaced_follow_up=False,
            is_completed=False,
            added_at=now
        )
        db.add(item)
        queued_keys.add(key)
        added.append(item)

    if added:
        commit_or_raise(db, "add review items")
        logger.info("Queued %d review item(s) for book %s", len(added), book_id)
    return added

def has_pending_probe(db: Session, concept_id: str, book_id: str, curveball: bool) -> bool:
    """Whether an open curveball (or spaced follow-up) item exists for a concept"""
    flag = ReviewQueueItem.is_curveball if curveball else ReviewQueueItem.is_spaced_follow_up
    return db.query(ReviewQueueItem).filter(
        ReviewQueueItem.concept_id == concept_id,
        ReviewQueueItem.book_id == book_id,
        ReviewQueueItem.is_completed == False,  # noqa: E712
        flag == True  # noqa: E712
    ).first() is not None

def add_probe_item(
    db: Session,
    coverage: ConceptCoverage,
    concept_title: str,
    curveball: bool,
    now: Optional[datetime] = None
) -> ReviewQueueItem:
    """
    Queue a spaced follow-up or curveball probe for a concept.

    Both are open-ended. A spaced follow-up is calibrated to the coverage
    snapshot (Reframe/Hard when none was taken); a curveball is always a
    content-agnostic Reframe/Hard free-recall prompt.
    """
    if curveball:
        category, difficulty = Category.REFRAME.value, Difficulty.HARD.value
        text = f"Curveball validation for {concept_title}"
    else:
        category = coverage.spaced_follow_up_bloom or Category.REFRAME.value
        difficulty = coverage.spaced_follow_up_difficulty or Difficulty.HARD.value
        text = f"Spaced follow-up for {concept_title}"

    item = ReviewQueueItem(
        concept_id=coverage.concept_id,
        concept_title=concept_title,
        book_id=coverage.book_id,
        question_type=QuestionType.OPEN_ENDED.value,
        difficulty=difficulty,
        category=category,
        concept_tested=concept_tested(category, difficulty),
        original_question_text=text,
        is_curveball=curveball,
        is_spaced_follow_up=not curveball,
        is_completed=False,
        added_at=now or utcnow()
    )
    db.add(item)
    commit_or_raise(db, "add probe item")
    db.refresh(item)
    logger.info(
        "Queued %s for concept %s",
        "curveball" if curveball else "spaced follow-up", coverage.concept_id
    )
    return item

def follow_up_waiting(db: Session, item: ReviewQueueItem, now: datetime) -> bool:
    """An open spaced follow-up whose retry delay after a failed answer has not elapsed"""
    if not item.is_spaced_follow_up:
        return False
    coverage = db.query(ConceptCoverage).filter(
        ConceptCoverage.concept_id == item.concept_id,
        ConceptCoverage.book_id == item.book_id
    ).first()
    due = coverage.spaced_follow_up_due_date if coverage else None
    return due is not None and due > now

def get_daily_items(
    db: Session,
    book_id: str,
    mcq_cap: Optional[int] = None,
    open_cap: Optional[int] = None,
    exclude_ids: Optional[Iterable[str]] = None,
    now: Optional[datetime] = None
) -> DailyReviewItems:
    """
    Select today's review items for a book.

    One priority probe slot goes first (a curveball, else a spaced
    follow-up). Remaining items are taken oldest first, de-duplicated by
    concept and skill key, and never repeat the probe's key. The result
    never exceeds `mcq_cap` MCQs plus `open_cap` open-ended items no matter
    how large the backlog is. Items in `exclude_ids` (already bundled into
    another open session) are left out, as are spaced follow-ups still
    waiting out their retry delay.
    """
    mcq_cap = settings.daily_review_mcq_cap if mcq_cap is None else mcq_cap
    open_cap = settings.daily_review_open_cap if open_cap is None else open_cap
    now = now or utcnow()

    excluded = set(exclude_ids or ())
    pending = [
        i for i in get_pending_items(db, book_id)
        if i.id not in excluded and not follow_up_waiting(db, i, now)
    ]
    mcq_items: List[ReviewQueueItem] = []
    open_items: List[ReviewQueueItem] = []
    used_keys = set()

    def bucket(item):
        return mcq_items if item.question_type == QuestionType.MCQ.value else open_items

    def cap(item):
        return mcq_cap if item.question_type == QuestionType.MCQ.value else open_cap

    priority = next((i for i in pending if i.is_curveball), None) or \
        next((i for i in pending if i.is_spaced_follow_up), None)
    if priority is not None and cap(priority) > 0:
        bucket(priority).append(priority)
        used_keys.add((priority.concept_id, priority.concept_tested))

    for item in pending:
        if item is priority:
            continue
        key = (item.concept_id, item.concept_tested)
        if key in used_keys:
            continue
        target = bucket(item)
        if len(target) < cap(item):
            target.append(item)
            used_keys.add(key)

    return DailyReviewItems(mcq_items=mcq_items, open_ended_items=open_items)

def completion_outcome(item: ReviewQueueItem, is_correct: bool) -> bool:
    """Curveballs complete once served; every other item only once answered correctly"""
    if item.is_curveball:
        return True
    return bool(is_correct)

def mark_completed(db: Session, items: Iterable[ReviewQueueItem], now: Optional[datetime] = None):
    """Mark queue items completed; completion is terminal"""
    now = now or utcnow()
    changed = 0
    for item in items:
        if item.is_completed:
            continue
        item.is_completed = True
        item.completed_at = now
        changed += 1
    if changed:
        commit_or_raise(db, "complete review items")
        logger.debug("Completed %d review item(s)", changed)

def get_queue_statistics(db: Session, book_id: str) -> QueueStatistics:
    """Count pending MCQ and open-ended items of a book"""
    pending = get_pending_items(db, book_id)
    mcqs = sum(1 for i in pending if i.question_type == QuestionType.MCQ.value)
    return QueueStatistics(total_mcqs=mcqs, total_open_ended=len(pending) - mcqs)
