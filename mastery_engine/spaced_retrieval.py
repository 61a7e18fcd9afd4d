"""
Spaced retrieval scheduling.

Each concept runs two delayed checks after its first full coverage:

    FullyCovered -> spaced follow-up due -> passed -> curveball due -> passed (mastered)

A failed spaced follow-up is pushed back by `retry_delay_days`. A failed
curveball is recorded but not rescheduled unless `curveball_retry_days` is
configured or `requeue_curveball` is called.
"""

from sqlalchemy.orm import Session
from datetime import datetime, timedelta
from typing import List, Optional
import logging

from mastery_engine.config import Settings, settings as default_settings
from mastery_engine.crud.coverage import get_coverage, list_coverage, is_fully_covered
from mastery_engine.crud.review_queue import add_probe_item, has_pending_probe
from mastery_engine.database import commit_or_raise, utcnow
from mastery_engine.fsrs import FSRSScheduler, ReviewState
from mastery_engine.models import Concept, ConceptCoverage, ReviewQueueItem

logger = logging.getLogger(__name__)


class SpacedRetrievalScheduler:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    def _concept_title(self, db: Session, coverage: ConceptCoverage) -> Optional[str]:
        concept = db.query(Concept).filter(Concept.id == coverage.concept_id).first()
        if concept is None:
            logger.warning("Coverage references missing concept %s; skipping", coverage.concept_id)
            return None
        return concept.title

    def ensure_spaced_follow_ups_queued(
        self, db: Session, book_id: str, now: Optional[datetime] = None
    ) -> List[ReviewQueueItem]:
        """Queue one spaced follow-up for every fully covered concept whose check is due"""
        now = now or utcnow()
        queued = []
        for coverage in list_coverage(db, book_id):
            if not is_fully_covered(coverage) or coverage.spaced_follow_up_passed_at is not None:
                continue
            due = coverage.spaced_follow_up_due_date
            if due is None or due > now:
                continue
            if has_pending_probe(db, coverage.concept_id, book_id, curveball=False):
                continue
            title = self._concept_title(db, coverage)
            if title is None:
                continue
            queued.append(add_probe_item(db, coverage, title, curveball=False, now=now))
        return queued

    def ensure_curveballs_queued(
        self, db: Session, book_id: str, now: Optional[datetime] = None
    ) -> List[ReviewQueueItem]:
        """Queue one curveball for every concept past its spaced follow-up whose curveball is due"""
        now = now or utcnow()
        queued = []
        for coverage in list_coverage(db, book_id):
            if not is_fully_covered(coverage) or coverage.spaced_follow_up_passed_at is None:
                continue
            if coverage.curveball_passed:
                continue
            due = coverage.curveball_due_date
            if due is None or due > now:
                continue
            if has_pending_probe(db, coverage.concept_id, book_id, curveball=True):
                continue
            title = self._concept_title(db, coverage)
            if title is None:
                continue
            queued.append(add_probe_item(db, coverage, title, curveball=True, now=now))
        return queued

    def record_spaced_follow_up_result(
        self, db: Session, concept_id: str, book_id: str, passed: bool, now: Optional[datetime] = None
    ) -> Optional[ConceptCoverage]:
        """Pass: schedule the curveball. Fail: push the follow-up back by the retry delay."""
        coverage = get_coverage(db, concept_id, book_id)
        if coverage is None:
            logger.warning("No coverage for %s; spaced follow-up result ignored", concept_id)
            return None
        if coverage.spaced_follow_up_passed_at is not None:
            return coverage

        now = now or utcnow()
        if passed:
            coverage.spaced_follow_up_passed_at = now
            coverage.curveball_due_date = now + timedelta(days=self.settings.curveball_after_pass_days)
            logger.info(
                "Spaced follow-up passed for %s; curveball due %s",
                concept_id, coverage.curveball_due_date
            )
        else:
            coverage.spaced_follow_up_due_date = now + timedelta(days=self.settings.retry_delay_days)
            logger.info(
                "Spaced follow-up failed for %s; retry due %s",
                concept_id, coverage.spaced_follow_up_due_date
            )
        commit_or_raise(db, "record spaced follow-up result")
        return coverage

    def record_curveball_result(
        self, db: Session, concept_id: str, book_id: str, passed: bool, now: Optional[datetime] = None
    ) -> Optional[ConceptCoverage]:
        """Pass: satisfy the curveball gate for good. Fail: record it, no automatic retry."""
        coverage = get_coverage(db, concept_id, book_id)
        if coverage is None:
            logger.warning("No coverage for %s; curveball result ignored", concept_id)
            return None
        if coverage.curveball_passed:
            return coverage

        now = now or utcnow()
        if passed:
            coverage.curveball_passed = True
            coverage.curveball_passed_at = now
            logger.info("Curveball passed for %s", concept_id)
        else:
            coverage.curveball_failed_at = now
            retry_days = self.settings.curveball_retry_days
            coverage.curveball_due_date = now + timedelta(days=retry_days) if retry_days is not None else None
            logger.info(
                "Curveball failed for %s; %s",
                concept_id,
                f"retry due {coverage.curveball_due_date}" if retry_days is not None else "not rescheduled"
            )
        commit_or_raise(db, "record curveball result")
        return coverage

    def requeue_curveball(
        self,
        db: Session,
        concept_id: str,
        book_id: str,
        delay_days: int = 0,
        now: Optional[datetime] = None
    ) -> Optional[ConceptCoverage]:
        """Grant another curveball opportunity to a concept whose curveball is still unpassed"""
        coverage = get_coverage(db, concept_id, book_id)
        if coverage is None or coverage.spaced_follow_up_passed_at is None or coverage.curveball_passed:
            return None
        coverage.curveball_due_date = (now or utcnow()) + timedelta(days=delay_days)
        commit_or_raise(db, "requeue curveball")
        logger.info("Curveball for %s requeued, due %s", concept_id, coverage.curveball_due_date)
        return coverage

    def force_all_due(self, db: Session, book_id: str, now: Optional[datetime] = None) -> List[ReviewQueueItem]:
        """Make every pending spaced follow-up and curveball of a book due now and queue them"""
        now = now or utcnow()
        overdue = now - timedelta(minutes=1)
        for coverage in list_coverage(db, book_id):
            if coverage.spaced_follow_up_passed_at is None:
                if coverage.spaced_follow_up_due_date is not None:
                    coverage.spaced_follow_up_due_date = overdue
            elif not coverage.curveball_passed:
                coverage.curveball_due_date = overdue
        commit_or_raise(db, "force checks due")
        logger.info("Forced all spaced checks due for book %s", book_id)
        return self.ensure_spaced_follow_ups_queued(db, book_id, now) + \
            self.ensure_curveballs_queued(db, book_id, now)

    def advance_review_state(
        self,
        db: Session,
        concept_id: str,
        book_id: str,
        correct: int,
        total: int,
        now: Optional[datetime] = None
    ) -> Optional[ReviewState]:
        """Advance the memory model of a concept that already passed both checks"""
        coverage = get_coverage(db, concept_id, book_id)
        if coverage is None or total <= 0:
            return None
        if coverage.spaced_follow_up_passed_at is None or not coverage.curveball_passed:
            return None

        now = now or utcnow()
        state = coverage.review_state or FSRSScheduler.initialize_review_state(reference_date=now)
        performance = FSRSScheduler.performance_from_score(correct, total)
        coverage.review_state = FSRSScheduler.calculate_next_review(state, performance, reference_date=now)
        commit_or_raise(db, "advance review state")
        logger.debug(
            "Review state of %s advanced (%s), next review %s",
            concept_id, performance.value, coverage.review_state.next_review_date
        )
        return coverage.review_state

    def concepts_due_for_review(
        self, db: Session, book_id: str, limit: int = 3, now: Optional[datetime] = None
    ) -> List[ConceptCoverage]:
        """Fully covered concepts whose memory-model review is due, most overdue first"""
        now = now or utcnow()
        due = [
            c for c in list_coverage(db, book_id)
            if is_fully_covered(c) and FSRSScheduler.is_review_due(c.review_state, now)
        ]
        due.sort(key=lambda c: c.review_state.next_review_date)
        return due[:limit]
