"""
Practice session lifecycle.

    none -> generating -> ready -> in_progress <-> paused -> completed
                 |
                 +-> error   (surfaced, or deleted and regenerated)

A `generating` row doubles as the "generation in flight" marker for its
(key, session type, book), so at most one authoritative session exists per
key. Lesson sessions are keyed by concept id; review-bundle sessions use
REVIEW_BUNDLE_KEY.
"""

from sqlalchemy.orm import Session
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
import asyncio
import logging

from mastery_engine import crud
from mastery_engine.bcal import BCalEngine, QuestionContext, StruggleSignals
from mastery_engine.config import Settings, settings as default_settings
from mastery_engine.crud import practice_session as sessions
from mastery_engine.crud.review_queue import get_items, get_item
from mastery_engine.database import SessionLocal, commit_or_raise, utcnow
from mastery_engine.exceptions import (
    GenerationError,
    InvalidSessionStateError,
    MasteryEngineError,
    SessionGenerationError,
    SessionNotFoundError
)
from mastery_engine.generator import BaseQuestionGenerator
from mastery_engine.models import PracticeSession, ReviewQueueItem, SessionQuestion, SessionResponse
from mastery_engine.schemas import (
    REVIEW_BUNDLE_KEY,
    RESUMABLE_STATUSES,
    Difficulty,
    QuestionDraft,
    QuestionType,
    ScoredResponse,
    SessionConfig,
    SessionOutcome,
    SessionStatus,
    SessionType,
    numeric_id_sort_key
)
from mastery_engine.spaced_retrieval import SpacedRetrievalScheduler

logger = logging.getLogger(__name__)

ERROR_POLICIES = ("surface", "retry")


def order_fresh_questions(drafts: List[QuestionDraft]) -> List[QuestionDraft]:
    """Easy, then Medium, then Hard (stable), with open-ended Hard questions last"""
    easy = [d for d in drafts if d.difficulty == Difficulty.EASY]
    medium = [d for d in drafts if d.difficulty == Difficulty.MEDIUM]
    hard = [d for d in drafts if d.difficulty == Difficulty.HARD]
    hard = [d for d in hard if d.question_type == QuestionType.MCQ] + \
        [d for d in hard if d.question_type == QuestionType.OPEN_ENDED]
    return easy + medium + hard


def session_key(concept_id: str, session_type: SessionType) -> str:
    return REVIEW_BUNDLE_KEY if session_type == SessionType.REVIEW_PRACTICE else concept_id


class PracticeSessionManager:
    """Drives practice sessions from generation through completion for one learner"""

    def __init__(
        self,
        db: Session,
        generator: BaseQuestionGenerator,
        scheduler: Optional[SpacedRetrievalScheduler] = None,
        scorer: Optional[BCalEngine] = None,
        settings: Optional[Settings] = None,
        session_factory: Callable[[], Session] = SessionLocal
    ):
        self.db = db
        self.generator = generator
        self.settings = settings or default_settings
        self.scheduler = scheduler or SpacedRetrievalScheduler(self.settings)
        self.scorer = scorer or BCalEngine()
        self.session_factory = session_factory

    # Start / resume

    async def start_or_resume(
        self,
        concept_id: str,
        book_id: str,
        session_type: SessionType = SessionType.LESSON_PRACTICE,
        error_policy: str = "surface",
        now: Optional[datetime] = None
    ) -> Optional[PracticeSession]:
        """
        Return the authoritative session for a concept, generating one if needed.

        A review bundle with no due items is never stored; None is returned
        instead, so repeated calls keep returning None until items are due.

        Args:
            concept_id: Concept to practice (ignored for review bundles)
            error_policy: "surface" raises SessionGenerationError for a stored
                error session; "retry" deletes it and generates again

        Raises:
            SessionGenerationError: stored error surfaced, or generation failed
        """
        if error_policy not in ERROR_POLICIES:
            raise ValueError(f"error_policy must be one of {ERROR_POLICIES}")
        session_type = SessionType(session_type)
        key = session_key(concept_id, session_type)
        now = now or utcnow()

        existing = sessions.find_open_session(self.db, key, session_type.value, book_id)
        if existing is not None and existing.status == SessionStatus.GENERATING.value:
            stale_before = now - timedelta(seconds=self.settings.stale_session_seconds)
            if existing.updated_at is not None and existing.updated_at < stale_before:
                logger.info("Session %s stuck generating; regenerating", existing.id)
                sessions.delete_session(self.db, existing)
                existing = None
            else:
                existing = await self._wait_for_generation(existing.id)

        if existing is not None and existing.status == SessionStatus.ERROR.value:
            if error_policy == "surface":
                raise SessionGenerationError(existing.id, existing.error_message)
            sessions.delete_session(self.db, existing)
            existing = None

        if existing is not None and existing.status in [s.value for s in RESUMABLE_STATUSES]:
            if self._has_enough_questions(existing, session_type):
                self.reconcile_session(existing)
                logger.info("Resuming session %s at question %d", existing.id, existing.current_index)
                return existing
            logger.info("Session %s is incomplete; regenerating", existing.id)
            sessions.delete_session(self.db, existing)

        return await self._generate_session(key, book_id, session_type, now)

    async def _wait_for_generation(self, session_id: str) -> Optional[PracticeSession]:
        """
        Poll a session generated elsewhere until it leaves `generating`.

        On timeout the session is discarded and None is returned so the
        caller generates inline.
        """
        for _ in range(self.settings.session_poll_attempts):
            await asyncio.sleep(self.settings.session_poll_interval_seconds)
            self.db.expire_all()
            session = sessions.get_session(self.db, session_id)
            if session is None:
                return None
            if session.status != SessionStatus.GENERATING.value:
                return session

        logger.warning("Timed out waiting for session %s; generating inline", session_id)
        session = sessions.get_session(self.db, session_id)
        if session is not None:
            sessions.delete_session(self.db, session)
        return None

    def _has_enough_questions(self, session: PracticeSession, session_type: SessionType) -> bool:
        if session_type == SessionType.REVIEW_PRACTICE:
            return len(session.questions) > 0
        fresh = [q for q in session.questions if not q.is_review]
        return len(fresh) >= self.settings.min_lesson_questions

    async def _generate_session(
        self, key: str, book_id: str, session_type: SessionType, now: datetime
    ) -> Optional[PracticeSession]:
        session = sessions.create_generating_session(self.db, key, session_type.value, book_id, now)
        try:
            questions, item_ids = await self._assemble(session, key, book_id, session_type, now)
        except Exception as e:
            message = e.message if isinstance(e, MasteryEngineError) else str(e)
            sessions.mark_session_error(self.db, session, message, now=utcnow())
            if isinstance(e, GenerationError):
                raise SessionGenerationError(session.id, message) from e
            raise
        if not questions:
            logger.info("Nothing to review for book %s; no session created", book_id)
            sessions.delete_session(self.db, session)
            return None
        return sessions.mark_session_ready(
            self.db, session, questions, SessionConfig.from_item_ids(item_ids), now=utcnow()
        )

    async def _assemble(
        self,
        session: PracticeSession,
        key: str,
        book_id: str,
        session_type: SessionType,
        now: datetime
    ) -> Tuple[List[SessionQuestion], List[str]]:
        """Fresh lesson questions followed by today's review items"""
        questions: List[SessionQuestion] = []

        if session_type == SessionType.LESSON_PRACTICE:
            concept = crud.get_concept(self.db, key)
            if concept is None:
                raise MasteryEngineError(f"Concept {key} not found")
            drafts = await self.generator.generate_concept_questions(concept)
            questions.extend(self._to_question(d, concept.id) for d in order_fresh_questions(drafts))

        self.scheduler.ensure_spaced_follow_ups_queued(self.db, book_id, now)
        self.scheduler.ensure_curveballs_queued(self.db, book_id, now)
        daily = crud.get_daily_items(
            self.db,
            book_id,
            mcq_cap=self.settings.daily_review_mcq_cap,
            open_cap=self.settings.daily_review_open_cap,
            exclude_ids=sessions.claimed_review_item_ids(self.db, book_id, exclude_session_id=session.id),
            now=now
        )

        review_questions: List[SessionQuestion] = []
        item_ids: List[str] = []
        for item in daily.ordered():
            concept = crud.get_concept(self.db, item.concept_id)
            if concept is None:
                logger.warning("Review item %s references missing concept %s; skipping", item.id, item.concept_id)
                continue
            if item.is_curveball or item.is_spaced_follow_up:
                draft = await self.generator.generate_recall_probe(item, concept)
            else:
                try:
                    draft = await self.generator.generate_review_question(item, concept)
                except GenerationError as e:
                    logger.warning("Review item %s left for a later session: %s", item.id, e.message)
                    continue
            review_questions.append(self._to_question(draft, concept.id, item))
            item_ids.append(item.id)

        review_questions.sort(key=lambda q: Difficulty(q.difficulty).point_value)
        return questions + review_questions, item_ids

    @staticmethod
    def _to_question(
        draft: QuestionDraft, concept_id: str, item: Optional[ReviewQueueItem] = None
    ) -> SessionQuestion:
        return SessionQuestion(
            concept_id=concept_id,
            order_index=0,
            question_type=draft.question_type.value,
            difficulty=draft.difficulty.value,
            category=draft.category.value,
            text=draft.text,
            options=draft.options,
            correct_index=draft.correct_index,
            is_review=item is not None,
            is_curveball=bool(item is not None and item.is_curveball),
            is_spaced_follow_up=bool(item is not None and item.is_spaced_follow_up),
            source_queue_item_id=item.id if item is not None else None
        )

    # Answering and pausing

    def _get(self, session_id: str) -> PracticeSession:
        session = sessions.get_session(self.db, session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def record_answer(
        self,
        session_id: str,
        question_id: str,
        is_correct: bool,
        latency_seconds: Optional[float] = None,
        hint_used: bool = False,
        answer_changes: int = 0,
        answer_text: Optional[str] = None,
        attempt_number: int = 1,
        now: Optional[datetime] = None
    ) -> SessionResponse:
        """Store an answer snapshot (write-once per attempt) and advance the session"""
        session = self._get(session_id)
        if session.status not in [s.value for s in RESUMABLE_STATUSES]:
            raise InvalidSessionStateError(session.id, session.status, "answer in")

        question = next((q for q in session.questions if q.id == question_id), None)
        if question is None:
            raise MasteryEngineError(f"Question {question_id} is not part of session {session_id}")

        now = now or utcnow()
        response = sessions.record_response(
            self.db,
            session,
            question,
            is_correct,
            attempt_number=attempt_number,
            latency_seconds=latency_seconds,
            hint_used=hint_used,
            answer_changes=answer_changes,
            answer_text=answer_text,
            now=now
        )

        session.current_index = max(session.current_index or 0, question.order_index + 1)
        if session.status != SessionStatus.IN_PROGRESS.value:
            sessions.set_session_status(self.db, session, SessionStatus.IN_PROGRESS, now)
        else:
            session.updated_at = now
            commit_or_raise(self.db, "advance session")
        return response

    def pause(self, session_id: str, now: Optional[datetime] = None) -> PracticeSession:
        session = self._get(session_id)
        if session.status != SessionStatus.IN_PROGRESS.value:
            raise InvalidSessionStateError(session.id, session.status, "pause")
        sessions.set_session_status(self.db, session, SessionStatus.PAUSED, now)
        return session

    def resume(self, session_id: str, now: Optional[datetime] = None) -> PracticeSession:
        session = self._get(session_id)
        if session.status != SessionStatus.PAUSED.value:
            raise InvalidSessionStateError(session.id, session.status, "resume")
        sessions.set_session_status(self.db, session, SessionStatus.IN_PROGRESS, now)
        return session

    def add_attention_pause(self, session_id: str) -> int:
        """Count a lapse in attention (learner left the session mid-question)"""
        session = self._get(session_id)
        if session.status not in [s.value for s in RESUMABLE_STATUSES]:
            raise InvalidSessionStateError(session.id, session.status, "pause attention in")
        session.attention_pauses = (session.attention_pauses or 0) + 1
        commit_or_raise(self.db, "record attention pause")
        return session.attention_pauses

    # Reconciliation

    def reconcile_session(self, session: PracticeSession) -> Dict[str, ReviewQueueItem]:
        """
        Resolve the queue item behind every review question of a session.

        Direct links are used when the item still exists. Otherwise the
        config fingerprint is searched for an unused item of the same concept
        and category, and the repaired link is saved. Questions whose item
        is gone are left out of the result.
        """
        review_questions = [q for q in session.questions if q.is_review]
        if not review_questions:
            return {}

        candidates = {i.id: i for i in get_items(self.db, session.config.review_item_ids)}
        linked: Dict[str, ReviewQueueItem] = {}
        used = set()

        for question in review_questions:
            if not question.source_queue_item_id:
                continue
            item = candidates.get(question.source_queue_item_id) or \
                get_item(self.db, question.source_queue_item_id)
            if item is not None:
                linked[question.id] = item
                used.add(item.id)

        repaired = False
        for question in review_questions:
            if question.id in linked:
                continue
            match = next(
                (i for i in candidates.values()
                 if i.id not in used and i.concept_id == question.concept_id and i.category == question.category),
                None
            )
            if match is None:
                logger.warning("No queue item for review question %s in session %s", question.id, session.id)
                continue
            question.source_queue_item_id = match.id
            linked[question.id] = match
            used.add(match.id)
            repaired = True

        if repaired:
            commit_or_raise(self.db, "reconcile session links")
            logger.info("Repaired review links in session %s", session.id)
        return linked

    # Completion

    def complete(self, session_id: str, now: Optional[datetime] = None) -> SessionOutcome:
        """
        Finish a session and fold its answers into the learner's state.

        Coverage is updated per concept, fresh mistakes are queued, review
        items are settled (spaced follow-up and curveball results included),
        the memory model advances for concepts past both checks, BCal and
        accuracy are added to the day's totals, and concepts that newly
        reach mastery are returned for a one-time celebration.
        """
        session = self._get(session_id)
        if session.status not in [s.value for s in RESUMABLE_STATUSES]:
            raise InvalidSessionStateError(session.id, session.status, "complete")

        now = now or utcnow()
        book_id = session.book_id
        links = self.reconcile_session(session)
        latest = sessions.latest_responses(self.db, session.id)
        answered = [(q, latest[q.id]) for q in session.questions if q.id in latest]

        scored = [self._scored(q, r) for q, r in answered]
        by_concept: Dict[str, List[ScoredResponse]] = {}
        for response in scored:
            by_concept.setdefault(response.concept_id, []).append(response)

        titles = {}
        for concept_id, responses in by_concept.items():
            concept = crud.get_concept(self.db, concept_id)
            titles[concept_id] = concept.title if concept else concept_id
            crud.record_responses(
                self.db, concept_id, book_id, responses, now=now,
                base_delay_days=self.settings.base_delay_days
            )

        new_items = crud.add_mistakes(self.db, book_id, scored, titles, now=now)
        self._settle_review_items(answered, links, book_id, now)
        self._advance_memory(scored, book_id, now)

        correct = sum(1 for r in scored if r.is_correct)
        total = len(scored)
        bcal = 0
        if answered:
            bcal = self.scorer.score_lesson(
                (self._context(q), self._signals(r)) for q, r in answered
            )
            crud.add_session_totals(
                self.db, bcal, correct, total, session.attention_pauses or 0, day=now.date()
            )

        touched = sorted(by_concept, key=numeric_id_sort_key)
        celebration = []
        for concept_id in touched:
            coverage = crud.get_coverage(self.db, concept_id, book_id)
            if coverage is not None and crud.mark_mastered_if_earned(self.db, coverage, now):
                celebration.append(concept_id)

        session.status = SessionStatus.COMPLETED.value
        session.brain_calories = bcal
        session.completed_at = now
        session.updated_at = now
        commit_or_raise(self.db, "complete practice session")
        logger.info(
            "Session %s completed: %d/%d correct, %d BCal, %d newly mastered",
            session.id, correct, total, bcal, len(celebration)
        )

        return SessionOutcome(
            session_id=session.id,
            brain_calories=bcal,
            correct=correct,
            total=total,
            attention_pauses=session.attention_pauses or 0,
            touched_concept_ids=touched,
            celebration_queue=celebration,
            new_review_items=len(new_items)
        )

    def _settle_review_items(
        self,
        answered: List[Tuple[SessionQuestion, SessionResponse]],
        links: Dict[str, ReviewQueueItem],
        book_id: str,
        now: datetime
    ):
        finished = []
        for question, response in answered:
            if not question.is_review:
                continue
            item = links.get(question.id)
            if item is None or item.is_completed:
                continue
            if item.is_spaced_follow_up:
                self.scheduler.record_spaced_follow_up_result(
                    self.db, item.concept_id, book_id, response.is_correct, now
                )
            elif item.is_curveball:
                self.scheduler.record_curveball_result(
                    self.db, item.concept_id, book_id, response.is_correct, now
                )
            if crud.completion_outcome(item, response.is_correct):
                finished.append(item)
        crud.mark_completed(self.db, finished, now)

    def _advance_memory(self, scored: List[ScoredResponse], book_id: str, now: datetime):
        """Feed review answers (probes excluded) into the memory model per concept"""
        totals: Dict[str, List[int]] = {}
        for response in scored:
            if not response.is_review or response.is_curveball or response.is_spaced_follow_up:
                continue
            counts = totals.setdefault(response.concept_id, [0, 0])
            counts[0] += 1 if response.is_correct else 0
            counts[1] += 1
        for concept_id, (correct, total) in totals.items():
            self.scheduler.advance_review_state(self.db, concept_id, book_id, correct, total, now)

    @staticmethod
    def _scored(question: SessionQuestion, response: SessionResponse) -> ScoredResponse:
        return ScoredResponse(
            question_id=question.id,
            concept_id=question.concept_id,
            category=question.category,
            question_type=question.question_type,
            difficulty=question.difficulty,
            is_correct=response.is_correct,
            question_text=question.text,
            is_review=bool(question.is_review),
            is_curveball=bool(question.is_curveball),
            is_spaced_follow_up=bool(question.is_spaced_follow_up),
            latency_seconds=response.latency_seconds,
            hint_used=bool(response.hint_used),
            answer_changes=response.answer_changes or 0
        )

    @staticmethod
    def _context(question: SessionQuestion) -> QuestionContext:
        return QuestionContext(
            question_type=question.question_type,
            difficulty=question.difficulty,
            is_review=bool(question.is_review),
            is_spaced_follow_up=bool(question.is_spaced_follow_up),
            is_curveball=bool(question.is_curveball)
        )

    @staticmethod
    def _signals(response: SessionResponse) -> StruggleSignals:
        return StruggleSignals(
            latency_seconds=response.latency_seconds,
            hint_used=bool(response.hint_used),
            answer_changes=response.answer_changes or 0
        )

    # Background pre-generation

    async def prefetch(self, concept_id: str, book_id: str) -> Optional[str]:
        """
        Pre-generate the lesson session of the next concept on a separate DB session.

        Does nothing when a ready or freshly generating session already exists.
        Failures are logged and left as `error` sessions for the next start.

        Returns:
            Session id of the existing or newly generated session, or None on failure
        """
        db = self.session_factory()
        try:
            now = utcnow()
            sessions.purge_stale_sessions(
                db, book_id, now - timedelta(seconds=self.settings.stale_session_seconds)
            )
            existing = sessions.find_open_session(db, concept_id, SessionType.LESSON_PRACTICE.value, book_id)
            if existing is not None:
                logger.debug("Prefetch for %s skipped; session %s is %s", concept_id, existing.id, existing.status)
                return existing.id

            worker = PracticeSessionManager(
                db, self.generator, self.scheduler, self.scorer, self.settings, self.session_factory
            )
            session = await worker._generate_session(concept_id, book_id, SessionType.LESSON_PRACTICE, now)
            logger.info("Prefetched session %s for %s", session.id, concept_id)
            return session.id
        except MasteryEngineError as e:
            logger.warning("Prefetch for %s failed: %s", concept_id, e.message)
            return None
        finally:
            db.close()
