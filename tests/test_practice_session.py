import asyncio
from datetime import timedelta

import pytest

from mastery_engine import crud
from mastery_engine.crud import practice_session as sessions
from mastery_engine.crud.review_queue import get_pending_items
from mastery_engine.exceptions import InvalidSessionStateError, SessionGenerationError
from mastery_engine.models import PracticeSession, SessionQuestion
from mastery_engine.practice import PracticeSessionManager
from mastery_engine.progress import concept_progress, daily_summary, pending_review_count, session_view
from mastery_engine.schemas import SessionStatus, SessionType

from tests.conftest import NOW, FakeGenerator


def start(manager, concept_id, now=NOW, **kwargs):
    return asyncio.run(manager.start_or_resume(concept_id, "b1", now=now, **kwargs))


def answer_all(manager, session, correct=True, now=NOW):
    for question in list(session.questions):
        is_correct = correct(question) if callable(correct) else correct
        manager.record_answer(session.id, question.id, is_correct, latency_seconds=20, now=now)


def run_session(manager, concept_id, now, correct=True):
    session = start(manager, concept_id, now=now)
    answer_all(manager, session, correct, now=now)
    return session, manager.complete(session.id, now=now)


def test_new_session_orders_fresh_questions(manager, book):
    session = start(manager, "b1i1")

    assert session.status == SessionStatus.READY.value
    assert [(q.difficulty, q.question_type) for q in session.questions] == [
        ("Easy", "MCQ"), ("Easy", "MCQ"),
        ("Medium", "MCQ"), ("Medium", "MCQ"), ("Medium", "MCQ"), ("Medium", "OpenEnded"),
        ("Hard", "MCQ"), ("Hard", "OpenEnded"),
    ]
    assert [q.order_index for q in session.questions] == list(range(8))
    assert not any(q.is_review for q in session.questions)


def test_second_start_resumes_the_same_session(manager, generator, book):
    first = start(manager, "b1i1")
    manager.record_answer(first.id, first.questions[0].id, True, now=NOW)
    second = start(manager, "b1i1", now=NOW + timedelta(hours=2))

    assert second.id == first.id
    assert second.current_index == 1
    assert generator.calls.count("concept") == 1
    assert session_view(manager.db, second.id).answered_question_ids == [first.questions[0].id]


def test_answers_are_write_once(manager, book):
    session = start(manager, "b1i1")
    question = session.questions[0]
    first = manager.record_answer(session.id, question.id, True, latency_seconds=12, now=NOW)
    again = manager.record_answer(session.id, question.id, False, now=NOW)

    assert again.id == first.id
    assert again.is_correct
    assert session.status == SessionStatus.IN_PROGRESS.value


def test_pause_and_resume(manager, book):
    session = start(manager, "b1i1")
    with pytest.raises(InvalidSessionStateError):
        manager.pause(session.id)

    manager.record_answer(session.id, session.questions[0].id, True, now=NOW)
    manager.pause(session.id)
    assert session.status == SessionStatus.PAUSED.value
    with pytest.raises(InvalidSessionStateError):
        manager.pause(session.id)

    manager.resume(session.id)
    assert session.status == SessionStatus.IN_PROGRESS.value


def test_complete_updates_coverage_and_daily_totals(manager, book):
    session, outcome = run_session(manager, "b1i1", NOW)

    assert outcome.correct == outcome.total == 8
    assert 60 <= outcome.brain_calories <= 500
    assert outcome.touched_concept_ids == ["b1i1"]
    assert outcome.celebration_queue == []
    assert session.status == SessionStatus.COMPLETED.value
    assert session.brain_calories == outcome.brain_calories

    coverage = crud.get_coverage(manager.db, "b1i1", "b1")
    assert crud.is_fully_covered(coverage)
    assert coverage.spaced_follow_up_due_date == NOW + timedelta(days=3)

    summary = daily_summary(manager.db, NOW.date())
    assert summary.bcal_total == outcome.brain_calories
    assert summary.accuracy_percent == 100
    assert summary.attention_percent == 100

    with pytest.raises(InvalidSessionStateError):
        manager.complete(session.id, now=NOW)


def test_mistakes_come_back_as_review_questions(manager, book):
    misses = {"Apply", "Critique"}
    _, outcome = run_session(manager, "b1i1", NOW, correct=lambda q: q.category not in misses)
    assert outcome.new_review_items == 2
    assert pending_review_count(manager.db, "b1") == 2

    later = NOW + timedelta(days=1)
    session = start(manager, "b1i2", now=later)
    review = [q for q in session.questions if q.is_review]

    assert len(session.questions) == 10
    assert session.questions[-2:] == review
    assert [q.difficulty for q in review] == ["Easy", "Hard"]
    assert {q.concept_id for q in review} == {"b1i1"}
    assert sorted(session.config.review_item_ids) == session.config.review_item_ids
    assert len(session.config.review_item_ids) == 2

    answer_all(manager, session, correct=True, now=later)
    manager.complete(session.id, now=later)
    assert pending_review_count(manager.db, "b1") == 0


def test_wrong_review_answer_keeps_item_pending(manager, book):
    run_session(manager, "b1i1", NOW, correct=lambda q: q.category != "Apply")
    later = NOW + timedelta(days=1)
    session = start(manager, "b1i2", now=later)
    answer_all(manager, session, correct=lambda q: not q.is_review, now=later)
    outcome = manager.complete(session.id, now=later)

    assert outcome.new_review_items == 0
    assert pending_review_count(manager.db, "b1") == 1


def test_review_only_session(manager, book):
    run_session(manager, "b1i1", NOW, correct=lambda q: q.category != "Recall")
    session = asyncio.run(manager.start_or_resume(
        "", "b1", session_type=SessionType.REVIEW_PRACTICE, now=NOW + timedelta(days=1)
    ))

    assert session.concept_id == "review"
    assert [q.category for q in session.questions] == ["Recall"]
    assert all(q.is_review for q in session.questions)


def test_empty_review_bundle_is_not_stored(manager, book):
    for _ in range(2):
        session = asyncio.run(manager.start_or_resume("", "b1", session_type=SessionType.REVIEW_PRACTICE, now=NOW))
        assert session is None
    assert manager.db.query(PracticeSession).count() == 0

    run_session(manager, "b1i1", NOW, correct=lambda q: q.category != "Recall")
    later = NOW + timedelta(days=1)
    first = asyncio.run(manager.start_or_resume("", "b1", session_type=SessionType.REVIEW_PRACTICE, now=later))
    second = asyncio.run(manager.start_or_resume("", "b1", session_type=SessionType.REVIEW_PRACTICE, now=later))
    assert first.id == second.id


def test_mastery_flow_celebrates_once(manager, book):
    """Full coverage, then spaced follow-up, then curveball"""
    run_session(manager, "b1i1", NOW)

    follow_up_day = NOW + timedelta(days=3, hours=1)
    session, outcome = run_session(manager, "b1i2", follow_up_day)
    follow_ups = [q for q in session.questions if q.is_spaced_follow_up]
    assert [q.concept_id for q in follow_ups] == ["b1i1"]
    assert follow_ups[0].question_type == "OpenEnded"
    assert outcome.celebration_queue == []

    coverage = crud.get_coverage(manager.db, "b1i1", "b1")
    assert coverage.spaced_follow_up_passed_at == follow_up_day
    assert coverage.curveball_due_date == follow_up_day + timedelta(days=5)

    curveball_day = follow_up_day + timedelta(days=5, hours=1)
    session, outcome = run_session(manager, "b1i3", curveball_day)
    curveballs = [q for q in session.questions if q.is_curveball]
    assert [q.concept_id for q in curveballs] == ["b1i1"]
    assert outcome.celebration_queue == ["b1i1"]
    assert outcome.touched_concept_ids == ["b1i1", "b1i3"]

    coverage = crud.get_coverage(manager.db, "b1i1", "b1")
    assert crud.is_mastered(coverage)
    assert not crud.mark_mastered_if_earned(manager.db, coverage, curveball_day)

    progress = {p.concept_id: p for p in concept_progress(manager.db, "b1")}
    assert progress["b1i1"].is_mastered
    assert list(progress) == ["b1i1", "b1i2", "b1i3", "b1i10"]


def test_failed_curveball_is_not_offered_again(manager, book):
    run_session(manager, "b1i1", NOW)
    follow_up_day = NOW + timedelta(days=3, hours=1)
    run_session(manager, "b1i2", follow_up_day)

    curveball_day = follow_up_day + timedelta(days=5, hours=1)
    _, outcome = run_session(manager, "b1i3", curveball_day, correct=lambda q: not q.is_curveball)
    assert outcome.celebration_queue == []

    session = start(manager, "b1i10", now=curveball_day + timedelta(days=30))
    assert not any(q.is_curveball for q in session.questions)
    coverage = crud.get_coverage(manager.db, "b1i1", "b1")
    assert not coverage.curveball_passed
    assert coverage.curveball_failed_at == curveball_day


def test_failed_follow_up_is_retried_after_delay(manager, book):
    run_session(manager, "b1i1", NOW)
    follow_up_day = NOW + timedelta(days=3, hours=1)
    run_session(manager, "b1i2", follow_up_day, correct=lambda q: not q.is_spaced_follow_up)

    coverage = crud.get_coverage(manager.db, "b1i1", "b1")
    assert coverage.spaced_follow_up_passed_at is None
    assert coverage.spaced_follow_up_due_date == follow_up_day + timedelta(days=2)

    follow_up = next(i for i in get_pending_items(manager.db, "b1") if i.is_spaced_follow_up)
    assert follow_up.concept_id == "b1i1"

    session = start(manager, "b1i3", now=follow_up_day + timedelta(days=1))
    assert not any(q.is_spaced_follow_up for q in session.questions)

    retry_day = follow_up_day + timedelta(days=2, hours=1)
    session = start(manager, "b1i10", now=retry_day)
    retried = [q for q in session.questions if q.is_spaced_follow_up]
    assert [q.source_queue_item_id for q in retried] == [follow_up.id]

    answer_all(manager, session, now=retry_day)
    manager.complete(session.id, now=retry_day)
    assert follow_up.is_completed
    assert crud.get_coverage(manager.db, "b1i1", "b1").spaced_follow_up_passed_at == retry_day


def test_generation_error_is_stored_and_surfaced(db, book, scheduler, test_settings, session_factory):
    generator = FakeGenerator(fail_all=True)
    manager = PracticeSessionManager(db, generator, scheduler, settings=test_settings, session_factory=session_factory)

    with pytest.raises(SessionGenerationError) as first:
        start(manager, "b1i1")
    stored = sessions.get_session(db, first.value.session_id)
    assert stored.status == SessionStatus.ERROR.value
    assert "Recall" in stored.error_message
    stored_id, stored_message = stored.id, stored.error_message

    with pytest.raises(SessionGenerationError) as second:
        start(manager, "b1i1")
    assert second.value.session_id == stored_id
    assert second.value.message == stored_message

    generator.fail_all = False
    session = start(manager, "b1i1", error_policy="retry")
    assert session.status == SessionStatus.READY.value
    assert sessions.get_session(db, stored_id) is None


def test_stale_generating_session_is_replaced(manager, book):
    stale = sessions.create_generating_session(
        manager.db, "b1i1", "lesson_practice", "b1", now=NOW - timedelta(minutes=10)
    )
    stale_id = stale.id

    session = start(manager, "b1i1")

    assert session.id != stale_id
    assert sessions.get_session(manager.db, stale_id) is None


def test_poll_timeout_discards_and_generates_inline(manager, generator, book):
    pending = sessions.create_generating_session(manager.db, "b1i1", "lesson_practice", "b1", now=NOW)
    pending_id = pending.id

    session = start(manager, "b1i1")

    assert session.id != pending_id
    assert session.status == SessionStatus.READY.value
    assert sessions.get_session(manager.db, pending_id) is None
    assert manager.db.query(PracticeSession).count() == 1
    assert generator.calls == ["concept"]


def test_poll_returns_session_finished_elsewhere(manager, generator, book, session_factory, monkeypatch):
    pending = sessions.create_generating_session(manager.db, "b1i1", "lesson_practice", "b1", now=NOW)
    pending_id = pending.id

    async def finish_elsewhere(_seconds):
        other = session_factory()
        try:
            row = sessions.get_session(other, pending_id)
            if row.status == SessionStatus.GENERATING.value:
                questions = [
                    SessionQuestion(
                        concept_id="b1i1", order_index=0, question_type="MCQ", difficulty="Easy",
                        category="Recall", text=f"Question {n}", options=["a1", "b1", "c1", "d1"],
                        correct_index=0
                    )
                    for n in range(8)
                ]
                sessions.mark_session_ready(other, row, questions, row.config, now=NOW)
        finally:
            other.close()

    monkeypatch.setattr("mastery_engine.practice.asyncio.sleep", finish_elsewhere)
    session = start(manager, "b1i1")

    assert session.id == pending_id
    assert len(session.questions) == 8
    assert generator.calls == []


def test_reconcile_repairs_missing_links(manager, book):
    run_session(manager, "b1i1", NOW, correct=lambda q: q.category != "Apply")
    later = NOW + timedelta(days=1)
    session = start(manager, "b1i2", now=later)
    review = next(q for q in session.questions if q.is_review)
    item_id = review.source_queue_item_id
    review.source_queue_item_id = None
    manager.db.commit()

    links = manager.reconcile_session(session)

    assert links[review.id].id == item_id
    assert review.source_queue_item_id == item_id


def test_attention_pauses_lower_attention(manager, book):
    session = start(manager, "b1i1")
    manager.add_attention_pause(session.id)
    answer_all(manager, session)
    outcome = manager.complete(session.id, now=NOW)

    assert outcome.attention_pauses == 1
    assert daily_summary(manager.db, NOW.date()).attention_percent == 80


def test_prefetch_prepares_next_session(manager, generator, book):
    prefetched_id = asyncio.run(manager.prefetch("b1i2", "b1"))
    assert prefetched_id is not None
    assert asyncio.run(manager.prefetch("b1i2", "b1")) == prefetched_id

    session = start(manager, "b1i2")

    assert session.id == prefetched_id
    assert generator.calls.count("concept") == 1


def test_prefetch_failure_is_left_for_next_start(db, book, scheduler, test_settings, session_factory):
    manager = PracticeSessionManager(
        db, FakeGenerator(fail_all=True), scheduler, settings=test_settings, session_factory=session_factory
    )

    assert asyncio.run(manager.prefetch("b1i2", "b1")) is None
    with pytest.raises(SessionGenerationError):
        start(manager, "b1i2")


def test_completing_without_answers_scores_nothing(manager, book):
    session = start(manager, "b1i1")
    outcome = manager.complete(session.id, now=NOW)

    assert outcome.total == 0
    assert outcome.brain_calories == 0
    assert session.status == SessionStatus.COMPLETED.value
    assert daily_summary(manager.db, NOW.date()).sessions_completed == 0
