import pytest

from mastery_engine import crud
from mastery_engine.crud import AttentionConfig
from mastery_engine.exceptions import PersistenceError
from mastery_engine.progress import concept_progress, daily_summary
from mastery_engine.schemas import ConceptCreate, numeric_id_sort_key

from tests.conftest import NOW


@pytest.mark.parametrize("pauses,percent", [(0, 100), (1, 80), (2, 50), (3, 0), (7, 0)])
def test_attention_percent_for_pauses(pauses, percent):
    assert AttentionConfig.percent_for_pauses(pauses) == percent


def test_empty_day_reports_full_attention(db):
    summary = daily_summary(db, NOW.date())
    assert summary.bcal_total == 0
    assert summary.accuracy_percent == 0
    assert summary.attention_percent == 100


def test_day_totals_accumulate_across_sessions(db):
    crud.add_session_totals(db, 120, correct=6, total=8, attention_pauses=0, day=NOW.date())
    crud.add_session_totals(db, 80, correct=3, total=4, attention_pauses=2, day=NOW.date())

    summary = daily_summary(db, NOW.date())
    assert summary.bcal_total == 200
    assert (summary.correct_count, summary.answered_count) == (9, 12)
    assert summary.accuracy_percent == 75
    assert summary.attention_pauses == 2
    assert summary.attention_percent == 75
    assert summary.sessions_completed == 2


def test_numeric_id_sort_key_orders_naturally():
    ids = ["b1i10", "b1i2", "i3", "b1i1", "intro"]
    assert sorted(ids, key=numeric_id_sort_key) == ["intro", "b1i1", "b1i2", "i3", "b1i10"]


def test_concepts_listed_in_natural_order(db, book):
    assert [c.id for c in crud.list_concepts(db, "b1")] == ["b1i1", "b1i2", "b1i3", "b1i10"]
    assert crud.get_concept(db, "b1i1").importance == "foundation"


def test_progress_without_coverage(db, book):
    progress = concept_progress(db, "b1")
    assert [p.concept_id for p in progress] == ["b1i1", "b1i2", "b1i3", "b1i10"]
    assert all(p.coverage_percentage == 0.0 and not p.is_mastered for p in progress)


def test_duplicate_concept_raises_persistence_error(db, book):
    with pytest.raises(PersistenceError) as exc:
        crud.create_concept(db, ConceptCreate(id="b1i1", book_id="b1", title="Again"))
    assert exc.value.retryable
    assert crud.get_concept(db, "b1i1").title == "Idea 1"
