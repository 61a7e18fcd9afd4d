import pytest
from pydantic import ValidationError

from mastery_engine.bcal import BCalConfig, BCalEngine, QuestionContext, StruggleSignals
from mastery_engine.schemas import Difficulty, QuestionType


@pytest.fixture
def scorer():
    return BCalEngine(BCalConfig())


def mcq(difficulty=Difficulty.EASY, **flags):
    return QuestionContext(question_type=QuestionType.MCQ, difficulty=difficulty, **flags)


def open_ended(difficulty=Difficulty.MEDIUM, **flags):
    return QuestionContext(question_type=QuestionType.OPEN_ENDED, difficulty=difficulty, **flags)


def test_fresh_mcq_with_default_latency(scorer):
    # 10 * 1.0 * 1.0 * 1.0 * (0.5 + 15 / 45)
    assert scorer.score_question(mcq()) == pytest.approx(10 * (0.5 + 15 / 45))


def test_open_ended_uses_its_own_default_latency(scorer):
    expected = 10 * 2.5 * 1.0 * 1.5 * (0.5 + 25 / 45)
    assert scorer.score_question(open_ended()) == pytest.approx(expected)


def test_state_weight_takes_the_largest_applicable_state(scorer):
    assert scorer.state_weight(mcq()) == 1.0
    assert scorer.state_weight(mcq(is_review=True)) == 1.1
    assert scorer.state_weight(mcq(is_review=True, is_curveball=True)) == 1.5
    assert scorer.state_weight(mcq(is_review=True, is_spaced_follow_up=True)) == 1.1


def test_curveball_hard_open_ended(scorer):
    signals = StruggleSignals(latency_seconds=45, hint_used=True, answer_changes=2)
    expected = 10 * 2.5 * 1.5 * 2.0 * (0.5 + 1.0 + 0.6 + 0.3)
    context = open_ended(Difficulty.HARD, is_review=True, is_curveball=True)
    assert scorer.score_question(context, signals) == pytest.approx(expected)


def test_score_is_monotonic_in_struggle(scorer):
    context = mcq(Difficulty.MEDIUM)
    base = scorer.score_question(context, StruggleSignals(latency_seconds=10))
    slower = scorer.score_question(context, StruggleSignals(latency_seconds=60))
    with_hint = scorer.score_question(context, StruggleSignals(latency_seconds=60, hint_used=True))
    with_changes = scorer.score_question(
        context, StruggleSignals(latency_seconds=60, hint_used=True, answer_changes=3)
    )
    assert base < slower < with_hint < with_changes


def test_latency_is_not_capped(scorer):
    context = mcq()
    assert scorer.score_question(context, StruggleSignals(latency_seconds=4500)) == pytest.approx(10 * 100.5)


def test_lesson_total_is_scaled_and_rounded(scorer):
    # 8 x (10 * 2.5 * 1.5 * 1.5) = 450, scaled by 0.9
    items = [(open_ended(), StruggleSignals(latency_seconds=45)) for _ in range(8)]
    assert scorer.score_lesson(items) == 405


def test_lesson_total_is_clamped(scorer):
    assert scorer.score_lesson([(mcq(), StruggleSignals(latency_seconds=0))]) == 60
    assert scorer.score_lesson([]) == 60
    heavy = [(open_ended(Difficulty.HARD), StruggleSignals(latency_seconds=600)) for _ in range(10)]
    assert scorer.score_lesson(heavy) == 500


def test_config_is_immutable():
    config = BCalConfig()
    with pytest.raises(ValidationError):
        config.base = 20


def test_custom_config_changes_weights_not_formula():
    scorer = BCalEngine(BCalConfig(base=20, clamp_min=0))
    assert scorer.score_question(mcq(), StruggleSignals(latency_seconds=0)) == pytest.approx(10.0)
    assert scorer.score_lesson([(mcq(), StruggleSignals(latency_seconds=0))]) == 9


def test_fresh_weight_is_a_floor_for_every_state():
    scorer = BCalEngine(BCalConfig(fresh_weight=1.2))
    assert scorer.state_weight(mcq(is_review=True)) == 1.2
    assert scorer.state_weight(mcq(is_spaced_follow_up=True)) == 1.2
    assert scorer.state_weight(mcq(is_curveball=True)) == 1.5


@pytest.mark.parametrize("base,expected", [(101, 51), (105, 53), (99, 50)])
def test_lesson_total_rounds_half_up(base, expected):
    # one Easy MCQ with no latency scores base * 0.5
    scorer = BCalEngine(BCalConfig(base=base, lesson_scale=1.0, clamp_min=0))
    assert scorer.score_lesson([(mcq(), StruggleSignals(latency_seconds=0))]) == expected
