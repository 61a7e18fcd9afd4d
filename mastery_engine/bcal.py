"""
Cognitive Load Scorer ("brain calories").

score = base * type_weight * state_weight * difficulty_weight * struggle

The state weight is the largest weight among the states that apply to a
question (fresh, review, spaced follow-up, curveball). Struggle is linear in
latency and answer changes and deliberately has no upper bound; only the
per-lesson total is clamped.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Iterable, Optional, Tuple
import logging
import math

from mastery_engine.schemas import Difficulty, QuestionType

logger = logging.getLogger(__name__)


class BCalConfig(BaseModel):
    """Immutable weight table for the scorer"""
    model_config = ConfigDict(frozen=True)

    base: float = 10.0
    lesson_scale: float = 0.9
    clamp_min: int = 60
    clamp_max: int = 500

    type_weights: Dict[QuestionType, float] = Field(default_factory=lambda: {
        QuestionType.MCQ: 1.0,
        QuestionType.OPEN_ENDED: 2.5,
    })
    difficulty_weights: Dict[Difficulty, float] = Field(default_factory=lambda: {
        Difficulty.EASY: 1.0,
        Difficulty.MEDIUM: 1.5,
        Difficulty.HARD: 2.0,
    })

    fresh_weight: float = 1.0
    review_weight: float = 1.1
    spaced_follow_up_weight: float = 1.1
    curveball_weight: float = 1.5

    struggle_base: float = 0.5
    latency_divisor: float = 45.0
    hint_penalty: float = 0.6
    change_penalty: float = 0.15

    default_latency: Dict[QuestionType, float] = Field(default_factory=lambda: {
        QuestionType.MCQ: 15.0,
        QuestionType.OPEN_ENDED: 25.0,
    })


class QuestionContext(BaseModel):
    """What kind of question was answered"""
    question_type: QuestionType
    difficulty: Difficulty
    is_review: bool = False
    is_spaced_follow_up: bool = False
    is_curveball: bool = False


class StruggleSignals(BaseModel):
    """How hard the learner worked for an answer"""
    latency_seconds: Optional[float] = None
    hint_used: bool = False
    answer_changes: int = 0


class BCalEngine:
    """Deterministic scorer; construct once with a config and pass it where needed"""

    def __init__(self, config: Optional[BCalConfig] = None):
        self.config = config or BCalConfig()

    def state_weight(self, context: QuestionContext) -> float:
        weights = [self.config.fresh_weight]
        if context.is_review:
            weights.append(self.config.review_weight)
        if context.is_spaced_follow_up:
            weights.append(self.config.spaced_follow_up_weight)
        if context.is_curveball:
            weights.append(self.config.curveball_weight)
        return max(weights)

    def struggle(self, context: QuestionContext, signals: Optional[StruggleSignals]) -> float:
        signals = signals or StruggleSignals()
        latency = signals.latency_seconds
        if latency is None:
            latency = self.config.default_latency.get(context.question_type, 0.0)
        return (
            self.config.struggle_base
            + max(0.0, latency) / self.config.latency_divisor
            + (self.config.hint_penalty if signals.hint_used else 0.0)
            + max(0, signals.answer_changes) * self.config.change_penalty
        )

    def score_question(self, context: QuestionContext, signals: Optional[StruggleSignals] = None) -> float:
        """BCal of a single answered question (unrounded)"""
        return (
            self.config.base
            * self.config.type_weights.get(context.question_type, 1.0)
            * self.state_weight(context)
            * self.config.difficulty_weights.get(context.difficulty, 1.0)
            * self.struggle(context, signals)
        )

    def score_lesson(self, items: Iterable[Tuple[QuestionContext, Optional[StruggleSignals]]]) -> int:
        """Clamped, rounded BCal of a whole session"""
        total = sum(self.score_question(context, signals) for context, signals in items)
        scaled = self.config.lesson_scale * total
        clamped = min(max(scaled, self.config.clamp_min), self.config.clamp_max)
        logger.debug("Lesson BCal raw=%.1f scaled=%.1f clamped=%.1f", total, scaled, clamped)
        # half away from zero; the value is never negative
        return int(math.floor(clamped + 0.5))
