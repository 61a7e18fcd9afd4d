from pydantic import BaseModel
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
import math

from mastery_engine.schemas import Importance


class Performance(str, Enum):
    AGAIN = "again"
    HARD = "hard"
    GOOD = "good"
    EASY = "easy"


class ReviewState(BaseModel):
    """Long-horizon memory model state for one concept"""
    stability: float
    difficulty: float
    interval: int = 1
    repetitions: int = 0
    lapses: int = 0
    last_review_date: Optional[datetime] = None
    next_review_date: datetime


class FSRSScheduler:
    """
    Simplified FSRS-style memory model for calculating review intervals.

    Stability grows with every successful review and resets on a lapse;
    difficulty drifts up on failures and down on easy recalls.
    """

    INITIAL_STABILITY = 1.0
    DEFAULT_DIFFICULTY = 0.3
    MAX_INTERVAL = 365
    EASY_BONUS = 1.3
    HARD_PENALTY = 0.6

    # (difficulty, stability) seeded by how central the concept is
    IMPORTANCE_SEEDS = {
        Importance.FOUNDATION: (0.2, 1.5),
        Importance.BUILDING_BLOCK: (0.3, 1.0),
        Importance.ENHANCEMENT: (0.4, 0.8),
    }

    @staticmethod
    def initialize_review_state(
        importance: Optional[Importance] = None,
        reference_date: datetime = None
    ) -> ReviewState:
        """
        Initialize memory-model state for a newly covered concept.

        Args:
            importance: Concept importance; unknown importance uses the defaults
            reference_date: Optional reference time (defaults to now)
        """
        difficulty, stability = FSRSScheduler.IMPORTANCE_SEEDS.get(
            importance, (FSRSScheduler.DEFAULT_DIFFICULTY, FSRSScheduler.INITIAL_STABILITY)
        )
        base_date = reference_date or datetime.utcnow()
        return ReviewState(
            stability=stability,
            difficulty=difficulty,
            interval=1,
            repetitions=0,
            lapses=0,
            last_review_date=None,
            next_review_date=base_date + timedelta(days=1)
        )

    @staticmethod
    def calculate_next_review(
        state: ReviewState,
        performance: Performance,
        reference_date: datetime = None
    ) -> ReviewState:
        """
        Calculate the next review state from a graded recall.

        Args:
            state: Current memory-model state
            performance: again / hard / good / easy
            reference_date: Optional reference time (defaults to now)

        Returns:
            New ReviewState; the input is not modified
        """
        stability = state.stability
        difficulty = state.difficulty
        repetitions = state.repetitions
        lapses = state.lapses

        if performance == Performance.AGAIN:
            interval = 1
            stability = FSRSScheduler.INITIAL_STABILITY
            lapses += 1
            repetitions = 0
            difficulty = min(1.0, difficulty + 0.2)
        elif performance == Performance.HARD:
            interval = max(1, int(state.interval * FSRSScheduler.HARD_PENALTY))
            stability *= 0.9
            repetitions += 1
            difficulty = min(1.0, difficulty + 0.1)
        elif performance == Performance.GOOD:
            multiplier = 2.5 * (1 + repetitions * 0.1)
            interval = min(FSRSScheduler.MAX_INTERVAL, int(state.interval * multiplier))
            stability *= 1.2
            repetitions += 1
        else:
            multiplier = 3.0 * (1 + repetitions * 0.15) * FSRSScheduler.EASY_BONUS
            interval = min(FSRSScheduler.MAX_INTERVAL, int(state.interval * multiplier))
            stability *= 1.5
            repetitions += 1
            difficulty = max(0.1, difficulty - 0.1)

        base_date = reference_date or datetime.utcnow()
        return ReviewState(
            stability=stability,
            difficulty=difficulty,
            interval=max(1, interval),
            repetitions=repetitions,
            lapses=lapses,
            last_review_date=base_date,
            next_review_date=base_date + timedelta(days=max(1, interval))
        )

    @staticmethod
    def performance_from_score(correct: int, total: int) -> Performance:
        """Map a correct/total ratio onto a performance grade"""
        if total <= 0:
            return Performance.AGAIN
        score = correct / total
        if score < 0.6:
            return Performance.AGAIN
        if score < 0.75:
            return Performance.HARD
        if score < 0.95:
            return Performance.GOOD
        return Performance.EASY

    @staticmethod
    def is_review_due(state: Optional[ReviewState], reference_date: datetime = None) -> bool:
        """Check if a concept is due for review"""
        if state is None:
            return False
        return (reference_date or datetime.utcnow()) >= state.next_review_date

    @staticmethod
    def get_days_overdue(state: ReviewState, reference_date: datetime = None) -> int:
        """Calculate how many whole days overdue a review is"""
        now = reference_date or datetime.utcnow()
        if now < state.next_review_date:
            return 0
        return (now - state.next_review_date).days

    @staticmethod
    def calculate_retention(state: ReviewState, reference_date: datetime = None) -> float:
        """Estimated probability of recall, exp(-elapsed_days / stability)"""
        if state.last_review_date is None:
            return 1.0
        elapsed = ((reference_date or datetime.utcnow()) - state.last_review_date).total_seconds() / 86400
        retention = math.exp(-max(0.0, elapsed) / max(state.stability, 0.01))
        return max(0.0, min(1.0, retention))
